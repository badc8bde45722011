"""Rate, probability and odds conversions (vectorised over numpy arrays)."""

from typing import Union

import numpy as np

ArrayLike = Union[float, np.ndarray]


def _as_probability(p: ArrayLike, name: str = 'p') -> np.ndarray:
    arr = np.asarray(p, dtype=float)
    if np.any((arr < 0.0) | (arr > 1.0)):
        raise ValueError(f"{name} must lie in the interval [0, 1].")
    return arr


def rate_to_prob(rate: ArrayLike, dt: float = 1.0) -> np.ndarray:
    """Probability of at least one event over ``dt`` under a constant hazard ``rate``."""
    rate = np.asarray(rate, dtype=float)
    if np.any(rate < 0.0):
        raise ValueError("rate must be non-negative.")
    return 1.0 - np.exp(-rate * dt)


def prob_to_rate(p: ArrayLike, dt: float = 1.0) -> np.ndarray:
    """Constant hazard implied by an event probability over ``dt``; p == 1 maps to inf."""
    p = _as_probability(p)
    with np.errstate(divide='ignore'):
        return -np.log1p(-p) / dt


def rescale_prob(p: ArrayLike, from_dt: float = 1.0, to_dt: float = 1.0) -> np.ndarray:
    """Convert a probability defined over ``from_dt`` to one over ``to_dt``."""
    return rate_to_prob(prob_to_rate(p, from_dt), to_dt)


def combine_probs(*probs: ArrayLike) -> np.ndarray:
    """Probability of any of several independent events: 1 - prod(1 - p)."""
    if not probs:
        raise ValueError("combine_probs needs at least one probability.")
    survival = np.ones_like(np.asarray(probs[0], dtype=float))
    for i, p in enumerate(probs):
        survival = survival * (1.0 - _as_probability(p, f"p[{i}]"))
    return 1.0 - survival


def prob_to_odds(p: ArrayLike) -> np.ndarray:
    p = _as_probability(p)
    with np.errstate(divide='ignore'):
        return p / (1.0 - p)


def odds_to_prob(odds: ArrayLike) -> np.ndarray:
    odds = np.asarray(odds, dtype=float)
    if np.any(odds < 0.0):
        raise ValueError("odds must be non-negative.")
    return odds / (1.0 + odds)


def apply_odds_ratio(p: ArrayLike, odds_ratio: ArrayLike) -> np.ndarray:
    return odds_to_prob(prob_to_odds(p) * np.asarray(odds_ratio, dtype=float))


def apply_relative_risk(p: ArrayLike, rr: ArrayLike) -> np.ndarray:
    """Scale a probability by a relative risk; results above 1 are an input error."""
    scaled = _as_probability(p) * np.asarray(rr, dtype=float)
    if np.any(scaled > 1.0):
        raise ValueError("Relative risk pushes a probability above 1; convert through rates instead.")
    return scaled
