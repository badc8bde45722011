"""Discounted integration of state occupancy against utilities and costs."""

from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from cohort_markov.engine import UNIT_ID_COLUMNS
from cohort_markov.errors import DimensionMismatch

QUADRATURE_METHODS = ('left_riemann', 'right_riemann', 'trapezoidal')


def discount_factors(times: np.ndarray, dr: float) -> np.ndarray:
    """1 / (1 + dr) ** time, with time in the units of ``dr`` (years by convention)."""
    return (1.0 + dr) ** -np.asarray(times, dtype=float)


def _weights_over_time(weights: np.ndarray, n_points: int, stateprobs_shape: tuple) -> np.ndarray:
    weights = np.asarray(weights, dtype=float)
    if weights.ndim == 1:
        weights = weights[np.newaxis, np.newaxis, np.newaxis, :]
    if weights.ndim != 4 or weights.shape[-1] != stateprobs_shape[-1]:
        raise DimensionMismatch(
            f"Outcome weights of shape {weights.shape} do not match {stateprobs_shape[-1]} states"
        )
    if weights.shape[0] not in (1, n_points):
        raise DimensionMismatch(
            f"Time-varying weights cover {weights.shape[0]} time points; trajectory has {n_points}"
        )
    try:
        return np.broadcast_to(weights, (weights.shape[0],) + stateprobs_shape[1:])
    except ValueError as exc:
        raise DimensionMismatch(
            f"Outcome weights of shape {weights.shape} do not broadcast to {stateprobs_shape}"
        ) from exc


def integrate_outcome(stateprobs: np.ndarray,
                      weights: np.ndarray,
                      dr: float = 0.0,
                      cycle_length: float = 1.0,
                      method: str = 'left_riemann') -> np.ndarray:
    """
    Discounted total of occupancy times per-state weight over the model horizon.

    Parameters
    ----------
    stateprobs:
        Occupancy trajectory of shape ``(n_cycles + 1, N, U, S)``.
    weights:
        Values per unit of time attached to states, ``(S,)`` or
        ``(T, N, U, S)`` with ``T`` either 1 or ``n_cycles + 1``
        (calendar-time indexed).
    dr:
        Discount rate per unit of time.
    cycle_length:
        Length of a cycle in the units of ``dr``.
    method:
        ``left_riemann`` values each cycle at its start, ``right_riemann`` at
        its end, ``trapezoidal`` averages both ends.

    Returns
    -------
    Array of shape ``(N, U)``.
    """
    if method not in QUADRATURE_METHODS:
        raise ValueError(f"method must be one of {QUADRATURE_METHODS}, got {method!r}")
    stateprobs = np.asarray(stateprobs, dtype=float)
    n_points = stateprobs.shape[0]
    if n_points < 2:
        raise DimensionMismatch("A trajectory needs at least one simulated cycle")
    weights = _weights_over_time(weights, n_points, stateprobs.shape)

    times = np.arange(n_points) * cycle_length
    discount = discount_factors(times, dr)
    # value rate at each grid point, (n_cycles + 1, N, U)
    flow = (stateprobs * weights).sum(axis=-1) * discount[:, np.newaxis, np.newaxis]

    if method == 'left_riemann':
        cycle_values = flow[:-1]
    elif method == 'right_riemann':
        cycle_values = flow[1:]
    else:
        cycle_values = 0.5 * (flow[:-1] + flow[1:])
    return cycle_values.sum(axis=0) * cycle_length


def life_year_weights(n_states: int, absorbing: int) -> np.ndarray:
    weights = np.ones(n_states)
    weights[absorbing] = 0.0
    return weights


def sim_outcomes(stateprobs: np.ndarray,
                 transformed: Mapping[str, object],
                 units: pd.DataFrame,
                 dr_qalys: Sequence[float],
                 dr_costs: Sequence[float],
                 cycle_length: float = 1.0,
                 method: str = 'left_riemann',
                 absorbing: Optional[int] = None,
                 sample_offset: int = 0) -> pd.DataFrame:
    """
    Integrate QALYs, optional life-years and every cost category.

    ``transformed`` is the output of :func:`cohort_markov.transitions.transform`.
    Life-years are included when ``absorbing`` is given.

    Returns a long table with columns ``sample``, the unit identifiers,
    ``outcome``, ``dr`` and ``value``.
    """
    n_samples, n_units = stateprobs.shape[1], stateprobs.shape[2]
    if len(units) != n_units:
        raise DimensionMismatch(f"{len(units)} analysis units for {n_units} simulated units")

    categories: List[tuple] = [('qalys', transformed['utility'], dr_qalys)]
    if absorbing is not None:
        categories.append(('lys', life_year_weights(stateprobs.shape[-1], absorbing), dr_qalys))
    costs: Dict[str, np.ndarray] = transformed.get('costs', {}) or {}
    for name, weights in costs.items():
        categories.append((name, weights, dr_costs))

    sample_idx, unit_idx = np.indices((n_samples, n_units)).reshape(2, -1)
    id_columns = {'sample': sample_idx + sample_offset + 1}
    for column in UNIT_ID_COLUMNS:
        if column in units.columns:
            id_columns[column] = units[column].to_numpy()[unit_idx]

    frames: List[pd.DataFrame] = []
    for outcome, weights, rates in categories:
        for dr in rates:
            totals = integrate_outcome(stateprobs, weights, dr, cycle_length, method)
            frame = pd.DataFrame(id_columns)
            frame['outcome'] = outcome
            frame['dr'] = float(dr)
            frame['value'] = totals.reshape(-1)
            frames.append(frame)
    return pd.concat(frames, ignore_index=True)


def summarize_outcomes(outcomes: pd.DataFrame,
                       dr_qalys: float,
                       dr_costs: float) -> pd.DataFrame:
    """
    Wide per-sample, per-unit table at one QALY and one cost discount rate.

    Columns: identifiers, ``qalys``, ``lys`` (if simulated), one column per
    cost category and ``total_costs``.
    """
    id_columns = [c for c in ('sample',) + UNIT_ID_COLUMNS if c in outcomes.columns]
    effect_mask = outcomes['outcome'].isin(['qalys', 'lys']) & np.isclose(outcomes['dr'], dr_qalys)
    cost_mask = ~outcomes['outcome'].isin(['qalys', 'lys']) & np.isclose(outcomes['dr'], dr_costs)
    selected = outcomes.loc[effect_mask | cost_mask]
    if selected.empty:
        raise ValueError(f"No outcomes at dr_qalys={dr_qalys}, dr_costs={dr_costs}")

    wide = selected.pivot_table(index=id_columns, columns='outcome', values='value', aggfunc='first')
    wide.columns.name = None
    cost_columns = [c for c in wide.columns if c not in ('qalys', 'lys')]
    wide['total_costs'] = wide[cost_columns].sum(axis=1) if cost_columns else 0.0
    return wide.reset_index()
