"""Parameter sampling for probabilistic sensitivity analysis (PSA)."""

import math
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from cohort_markov.errors import DimensionMismatch, InvalidDistributionParameters

DISTRIBUTION_FAMILIES = ('dirichlet', 'lognormal', 'gamma', 'beta', 'normal', 'fixed')

Z_95 = 1.96


def se_from_ci(lower: float, upper: float, z: float = Z_95) -> float:
    """Standard error implied by a symmetric confidence interval on the natural scale."""
    return (float(upper) - float(lower)) / (2.0 * z)


def lognormal_sdlog_from_ci(lower: float, upper: float, z: float = Z_95) -> float:
    """Standard deviation on the log scale implied by a 95% CI for a ratio measure."""
    if lower <= 0.0 or upper <= 0.0:
        raise ValueError("Confidence bounds for a lognormal parameter must be positive.")
    return (math.log(upper) - math.log(lower)) / (2.0 * z)


def resolve_inputs(inputs: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Evaluate named inputs in declaration order.

    Callable entries are derived quantities: each is called once with the
    inputs resolved so far and its result is cached under its name.
    """
    resolved: Dict[str, Any] = {}
    for name, value in (inputs or {}).items():
        if callable(value):
            value = value(resolved)
        resolved[name] = value
    return resolved


def _resolve_argument(param_name: str,
                      arg_name: str,
                      spec: Mapping[str, Any],
                      inputs: Dict[str, Any]) -> np.ndarray:
    if arg_name not in spec:
        raise InvalidDistributionParameters(
            f"Parameter '{param_name}' is missing the '{arg_name}' argument",
            {'parameter': param_name},
        )
    raw = spec[arg_name]
    if isinstance(raw, str):
        if raw not in inputs:
            raise InvalidDistributionParameters(
                f"Parameter '{param_name}' references unknown input '{raw}'",
                {'parameter': param_name},
            )
        raw = inputs[raw]
    try:
        value = np.asarray(raw, dtype=float)
    except (TypeError, ValueError) as exc:
        raise InvalidDistributionParameters(
            f"Argument '{arg_name}' of parameter '{param_name}' is not numeric",
            {'parameter': param_name},
        ) from exc
    if not np.all(np.isfinite(value)):
        raise InvalidDistributionParameters(
            f"Argument '{arg_name}' of parameter '{param_name}' must be finite",
            {'parameter': param_name},
        )
    return value


def _broadcast(param_name: str, *arrays: np.ndarray) -> Tuple[np.ndarray, ...]:
    try:
        return tuple(np.array(a) for a in np.broadcast_arrays(*arrays))
    except ValueError as exc:
        raise InvalidDistributionParameters(
            f"Arguments of parameter '{param_name}' have incompatible shapes",
            {'parameter': param_name},
        ) from exc


def _beta_params_from_mean_sd(param_name: str,
                              mean: np.ndarray,
                              sd: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Return (alpha, beta) shape parameters for a beta distribution given mean and SD."""
    mean, sd = _broadcast(param_name, mean, sd)
    if np.any((mean <= 0.0) | (mean >= 1.0)):
        raise InvalidDistributionParameters(
            "Beta mean must lie strictly between 0 and 1",
            {'parameter': param_name},
        )
    if np.any(sd <= 0.0):
        raise InvalidDistributionParameters(
            "Beta standard deviation must be positive",
            {'parameter': param_name},
        )
    variance = sd ** 2
    if np.any(variance >= mean * (1.0 - mean)):
        raise InvalidDistributionParameters(
            "Beta variance must be smaller than mean * (1 - mean)",
            {'parameter': param_name},
        )
    common = (mean * (1.0 - mean) / variance) - 1.0
    return mean * common, (1.0 - mean) * common


def _gamma_params_from_mean_sd(param_name: str,
                               mean: np.ndarray,
                               sd: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Return (shape, scale) for a gamma distribution given mean and SD."""
    mean, sd = _broadcast(param_name, mean, sd)
    if np.any(mean <= 0.0) or np.any(sd <= 0.0):
        raise InvalidDistributionParameters(
            "Gamma mean and standard deviation must be positive",
            {'parameter': param_name},
        )
    variance = sd ** 2
    return mean ** 2 / variance, variance / mean


def _lognormal_params(param_name: str,
                      spec: Mapping[str, Any],
                      inputs: Dict[str, Any]) -> Tuple[np.ndarray, np.ndarray]:
    """Return (meanlog, sdlog), either given directly or from a point estimate and 95% CI."""
    if 'point' in spec:
        point = _resolve_argument(param_name, 'point', spec, inputs)
        lower = _resolve_argument(param_name, 'lower', spec, inputs)
        upper = _resolve_argument(param_name, 'upper', spec, inputs)
        point, lower, upper = _broadcast(param_name, point, lower, upper)
        if np.any(point <= 0.0) or np.any(lower <= 0.0) or np.any(upper <= lower):
            raise InvalidDistributionParameters(
                "Lognormal point estimate and CI bounds must be positive with lower < upper",
                {'parameter': param_name},
            )
        return np.log(point), (np.log(upper) - np.log(lower)) / (2.0 * Z_95)

    meanlog = _resolve_argument(param_name, 'meanlog', spec, inputs)
    sdlog = _resolve_argument(param_name, 'sdlog', spec, inputs)
    meanlog, sdlog = _broadcast(param_name, meanlog, sdlog)
    if np.any(sdlog <= 0.0):
        raise InvalidDistributionParameters(
            "Lognormal sdlog must be positive",
            {'parameter': param_name},
        )
    return meanlog, sdlog


def _dirichlet_alpha(param_name: str, alpha: np.ndarray) -> np.ndarray:
    if alpha.ndim not in (1, 2):
        raise InvalidDistributionParameters(
            "Dirichlet alpha must be a vector or a matrix of counts",
            {'parameter': param_name},
        )
    if np.any(alpha < 0.0):
        raise InvalidDistributionParameters(
            "Dirichlet alpha must be non-negative",
            {'parameter': param_name},
        )
    row_totals = alpha.sum(axis=-1)
    if np.any(row_totals <= 0.0):
        raise InvalidDistributionParameters(
            "Every Dirichlet row needs at least one positive count",
            {'parameter': param_name},
        )
    return alpha


def validate_parameter_specs(specs: Mapping[str, Mapping[str, Any]],
                             inputs: Optional[Mapping[str, Any]] = None) -> Dict[str, dict]:
    """
    Validate every distribution specification and convert it to native parameters.

    Parameters
    ----------
    specs:
        Mapping of parameter name to a family specification, e.g.
        ``{'dist': 'gamma', 'mean': 2000, 'sd': 400}``. String arguments
        reference entries of ``inputs``.
    inputs:
        Named fixed values and derived quantities (callables), resolved once
        with :func:`resolve_inputs`.

    Returns
    -------
    Dictionary of prepared specifications keyed by parameter name. Each entry
    holds the family, its native arguments as arrays, and the parameter shape.

    Raises
    ------
    InvalidDistributionParameters
        If any family is unknown or any argument combination is infeasible.
    """
    resolved = resolve_inputs(inputs)
    prepared: Dict[str, dict] = {}
    for name, spec in specs.items():
        dist = spec.get('dist')
        if dist not in DISTRIBUTION_FAMILIES:
            raise InvalidDistributionParameters(
                f"Unknown distribution family {dist!r}; expected one of {DISTRIBUTION_FAMILIES}",
                {'parameter': name},
            )

        if dist == 'fixed':
            value = _resolve_argument(name, 'value', spec, resolved)
            prepared[name] = {'dist': dist, 'value': value, 'shape': value.shape}
        elif dist == 'normal':
            mean = _resolve_argument(name, 'mean', spec, resolved)
            sd = _resolve_argument(name, 'sd', spec, resolved)
            mean, sd = _broadcast(name, mean, sd)
            if np.any(sd < 0.0):
                raise InvalidDistributionParameters(
                    "Normal standard deviation must be non-negative",
                    {'parameter': name},
                )
            prepared[name] = {'dist': dist, 'mean': mean, 'sd': sd, 'shape': mean.shape}
        elif dist == 'lognormal':
            meanlog, sdlog = _lognormal_params(name, spec, resolved)
            prepared[name] = {'dist': dist, 'meanlog': meanlog, 'sdlog': sdlog, 'shape': meanlog.shape}
        elif dist == 'gamma':
            mean = _resolve_argument(name, 'mean', spec, resolved)
            sd = _resolve_argument(name, 'sd', spec, resolved)
            shape, scale = _gamma_params_from_mean_sd(name, mean, sd)
            prepared[name] = {'dist': dist, 'shape_param': shape, 'scale': scale, 'shape': shape.shape}
        elif dist == 'beta':
            mean = _resolve_argument(name, 'mean', spec, resolved)
            sd = _resolve_argument(name, 'sd', spec, resolved)
            a, b = _beta_params_from_mean_sd(name, mean, sd)
            prepared[name] = {'dist': dist, 'a': a, 'b': b, 'shape': a.shape}
        else:
            alpha = _dirichlet_alpha(name, _resolve_argument(name, 'alpha', spec, resolved))
            prepared[name] = {'dist': dist, 'alpha': alpha, 'shape': alpha.shape}
    return prepared


def _draw_dirichlet(alpha: np.ndarray, n_samples: int, rng: np.random.Generator) -> np.ndarray:
    """
    Row-wise Dirichlet draws over each row's positive counts.

    Zero counts stay exactly zero and a row with a single positive count is
    exactly 1 in every sample.
    """
    rows = alpha.reshape(-1, alpha.shape[-1])
    draws = np.zeros((n_samples,) + rows.shape)
    for r, row in enumerate(rows):
        positive = row > 0.0
        if positive.sum() == 1:
            draws[:, r, positive] = 1.0
        else:
            draws[:, r, positive] = rng.dirichlet(row[positive], size=n_samples)
    return draws.reshape((n_samples,) + alpha.shape)


def _draw(prepared: dict, n_samples: int, rng: np.random.Generator) -> np.ndarray:
    size = (n_samples,) + tuple(prepared['shape'])
    dist = prepared['dist']
    if dist == 'fixed':
        return np.broadcast_to(prepared['value'], size).copy()
    if dist == 'normal':
        return rng.normal(prepared['mean'], prepared['sd'], size=size)
    if dist == 'lognormal':
        return rng.lognormal(prepared['meanlog'], prepared['sdlog'], size=size)
    if dist == 'gamma':
        return rng.gamma(prepared['shape_param'], prepared['scale'], size=size)
    if dist == 'beta':
        return rng.beta(prepared['a'], prepared['b'], size=size)
    return _draw_dirichlet(prepared['alpha'], n_samples, rng)


def sample_parameters(specs: Mapping[str, Mapping[str, Any]],
                      n_samples: int,
                      rng: Optional[np.random.Generator] = None,
                      inputs: Optional[Mapping[str, Any]] = None) -> Dict[str, np.ndarray]:
    """
    Draw ``n_samples`` joint parameter sets.

    Every specification is validated before the first draw. Parameters are
    drawn in declaration order from ``rng``, so a fixed seed reproduces the
    same samples. Each returned array has the PSA sample as its leading axis.
    """
    if n_samples <= 0:
        raise ValueError(f"n_samples must be positive, got {n_samples}")
    prepared = validate_parameter_specs(specs, inputs)
    if rng is None:
        rng = np.random.default_rng()
    return {name: _draw(meta, n_samples, rng) for name, meta in prepared.items()}


def point_estimates(specs: Mapping[str, Mapping[str, Any]],
                    inputs: Optional[Mapping[str, Any]] = None) -> Dict[str, np.ndarray]:
    """Single deterministic sample holding each distribution's central value."""
    prepared = validate_parameter_specs(specs, inputs)
    estimates: Dict[str, np.ndarray] = {}
    for name, meta in prepared.items():
        dist = meta['dist']
        if dist == 'fixed':
            value = meta['value']
        elif dist == 'normal':
            value = meta['mean']
        elif dist == 'lognormal':
            value = np.exp(meta['meanlog'])
        elif dist == 'gamma':
            value = meta['shape_param'] * meta['scale']
        elif dist == 'beta':
            value = meta['a'] / (meta['a'] + meta['b'])
        else:
            alpha = meta['alpha']
            value = alpha / alpha.sum(axis=-1, keepdims=True)
        estimates[name] = np.asarray(value, dtype=float)[np.newaxis, ...].copy()
    return estimates


def count_samples(samples: Mapping[str, np.ndarray]) -> int:
    """Number of PSA samples; every parameter must share the same leading axis."""
    sizes = {name: np.shape(values)[0] for name, values in samples.items()}
    if not sizes:
        raise DimensionMismatch("No parameter samples supplied")
    distinct = set(sizes.values())
    if len(distinct) != 1:
        raise DimensionMismatch(f"Parameters have different sample counts: {sizes}")
    return distinct.pop()


def sample_slice(samples: Mapping[str, np.ndarray], start: int, stop: int) -> Dict[str, np.ndarray]:
    """View of the samples with indices ``start`` (inclusive) to ``stop`` (exclusive)."""
    return {name: values[start:stop] for name, values in samples.items()}


def summarize_parameter_samples(samples: Mapping[str, np.ndarray]) -> pd.DataFrame:
    """
    Compute mean and 95% intervals for every scalar element of every parameter.
    """
    rows: List[dict] = []
    for name, values in samples.items():
        values = np.asarray(values, dtype=float)
        flat = values.reshape(values.shape[0], -1)
        element_shape = values.shape[1:]
        for position in range(flat.shape[1]):
            index = np.unravel_index(position, element_shape) if element_shape else ()
            series = pd.Series(flat[:, position]).dropna()
            if series.empty:
                continue
            rows.append({
                'parameter': name,
                'index': str(tuple(int(i) for i in index)) if index else '',
                'mean': float(series.mean()),
                'lower_95': float(series.quantile(0.025)),
                'upper_95': float(series.quantile(0.975)),
            })
    return pd.DataFrame(rows, columns=['parameter', 'index', 'mean', 'lower_95', 'upper_95'])
