"""Run cohort models end to end: sample, transform, simulate and integrate."""

import copy
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from cohort_markov.cea import ce_table
from cohort_markov.config import discount_rates, make_config, validate_config
from cohort_markov.distributions import count_samples, point_estimates, sample_parameters, sample_slice
from cohort_markov.engine import initial_occupancy, simulate_stateprobs, stateprobs_to_dataframe
from cohort_markov.errors import DimensionMismatch
from cohort_markov.integration import sim_outcomes
from cohort_markov.transitions import CohortModelSpec, transform


def expand_analysis_units(strategies: pd.DataFrame, patients: pd.DataFrame) -> pd.DataFrame:
    """Cross product of strategies and patients, ordered by strategy then patient."""
    if 'strategy_id' not in strategies.columns:
        raise ValueError("strategies must have a strategy_id column.")
    if 'patient_id' not in patients.columns:
        raise ValueError("patients must have a patient_id column.")
    overlap = (set(strategies.columns) & set(patients.columns))
    if overlap:
        raise ValueError(f"strategies and patients share columns: {sorted(overlap)}")
    units = strategies.merge(patients, how='cross')
    units.sort_values(['strategy_id', 'patient_id'], inplace=True, kind='stable')
    units.reset_index(drop=True, inplace=True)
    return units


def _check_units(units: pd.DataFrame) -> None:
    if units.empty:
        raise DimensionMismatch("The analysis-unit table is empty")
    missing = [c for c in ('strategy_id', 'patient_id') if c not in units.columns]
    if missing:
        raise DimensionMismatch(f"Analysis units lack identifier columns {missing}")
    keys = [c for c in ('strategy_id', 'patient_id', 'transition_id') if c in units.columns]
    if units.duplicated(subset=keys).any():
        raise ValueError(f"Analysis units must be unique by {keys}")


def _initial_occupancy(config: dict, n_states: int) -> np.ndarray:
    if config.get('initial_occupancy') is not None:
        init = np.asarray(config['initial_occupancy'], dtype=float)
        if init.shape != (n_states,):
            raise DimensionMismatch(
                f"initial_occupancy has shape {init.shape}; the model has {n_states} states"
            )
        return init
    return initial_occupancy(n_states, int(config.get('initial_state', 0)))


def simulate_batch(model_spec: CohortModelSpec,
                   samples: Mapping[str, np.ndarray],
                   units: pd.DataFrame,
                   config: dict,
                   sample_offset: int = 0) -> Tuple[np.ndarray, pd.DataFrame]:
    """Transform, simulate and integrate one batch of PSA samples for all analysis units."""
    n_cycles = int(config['n_cycles'])
    cycle_length = float(config['cycle_length'])
    tolerance = float(config['tolerance'])

    transformed = transform(model_spec, samples, units, n_cycles, cycle_length, tolerance, sample_offset)
    stateprobs = simulate_stateprobs(
        transformed['transitions'],
        _initial_occupancy(config, len(model_spec.states)),
        n_cycles,
        tolerance=tolerance,
        sample_offset=sample_offset,
    )
    outcomes = sim_outcomes(
        stateprobs,
        transformed,
        units,
        dr_qalys=discount_rates(config['dr_qalys']),
        dr_costs=discount_rates(config['dr_costs']),
        cycle_length=cycle_length,
        method=config['method'],
        absorbing=model_spec.transitions.absorbing if config.get('life_years', True) else None,
        sample_offset=sample_offset,
    )
    return stateprobs, outcomes


def run_model(model_spec: CohortModelSpec,
              param_specs: Mapping[str, Mapping[str, Any]],
              units: pd.DataFrame,
              config: Optional[dict] = None,
              inputs: Optional[Mapping[str, Any]] = None,
              samples: Optional[Mapping[str, np.ndarray]] = None,
              seed: Optional[int] = None) -> dict:
    """
    Simulate a cohort model for every PSA sample and analysis unit.

    Parameters
    ----------
    model_spec:
        Transition, utility and cost expressions.
    param_specs:
        Distribution specifications passed to :func:`sample_parameters`.
    units:
        Analysis-unit table (see :func:`expand_analysis_units`).
    config:
        Run configuration; defaults to :func:`make_config`.
    inputs:
        Named fixed inputs and derived quantities referenced by ``param_specs``.
    samples:
        Pre-drawn samples; when given, ``param_specs`` is not sampled.
    seed:
        Overrides ``config['psa']['seed']``.

    Returns
    -------
    Dictionary with the parameter ``samples``, the ``stateprobs`` array
    ``(n_cycles + 1, n_samples, n_units, S)``, the long ``outcomes`` table,
    the state names, the analysis units and the configuration used.

    Any validation error aborts the whole run; its context names the
    global sample index and the unit identifiers.
    """
    cfg = config if config is not None else make_config()
    validate_config(cfg)
    _check_units(units)
    units = units.reset_index(drop=True)

    if samples is None:
        psa_meta = cfg.get('psa') or {}
        if psa_meta.get('use', False):
            base_seed = seed if seed is not None else psa_meta.get('seed')
            rng = np.random.default_rng(base_seed)
            samples = sample_parameters(param_specs, int(psa_meta['iterations']), rng, inputs)
        else:
            samples = point_estimates(param_specs, inputs)
    n_samples = count_samples(samples)
    batch_size = int(cfg.get('batch_size') or n_samples)

    stateprob_batches: List[np.ndarray] = []
    outcome_batches: List[pd.DataFrame] = []
    for start in range(0, n_samples, batch_size):
        stop = min(start + batch_size, n_samples)
        stateprobs, outcomes = simulate_batch(
            model_spec,
            sample_slice(samples, start, stop),
            units,
            cfg,
            sample_offset=start,
        )
        stateprob_batches.append(stateprobs)
        outcome_batches.append(outcomes)
        if cfg.get('report_progress', False):
            print(f"Simulated samples {start + 1}-{stop} of {n_samples}")

    results = {
        'samples': dict(samples),
        'n_samples': n_samples,
        'stateprobs': np.concatenate(stateprob_batches, axis=1),
        'outcomes': pd.concat(outcome_batches, ignore_index=True),
        'states': list(model_spec.states),
        'units': units,
        'config': cfg,
    }
    if cfg.get('report_progress', False):
        generate_output(results)
    return results


def stateprobs_table(model_results: dict) -> pd.DataFrame:
    """Long occupancy table indexed by sample, strategy, patient, cycle and state."""
    return stateprobs_to_dataframe(
        model_results['stateprobs'],
        model_results['units'],
        model_results['states'],
        float(model_results['config']['cycle_length']),
    )


def results_ce(model_results: dict,
               dr_qalys: Optional[float] = None,
               dr_costs: Optional[float] = None) -> pd.DataFrame:
    """Per-sample QALYs and costs by strategy, at the first configured discount rates by default."""
    cfg = model_results['config']
    if dr_qalys is None:
        dr_qalys = discount_rates(cfg['dr_qalys'])[0]
    if dr_costs is None:
        dr_costs = discount_rates(cfg['dr_costs'])[0]
    return ce_table(model_results['outcomes'], model_results['units'], dr_qalys, dr_costs)


def generate_output(model_results: dict) -> None:
    ce = results_ce(model_results)
    cfg = model_results['config']
    print(f"{model_results['n_samples']} sample(s), {len(model_results['units'])} analysis unit(s), "
          f"{cfg['n_cycles']} cycles of {cfg['cycle_length']} year(s)")
    means = ce.groupby('strategy_id')[['qalys', 'costs']].mean()
    for strategy_id, row in means.iterrows():
        print(f"  strategy {strategy_id}: QALYs={row['qalys']:.4f}, costs={row['costs']:.2f}")


# -------- Deterministic sensitivity analysis (DSA) --------

def _bound_value(value: Any) -> Any:
    """Scalars as float; vector and matrix bounds as (nested) lists."""
    values = np.asarray(value, dtype=float)
    return float(values) if values.ndim == 0 else values.tolist()


def run_dsa(model_spec: CohortModelSpec,
            param_specs: Mapping[str, Mapping[str, Any]],
            units: pd.DataFrame,
            dsa: Mapping[str, Sequence[float]],
            config: Optional[dict] = None,
            inputs: Optional[Mapping[str, Any]] = None) -> pd.DataFrame:
    """
    One-way deterministic sensitivity analysis.

    ``dsa`` maps a parameter or input name to its ``(low, high)`` values.
    Each bound is run in turn with every other parameter at its point
    estimate. Parameters are fixed at the bound; inputs are overridden, so
    derived inputs declared after them are recomputed.

    Returns a long table with columns ``parameter``, ``bound``, ``value``,
    ``strategy_id`` (and ``grp_id``), ``qalys`` and ``costs``; the base case
    appears with ``parameter`` set to ``'base'``. Bounds of vector or matrix
    parameters are stored in ``value`` as lists.
    """
    cfg = copy.deepcopy(config) if config is not None else make_config()
    cfg['psa'] = dict(cfg.get('psa') or {}, use=False)
    base_inputs = dict(inputs or {})

    unknown = [name for name in dsa if name not in param_specs and name not in base_inputs]
    if unknown:
        raise ValueError(f"DSA names are neither parameters nor inputs: {unknown}")

    def _run(specs: Mapping[str, Any], run_inputs: Mapping[str, Any]) -> pd.DataFrame:
        results = run_model(model_spec, specs, units, cfg, inputs=run_inputs)
        return results_ce(results).drop(columns='sample')

    frames: List[pd.DataFrame] = []
    base = _run(param_specs, base_inputs)
    base.insert(0, 'parameter', 'base')
    base.insert(1, 'bound', 'base')
    base.insert(2, 'value', np.nan)
    frames.append(base)

    for name, bounds in dsa.items():
        if len(bounds) != 2:
            raise ValueError(f"DSA bounds for '{name}' must be (low, high).")
        for bound, value in zip(('low', 'high'), bounds):
            specs = dict(param_specs)
            run_inputs = dict(base_inputs)
            if name in param_specs:
                specs[name] = {'dist': 'fixed', 'value': value}
            else:
                run_inputs[name] = value
            frame = _run(specs, run_inputs)
            frame.insert(0, 'parameter', name)
            frame.insert(1, 'bound', bound)
            frame.insert(2, 'value', pd.Series([_bound_value(value)] * len(frame),
                                               index=frame.index, dtype=object))
            frames.append(frame)
    return pd.concat(frames, ignore_index=True)
