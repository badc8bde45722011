"""Run configuration for cohort simulations."""

import copy
from typing import Any, Dict, List, Union

from cohort_markov.integration import QUADRATURE_METHODS

default_config: Dict[str, Any] = {
    'n_cycles': 85,
    'cycle_length': 1.0,          # years per cycle; discount rates are annual

    'dr_qalys': 0.03,             # scalar or list of annual discount rates
    'dr_costs': 0.03,
    'method': 'left_riemann',     # one of QUADRATURE_METHODS

    # Initial occupancy: unit mass in `initial_state` unless a full vector is given
    'initial_state': 0,
    'initial_occupancy': None,

    'tolerance': 1e-9,
    'batch_size': None,           # PSA samples per batch; None runs all at once
    'life_years': True,           # also integrate life-years (unit weight)
    'report_progress': False,     # print batch/run summaries to the terminal

    'psa': {
        'use': True,
        'iterations': 1000,
        'seed': 20231113,
    },
}


def make_config(**overrides: Any) -> Dict[str, Any]:
    """Deep copy of ``default_config`` with ``overrides`` applied (``psa`` merged key by key)."""
    cfg = copy.deepcopy(default_config)
    psa_overrides = overrides.pop('psa', None)
    cfg.update(copy.deepcopy(overrides))
    if psa_overrides:
        cfg['psa'].update(psa_overrides)
    return cfg


def discount_rates(value: Union[float, List[float]]) -> List[float]:
    """Normalise a scalar-or-list discount rate setting to a list of floats."""
    if isinstance(value, (int, float)):
        return [float(value)]
    return [float(v) for v in value]


def validate_config(config: dict) -> None:
    required_keys = ['n_cycles', 'cycle_length', 'dr_qalys', 'dr_costs', 'method', 'tolerance', 'psa']
    missing_keys = [key for key in required_keys if key not in config]
    if missing_keys:
        raise ValueError(f"Missing required config keys: {missing_keys}")

    if int(config['n_cycles']) <= 0:
        raise ValueError(f"n_cycles must be positive, got {config['n_cycles']}")
    if float(config['cycle_length']) <= 0:
        raise ValueError(f"cycle_length must be positive, got {config['cycle_length']}")
    if config['method'] not in QUADRATURE_METHODS:
        raise ValueError(f"method must be one of {QUADRATURE_METHODS}, got {config['method']!r}")
    if float(config['tolerance']) <= 0:
        raise ValueError(f"tolerance must be positive, got {config['tolerance']}")

    for key in ('dr_qalys', 'dr_costs'):
        rates = discount_rates(config[key])
        if not rates:
            raise ValueError(f"{key} must contain at least one discount rate.")
        if any(rate <= -1.0 for rate in rates):
            raise ValueError(f"{key} must be greater than -1, got {rates}")

    batch_size = config.get('batch_size')
    if batch_size is not None and int(batch_size) <= 0:
        raise ValueError(f"batch_size must be a positive integer, got {batch_size}")

    psa_meta = config['psa'] or {}
    if psa_meta.get('use', False) and int(psa_meta.get('iterations', 0)) <= 0:
        raise ValueError("PSA iterations must be a positive integer.")
