"""Pytest fixtures for cohort_markov tests."""

import math

import numpy as np
import pandas as pd
import pytest

from cohort_markov.config import make_config
from cohort_markov.distributions import lognormal_sdlog_from_ci
from cohort_markov.expressions import Param, param_vector, select
from cohort_markov.model import expand_analysis_units
from cohort_markov.transitions import CohortModelSpec, TransitionSpec

STATES = ['H', 'S1', 'S2', 'D']

ALPHA_SOC = np.array([
    [848, 150, 0, 2],
    [450, 355, 95, 5],
    [0, 0, 784, 16],
    [0, 0, 0, 23],
], dtype=float)

SOC, NEW = 1, 2


@pytest.fixture
def alpha_soc() -> np.ndarray:
    return ALPHA_SOC.copy()


@pytest.fixture
def p_soc_mean(alpha_soc: np.ndarray) -> np.ndarray:
    """Row-stochastic matrix of transition counts."""
    return alpha_soc / alpha_soc.sum(axis=1, keepdims=True)


@pytest.fixture
def units() -> pd.DataFrame:
    """Two strategies (SOC, New) by two patients."""
    strategies = pd.DataFrame({'strategy_id': [SOC, NEW], 'strategy_name': ['SOC', 'New']})
    patients = pd.DataFrame({'patient_id': [1, 2], 'age': [45.0, 60.0], 'female': [1, 0]})
    return expand_analysis_units(strategies, patients)


@pytest.fixture
def inputs() -> dict:
    return {
        'rr_lower': 0.71,
        'rr_upper': 0.90,
        'log_rr': lambda v: math.log(0.8),
        'rr_sdlog': lambda v: lognormal_sdlog_from_ci(v['rr_lower'], v['rr_upper']),
    }


@pytest.fixture
def param_specs(alpha_soc: np.ndarray) -> dict:
    return {
        'p_soc': {'dist': 'dirichlet', 'alpha': alpha_soc},
        'rr': {'dist': 'lognormal', 'meanlog': 'log_rr', 'sdlog': 'rr_sdlog'},
        'u': {'dist': 'beta', 'mean': [0.8, 0.6, 0.4], 'sd': [0.02, 0.05, 0.05]},
        'c_medical': {'dist': 'gamma', 'mean': [1000.0, 5000.0, 10000.0], 'sd': [100.0, 500.0, 1000.0]},
        'c_drug': {'dist': 'fixed', 'value': [2000.0, 12000.0]},
    }


@pytest.fixture
def model_spec() -> CohortModelSpec:
    """Four-state SOC/New model; New scales SOC transition probabilities by a relative risk."""
    transitions = TransitionSpec.from_matrix_parameter(
        'p_soc',
        STATES,
        scale=select('strategy_id', {NEW: Param('rr')}, default=1.0),
    )
    return CohortModelSpec(
        transitions,
        utility=param_vector('u', 3),
        costs={
            'medical': param_vector('c_medical', 3),
            'drug': select('strategy_id', {SOC: Param('c_drug', 0), NEW: Param('c_drug', 1)}),
        },
    )


@pytest.fixture
def config() -> dict:
    return make_config(n_cycles=85, psa={'use': True, 'iterations': 20, 'seed': 42})
