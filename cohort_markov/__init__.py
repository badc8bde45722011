"""
cohort_markov - discrete-time Markov cohort models for health economic evaluation.

Sample parameters for probabilistic sensitivity analysis, build transition
matrices and state values from them, simulate state occupancy, integrate
discounted QALYs and costs, and compare strategies.
"""

from cohort_markov.cea import cea, ce_table, ceac, ceaf, efficiency_frontier, evpi, icer_table
from cohort_markov.config import default_config, make_config, validate_config
from cohort_markov.distributions import point_estimates, sample_parameters, summarize_parameter_samples
from cohort_markov.engine import initial_occupancy, simulate_stateprobs, validate_transition_matrices
from cohort_markov.errors import (
    CohortModelError,
    DimensionMismatch,
    InvalidDistributionParameters,
    NegativeResidualProbability,
    NonStochasticMatrix,
)
from cohort_markov.expressions import C, Const, Covariate, Param, Time, param_vector, select, where
from cohort_markov.integration import integrate_outcome, sim_outcomes
from cohort_markov.model import expand_analysis_units, run_dsa, run_model, stateprobs_table
from cohort_markov.transitions import CohortModelSpec, TransitionSpec, transform

__version__ = "0.1.0"
__all__ = [
    "C",
    "CohortModelError",
    "CohortModelSpec",
    "Const",
    "Covariate",
    "DimensionMismatch",
    "InvalidDistributionParameters",
    "NegativeResidualProbability",
    "NonStochasticMatrix",
    "Param",
    "Time",
    "TransitionSpec",
    "__version__",
    "cea",
    "ce_table",
    "ceac",
    "ceaf",
    "default_config",
    "efficiency_frontier",
    "evpi",
    "expand_analysis_units",
    "icer_table",
    "initial_occupancy",
    "integrate_outcome",
    "make_config",
    "param_vector",
    "point_estimates",
    "run_dsa",
    "run_model",
    "sample_parameters",
    "select",
    "sim_outcomes",
    "simulate_stateprobs",
    "stateprobs_table",
    "summarize_parameter_samples",
    "transform",
    "validate_config",
    "validate_transition_matrices",
    "where",
]
