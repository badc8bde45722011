"""Validation failures raised by the cohort simulation kernel."""

from typing import Any, Dict, Optional


class CohortModelError(ValueError):
    """
    Base class for kernel validation errors.

    ``context`` holds the indices (sample, unit, row, cycle, ...) needed to
    reproduce the failing input. Sample indices are 1-based, matching the
    ``sample`` column of the output tables.
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.context = dict(context or {})
        if self.context:
            details = ', '.join(f"{key}={value}" for key, value in self.context.items())
            message = f"{message} ({details})"
        super().__init__(message)


class InvalidDistributionParameters(CohortModelError):
    """A sampling specification describes an infeasible distribution."""


class NegativeResidualProbability(CohortModelError):
    """A residual (complement) transition probability came out negative."""


class NonStochasticMatrix(CohortModelError):
    """A transition matrix row or an occupancy vector does not sum to 1."""


class DimensionMismatch(CohortModelError):
    """Input data, outcome weights and transition matrices disagree in shape."""
