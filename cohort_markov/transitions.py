"""Transition matrices and state values evaluated from sampled parameters and covariates."""

from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from cohort_markov.errors import DimensionMismatch, NegativeResidualProbability, NonStochasticMatrix
from cohort_markov.expressions import (
    C,
    Complement,
    Const,
    Covariate,
    EvalContext,
    Expr,
    Param,
    Select,
    as_expr,
)

RESERVED_OUTCOMES = ('qalys', 'lys')


class TransitionSpec:
    """
    Square matrix of transition-probability expressions.

    Each row may hold one residual placeholder ``C``, completed as one minus
    the sum of the other entries. The absorbing state (last state unless
    named) must be a constant identity row.
    """

    def __init__(self,
                 states: Sequence[str],
                 rows: Sequence[Sequence[Any]],
                 absorbing: Optional[Union[int, str]] = None):
        self.states = list(states)
        n_states = len(self.states)
        if n_states < 2:
            raise DimensionMismatch("A transition model needs at least two states")
        if len(rows) != n_states:
            raise DimensionMismatch(
                f"Transition matrix has {len(rows)} rows for {n_states} states"
            )
        self.rows: List[List[Union[Expr, Complement]]] = []
        for i, row in enumerate(rows):
            if len(row) != n_states:
                raise DimensionMismatch(
                    f"Transition matrix row has {len(row)} entries for {n_states} states",
                    {'row': self.states[i]},
                )
            if sum(1 for entry in row if entry is C) > 1:
                raise NonStochasticMatrix(
                    "At most one residual entry C is allowed per row",
                    {'row': self.states[i]},
                )
            self.rows.append([entry if entry is C else as_expr(entry) for entry in row])

        if absorbing is None:
            absorbing = n_states - 1
        elif isinstance(absorbing, str):
            if absorbing not in self.states:
                raise DimensionMismatch(f"Unknown absorbing state '{absorbing}'")
            absorbing = self.states.index(absorbing)
        self.absorbing = int(absorbing)
        self._check_absorbing_row()

    @classmethod
    def from_matrix_parameter(cls,
                              name: str,
                              states: Sequence[str],
                              scale: Any = None,
                              absorbing: Optional[Union[int, str]] = None) -> 'TransitionSpec':
        """
        Rows built from a sampled ``(S, S)`` probability matrix parameter.

        Off-diagonal entries are optionally multiplied by ``scale`` (e.g. a
        strategy-dependent relative risk); diagonals become residuals.
        """
        n_states = len(states)
        dead = n_states - 1 if absorbing is None else (
            list(states).index(absorbing) if isinstance(absorbing, str) else int(absorbing)
        )
        rows: List[List[Any]] = []
        for i in range(n_states):
            if i == dead:
                rows.append([1.0 if j == i else 0.0 for j in range(n_states)])
                continue
            row: List[Any] = []
            for j in range(n_states):
                if j == i:
                    row.append(C)
                elif scale is None:
                    row.append(Param(name, (i, j)))
                else:
                    row.append(Param(name, (i, j)) * scale)
            rows.append(row)
        return cls(states, rows, absorbing=dead)

    @property
    def n_states(self) -> int:
        return len(self.states)

    def _check_absorbing_row(self) -> None:
        dead = self.absorbing
        for j, entry in enumerate(self.rows[dead]):
            expected = 1.0 if j == dead else 0.0
            if entry is C and j == dead:
                continue
            if not isinstance(entry, Const) or entry.value != expected:
                raise NonStochasticMatrix(
                    "The absorbing state row must be constant: 1 on the diagonal and 0 elsewhere",
                    {'row': self.states[dead]},
                )

    def expressions(self) -> Iterator[Expr]:
        for row in self.rows:
            for entry in row:
                if entry is not C:
                    yield entry

    def uses_time(self) -> bool:
        return any(expr.uses_time() for expr in self.expressions())

    def _check_entries(self, values: np.ndarray, ctx: EvalContext, row: int, tolerance: float) -> None:
        bad = (values < -tolerance) | (values > 1.0 + tolerance) | ~np.isfinite(values)
        if bad.any():
            t, n, u, col = np.argwhere(bad)[0]
            raise NonStochasticMatrix(
                f"Transition probability {values[t, n, u, col]!r} lies outside [0, 1]",
                ctx.locate((t, n, u), row=self.states[row]),
            )

    def evaluate(self, ctx: EvalContext, tolerance: float = 1e-9) -> np.ndarray:
        """
        Evaluate all rows for every (time, sample, unit) combination.

        Returns an array of shape ``(T, N, U, S, S)``.

        Raises
        ------
        NegativeResidualProbability
            If a residual entry would be below ``-tolerance``.
        NonStochasticMatrix
            If an entry lies outside [0, 1] or a row without residual does
            not sum to 1.
        """
        shape = ctx.shape
        n_states = self.n_states
        out = np.zeros(shape + (n_states, n_states))
        for i, row in enumerate(self.rows):
            residual_col = None
            for j, entry in enumerate(row):
                if entry is C:
                    residual_col = j
                    continue
                out[..., i, j] = np.broadcast_to(entry.evaluate(ctx), shape)

            others = [j for j in range(n_states) if j != residual_col]
            self._check_entries(out[..., i, others], ctx, i, tolerance)

            # the residual is resolved only after every other entry of the row
            if residual_col is not None:
                residual = 1.0 - out[..., i, others].sum(axis=-1)
                bad = residual < -tolerance
                if bad.any():
                    t, n, u = np.argwhere(bad)[0]
                    raise NegativeResidualProbability(
                        f"Residual probability {residual[t, n, u]:.6g} is negative; "
                        f"the other entries of the row sum to {1.0 - residual[t, n, u]:.6g}",
                        ctx.locate((t, n, u), row=self.states[i], column=self.states[residual_col]),
                    )
                out[..., i, residual_col] = residual
            else:
                row_sum = out[..., i, :].sum(axis=-1)
                bad = np.abs(row_sum - 1.0) > tolerance
                if bad.any():
                    t, n, u = np.argwhere(bad)[0]
                    raise NonStochasticMatrix(
                        f"Row sums to {row_sum[t, n, u]!r} instead of 1",
                        ctx.locate((t, n, u), row=self.states[i]),
                    )
        return out


def _state_value_exprs(label: str,
                       values: Any,
                       n_states: int,
                       absorbing: int) -> List[Expr]:
    """One expression per state; the absorbing state takes 0 unless all states are given."""
    if isinstance(values, (list, tuple)):
        if len(values) == n_states:
            return [as_expr(v) for v in values]
        if len(values) == n_states - 1:
            exprs = [as_expr(v) for v in values]
            exprs.insert(absorbing, Const(0.0))
            return exprs
        raise DimensionMismatch(
            f"{label} has {len(values)} values; expected {n_states - 1} "
            f"(non-absorbing states) or {n_states}"
        )
    expr = as_expr(values)
    return [Const(0.0) if s == absorbing else expr for s in range(n_states)]


class CohortModelSpec:
    """Transition expressions plus utility and named cost values attached to states."""

    def __init__(self,
                 transitions: TransitionSpec,
                 utility: Any,
                 costs: Optional[Mapping[str, Any]] = None):
        self.transitions = transitions
        n_states, dead = transitions.n_states, transitions.absorbing
        self.utility = _state_value_exprs('utility', utility, n_states, dead)
        self.costs: Dict[str, List[Expr]] = {}
        for name, values in (costs or {}).items():
            if name in RESERVED_OUTCOMES:
                raise ValueError(f"'{name}' is reserved and cannot name a cost category.")
            self.costs[name] = _state_value_exprs(f"cost '{name}'", values, n_states, dead)

    @property
    def states(self) -> List[str]:
        return self.transitions.states

    def value_expressions(self) -> Iterator[Expr]:
        yield from self.utility
        for exprs in self.costs.values():
            yield from exprs

    def expressions(self) -> Iterator[Expr]:
        yield from self.transitions.expressions()
        yield from self.value_expressions()

    def values_use_time(self) -> bool:
        return any(expr.uses_time() for expr in self.value_expressions())

    def check_inputs(self, samples: Mapping[str, np.ndarray], units: pd.DataFrame) -> None:
        """Fail fast if an expression references a missing parameter, element or column."""
        for expr in self.expressions():
            for node in expr.walk():
                if isinstance(node, Param):
                    if node.name not in samples:
                        raise DimensionMismatch(f"Unknown parameter '{node.name}'")
                    element_shape = np.shape(samples[node.name])[1:]
                    if len(node.index) != len(element_shape) or any(
                            not 0 <= i < dim for i, dim in zip(node.index, element_shape)):
                        raise DimensionMismatch(
                            f"Index {node.index} does not select a scalar of parameter "
                            f"'{node.name}' with element shape {element_shape}",
                            {'parameter': node.name},
                        )
                elif isinstance(node, (Covariate, Select)):
                    if node.column not in units.columns:
                        raise DimensionMismatch(f"Analysis units lack column '{node.column}'")


def _evaluate_state_values(exprs: List[Expr], ctx: EvalContext) -> np.ndarray:
    return np.stack([np.broadcast_to(expr.evaluate(ctx), ctx.shape) for expr in exprs], axis=-1)


def transform(model_spec: CohortModelSpec,
              samples: Mapping[str, np.ndarray],
              units: pd.DataFrame,
              n_cycles: int,
              cycle_length: float = 1.0,
              tolerance: float = 1e-9,
              sample_offset: int = 0) -> dict:
    """
    Evaluate transition matrices, utilities and costs for all samples and units.

    Time-dependent transitions are evaluated at the start of cycles
    ``0..n_cycles-1``; time-dependent state values at ``0..n_cycles``.
    Otherwise the time axis has length 1.

    Returns
    -------
    Dictionary with ``transitions`` ``(T, N, U, S, S)``, ``utility``
    ``(T', N, U, S)`` and ``costs`` mapping category to ``(T', N, U, S)``.
    """
    model_spec.check_inputs(samples, units)

    if model_spec.transitions.uses_time():
        transition_times = np.arange(n_cycles) * cycle_length
    else:
        transition_times = np.zeros(1)
    transition_ctx = EvalContext(samples, units, transition_times, sample_offset)
    transitions = model_spec.transitions.evaluate(transition_ctx, tolerance)

    if model_spec.values_use_time():
        value_times = np.arange(n_cycles + 1) * cycle_length
    else:
        value_times = np.zeros(1)
    value_ctx = EvalContext(samples, units, value_times, sample_offset)
    utility = _evaluate_state_values(model_spec.utility, value_ctx)
    costs = {name: _evaluate_state_values(exprs, value_ctx) for name, exprs in model_spec.costs.items()}

    return {
        'transitions': transitions,
        'utility': utility,
        'costs': costs,
    }
