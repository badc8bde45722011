"""
Small expression language for transition probabilities and state values.

Expressions are built once from parameter references, covariates, constants
and model time, then evaluated vectorised over every (time, sample, unit)
combination of a batch. Evaluated arrays broadcast to ``(T, N, U)``.
"""

from typing import Any, Dict, Iterator, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from cohort_markov import conversions
from cohort_markov.distributions import count_samples
from cohort_markov.errors import DimensionMismatch


class EvalContext:
    """Inputs shared by every expression evaluated for one batch."""

    def __init__(self,
                 samples: Mapping[str, np.ndarray],
                 units: pd.DataFrame,
                 times: Sequence[float],
                 sample_offset: int = 0):
        self.samples = samples
        self.units = units
        self.times = np.asarray(times, dtype=float)
        self.sample_offset = sample_offset
        self.n_samples = count_samples(samples)
        self.n_units = len(units)

    @property
    def shape(self) -> Tuple[int, int, int]:
        return (len(self.times), self.n_samples, self.n_units)

    def locate(self, index: Sequence[int], **extra: Any) -> Dict[str, Any]:
        """Error context for a ``(t, sample, unit)`` position within this batch."""
        t, n, u = (int(i) for i in index[:3])
        unit_row = self.units.iloc[u]
        context: Dict[str, Any] = {'sample': self.sample_offset + n + 1}
        for column in ('strategy_id', 'patient_id', 'grp_id', 'transition_id'):
            if column in self.units.columns:
                context[column] = unit_row[column]
        if len(self.times) > 1:
            context['cycle'] = t
        context.update(extra)
        return context


class Expr:
    """Base node; supports arithmetic and comparison operators."""

    children: Tuple['Expr', ...] = ()

    def evaluate(self, ctx: EvalContext) -> np.ndarray:
        raise NotImplementedError

    def walk(self) -> Iterator['Expr']:
        yield self
        for child in self.children:
            yield from child.walk()

    def uses_time(self) -> bool:
        return any(isinstance(node, Time) for node in self.walk())

    def __add__(self, other: Any) -> 'BinaryOp':
        return BinaryOp('+', self, as_expr(other))

    def __radd__(self, other: Any) -> 'BinaryOp':
        return BinaryOp('+', as_expr(other), self)

    def __sub__(self, other: Any) -> 'BinaryOp':
        return BinaryOp('-', self, as_expr(other))

    def __rsub__(self, other: Any) -> 'BinaryOp':
        return BinaryOp('-', as_expr(other), self)

    def __mul__(self, other: Any) -> 'BinaryOp':
        return BinaryOp('*', self, as_expr(other))

    def __rmul__(self, other: Any) -> 'BinaryOp':
        return BinaryOp('*', as_expr(other), self)

    def __truediv__(self, other: Any) -> 'BinaryOp':
        return BinaryOp('/', self, as_expr(other))

    def __rtruediv__(self, other: Any) -> 'BinaryOp':
        return BinaryOp('/', as_expr(other), self)

    def __pow__(self, other: Any) -> 'BinaryOp':
        return BinaryOp('**', self, as_expr(other))

    def __rpow__(self, other: Any) -> 'BinaryOp':
        return BinaryOp('**', as_expr(other), self)

    def __neg__(self) -> 'BinaryOp':
        return BinaryOp('-', Const(0.0), self)

    def __lt__(self, other: Any) -> 'BinaryOp':
        return BinaryOp('<', self, as_expr(other))

    def __le__(self, other: Any) -> 'BinaryOp':
        return BinaryOp('<=', self, as_expr(other))

    def __gt__(self, other: Any) -> 'BinaryOp':
        return BinaryOp('>', self, as_expr(other))

    def __ge__(self, other: Any) -> 'BinaryOp':
        return BinaryOp('>=', self, as_expr(other))


class Const(Expr):
    def __init__(self, value: float):
        self.value = float(value)

    def evaluate(self, ctx: EvalContext) -> np.ndarray:
        return np.asarray(self.value)

    def __repr__(self) -> str:
        return f"Const({self.value!r})"


class Param(Expr):
    """Reference to a sampled parameter, optionally one element of a vector/matrix parameter."""

    def __init__(self, name: str, index: Optional[Tuple[int, ...]] = None):
        self.name = name
        if isinstance(index, int):
            index = (index,)
        self.index = tuple(index) if index is not None else ()

    def evaluate(self, ctx: EvalContext) -> np.ndarray:
        values = np.asarray(ctx.samples[self.name], dtype=float)
        selected = values[(slice(None),) + self.index]
        if selected.ndim != 1:
            raise DimensionMismatch(
                f"Parameter '{self.name}' is not scalar at index {self.index}; "
                f"element shape is {values.shape[1:]}",
                {'parameter': self.name},
            )
        return selected[np.newaxis, :, np.newaxis]

    def __repr__(self) -> str:
        return f"Param({self.name!r}, {self.index!r})" if self.index else f"Param({self.name!r})"


class Covariate(Expr):
    """Numeric column of the analysis-unit table."""

    def __init__(self, column: str):
        self.column = column

    def evaluate(self, ctx: EvalContext) -> np.ndarray:
        return ctx.units[self.column].to_numpy(dtype=float)[np.newaxis, np.newaxis, :]

    def __repr__(self) -> str:
        return f"Covariate({self.column!r})"


class Time(Expr):
    """Elapsed model time (cycle index times cycle length) at the start of a cycle."""

    def evaluate(self, ctx: EvalContext) -> np.ndarray:
        return ctx.times[:, np.newaxis, np.newaxis]

    def __repr__(self) -> str:
        return "Time()"


_OPERATORS = {
    '+': np.add,
    '-': np.subtract,
    '*': np.multiply,
    '/': np.divide,
    '**': np.power,
    '<': np.less,
    '<=': np.less_equal,
    '>': np.greater,
    '>=': np.greater_equal,
}


class BinaryOp(Expr):
    def __init__(self, op: str, left: Expr, right: Expr):
        if op not in _OPERATORS:
            raise ValueError(f"Unsupported operator {op!r}")
        self.op = op
        self.children = (left, right)

    def evaluate(self, ctx: EvalContext) -> np.ndarray:
        left, right = self.children
        return _OPERATORS[self.op](left.evaluate(ctx), right.evaluate(ctx))

    def __repr__(self) -> str:
        left, right = self.children
        return f"({left!r} {self.op} {right!r})"


FUNCTIONS = {
    'exp': np.exp,
    'log': np.log,
    'minimum': np.minimum,
    'maximum': np.maximum,
    'rate_to_prob': conversions.rate_to_prob,
    'prob_to_rate': conversions.prob_to_rate,
    'combine_probs': conversions.combine_probs,
}


class Apply(Expr):
    """Call of one of the enumerated ``FUNCTIONS``."""

    def __init__(self, func: str, *args: Any):
        if func not in FUNCTIONS:
            raise ValueError(f"Unknown function {func!r}; expected one of {sorted(FUNCTIONS)}")
        self.func = func
        self.children = tuple(as_expr(arg) for arg in args)

    def evaluate(self, ctx: EvalContext) -> np.ndarray:
        return FUNCTIONS[self.func](*(child.evaluate(ctx) for child in self.children))

    def __repr__(self) -> str:
        args = ', '.join(repr(child) for child in self.children)
        return f"{self.func}({args})"


class Where(Expr):
    def __init__(self, condition: Expr, if_true: Any, if_false: Any):
        self.children = (as_expr(condition), as_expr(if_true), as_expr(if_false))

    def evaluate(self, ctx: EvalContext) -> np.ndarray:
        condition, if_true, if_false = (child.evaluate(ctx) for child in self.children)
        return np.where(np.asarray(condition).astype(bool), if_true, if_false)


class Select(Expr):
    """
    Pick a value by matching an analysis-unit column against ``cases``.

    Used for strategy-specific effects, e.g. a relative risk that is 1 for
    the reference strategy and a sampled value otherwise.
    """

    def __init__(self, column: str, cases: Mapping[Any, Any], default: Any = 0.0):
        self.column = column
        self.keys = list(cases.keys())
        self.children = tuple(as_expr(value) for value in cases.values()) + (as_expr(default),)

    def evaluate(self, ctx: EvalContext) -> np.ndarray:
        column_values = ctx.units[self.column].to_numpy()
        result = np.broadcast_to(self.children[-1].evaluate(ctx), ctx.shape)
        for key, expr in zip(self.keys, self.children[:-1]):
            mask = (column_values == key)[np.newaxis, np.newaxis, :]
            result = np.where(mask, expr.evaluate(ctx), result)
        return result


class Complement:
    """Placeholder for the residual entry of a transition matrix row."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return 'C'


C = Complement()


def as_expr(value: Any) -> Expr:
    if isinstance(value, Expr):
        return value
    if isinstance(value, Complement):
        raise TypeError("The residual placeholder C can only appear as a transition matrix entry.")
    if isinstance(value, (int, float, np.integer, np.floating)):
        return Const(value)
    raise TypeError(f"Cannot use {value!r} in an expression")


# Builders

def where(condition: Any, if_true: Any, if_false: Any) -> Where:
    return Where(condition, if_true, if_false)


def select(column: str, cases: Mapping[Any, Any], default: Any = 0.0) -> Select:
    return Select(column, cases, default)


def exp(x: Any) -> Apply:
    return Apply('exp', x)


def log(x: Any) -> Apply:
    return Apply('log', x)


def minimum(a: Any, b: Any) -> Apply:
    return Apply('minimum', a, b)


def maximum(a: Any, b: Any) -> Apply:
    return Apply('maximum', a, b)


def rate_to_prob(rate: Any, dt: float = 1.0) -> Apply:
    return Apply('rate_to_prob', rate, dt)


def prob_to_rate(p: Any, dt: float = 1.0) -> Apply:
    return Apply('prob_to_rate', p, dt)


def combine_probs(*probs: Any) -> Apply:
    return Apply('combine_probs', *probs)


def param_vector(name: str, length: int) -> list:
    """One ``Param`` per element of a vector parameter, e.g. per-state utilities."""
    return [Param(name, (k,)) for k in range(length)]
