"""Tests for the expression language used in transitions and state values."""

import math

import numpy as np
import pandas as pd
import pytest

from cohort_markov.errors import DimensionMismatch
from cohort_markov.expressions import (
    C,
    Covariate,
    EvalContext,
    Param,
    Time,
    as_expr,
    combine_probs,
    exp,
    maximum,
    rate_to_prob,
    select,
    where,
)


@pytest.fixture
def ctx() -> EvalContext:
    """Three samples, two units, four time points."""
    samples = {
        'p': np.array([0.1, 0.2, 0.3]),
        'm': np.arange(12.0).reshape(3, 2, 2),
    }
    units = pd.DataFrame({'strategy_id': [1, 2], 'patient_id': [1, 1], 'age': [40.0, 70.0]})
    return EvalContext(samples, units, [0.0, 1.0, 2.0, 3.0], sample_offset=5)


class TestEvaluation:
    """Tests for vectorised evaluation over (time, sample, unit)."""

    def test_axes(self, ctx: EvalContext) -> None:
        """Test parameters vary by sample, covariates by unit and time by cycle."""
        assert Param('p').evaluate(ctx).shape == (1, 3, 1)
        assert Covariate('age').evaluate(ctx).shape == (1, 1, 2)
        assert Time().evaluate(ctx).shape == (4, 1, 1)

        value = np.broadcast_to((Param('p') * Covariate('age') + Time()).evaluate(ctx), ctx.shape)
        assert value[2, 1, 0] == pytest.approx(0.2 * 40.0 + 2.0)

    def test_operators(self, ctx: EvalContext) -> None:
        """Test every arithmetic and comparison operator, with constants on either side."""
        p = Param('p')
        cases = [
            (1 - p, [0.9, 0.8, 0.7]),
            (p / 2, [0.05, 0.1, 0.15]),
            (2 / p, [20.0, 10.0, 20.0 / 3.0]),
            (p ** 2, [0.01, 0.04, 0.09]),
            (2 ** p, [2 ** 0.1, 2 ** 0.2, 2 ** 0.3]),
            (-p, [-0.1, -0.2, -0.3]),
            (p < 0.2, [1.0, 0.0, 0.0]),
            (p <= 0.2, [1.0, 1.0, 0.0]),
            (p >= 0.2, [0.0, 1.0, 1.0]),
            (3 + p * 0 + p - p, [3.0, 3.0, 3.0]),
        ]
        for expr, expected in cases:
            np.testing.assert_allclose(np.asarray(expr.evaluate(ctx), dtype=float)[0, :, 0], expected)

    def test_matrix_element(self, ctx: EvalContext) -> None:
        np.testing.assert_array_equal(Param('m', (1, 0)).evaluate(ctx)[0, :, 0], [2.0, 6.0, 10.0])

    def test_non_scalar_parameter(self, ctx: EvalContext) -> None:
        with pytest.raises(DimensionMismatch, match="not scalar"):
            Param('m', (1,)).evaluate(ctx)

    def test_where_and_functions(self, ctx: EvalContext) -> None:
        older = where(Covariate('age') > 65, exp(math.log(2.0)), 1.0)
        result = np.broadcast_to(older.evaluate(ctx), ctx.shape)

        assert result[0, 0, 0] == pytest.approx(1.0)
        assert result[0, 0, 1] == pytest.approx(2.0)
        assert float(np.asarray(maximum(0.2, 0.5).evaluate(ctx))) == pytest.approx(0.5)
        assert float(np.asarray(combine_probs(0.1, 0.2).evaluate(ctx))) == pytest.approx(0.28)
        assert float(np.asarray(rate_to_prob(math.log(2.0)).evaluate(ctx))) == pytest.approx(0.5)

    def test_select_by_strategy(self, ctx: EvalContext) -> None:
        rr = select('strategy_id', {2: Param('p')}, default=1.0)
        result = rr.evaluate(ctx)

        np.testing.assert_array_equal(result[0, :, 0], [1.0, 1.0, 1.0])
        np.testing.assert_array_equal(result[0, :, 1], [0.1, 0.2, 0.3])

    def test_uses_time(self) -> None:
        assert (Param('p') * Time()).uses_time()
        assert not (Param('p') * 2).uses_time()


class TestErrorContext:
    """Tests for locating a failing position."""

    def test_locate_uses_global_sample(self, ctx: EvalContext) -> None:
        context = ctx.locate((3, 1, 1), row='H')
        assert context == {'sample': 7, 'strategy_id': 2, 'patient_id': 1, 'cycle': 3, 'row': 'H'}


class TestConstruction:
    """Tests for building expressions."""

    def test_complement_outside_matrix(self) -> None:
        with pytest.raises(TypeError):
            as_expr(C)
        with pytest.raises(TypeError):
            Param('p') + C

    def test_non_numeric_operand(self) -> None:
        with pytest.raises(TypeError):
            Param('p') * 'x'
