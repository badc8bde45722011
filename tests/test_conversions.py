"""Tests for rate, probability and odds conversions."""

import math

import numpy as np
import pytest

from cohort_markov.conversions import (
    apply_odds_ratio,
    apply_relative_risk,
    combine_probs,
    odds_to_prob,
    prob_to_odds,
    prob_to_rate,
    rate_to_prob,
    rescale_prob,
)


class TestConversions:
    """Tests for the vectorised conversion helpers."""

    def test_rate_prob_round_trip(self) -> None:
        p = np.array([0.0, 0.1, 0.5, 0.9])
        np.testing.assert_allclose(rate_to_prob(prob_to_rate(p)), p)

    def test_prob_to_rate_of_certain_event(self) -> None:
        assert math.isinf(float(prob_to_rate(1.0)))

    def test_rescale_to_half_cycle(self) -> None:
        assert float(rescale_prob(0.5, 1.0, 0.5)) == pytest.approx(1.0 - math.sqrt(0.5))

    def test_combine_independent_probabilities(self) -> None:
        assert float(combine_probs(0.1, 0.2)) == pytest.approx(0.28)

    def test_odds(self) -> None:
        assert float(prob_to_odds(0.2)) == pytest.approx(0.25)
        assert float(odds_to_prob(0.25)) == pytest.approx(0.2)
        assert float(apply_odds_ratio(0.5, 2.0)) == pytest.approx(2.0 / 3.0)

    def test_relative_risk_above_one_rejected(self) -> None:
        assert float(apply_relative_risk(0.2, 0.5)) == pytest.approx(0.1)
        with pytest.raises(ValueError):
            apply_relative_risk(0.6, 2.0)

    def test_probability_out_of_range(self) -> None:
        with pytest.raises(ValueError):
            prob_to_rate(1.5)
        with pytest.raises(ValueError):
            rate_to_prob(-0.1)
