"""Tests for cost-effectiveness analysis."""

import numpy as np
import pandas as pd
import pytest

from cohort_markov.cea import (
    cea,
    ce_table,
    ceac,
    ceaf,
    compute_nmb,
    efficiency_frontier,
    evpi,
    icer_table,
    summarize_ce,
)


def _ce_from_means(means: dict, n_samples: int = 1) -> pd.DataFrame:
    """Identical samples for each strategy, from ``{strategy: (qalys, costs)}``."""
    rows = [
        {'sample': s + 1, 'strategy_id': strategy, 'qalys': qalys, 'costs': costs}
        for s in range(n_samples)
        for strategy, (qalys, costs) in means.items()
    ]
    return pd.DataFrame(rows)


@pytest.fixture
def ce_samples() -> pd.DataFrame:
    """Two strategies with noisy QALYs and costs over 200 samples."""
    rng = np.random.default_rng(99)
    n = 200
    return pd.DataFrame({
        'sample': np.tile(np.arange(1, n + 1), 2),
        'strategy_id': np.repeat([1, 2], n),
        'qalys': np.concatenate([rng.normal(10.0, 0.5, n), rng.normal(10.5, 0.5, n)]),
        'costs': np.concatenate([rng.normal(20000.0, 1000.0, n), rng.normal(30000.0, 1000.0, n)]),
    })


class TestNetBenefit:
    """Tests for NMB, acceptability and EVPI."""

    def test_nmb(self) -> None:
        ce = _ce_from_means({1: (10.0, 20000.0)})
        assert compute_nmb(ce, 50000.0)['nmb'].iloc[0] == pytest.approx(480000.0)

    def test_ceac_probabilities_sum_to_one(self, ce_samples: pd.DataFrame) -> None:
        curve = ceac(ce_samples, [0.0, 20000.0, 100000.0])

        assert len(curve) == 6
        np.testing.assert_allclose(curve.groupby('wtp')['prob'].sum(), 1.0)
        assert curve.groupby('wtp')['best'].sum().eq(1).all()

    def test_ceac_extremes(self, ce_samples: pd.DataFrame) -> None:
        """Test the cheap strategy wins at zero wtp and the effective one at high wtp."""
        curve = ceac(ce_samples, [0.0, 1e7]).set_index(['wtp', 'strategy_id'])

        assert curve.loc[(0.0, 1), 'prob'] == pytest.approx(1.0)
        assert curve.loc[(1e7, 2), 'prob'] > 0.6

    def test_ceaf_has_one_row_per_wtp(self, ce_samples: pd.DataFrame) -> None:
        frontier = ceaf(ce_samples, [0.0, 20000.0, 100000.0])

        assert list(frontier['wtp']) == [0.0, 20000.0, 100000.0]
        assert frontier.loc[0, 'strategy_id'] == 1
        assert 'best' not in frontier.columns

    def test_evpi_non_negative(self, ce_samples: pd.DataFrame) -> None:
        values = evpi(ce_samples, [0.0, 20000.0, 50000.0])
        assert (values['evpi'] >= 0.0).all()

    def test_evpi_zero_without_uncertainty(self) -> None:
        ce = _ce_from_means({1: (10.0, 20000.0), 2: (11.0, 30000.0)}, n_samples=5)
        assert evpi(ce, [5000.0, 50000.0])['evpi'].abs().max() == pytest.approx(0.0)


class TestIcerTable:
    """Tests for pairwise comparisons against a reference strategy."""

    def test_conclusions(self) -> None:
        ce = _ce_from_means({
            1: (10.0, 20000.0),
            2: (11.0, 30000.0),
            3: (10.5, 15000.0),
            4: (9.0, 25000.0),
            5: (10.0, 20000.0),
        })
        table = icer_table(ce, ref=1).set_index('strategy_id')

        assert table.loc[2, 'conclusion'] == 'ratio'
        assert table.loc[2, 'icer'] == pytest.approx(10000.0)
        assert table.loc[3, 'conclusion'] == 'dominant'
        assert table.loc[4, 'conclusion'] == 'dominated'
        assert table.loc[5, 'conclusion'] == 'equivalent'
        assert np.isnan(table.loc[3, 'icer'])

    def test_net_benefit_columns(self, ce_samples: pd.DataFrame) -> None:
        table = icer_table(ce_samples, ref=1, wtp=50000.0)
        row = table.iloc[0]

        assert row['inmb'] == pytest.approx(50000.0 * row['inc_qalys'] - row['inc_costs'])
        assert 0.0 <= row['prob_ce'] <= 1.0
        assert row['inc_costs_lower_95'] < row['inc_costs'] < row['inc_costs_upper_95']

    def test_unknown_reference(self) -> None:
        with pytest.raises(ValueError, match="Reference strategy"):
            icer_table(_ce_from_means({1: (10.0, 1.0)}), ref=7)


class TestEfficiencyFrontier:
    """Tests for dominance on the frontier of expected values."""

    def test_strict_dominance(self) -> None:
        ce = _ce_from_means({'A': (5.0, 0.0), 'B': (6.0, 1000.0), 'C': (5.5, 2000.0), 'D': (6.2, 1500.0)})
        frontier = efficiency_frontier(ce)

        assert list(frontier['strategy_id']) == ['A', 'B', 'D']
        assert np.isnan(frontier.loc[0, 'icer'])
        assert frontier.loc[1, 'icer'] == pytest.approx(1000.0)
        assert frontier.loc[2, 'icer'] == pytest.approx(2500.0)

    def test_extended_dominance(self) -> None:
        ce = _ce_from_means({'A': (5.0, 0.0), 'B': (5.1, 1000.0), 'D': (6.0, 2000.0)})
        frontier = efficiency_frontier(ce)

        assert list(frontier['strategy_id']) == ['A', 'D']
        assert frontier.loc[1, 'icer'] == pytest.approx(2000.0)

    def test_grouped_frontier(self) -> None:
        ce = _ce_from_means({'A': (5.0, 0.0), 'B': (6.0, 1000.0)})
        ce = pd.concat([ce.assign(grp_id=1), ce.assign(grp_id=2, qalys=[5.0, 4.0])], ignore_index=True)
        frontier = efficiency_frontier(ce)

        assert list(frontier.loc[frontier['grp_id'] == 1, 'strategy_id']) == ['A', 'B']
        assert list(frontier.loc[frontier['grp_id'] == 2, 'strategy_id']) == ['A']


class TestCeTable:
    """Tests for aggregation of simulated outcomes to the strategy level."""

    @pytest.fixture
    def outcomes(self) -> pd.DataFrame:
        rows = []
        for strategy, patient, qalys, costs in [(1, 1, 10.0, 100.0), (1, 2, 4.0, 400.0),
                                                (2, 1, 12.0, 300.0), (2, 2, 6.0, 600.0)]:
            rows.append({'sample': 1, 'strategy_id': strategy, 'patient_id': patient,
                         'outcome': 'qalys', 'dr': 0.03, 'value': qalys})
            rows.append({'sample': 1, 'strategy_id': strategy, 'patient_id': patient,
                         'outcome': 'medical', 'dr': 0.03, 'value': costs})
        return pd.DataFrame(rows)

    def test_equal_weights(self, outcomes: pd.DataFrame) -> None:
        units = pd.DataFrame({'strategy_id': [1, 1, 2, 2], 'patient_id': [1, 2, 1, 2]})
        table = ce_table(outcomes, units, 0.03, 0.03).set_index('strategy_id')

        assert table.loc[1, 'qalys'] == pytest.approx(7.0)
        assert table.loc[2, 'costs'] == pytest.approx(450.0)

    def test_patient_weights(self, outcomes: pd.DataFrame) -> None:
        units = pd.DataFrame({'strategy_id': [1, 1, 2, 2], 'patient_id': [1, 2, 1, 2],
                              'patient_wt': [3.0, 1.0, 3.0, 1.0]})
        table = ce_table(outcomes, units, 0.03, 0.03).set_index('strategy_id')

        assert table.loc[1, 'qalys'] == pytest.approx(8.5)
        assert table.loc[1, 'costs'] == pytest.approx(175.0)


class TestCeaBundle:
    """Tests for the combined analysis."""

    def test_tables(self, ce_samples: pd.DataFrame) -> None:
        results = cea(ce_samples, [0.0, 50000.0], ref=1)

        assert set(results) == {'summary', 'ceac', 'ceaf', 'evpi', 'frontier', 'icer'}
        summary = summarize_ce(ce_samples)
        pd.testing.assert_frame_equal(results['summary'], summary)
        assert summary.loc[0, 'qalys_lower_95'] < summary.loc[0, 'qalys_mean'] < summary.loc[0, 'qalys_upper_95']

    def test_without_reference(self, ce_samples: pd.DataFrame) -> None:
        assert 'icer' not in cea(ce_samples, [50000.0])
