"""Cost-effectiveness analysis of simulated QALYs and costs."""

from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from cohort_markov.integration import summarize_outcomes


def ce_table(outcomes: pd.DataFrame,
             units: pd.DataFrame,
             dr_qalys: float,
             dr_costs: float) -> pd.DataFrame:
    """
    Per-sample QALYs and total costs by strategy (and group).

    Patients are averaged with the ``patient_wt`` column of ``units`` when it
    exists, otherwise with equal weights.
    """
    wide = summarize_outcomes(outcomes, dr_qalys, dr_costs)
    if 'patient_wt' in units.columns:
        weights = units[['strategy_id', 'patient_id', 'patient_wt']].drop_duplicates()
        wide = wide.merge(weights, on=['strategy_id', 'patient_id'], how='left')
        if wide['patient_wt'].isna().any():
            raise ValueError("Some simulated patients have no patient_wt.")
    else:
        wide['patient_wt'] = 1.0

    group_cols = ['sample', 'strategy_id'] + (['grp_id'] if 'grp_id' in wide.columns else [])
    wide['weighted_qalys'] = wide['qalys'] * wide['patient_wt']
    wide['weighted_costs'] = wide['total_costs'] * wide['patient_wt']
    agg = wide.groupby(group_cols, as_index=False)[['weighted_qalys', 'weighted_costs', 'patient_wt']].sum()
    agg['qalys'] = agg['weighted_qalys'] / agg['patient_wt']
    agg['costs'] = agg['weighted_costs'] / agg['patient_wt']
    return agg[group_cols + ['qalys', 'costs']]


def _groups(ce: pd.DataFrame) -> Iterator[Tuple[Optional[Any], pd.DataFrame]]:
    if 'grp_id' in ce.columns:
        for grp, grp_df in ce.groupby('grp_id', sort=True):
            yield grp, grp_df
    else:
        yield None, ce


def _wide(grp_df: pd.DataFrame, column: str) -> pd.DataFrame:
    """Samples by strategies."""
    return grp_df.pivot(index='sample', columns='strategy_id', values=column)


def compute_nmb(ce: pd.DataFrame, wtp: float) -> pd.DataFrame:
    """Net monetary benefit: wtp * QALYs - costs."""
    return ce.assign(nmb=wtp * ce['qalys'] - ce['costs'])


def ceac(ce: pd.DataFrame, wtp: Sequence[float]) -> pd.DataFrame:
    """
    Cost-effectiveness acceptability curve.

    For each willingness-to-pay value, the probability that each strategy has
    the highest NMB across samples, alongside its expected NMB. ``best`` flags
    the strategy with the highest expected NMB (the acceptability frontier).
    """
    rows: List[dict] = []
    for grp, grp_df in _groups(ce):
        qalys = _wide(grp_df, 'qalys')
        costs = _wide(grp_df, 'costs')
        strategies = list(qalys.columns)
        for k in wtp:
            nmb = k * qalys - costs
            winners = nmb.to_numpy().argmax(axis=1)
            prob = np.bincount(winners, minlength=len(strategies)) / len(winners)
            enmb = nmb.mean()
            best = enmb.idxmax()
            for strategy, p in zip(strategies, prob):
                row = {'wtp': float(k), 'strategy_id': strategy, 'prob': float(p),
                       'enmb': float(enmb[strategy]), 'best': strategy == best}
                if grp is not None:
                    row = {'grp_id': grp, **row}
                rows.append(row)
    return pd.DataFrame(rows)


def ceaf(ce: pd.DataFrame, wtp: Sequence[float]) -> pd.DataFrame:
    """Acceptability frontier: the optimal strategy at each wtp and its probability of being best."""
    curve = ceac(ce, wtp)
    return curve.loc[curve['best']].drop(columns='best').reset_index(drop=True)


def evpi(ce: pd.DataFrame, wtp: Sequence[float]) -> pd.DataFrame:
    """Expected value of perfect information: E[max NMB] - max E[NMB]."""
    rows: List[dict] = []
    for grp, grp_df in _groups(ce):
        qalys = _wide(grp_df, 'qalys')
        costs = _wide(grp_df, 'costs')
        for k in wtp:
            nmb = (k * qalys - costs).to_numpy()
            value = float(nmb.max(axis=1).mean() - nmb.mean(axis=0).max())
            row = {'wtp': float(k), 'evpi': value}
            if grp is not None:
                row = {'grp_id': grp, **row}
            rows.append(row)
    return pd.DataFrame(rows)


def _conclusion(inc_qalys: float, inc_costs: float) -> str:
    if inc_qalys == 0.0 and inc_costs == 0.0:
        return 'equivalent'
    if inc_qalys >= 0.0 and inc_costs <= 0.0:
        return 'dominant'
    if inc_qalys <= 0.0 and inc_costs >= 0.0:
        return 'dominated'
    return 'ratio'


def icer_table(ce: pd.DataFrame, ref: Any, wtp: Optional[float] = None) -> pd.DataFrame:
    """
    Pairwise comparison of every strategy against the reference strategy ``ref``.

    Incremental means and 95% intervals come from per-sample differences.
    The ICER is reported only when neither strategy dominates.
    """
    rows: List[dict] = []
    for grp, grp_df in _groups(ce):
        qalys = _wide(grp_df, 'qalys')
        costs = _wide(grp_df, 'costs')
        if ref not in qalys.columns:
            raise ValueError(f"Reference strategy {ref!r} is not in the results.")
        for strategy in qalys.columns:
            if strategy == ref:
                continue
            d_qalys = qalys[strategy] - qalys[ref]
            d_costs = costs[strategy] - costs[ref]
            inc_qalys = float(d_qalys.mean())
            inc_costs = float(d_costs.mean())
            conclusion = _conclusion(inc_qalys, inc_costs)
            row = {
                'strategy_id': strategy,
                'ref': ref,
                'inc_qalys': inc_qalys,
                'inc_qalys_lower_95': float(d_qalys.quantile(0.025)),
                'inc_qalys_upper_95': float(d_qalys.quantile(0.975)),
                'inc_costs': inc_costs,
                'inc_costs_lower_95': float(d_costs.quantile(0.025)),
                'inc_costs_upper_95': float(d_costs.quantile(0.975)),
                'icer': inc_costs / inc_qalys if conclusion == 'ratio' else np.nan,
                'conclusion': conclusion,
            }
            if wtp is not None:
                row['inmb'] = wtp * inc_qalys - inc_costs
                row['prob_ce'] = float((wtp * d_qalys - d_costs > 0).mean())
            if grp is not None:
                row = {'grp_id': grp, **row}
            rows.append(row)
    return pd.DataFrame(rows)


def _frontier_for_means(means: pd.DataFrame) -> List[dict]:
    ordered = means.sort_values(['costs', 'qalys'], ascending=[True, False])
    frontier: List[dict] = []
    for row in ordered.to_dict('records'):
        # costs at least as much as the last kept strategy without more QALYs
        if frontier and row['qalys'] <= frontier[-1]['qalys']:
            continue
        frontier.append(row)

    # extended dominance: ICERs along the frontier must increase
    removed = True
    while removed and len(frontier) > 2:
        removed = False
        icers = [
            (frontier[i]['costs'] - frontier[i - 1]['costs']) / (frontier[i]['qalys'] - frontier[i - 1]['qalys'])
            for i in range(1, len(frontier))
        ]
        for i in range(len(icers) - 1):
            if icers[i] > icers[i + 1]:
                del frontier[i + 1]
                removed = True
                break
    return frontier


def efficiency_frontier(ce: pd.DataFrame) -> pd.DataFrame:
    """
    Strategies on the cost-effectiveness frontier of expected values, in order of cost,
    with sequential ICERs; strictly and extendedly dominated strategies are dropped.
    """
    rows: List[dict] = []
    for grp, grp_df in _groups(ce):
        means = grp_df.groupby('strategy_id', as_index=False)[['qalys', 'costs']].mean()
        previous = None
        for entry in _frontier_for_means(means):
            row = {'strategy_id': entry['strategy_id'], 'qalys': entry['qalys'], 'costs': entry['costs']}
            if previous is None:
                row.update({'inc_qalys': np.nan, 'inc_costs': np.nan, 'icer': np.nan})
            else:
                inc_qalys = entry['qalys'] - previous['qalys']
                inc_costs = entry['costs'] - previous['costs']
                row.update({'inc_qalys': inc_qalys, 'inc_costs': inc_costs, 'icer': inc_costs / inc_qalys})
            if grp is not None:
                row = {'grp_id': grp, **row}
            rows.append(row)
            previous = entry
    return pd.DataFrame(rows)


def summarize_ce(ce: pd.DataFrame) -> pd.DataFrame:
    """Mean and 95% interval of QALYs and costs by strategy (and group)."""
    group_cols = ['strategy_id'] + (['grp_id'] if 'grp_id' in ce.columns else [])
    rows: List[dict] = []
    for keys, grp_df in ce.groupby(group_cols, sort=True):
        keys = keys if isinstance(keys, tuple) else (keys,)
        row = dict(zip(group_cols, keys))
        for column in ('qalys', 'costs'):
            series = grp_df[column].dropna()
            row[f'{column}_mean'] = float(series.mean())
            row[f'{column}_lower_95'] = float(series.quantile(0.025))
            row[f'{column}_upper_95'] = float(series.quantile(0.975))
        rows.append(row)
    return pd.DataFrame(rows)


def cea(ce: pd.DataFrame, wtp: Sequence[float], ref: Optional[Any] = None) -> Dict[str, pd.DataFrame]:
    """Bundle of summary, acceptability, EVPI and frontier tables (plus pairwise ICERs when ``ref`` is given)."""
    results = {
        'summary': summarize_ce(ce),
        'ceac': ceac(ce, wtp),
        'ceaf': ceaf(ce, wtp),
        'evpi': evpi(ce, wtp),
        'frontier': efficiency_frontier(ce),
    }
    if ref is not None:
        results['icer'] = icer_table(ce, ref)
    return results
