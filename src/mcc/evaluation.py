"""
Reporting helpers and reference cross-checks for the MCC estimator.
"""

from typing import List, Optional

import numpy as np
import pandas as pd
from lifelines import KaplanMeierFitter

from .columns import (
    RESAMPLE_COL,
    ID_COL,
    TIME_COL,
    STATUS_COL,
    ARM_COL,
    WEIGHT_COL,
    STATUS_CENSORED,
    STATUS_EVENT,
    STATUS_COMPETING,
    CUM_SURVIVAL_COL,
    OUTPUT_COLUMNS,
    REPORT_TIMES,
)
from .errors import EstimationError


def summarize_event_table(events: pd.DataFrame) -> pd.DataFrame:
    """
    Per (resample, arm) record counts and subject weight.

    Parameters
    ----------
    events : pd.DataFrame
        Canonical event table

    Returns
    -------
    pd.DataFrame
        Columns: resample_index, arm, n_subjects, n_records, n_censored,
        n_events, n_competing, total_weight
    """
    keys = [RESAMPLE_COL, ARM_COL]

    counts = events.groupby(keys).agg(
        n_subjects=(ID_COL, 'nunique'),
        n_records=(ID_COL, 'size'),
    )

    by_status = (
        events.groupby(keys)[STATUS_COL]
        .value_counts()
        .unstack(fill_value=0)
        .reindex(columns=[STATUS_CENSORED, STATUS_EVENT, STATUS_COMPETING], fill_value=0)
    )
    by_status.columns = ['n_censored', 'n_events', 'n_competing']

    subjects = events.drop_duplicates(subset=[RESAMPLE_COL, ID_COL], keep='first')
    weight = subjects.groupby(keys)[WEIGHT_COL].sum().rename('total_weight')

    summary = counts.join(by_status).join(weight)
    return summary.reset_index()


def format_results_table(
    results: pd.DataFrame,
    times: Optional[List[int]] = None,
    decimals: int = 4,
) -> pd.DataFrame:
    """
    Final MCC table at selected report times.

    Parameters
    ----------
    results : pd.DataFrame
        Final table from WeightedMCCEstimator
    times : List[int], optional
        Report times (default REPORT_TIMES); times off the grid are dropped
    decimals : int
        Rounding for presentation

    Returns
    -------
    pd.DataFrame
        Rows at the report times, indexed by time
    """
    if times is None:
        times = REPORT_TIMES

    table = results[OUTPUT_COLUMNS]
    table = table[table[TIME_COL].isin(times)]
    return table.set_index(TIME_COL).round(decimals)


def competing_survival_reference(
    events: pd.DataFrame,
    resample: int = 0,
    arm: int = 0,
    times: Optional[np.ndarray] = None,
) -> pd.DataFrame:
    """
    Weighted Kaplan-Meier of competing-event attrition via lifelines.

    Every censored or competing record is treated as one subject exit
    (competing = observed, censored = censored); event-of-interest records
    keep the subject at risk. When every subject has exactly one exit
    record this matches cum_survival from build_survival_curve.

    Parameters
    ----------
    events : pd.DataFrame
        Canonical event table
    resample : int
        Resample index to use
    arm : int
        Arm to use
    times : np.ndarray, optional
        Times to evaluate at (default: all observed times in the group)

    Returns
    -------
    pd.DataFrame
        Columns: time, cum_survival
    """
    group = events[(events[RESAMPLE_COL] == resample) & (events[ARM_COL] == arm)]
    if group.empty:
        raise EstimationError("No records for reference curve", resample=resample, arm=arm)

    if times is None:
        times = np.sort(group[TIME_COL].unique())

    exits = group[group[STATUS_COL].isin([STATUS_CENSORED, STATUS_COMPETING])]
    if exits.empty:
        return pd.DataFrame({TIME_COL: times, CUM_SURVIVAL_COL: 1.0})

    kmf = KaplanMeierFitter()
    kmf.fit(
        exits[TIME_COL].values,
        event_observed=(exits[STATUS_COL] == STATUS_COMPETING).values,
        weights=exits[WEIGHT_COL].values,
    )

    survival = kmf.survival_function_at_times(times).values
    return pd.DataFrame({TIME_COL: times, CUM_SURVIVAL_COL: survival})
