"""
Weighted Mean Cumulative Count (MCC) estimation under competing risks.

For each (resample, arm) group the sparse event table is folded in
ascending time order:

    at_risk(t)      = N - cum_censor(t) - cum_competing(t)
    factor(t)       = 1 - competing(t) / at_risk(t-)
    S(t)            = prod_{s <= t} factor(s)
    MCC(t)          = sum_{s <= t} event(s) / at_risk(s-) * S(s-)

where N is the weighted number of distinct subjects in the arm and t-
denotes the previous observed time. Unlike 1 - Kaplan-Meier, the event of
interest never leaves the risk set; only censoring and the competing
event do. Each step depends on the one before it, so groups are processed
strictly sequentially.

References:
-----------
Dong, H., Robison, L.L., Leisenring, W.M., Martin, L.J., Armstrong, G.T.
and Yasui, Y. (2015). "Estimating the burden of recurrent events in the
presence of competing risks: the method of mean cumulative count."
American Journal of Epidemiology, 181(7), 532-540.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import pandas as pd

from .columns import (
    RESAMPLE_COL,
    ARM_COL,
    TIME_COL,
    ARM_TOTAL_COL,
    CENSOR_WEIGHT_COL,
    EVENT_WEIGHT_COL,
    COMPETING_WEIGHT_COL,
    CUM_CENSOR_COL,
    CUM_COMPETING_COL,
    AT_RISK_COL,
    AT_RISK_PREV_COL,
    FACTOR_COL,
    CUM_SURVIVAL_COL,
    CUM_SURVIVAL_PREV_COL,
    INCREMENT_COL,
    MCC_COL,
    AT_RISK_TOLERANCE,
)
from .data_prep import build_event_table
from .errors import EstimationError
from .grid import normalize_to_grid, compute_contrasts

logger = logging.getLogger(__name__)

GROUP_KEYS = [RESAMPLE_COL, ARM_COL]


@dataclass
class _RiskSetState:
    """Running attrition totals for one (resample, arm) group."""
    arm_total: float
    cum_censor: float = 0.0
    cum_competing: float = 0.0
    at_risk: Optional[float] = None

    def __post_init__(self):
        if self.at_risk is None:
            self.at_risk = self.arm_total


@dataclass
class _SurvivalState:
    """Running competing-event survival product for one (resample, arm) group."""
    cum_survival: float = 1.0


@dataclass
class _MCCState:
    """Running MCC sum for one (resample, arm) group."""
    mcc: float = 0.0


def _ordered_groups(df: pd.DataFrame):
    """
    Yield (resample, arm, group) with each group sorted by time.

    Times must be unique within a group.
    """
    for (resample, arm), group in df.groupby(GROUP_KEYS, sort=True):
        group = group.sort_values(TIME_COL, kind='mergesort')
        duplicated = group[TIME_COL].duplicated()
        if duplicated.any():
            raise EstimationError(
                "Duplicate time bucket",
                resample=int(resample), arm=int(arm),
                time=float(group.loc[duplicated, TIME_COL].iloc[0])
            )
        yield int(resample), int(arm), group


def _check_denominator(at_risk_previous: float, resample: int, arm: int, time: float) -> None:
    if at_risk_previous <= AT_RISK_TOLERANCE:
        raise EstimationError(
            f"At-risk weight {at_risk_previous:.6g} is not positive before "
            f"all records are processed",
            resample=resample, arm=arm, time=time
        )


def accumulate_risk_set(
    event_table: pd.DataFrame,
    arm_totals: Dict[Tuple[int, int], float],
) -> pd.DataFrame:
    """
    Fold time buckets into running at-risk weights.

    Parameters
    ----------
    event_table : pd.DataFrame
        Output of build_event_table
    arm_totals : Dict[Tuple[int, int], float]
        Initial risk-set weight per (resample, arm)

    Returns
    -------
    pd.DataFrame
        Event table columns plus arm_total, cum_censor, cum_competing,
        at_risk and at_risk_previous

    Raises
    ------
    EstimationError
        If the at-risk weight turns negative, or is not positive when a
        later time bucket needs it as a denominator
    """
    rows = []

    for resample, arm, group in _ordered_groups(event_table):
        if (resample, arm) not in arm_totals:
            raise EstimationError("No arm weight total", resample=resample, arm=arm)

        state = _RiskSetState(arm_total=arm_totals[(resample, arm)])

        for bucket in group.itertuples(index=False):
            record = bucket._asdict()
            time = record[TIME_COL]

            at_risk_previous = state.at_risk
            _check_denominator(at_risk_previous, resample, arm, time)

            state.cum_censor += record[CENSOR_WEIGHT_COL]
            state.cum_competing += record[COMPETING_WEIGHT_COL]
            state.at_risk = state.arm_total - state.cum_censor - state.cum_competing

            if state.at_risk < -AT_RISK_TOLERANCE:
                raise EstimationError(
                    f"Attrition exceeds the arm total (at_risk={state.at_risk:.6g}); "
                    "check for a subject_id drawn more than once in this resample",
                    resample=resample, arm=arm, time=time
                )

            record.update({
                ARM_TOTAL_COL: state.arm_total,
                CUM_CENSOR_COL: state.cum_censor,
                CUM_COMPETING_COL: state.cum_competing,
                AT_RISK_COL: state.at_risk,
                AT_RISK_PREV_COL: at_risk_previous,
            })
            rows.append(record)

    return pd.DataFrame(rows)


def build_survival_curve(risk_states: pd.DataFrame) -> pd.DataFrame:
    """
    Product-limit curve of competing-event attrition.

    factor = 1 - competing_weight / at_risk_previous, accumulated as a
    product restarted at 1.0 for every (resample, arm) group. The value
    before the current step is kept as cum_survival_previous.

    Parameters
    ----------
    risk_states : pd.DataFrame
        Output of accumulate_risk_set

    Returns
    -------
    pd.DataFrame
        Input columns plus factor, cum_survival, cum_survival_previous
    """
    rows = []

    for resample, arm, group in _ordered_groups(risk_states):
        state = _SurvivalState()

        for point in group.itertuples(index=False):
            record = point._asdict()
            at_risk_previous = record[AT_RISK_PREV_COL]
            _check_denominator(at_risk_previous, resample, arm, record[TIME_COL])

            factor = 1.0 - record[COMPETING_WEIGHT_COL] / at_risk_previous
            cum_survival_previous = state.cum_survival
            state.cum_survival = cum_survival_previous * factor

            record.update({
                FACTOR_COL: factor,
                CUM_SURVIVAL_COL: state.cum_survival,
                CUM_SURVIVAL_PREV_COL: cum_survival_previous,
            })
            rows.append(record)

    return pd.DataFrame(rows)


def accumulate_mcc(survival_points: pd.DataFrame) -> pd.DataFrame:
    """
    Running MCC per (resample, arm).

    Each group starts with a synthetic origin {time=0, mcc=0}; every
    observed time then adds event_weight / at_risk_previous times the
    survival just before that time.

    Parameters
    ----------
    survival_points : pd.DataFrame
        Output of build_survival_curve

    Returns
    -------
    pd.DataFrame
        Columns: resample_index, arm, time, increment, mcc
    """
    rows = []

    for resample, arm, group in _ordered_groups(survival_points):
        state = _MCCState()
        rows.append({
            RESAMPLE_COL: resample,
            ARM_COL: arm,
            TIME_COL: 0.0,
            INCREMENT_COL: 0.0,
            MCC_COL: 0.0,
        })

        for point in group.itertuples(index=False):
            record = point._asdict()
            increment = (
                record[EVENT_WEIGHT_COL] / record[AT_RISK_PREV_COL]
                * record[CUM_SURVIVAL_PREV_COL]
            )
            state.mcc += increment

            rows.append({
                RESAMPLE_COL: resample,
                ARM_COL: arm,
                TIME_COL: record[TIME_COL],
                INCREMENT_COL: increment,
                MCC_COL: state.mcc,
            })

    return pd.DataFrame(rows, columns=[RESAMPLE_COL, ARM_COL, TIME_COL, INCREMENT_COL, MCC_COL])


def estimate_mcc_curves(
    events: pd.DataFrame,
    arm_totals: Dict[Tuple[int, int], float],
) -> pd.DataFrame:
    """
    Sparse per-arm MCC step functions for every resample in events.

    Parameters
    ----------
    events : pd.DataFrame
        Canonical event table
    arm_totals : Dict[Tuple[int, int], float]
        Initial risk-set weight per (resample, arm)

    Returns
    -------
    pd.DataFrame
        Output of accumulate_mcc
    """
    event_table = build_event_table(events)
    risk_states = accumulate_risk_set(event_table, arm_totals)
    survival_points = build_survival_curve(risk_states)
    return accumulate_mcc(survival_points)


def estimate_resample_curves(
    events: pd.DataFrame,
    arm_totals: Dict[Tuple[int, int], float],
    end_of_followup: int,
) -> pd.DataFrame:
    """
    Full single-resample pipeline: MCC curves on the grid plus contrasts.

    Depends only on the rows and totals it is given, so resamples can be
    run on separate worker processes.

    Parameters
    ----------
    events : pd.DataFrame
        Canonical event table for one resample
    arm_totals : Dict[Tuple[int, int], float]
        Initial risk-set weight per (resample, arm)
    end_of_followup : int
        Last grid time

    Returns
    -------
    pd.DataFrame
        Columns: resample_index, time, mcc_arm0, mcc_arm1, MCCD, MCCR
    """
    mcc_points = estimate_mcc_curves(events, arm_totals)
    curve_grid = normalize_to_grid(mcc_points, end_of_followup)
    return compute_contrasts(curve_grid)
