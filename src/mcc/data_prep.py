"""
Data preparation for the weighted MCC estimator.

This module turns a resample-tagged event table into the inputs of the
risk-set fold:

- standardize_event_table / validate_event_table : canonical schema checks
- compute_arm_weight_totals : initial risk-set size per (resample, arm)
- build_event_table : weighted status totals per (resample, arm, time)
"""

import logging
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from .columns import (
    RESAMPLE_COL,
    ID_COL,
    TIME_COL,
    STATUS_COL,
    ARM_COL,
    WEIGHT_COL,
    EVENT_TABLE_COLUMNS,
    STATUS_LABELS,
    STATUS_CODE_MAP,
    STATUS_WEIGHT_COLUMNS,
    ARMS,
)
from .errors import EstimationError

logger = logging.getLogger(__name__)


def standardize_event_table(
    df: pd.DataFrame,
    resample_col: str = RESAMPLE_COL,
    id_col: str = ID_COL,
    time_col: str = TIME_COL,
    status_col: str = STATUS_COL,
    arm_col: str = ARM_COL,
    weight_col: str = WEIGHT_COL,
) -> pd.DataFrame:
    """
    Rename and recode an event table to the canonical schema.

    Status may be supplied as labels ('censored', 'event', 'competing')
    or as numeric codes (0=censored, 1=event, 2=competing).

    Parameters
    ----------
    df : pd.DataFrame
        Event table, one row per event occurrence per subject
    resample_col : str
        Resample index column (0 = original sample)
    id_col : str
        Subject identifier column
    time_col : str
        Event time column
    status_col : str
        Status column
    arm_col : str
        Treatment arm column (0/1)
    weight_col : str
        Per-subject weight column

    Returns
    -------
    pd.DataFrame
        Validated copy with columns EVENT_TABLE_COLUMNS
    """
    source_cols = [resample_col, id_col, time_col, status_col, arm_col, weight_col]
    missing = [col for col in source_cols if col not in df.columns]
    if missing:
        raise EstimationError(f"Event table is missing columns: {missing}")

    events = df[source_cols].copy()
    events.columns = EVENT_TABLE_COLUMNS

    events[STATUS_COL] = _recode_status(events[STATUS_COL])
    events[RESAMPLE_COL] = pd.to_numeric(events[RESAMPLE_COL], errors='coerce')
    events[TIME_COL] = pd.to_numeric(events[TIME_COL], errors='coerce')
    events[ARM_COL] = pd.to_numeric(events[ARM_COL], errors='coerce')
    events[WEIGHT_COL] = pd.to_numeric(events[WEIGHT_COL], errors='coerce')

    validate_event_table(events)

    events[RESAMPLE_COL] = events[RESAMPLE_COL].astype(int)
    events[ARM_COL] = events[ARM_COL].astype(int)
    events[TIME_COL] = events[TIME_COL].astype(float)
    events[WEIGHT_COL] = events[WEIGHT_COL].astype(float)

    return events.reset_index(drop=True)


def _recode_status(status: pd.Series) -> pd.Series:
    """Map numeric status codes to labels; normalize label case."""
    if pd.api.types.is_numeric_dtype(status):
        return status.map(STATUS_CODE_MAP)
    return status.astype(str).str.strip().str.lower()


def _first_offender(events: pd.DataFrame, mask: pd.Series) -> Dict[str, Optional[float]]:
    """Resample, arm and time of the first row flagged by mask, for error context."""
    row = events.loc[mask].iloc[0]
    context = {}
    for key, col, cast in [('resample', RESAMPLE_COL, int),
                           ('arm', ARM_COL, int),
                           ('time', TIME_COL, float)]:
        value = row[col]
        try:
            context[key] = cast(value) if pd.notna(value) else None
        except (TypeError, ValueError):
            context[key] = None
    return context


def validate_event_table(events: pd.DataFrame) -> None:
    """
    Check a canonical event table against the input schema.

    Raises
    ------
    EstimationError
        On missing columns or on the first row violating the schema
    """
    missing = [col for col in EVENT_TABLE_COLUMNS if col not in events.columns]
    if missing:
        raise EstimationError(f"Event table is missing columns: {missing}")

    if events.empty:
        raise EstimationError("Event table is empty")

    resample = events[RESAMPLE_COL]
    bad = resample.isna() | (resample < 0) | (resample != np.floor(resample))
    if bad.any():
        raise EstimationError(
            "Resample index must be a non-negative integer",
            **_first_offender(events, bad)
        )

    if events[ID_COL].isna().any():
        raise EstimationError(
            "Subject identifier is missing",
            **_first_offender(events, events[ID_COL].isna())
        )

    time = events[TIME_COL]
    bad = time.isna() | ~np.isfinite(time) | (time < 0)
    if bad.any():
        raise EstimationError(
            "Time must be a finite non-negative number",
            **_first_offender(events, bad)
        )

    bad = ~events[STATUS_COL].isin(STATUS_LABELS)
    if bad.any():
        value = events.loc[bad, STATUS_COL].iloc[0]
        raise EstimationError(
            f"Unknown status {value!r}; expected one of {STATUS_LABELS}",
            **_first_offender(events, bad)
        )

    bad = ~events[ARM_COL].isin(ARMS)
    if bad.any():
        value = events.loc[bad, ARM_COL].iloc[0]
        raise EstimationError(
            f"Unknown arm {value!r}; expected one of {ARMS}",
            **_first_offender(events, bad)
        )

    weight = events[WEIGHT_COL]
    bad = weight.isna() | ~np.isfinite(weight) | (weight < 0)
    if bad.any():
        raise EstimationError(
            "Weight must be a finite non-negative number",
            **_first_offender(events, bad)
        )


def check_resample_indices(events: pd.DataFrame, resample_count: int) -> List[int]:
    """
    Require the resample indices to be exactly 0..resample_count.

    Parameters
    ----------
    events : pd.DataFrame
        Canonical event table
    resample_count : int
        Number of bootstrap resamples B

    Returns
    -------
    List[int]
        Sorted resample indices
    """
    expected = set(range(resample_count + 1))
    present = set(events[RESAMPLE_COL].unique().tolist())

    absent = sorted(expected - present)
    if absent:
        raise EstimationError(
            f"Expected resamples 0..{resample_count}; "
            f"{len(absent)} missing (first missing: {absent[0]})",
            resample=absent[0]
        )

    extra = sorted(present - expected)
    if extra:
        raise EstimationError(
            f"Resample indices beyond resample_count={resample_count}: {extra[:5]}",
            resample=extra[0]
        )

    return sorted(present)


def compute_arm_weight_totals(events: pd.DataFrame) -> Dict[Tuple[int, int], float]:
    """
    Total weight of distinct subjects per (resample, arm).

    Each subject counts once per resample (its first record). The result
    seeds the at-risk fold and must be computed on the full subject set
    before any time-bucket math.

    Parameters
    ----------
    events : pd.DataFrame
        Canonical event table, one or more resamples

    Returns
    -------
    Dict[Tuple[int, int], float]
        Mapping (resample, arm) -> initial risk-set weight

    Raises
    ------
    EstimationError
        If an arm has no subjects in some resample
    """
    subjects = events.drop_duplicates(subset=[RESAMPLE_COL, ID_COL], keep='first')
    sums = subjects.groupby([RESAMPLE_COL, ARM_COL])[WEIGHT_COL].sum()

    totals = {}
    for resample in sorted(events[RESAMPLE_COL].unique()):
        for arm in ARMS:
            key = (int(resample), arm)
            if key not in sums.index:
                raise EstimationError("Arm has no subjects", resample=key[0], arm=arm)
            totals[key] = float(sums.loc[key])

    logger.debug(f"Computed arm weight totals for {len(totals)} (resample, arm) groups")
    return totals


def build_event_table(events: pd.DataFrame) -> pd.DataFrame:
    """
    Weighted status totals per (resample, arm, time).

    Only observed times appear; the representation is sparse and is made
    dense later on the integer grid.

    Parameters
    ----------
    events : pd.DataFrame
        Canonical event table

    Returns
    -------
    pd.DataFrame
        Columns: resample_index, arm, time, censor_weight,
        event_weight, competing_weight; sorted by key
    """
    keys = [RESAMPLE_COL, ARM_COL, TIME_COL]

    buckets = (
        events.groupby(keys + [STATUS_COL])[WEIGHT_COL]
        .sum()
        .unstack(STATUS_COL, fill_value=0.0)
        .reindex(columns=STATUS_LABELS, fill_value=0.0)
        .rename(columns=STATUS_WEIGHT_COLUMNS)
    )
    buckets.columns.name = None

    return buckets.reset_index().sort_values(keys).reset_index(drop=True)
