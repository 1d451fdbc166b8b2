"""
Time grid normalization and arm contrasts.

MCC curves come out of the estimator as sparse step functions (one point
per observed time). Here they are placed on the dense integer grid
0..end_of_followup with last-observation-carried-forward, and the two arms
are contrasted per grid time.
"""

import logging

import numpy as np
import pandas as pd

from .columns import (
    RESAMPLE_COL,
    ARM_COL,
    TIME_COL,
    MCC_COL,
    MCC_ARM0_COL,
    MCC_ARM1_COL,
    MCCD_COL,
    MCCR_COL,
    ARMS,
    UNDEFINED_RATIO_VALUE,
)
from .errors import EstimationError

logger = logging.getLogger(__name__)

ARM_CURVE_COLUMNS = {0: MCC_ARM0_COL, 1: MCC_ARM1_COL}


def make_time_grid(end_of_followup: int) -> np.ndarray:
    """Integer grid 0..end_of_followup inclusive."""
    if int(end_of_followup) != end_of_followup or end_of_followup <= 0:
        raise EstimationError(
            f"end_of_followup must be a positive integer, got {end_of_followup!r}"
        )
    return np.arange(int(end_of_followup) + 1)


def carry_forward_fill(
    grid_times: np.ndarray,
    observed_times: np.ndarray,
    observed_values: np.ndarray,
) -> np.ndarray:
    """
    Value of a step function at each grid time.

    Each grid time takes the value at the latest observed time at or
    before it. Grid times earlier than every observation are NaN.

    Parameters
    ----------
    grid_times : np.ndarray
        Times to evaluate at
    observed_times : np.ndarray
        Strictly increasing observed times
    observed_values : np.ndarray
        Values at observed_times

    Returns
    -------
    np.ndarray
        Filled values aligned with grid_times
    """
    observed_times = np.asarray(observed_times, dtype=float)
    observed_values = np.asarray(observed_values, dtype=float)

    positions = np.searchsorted(observed_times, np.asarray(grid_times, dtype=float), side='right') - 1
    filled = np.full(len(grid_times), np.nan)
    has_value = positions >= 0
    filled[has_value] = observed_values[positions[has_value]]
    return filled


def normalize_to_grid(mcc_points: pd.DataFrame, end_of_followup: int) -> pd.DataFrame:
    """
    Place per-arm MCC curves on the integer grid.

    Parameters
    ----------
    mcc_points : pd.DataFrame
        Output of accumulate_mcc (must include each group's origin point)
    end_of_followup : int
        Last grid time

    Returns
    -------
    pd.DataFrame
        One row per (resample, grid time) with mcc_arm0 and mcc_arm1

    Raises
    ------
    EstimationError
        If an arm curve is absent for a resample or a grid time has no
        earlier point to carry forward
    """
    grid = make_time_grid(end_of_followup)
    frames = []

    for resample, points in mcc_points.groupby(RESAMPLE_COL, sort=True):
        resample = int(resample)
        curve_grid = pd.DataFrame({RESAMPLE_COL: resample, TIME_COL: grid})

        for arm in ARMS:
            curve = points[points[ARM_COL] == arm].sort_values(TIME_COL, kind='mergesort')
            if curve.empty:
                raise EstimationError("No MCC curve for arm", resample=resample, arm=arm)

            observed = curve.groupby(TIME_COL, sort=True)[MCC_COL].last()
            filled = carry_forward_fill(grid, observed.index.values, observed.values)

            # Grid time 0 is the fixed origin; time-0 increments show from time 1.
            origin = curve.loc[curve[TIME_COL] == 0, MCC_COL]
            filled[grid == 0] = origin.iloc[0] if not origin.empty else np.nan

            missing = np.isnan(filled)
            if missing.any():
                raise EstimationError(
                    "Grid time precedes the MCC curve origin",
                    resample=resample, arm=arm, time=float(grid[missing][0])
                )
            curve_grid[ARM_CURVE_COLUMNS[arm]] = filled

        frames.append(curve_grid)

    if not frames:
        raise EstimationError("No MCC points to place on the time grid")

    result = pd.concat(frames, ignore_index=True)
    logger.debug(
        f"Normalized {len(frames)} resample(s) onto {len(grid)} grid times"
    )
    return result


def ratio_with_default(
    numerator: pd.Series,
    denominator: pd.Series,
    default: float = UNDEFINED_RATIO_VALUE,
) -> pd.Series:
    """
    Elementwise ratio, replaced by default wherever it is undefined.

    Undefined covers a zero or missing denominator and any non-finite
    result.
    """
    num = numerator.astype(float).to_numpy()
    den = denominator.astype(float).to_numpy()

    with np.errstate(divide='ignore', invalid='ignore'):
        ratio = num / den

    undefined = np.isnan(den) | (den == 0) | ~np.isfinite(ratio)
    ratio[undefined] = default
    return pd.Series(ratio, index=numerator.index)


def compute_contrasts(curve_grid: pd.DataFrame) -> pd.DataFrame:
    """
    Arm difference and ratio at every grid time.

    MCCD = mcc_arm1 - mcc_arm0
    MCCR = mcc_arm1 / mcc_arm0, or 1.0 where mcc_arm0 is zero or missing

    Parameters
    ----------
    curve_grid : pd.DataFrame
        Output of normalize_to_grid

    Returns
    -------
    pd.DataFrame
        Copy of curve_grid with MCCD and MCCR columns
    """
    contrasts = curve_grid.copy()
    contrasts[MCCD_COL] = contrasts[MCC_ARM1_COL] - contrasts[MCC_ARM0_COL]
    contrasts[MCCR_COL] = ratio_with_default(
        contrasts[MCC_ARM1_COL], contrasts[MCC_ARM0_COL]
    )
    return contrasts
