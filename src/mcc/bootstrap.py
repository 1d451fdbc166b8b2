"""
Bootstrap variance and confidence intervals for weighted MCC contrasts.

Resample 0 supplies the point estimates; resamples 1..B supply the
replicate curves whose sample standard deviation (divisor B-1) gives the
standard error. Intervals are symmetric normal approximations:

    estimate +/- 1.96 * SD_boot

The per-resample pipelines are independent and may run on separate
processes. Aggregation needs every replicate, so it runs once after all
of them have finished.
"""

import logging
import warnings
from concurrent.futures import ProcessPoolExecutor
from functools import partial
from typing import Dict, Tuple

import pandas as pd
from tqdm import tqdm

from .columns import (
    RESAMPLE_COL,
    TIME_COL,
    CONTRAST_COLUMNS,
    SE_COLUMNS,
    OUTPUT_METRIC_NAMES,
    OUTPUT_COLUMNS,
    Z_CRITICAL,
)
from .data_prep import (
    standardize_event_table,
    check_resample_indices,
    compute_arm_weight_totals,
)
from .errors import EstimationError, DegenerateBootstrapWarning
from .estimator import estimate_resample_curves
from .grid import make_time_grid

logger = logging.getLogger(__name__)


def aggregate_bootstrap(
    replicate_curves: pd.DataFrame,
    resample_count: int,
    end_of_followup: int,
) -> pd.DataFrame:
    """
    Bootstrap standard deviation of each contrast metric per grid time.

    Only resamples 1..B are used; resample 0 rows are ignored if present.

    Parameters
    ----------
    replicate_curves : pd.DataFrame
        Stacked compute_contrasts output for the replicates
    resample_count : int
        Number of replicates B
    end_of_followup : int
        Last grid time

    Returns
    -------
    pd.DataFrame
        One row per grid time: time, se_arm0, se_arm1, se_diff, se_ratio

    Raises
    ------
    EstimationError
        If any replicate is absent, lacks a grid time, has duplicate
        grid times or carries a missing metric value
    """
    if resample_count < 1:
        raise EstimationError(f"resample_count must be at least 1, got {resample_count}")

    grid = make_time_grid(end_of_followup)
    replicates = replicate_curves[replicate_curves[RESAMPLE_COL] != 0]

    expected = set(range(1, resample_count + 1))
    present = set(replicates[RESAMPLE_COL].unique().tolist())
    if present != expected:
        absent = sorted(expected - present)
        extra = sorted(present - expected)
        if absent:
            raise EstimationError(
                f"Incomplete bootstrap: {len(absent)} of {resample_count} replicates missing",
                resample=absent[0]
            )
        raise EstimationError(
            f"Unexpected replicate indices {extra[:5]} for resample_count={resample_count}",
            resample=extra[0]
        )

    grid_set = set(grid.tolist())
    for resample, curve in replicates.groupby(RESAMPLE_COL, sort=True):
        times = curve[TIME_COL]
        if times.duplicated().any():
            raise EstimationError(
                "Replicate has duplicate grid times",
                resample=int(resample), time=float(times[times.duplicated()].iloc[0])
            )
        absent = sorted(grid_set - set(times.tolist()))
        if absent:
            raise EstimationError(
                f"Replicate does not cover the time grid ({len(absent)} times missing)",
                resample=int(resample), time=float(absent[0])
            )
        on_grid = curve[times.isin(grid_set)]
        incomplete = on_grid[CONTRAST_COLUMNS].isna().any(axis=1)
        if incomplete.any():
            raise EstimationError(
                "Replicate has a missing metric value",
                resample=int(resample), time=float(on_grid.loc[incomplete, TIME_COL].iloc[0])
            )

    replicates = replicates[replicates[TIME_COL].isin(grid_set)]

    if resample_count == 1:
        message = (
            "Bootstrap standard deviation from a single replicate has divisor "
            "B-1 = 0; reporting zero-width intervals"
        )
        warnings.warn(message, DegenerateBootstrapWarning, stacklevel=2)
        logger.warning(message)
        se = pd.DataFrame(0.0, index=pd.Index(grid, name=TIME_COL), columns=CONTRAST_COLUMNS)
    else:
        se = (
            replicates.groupby(TIME_COL)[CONTRAST_COLUMNS]
            .std(ddof=1)
            .reindex(grid)
        )
        se.index.name = TIME_COL

    se = se.rename(columns=SE_COLUMNS).reset_index()
    se[TIME_COL] = se[TIME_COL].astype(int)
    return se


def build_confidence_intervals(
    point_estimates: pd.DataFrame,
    standard_errors: pd.DataFrame,
    z: float = Z_CRITICAL,
) -> pd.DataFrame:
    """
    Combine resample-0 estimates with bootstrap standard deviations.

    Parameters
    ----------
    point_estimates : pd.DataFrame
        compute_contrasts output for resample 0
    standard_errors : pd.DataFrame
        Output of aggregate_bootstrap
    z : float
        Critical value (1.96 for 95% intervals)

    Returns
    -------
    pd.DataFrame
        One row per grid time with columns OUTPUT_COLUMNS
    """
    merged = point_estimates[[TIME_COL] + CONTRAST_COLUMNS].merge(
        standard_errors,
        on=TIME_COL,
        how='left',
        validate='one_to_one',
    )

    se_cols = list(SE_COLUMNS.values())
    missing = merged[se_cols].isna().any(axis=1)
    if missing.any():
        raise EstimationError(
            "No bootstrap standard deviation for grid time",
            time=float(merged.loc[missing, TIME_COL].iloc[0])
        )

    result = pd.DataFrame({TIME_COL: merged[TIME_COL].astype(int)})
    for metric in CONTRAST_COLUMNS:
        name = OUTPUT_METRIC_NAMES[metric]
        estimate = merged[metric]
        half_width = z * merged[SE_COLUMNS[metric]]
        result[name] = estimate
        result[f'{name}_LCL'] = estimate - half_width
        result[f'{name}_UCL'] = estimate + half_width

    return result[OUTPUT_COLUMNS].sort_values(TIME_COL).reset_index(drop=True)


def _run_one_resample(
    job: Tuple[int, pd.DataFrame, Dict[Tuple[int, int], float]],
    end_of_followup: int,
) -> pd.DataFrame:
    _, events, arm_totals = job
    return estimate_resample_curves(events, arm_totals, end_of_followup)


def run_replicates(
    events: pd.DataFrame,
    arm_totals: Dict[Tuple[int, int], float],
    end_of_followup: int,
    n_jobs: int = 1,
    progress: bool = False,
) -> pd.DataFrame:
    """
    Run the per-resample pipeline for every resample in events.

    Parameters
    ----------
    events : pd.DataFrame
        Canonical event table, all resamples
    arm_totals : Dict[Tuple[int, int], float]
        Initial risk-set weight per (resample, arm), from a prior pass
    end_of_followup : int
        Last grid time
    n_jobs : int
        Worker processes; 1 runs in-process
    progress : bool
        Show a tqdm progress bar

    Returns
    -------
    pd.DataFrame
        Stacked contrast curves for all resamples

    Raises
    ------
    EstimationError
        From any resample; the whole run is aborted
    """
    jobs = []
    for resample, resample_events in events.groupby(RESAMPLE_COL, sort=True):
        resample = int(resample)
        totals = {key: value for key, value in arm_totals.items() if key[0] == resample}
        jobs.append((resample, resample_events, totals))

    worker = partial(_run_one_resample, end_of_followup=end_of_followup)
    logger.info(f"Estimating MCC curves for {len(jobs)} resample(s) with n_jobs={n_jobs}")

    if n_jobs > 1:
        with ProcessPoolExecutor(max_workers=n_jobs) as executor:
            curves = list(tqdm(
                executor.map(worker, jobs),
                total=len(jobs), desc='Resamples', disable=not progress
            ))
    else:
        curves = [worker(job) for job in tqdm(jobs, desc='Resamples', disable=not progress)]

    return pd.concat(curves, ignore_index=True)


class WeightedMCCEstimator:
    """
    Weighted competing-risks MCC with two-arm contrasts and bootstrap CIs.

    Parameters
    ----------
    resample_count : int
        Number of bootstrap resamples B stacked in the input (indices 1..B)
    end_of_followup : int
        Last integer time of the output grid
    n_jobs : int
        Worker processes for the per-resample pipelines
    progress : bool
        Show a progress bar over resamples

    Attributes
    ----------
    arm_totals_ : Dict[Tuple[int, int], float]
        Initial risk-set weight per (resample, arm)
    replicate_curves_ : pd.DataFrame
        Grid curves and contrasts for resamples 1..B
    point_estimates_ : pd.DataFrame
        Grid curves and contrasts for resample 0
    standard_errors_ : pd.DataFrame
        Bootstrap standard deviations per grid time
    results_ : pd.DataFrame
        Final table with estimates and 95% confidence bounds
    """

    def __init__(
        self,
        resample_count: int,
        end_of_followup: int,
        n_jobs: int = 1,
        progress: bool = False,
    ):
        self.resample_count = resample_count
        self.end_of_followup = end_of_followup
        self.n_jobs = n_jobs
        self.progress = progress

        self.arm_totals_ = None
        self.replicate_curves_ = None
        self.point_estimates_ = None
        self.standard_errors_ = None
        self.results_ = None

    def fit(self, events: pd.DataFrame, **column_names) -> 'WeightedMCCEstimator':
        """
        Estimate MCC curves, contrasts and bootstrap intervals.

        Parameters
        ----------
        events : pd.DataFrame
            Resample-tagged weighted event table
        **column_names
            Column overrides passed to standardize_event_table

        Returns
        -------
        self
        """
        if int(self.resample_count) != self.resample_count or self.resample_count < 1:
            raise EstimationError(
                f"resample_count must be a positive integer, got {self.resample_count!r}"
            )
        make_time_grid(self.end_of_followup)

        events = standardize_event_table(events, **column_names)
        check_resample_indices(events, self.resample_count)
        logger.info(
            f"Loaded {len(events):,} records across {self.resample_count + 1} resamples"
        )

        self.arm_totals_ = compute_arm_weight_totals(events)

        curves = run_replicates(
            events,
            self.arm_totals_,
            self.end_of_followup,
            n_jobs=self.n_jobs,
            progress=self.progress,
        )

        is_original = curves[RESAMPLE_COL] == 0
        self.point_estimates_ = curves[is_original].reset_index(drop=True)
        self.replicate_curves_ = curves[~is_original].reset_index(drop=True)

        self.standard_errors_ = aggregate_bootstrap(
            self.replicate_curves_, self.resample_count, self.end_of_followup
        )
        self.results_ = build_confidence_intervals(
            self.point_estimates_, self.standard_errors_
        )

        logger.info(f"Estimated MCC on {len(self.results_)} grid times")
        return self


def estimate_mcc_with_ci(
    events: pd.DataFrame,
    resample_count: int,
    end_of_followup: int,
    n_jobs: int = 1,
    progress: bool = False,
    **column_names,
) -> pd.DataFrame:
    """
    Convenience function returning the final MCC table.

    Parameters
    ----------
    events : pd.DataFrame
        Resample-tagged weighted event table
    resample_count : int
        Number of bootstrap resamples B
    end_of_followup : int
        Last grid time
    n_jobs : int
        Worker processes for the per-resample pipelines
    progress : bool
        Show a progress bar over resamples
    **column_names
        Column overrides passed to standardize_event_table

    Returns
    -------
    pd.DataFrame
        One row per integer time with columns OUTPUT_COLUMNS
    """
    estimator = WeightedMCCEstimator(
        resample_count=resample_count,
        end_of_followup=end_of_followup,
        n_jobs=n_jobs,
        progress=progress,
    )
    estimator.fit(events, **column_names)
    return estimator.results_
