"""
Estimate weighted MCC curves with bootstrap confidence intervals.

The input is a resample-tagged event table (CSV or parquet) with one row
per event occurrence per subject, already carrying per-subject weights
and the stacked bootstrap resamples (index 0 = original cohort). The
output has one row per integer time in [0, end_of_followup] with MCC per
arm, their difference and ratio, and 95% confidence bounds.

Usage:
    weighted-mcc --input data/events.csv --output results/mcc.csv \
        --resamples 200 --end-followup 365
    python -m src.mcc.run --input data/events.parquet --output results/mcc.csv \
        --resamples 200 --end-followup 365 --n-jobs 8 --progress
"""

import argparse
import logging
import sys
from pathlib import Path

import pandas as pd

from .bootstrap import WeightedMCCEstimator
from .columns import (
    RESAMPLE_COL,
    ID_COL,
    TIME_COL,
    STATUS_COL,
    ARM_COL,
    WEIGHT_COL,
    REPORT_TIMES,
)
from .data_prep import standardize_event_table
from .errors import EstimationError
from .evaluation import summarize_event_table, format_results_table

logger = logging.getLogger(__package__)


def configure_logging(log_file: str = 'mcc_estimation.log') -> None:
    """Console and file handlers on the package logger."""
    logger.setLevel(logging.INFO)
    logger.handlers = []

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def load_event_table(filepath: Path) -> pd.DataFrame:
    """
    Load a resample-tagged event table.

    Args:
        filepath: Path to a .csv or .parquet file

    Returns:
        DataFrame as stored on disk
    """
    if filepath.suffix == '.parquet':
        return pd.read_parquet(filepath)
    return pd.read_csv(filepath)


def save_results(results: pd.DataFrame, filepath: Path) -> None:
    """Write the final table as CSV or parquet, by extension."""
    filepath.parent.mkdir(parents=True, exist_ok=True)
    if filepath.suffix == '.parquet':
        results.to_parquet(filepath, index=False)
    else:
        results.to_csv(filepath, index=False)
    logger.info(f"Saved {len(results):,} rows to {filepath}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Weighted MCC with competing risks and bootstrap confidence intervals'
    )
    parser.add_argument(
        '--input', '-i',
        type=str,
        required=True,
        help='Path to the resample-tagged event table (.csv or .parquet)'
    )
    parser.add_argument(
        '--output', '-o',
        type=str,
        required=True,
        help='Path to the output table (.csv or .parquet)'
    )
    parser.add_argument(
        '--resamples', '-b',
        type=int,
        required=True,
        help='Number of bootstrap resamples B (indices 1..B in the input)'
    )
    parser.add_argument(
        '--end-followup', '-e',
        type=int,
        required=True,
        help='Last integer time of the output grid'
    )
    parser.add_argument(
        '--n-jobs', '-j',
        type=int,
        default=1,
        help='Worker processes for the per-resample pipelines (default: 1)'
    )
    parser.add_argument(
        '--progress',
        action='store_true',
        help='Show a progress bar over resamples'
    )
    parser.add_argument(
        '--report-times',
        type=str,
        default=None,
        help=f'Comma-separated times to log a summary at (default: {REPORT_TIMES})'
    )
    parser.add_argument(
        '--log-file',
        type=str,
        default='mcc_estimation.log',
        help='Log file path; empty string disables file logging'
    )

    columns = parser.add_argument_group('column names')
    for option, default in [
        ('--resample-col', RESAMPLE_COL),
        ('--id-col', ID_COL),
        ('--time-col', TIME_COL),
        ('--status-col', STATUS_COL),
        ('--arm-col', ARM_COL),
        ('--weight-col', WEIGHT_COL),
    ]:
        columns.add_argument(option, type=str, default=default,
                             help=f'Input column (default: {default})')

    return parser


def main(argv=None) -> int:
    """Main entry point for MCC estimation."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_file)

    input_path = Path(args.input)
    output_path = Path(args.output)

    if not input_path.exists():
        logger.error(f"Input path does not exist: {input_path}")
        return 1

    column_names = dict(
        resample_col=args.resample_col,
        id_col=args.id_col,
        time_col=args.time_col,
        status_col=args.status_col,
        arm_col=args.arm_col,
        weight_col=args.weight_col,
    )

    report_times = REPORT_TIMES
    if args.report_times:
        report_times = [int(t) for t in args.report_times.split(',')]

    try:
        raw = load_event_table(input_path)
        logger.info(f"Loaded {len(raw):,} records from {input_path}")

        events = standardize_event_table(raw, **column_names)
        summary = summarize_event_table(events[events[RESAMPLE_COL] == 0])
        logger.info(f"Original sample:\n{summary.to_string(index=False)}")

        estimator = WeightedMCCEstimator(
            resample_count=args.resamples,
            end_of_followup=args.end_followup,
            n_jobs=args.n_jobs,
            progress=args.progress,
        )
        estimator.fit(events)
    except EstimationError as e:
        logger.error(f"Estimation failed: {e}")
        return 1

    save_results(estimator.results_, output_path)

    report = format_results_table(estimator.results_, times=report_times)
    if not report.empty:
        logger.info(f"Estimates at report times:\n{report.to_string()}")

    return 0


if __name__ == '__main__':
    sys.exit(main())
