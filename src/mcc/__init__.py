"""
Weighted Mean Cumulative Count (MCC) estimation with competing risks.

Estimates the expected cumulative number of recurrent events per subject
in two treatment arms, adjusting for censoring and a competing terminal
event, with arm contrasts and bootstrap confidence intervals. Weights
(e.g. IPTW) and bootstrap resamples are supplied in the input table.

Pipeline (per resample):
------------------------
WeightTotalizer -> EventTableBuilder -> RiskSetAccumulator ->
SurvivalCurveBuilder -> MCCAccumulator -> TimeGridNormalizer ->
ContrastCalculator; then BootstrapAggregator -> ConfidenceIntervalBuilder
across resamples.

Modules:
--------
columns : Column names and fixed conventions
data_prep : Input validation, arm weight totals, weighted time buckets
estimator : Risk-set, survival and MCC folds
grid : Integer time grid with carry-forward and arm contrasts
bootstrap : Bootstrap standard deviations, intervals and orchestration
evaluation : Summaries, report tables and lifelines cross-checks
run : Command-line entry point
"""

from .errors import (
    EstimationError,
    DegenerateBootstrapWarning,
)

from .data_prep import (
    standardize_event_table,
    validate_event_table,
    check_resample_indices,
    compute_arm_weight_totals,
    build_event_table,
)

from .estimator import (
    accumulate_risk_set,
    build_survival_curve,
    accumulate_mcc,
    estimate_mcc_curves,
    estimate_resample_curves,
)

from .grid import (
    make_time_grid,
    carry_forward_fill,
    normalize_to_grid,
    ratio_with_default,
    compute_contrasts,
)

from .bootstrap import (
    aggregate_bootstrap,
    build_confidence_intervals,
    run_replicates,
    WeightedMCCEstimator,
    estimate_mcc_with_ci,
)

from .evaluation import (
    summarize_event_table,
    format_results_table,
    competing_survival_reference,
)

__all__ = [
    # Errors
    'EstimationError',
    'DegenerateBootstrapWarning',
    # Data preparation
    'standardize_event_table',
    'validate_event_table',
    'check_resample_indices',
    'compute_arm_weight_totals',
    'build_event_table',
    # Estimator core
    'accumulate_risk_set',
    'build_survival_curve',
    'accumulate_mcc',
    'estimate_mcc_curves',
    'estimate_resample_curves',
    # Time grid and contrasts
    'make_time_grid',
    'carry_forward_fill',
    'normalize_to_grid',
    'ratio_with_default',
    'compute_contrasts',
    # Bootstrap
    'aggregate_bootstrap',
    'build_confidence_intervals',
    'run_replicates',
    'WeightedMCCEstimator',
    'estimate_mcc_with_ci',
    # Evaluation
    'summarize_event_table',
    'format_results_table',
    'competing_survival_reference',
]

__version__ = '0.1.0'
