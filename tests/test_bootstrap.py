"""
Tests for bootstrap aggregation, confidence intervals and the full
WeightedMCCEstimator pipeline.

Usage:
    pytest tests/test_bootstrap.py -v
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.mcc.columns import (
    RESAMPLE_COL, ID_COL, TIME_COL, STATUS_COL, ARM_COL, WEIGHT_COL,
    OUTPUT_COLUMNS, Z_CRITICAL,
)
from src.mcc.bootstrap import (
    aggregate_bootstrap,
    build_confidence_intervals,
    WeightedMCCEstimator,
    estimate_mcc_with_ci,
)
from src.mcc.data_prep import standardize_event_table, compute_arm_weight_totals
from src.mcc.estimator import estimate_resample_curves
from src.mcc.evaluation import format_results_table
from src.mcc.errors import EstimationError, DegenerateBootstrapWarning

TOLERANCE = 1e-9
RANDOM_SEED = 42
END_OF_FOLLOWUP = 60


def make_cohort(n_per_arm: int = 25, seed: int = RANDOM_SEED) -> pd.DataFrame:
    """Original cohort: recurrent events, then one censored/competing exit per subject."""
    rng = np.random.default_rng(seed)
    rows = []
    for arm in [0, 1]:
        for i in range(n_per_arm):
            subject = f'{arm}-{i}'
            weight = float(rng.uniform(0.5, 2.0))
            exit_time = int(rng.integers(10, 80))
            n_events = int(rng.poisson(1.5 + arm))
            for t in np.sort(rng.integers(1, exit_time, size=n_events)):
                rows.append((subject, int(t), 'event', arm, weight))
            exit_status = 'competing' if rng.random() < 0.25 else 'censored'
            rows.append((subject, exit_time, exit_status, arm, weight))
    return pd.DataFrame(rows, columns=[ID_COL, TIME_COL, STATUS_COL, ARM_COL, WEIGHT_COL])


def make_bootstrap_table(cohort: pd.DataFrame, resample_count: int,
                         seed: int = RANDOM_SEED, identical: bool = False) -> pd.DataFrame:
    """Stack the cohort (resample 0) with arm-stratified redraws 1..B."""
    rng = np.random.default_rng(seed)
    frames = [cohort.assign(**{RESAMPLE_COL: 0})]

    subjects = cohort.drop_duplicates(ID_COL)[[ID_COL, ARM_COL]]
    for b in range(1, resample_count + 1):
        drawn = []
        for arm, arm_subjects in subjects.groupby(ARM_COL):
            ids = arm_subjects[ID_COL].values
            if not identical:
                ids = rng.choice(ids, size=len(ids), replace=True)
            for j, subject in enumerate(ids):
                records = cohort[cohort[ID_COL] == subject]
                drawn.append(records.assign(**{ID_COL: f'{subject}#{j}'}))
        frames.append(pd.concat(drawn).assign(**{RESAMPLE_COL: b}))

    return pd.concat(frames, ignore_index=True)


def make_replicates(values_by_resample, times=(0, 1, 2)):
    """Contrast curves where every metric equals the resample's value at every time."""
    rows = []
    for resample, value in values_by_resample.items():
        for t in times:
            rows.append({RESAMPLE_COL: resample, TIME_COL: t,
                         'mcc_arm0': value, 'mcc_arm1': 2 * value,
                         'MCCD': value, 'MCCR': 2.0})
    return pd.DataFrame(rows)


# --- BootstrapAggregator ---

def test_aggregate_uses_replicates_only_with_bessel_correction():
    replicates = make_replicates({0: 100.0, 1: 1.0, 2: 2.0, 3: 4.0})
    se = aggregate_bootstrap(replicates, resample_count=3, end_of_followup=2)

    expected = np.std([1.0, 2.0, 4.0], ddof=1)
    assert se[TIME_COL].tolist() == [0, 1, 2]
    np.testing.assert_allclose(se['se_arm0'], expected)
    np.testing.assert_allclose(se['se_arm1'], 2 * expected)
    np.testing.assert_allclose(se['se_diff'], expected)
    np.testing.assert_allclose(se['se_ratio'], 0.0)


def test_aggregate_rejects_missing_replicate():
    replicates = make_replicates({1: 1.0, 2: 2.0, 3: 4.0})
    with pytest.raises(EstimationError, match='Incomplete bootstrap') as excinfo:
        aggregate_bootstrap(replicates, resample_count=4, end_of_followup=2)
    assert excinfo.value.resample == 4


def test_aggregate_rejects_replicate_missing_a_grid_time():
    replicates = make_replicates({1: 1.0, 2: 2.0, 3: 4.0})
    replicates = replicates[~((replicates[RESAMPLE_COL] == 2) & (replicates[TIME_COL] == 1))]
    with pytest.raises(EstimationError, match='does not cover') as excinfo:
        aggregate_bootstrap(replicates, resample_count=3, end_of_followup=2)
    assert excinfo.value.resample == 2
    assert excinfo.value.time == 1.0


def test_aggregate_rejects_missing_metric_value():
    replicates = make_replicates({1: 1.0, 2: 2.0})
    replicates.loc[3, 'MCCD'] = np.nan
    with pytest.raises(EstimationError, match='missing metric'):
        aggregate_bootstrap(replicates, resample_count=2, end_of_followup=2)


def test_single_replicate_is_flagged_and_zero_width():
    replicates = make_replicates({1: 3.0})
    with pytest.warns(DegenerateBootstrapWarning):
        se = aggregate_bootstrap(replicates, resample_count=1, end_of_followup=2)

    values = se[['se_arm0', 'se_arm1', 'se_diff', 'se_ratio']].values
    assert np.isfinite(values).all()
    assert (values == 0.0).all()

    point = make_replicates({0: 3.0})
    ci = build_confidence_intervals(point, se)
    assert (ci['MCC_arm0_LCL'] == ci['MCC_arm0']).all()
    assert (ci['MCC_arm0_UCL'] == ci['MCC_arm0']).all()


# --- ConfidenceIntervalBuilder ---

def test_confidence_intervals_are_symmetric():
    point = make_replicates({0: 1.0})
    se = pd.DataFrame({TIME_COL: [0, 1, 2], 'se_arm0': 0.1, 'se_arm1': 0.2,
                       'se_diff': 0.3, 'se_ratio': 0.4})
    ci = build_confidence_intervals(point, se)

    assert list(ci.columns) == OUTPUT_COLUMNS
    for name, sd in [('MCC_arm0', 0.1), ('MCC_arm1', 0.2), ('MCCD', 0.3), ('MCCR', 0.4)]:
        width = ci[f'{name}_UCL'] - ci[f'{name}_LCL']
        np.testing.assert_allclose(width, 2 * Z_CRITICAL * sd)
        np.testing.assert_allclose(ci[f'{name}_UCL'] - ci[name], ci[name] - ci[f'{name}_LCL'])


def test_confidence_intervals_require_every_grid_time():
    point = make_replicates({0: 1.0})
    se = pd.DataFrame({TIME_COL: [0, 1], 'se_arm0': 0.1, 'se_arm1': 0.2,
                       'se_diff': 0.3, 'se_ratio': 0.4})
    with pytest.raises(EstimationError) as excinfo:
        build_confidence_intervals(point, se)
    assert excinfo.value.time == 2.0


# --- Full pipeline ---

@pytest.fixture(scope='module')
def bootstrap_table():
    return make_bootstrap_table(make_cohort(), resample_count=20)


@pytest.fixture(scope='module')
def fitted(bootstrap_table):
    return WeightedMCCEstimator(resample_count=20, end_of_followup=END_OF_FOLLOWUP).fit(bootstrap_table)


def test_results_table_shape(fitted):
    results = fitted.results_
    assert list(results.columns) == OUTPUT_COLUMNS
    assert results[TIME_COL].tolist() == list(range(END_OF_FOLLOWUP + 1))
    assert not results.isna().any().any()


def test_curves_start_at_zero_and_never_decrease(fitted):
    curves = pd.concat([fitted.point_estimates_, fitted.replicate_curves_])
    for _, curve in curves.groupby(RESAMPLE_COL):
        for col in ['mcc_arm0', 'mcc_arm1']:
            values = curve.sort_values(TIME_COL)[col].values
            assert values[0] == 0.0
            assert (np.diff(values) >= -TOLERANCE).all()


def test_ratio_is_one_where_arm0_is_zero(fitted):
    curves = pd.concat([fitted.point_estimates_, fitted.replicate_curves_])
    zero = curves['mcc_arm0'] == 0.0
    assert zero.any()
    assert (curves.loc[zero, 'MCCR'] == 1.0).all()


def test_standard_errors_use_replicates_only(fitted):
    replicates = fitted.replicate_curves_
    assert sorted(replicates[RESAMPLE_COL].unique()) == list(range(1, 21))

    at_end = replicates[replicates[TIME_COL] == END_OF_FOLLOWUP]
    assert len(at_end) == 20
    expected = at_end['MCCD'].std(ddof=1)
    se = fitted.standard_errors_.set_index(TIME_COL)
    assert se.loc[END_OF_FOLLOWUP, 'se_diff'] == pytest.approx(expected)


def test_point_estimates_come_from_original_sample(fitted, bootstrap_table):
    original = standardize_event_table(bootstrap_table[bootstrap_table[RESAMPLE_COL] == 0])
    direct = estimate_resample_curves(
        original, compute_arm_weight_totals(original), END_OF_FOLLOWUP
    )
    np.testing.assert_allclose(fitted.results_['MCC_arm0'], direct['mcc_arm0'])
    np.testing.assert_allclose(fitted.results_['MCC_arm1'], direct['mcc_arm1'])
    np.testing.assert_allclose(fitted.results_['MCCD'], direct['MCCD'])


def test_interval_width_matches_standard_error(fitted):
    results = fitted.results_
    se = fitted.standard_errors_
    np.testing.assert_allclose(
        results['MCCD_UCL'] - results['MCCD_LCL'], 2 * Z_CRITICAL * se['se_diff']
    )
    np.testing.assert_allclose(
        results['MCCR_UCL'] - results['MCCR_LCL'], 2 * Z_CRITICAL * se['se_ratio']
    )


def test_identical_resamples_give_zero_width_intervals():
    table = make_bootstrap_table(make_cohort(n_per_arm=8), resample_count=3, identical=True)
    results = estimate_mcc_with_ci(table, resample_count=3, end_of_followup=30)

    for name in ['MCC_arm0', 'MCC_arm1', 'MCCD', 'MCCR']:
        np.testing.assert_allclose(results[f'{name}_LCL'], results[name], atol=1e-12)
        np.testing.assert_allclose(results[f'{name}_UCL'], results[name], atol=1e-12)


def test_parallel_run_matches_serial(bootstrap_table, fitted):
    parallel = WeightedMCCEstimator(
        resample_count=20, end_of_followup=END_OF_FOLLOWUP, n_jobs=2
    ).fit(bootstrap_table)
    pd.testing.assert_frame_equal(parallel.results_, fitted.results_)


def test_missing_resample_in_input_aborts(bootstrap_table):
    table = bootstrap_table[bootstrap_table[RESAMPLE_COL] != 7]
    with pytest.raises(EstimationError) as excinfo:
        WeightedMCCEstimator(resample_count=20, end_of_followup=END_OF_FOLLOWUP).fit(table)
    assert excinfo.value.resample == 7


def test_failing_replicate_aborts_run(bootstrap_table):
    table = bootstrap_table.copy()
    # Duplicate exit record for one subject in resample 5: attrition exceeds the arm total
    victim = table[(table[RESAMPLE_COL] == 5) & (table[STATUS_COL] != 'event')]
    table = pd.concat([table] + [victim] * 2, ignore_index=True)

    with pytest.raises(EstimationError) as excinfo:
        WeightedMCCEstimator(resample_count=20, end_of_followup=END_OF_FOLLOWUP).fit(table)
    assert excinfo.value.resample == 5


def test_fit_accepts_custom_column_names(bootstrap_table):
    renamed = bootstrap_table.rename(columns={RESAMPLE_COL: 'replicate', WEIGHT_COL: 'iptw'})
    renamed['code'] = renamed.pop(STATUS_COL).map({'censored': 0, 'event': 1, 'competing': 2})
    results = estimate_mcc_with_ci(
        renamed, resample_count=20, end_of_followup=END_OF_FOLLOWUP,
        resample_col='replicate', weight_col='iptw', status_col='code',
    )
    assert len(results) == END_OF_FOLLOWUP + 1


def test_event_at_time_zero_keeps_origin_at_zero():
    cohort = pd.DataFrame([
        ('a', 0, 'event', 0, 1.0),
        ('a', 3, 'censored', 0, 1.0),
        ('b', 4, 'censored', 0, 1.0),
        ('c', 2, 'event', 1, 1.0),
        ('c', 4, 'censored', 1, 1.0),
    ], columns=[ID_COL, TIME_COL, STATUS_COL, ARM_COL, WEIGHT_COL])
    table = make_bootstrap_table(cohort, resample_count=2)

    results = estimate_mcc_with_ci(table, resample_count=2, end_of_followup=5)
    by_time = results.set_index(TIME_COL)

    assert by_time.loc[0, 'MCC_arm0'] == 0.0
    assert by_time.loc[0, 'MCC_arm0_LCL'] == 0.0
    assert by_time.loc[0, 'MCCR'] == 1.0
    # Time-0 increment 1/2 shows from grid time 1
    assert by_time.loc[1, 'MCC_arm0'] == pytest.approx(0.5)
    assert by_time.loc[5, 'MCC_arm0'] == pytest.approx(0.5)


def test_invalid_configuration():
    table = make_bootstrap_table(make_cohort(n_per_arm=5), resample_count=2)
    with pytest.raises(EstimationError, match='resample_count'):
        WeightedMCCEstimator(resample_count=0, end_of_followup=10).fit(table)
    with pytest.raises(EstimationError, match='end_of_followup'):
        WeightedMCCEstimator(resample_count=2, end_of_followup=0).fit(table)


def test_format_results_table(fitted):
    report = format_results_table(fitted.results_, times=[10, 30, 60, 500], decimals=3)
    assert report.index.tolist() == [10, 30, 60]
    assert list(report.columns) == OUTPUT_COLUMNS[1:]
