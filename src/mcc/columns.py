"""
Column definitions and fixed conventions for the weighted MCC estimator.

The input is a resample-tagged event table with one row per event
occurrence per subject. Resample 0 is the original cohort; resamples
1..B are bootstrap redraws stacked into the same table.
"""

# Canonical input columns
RESAMPLE_COL = 'resample_index'
ID_COL = 'subject_id'
TIME_COL = 'time'
STATUS_COL = 'status'
ARM_COL = 'arm'
WEIGHT_COL = 'weight'

EVENT_TABLE_COLUMNS = [
    RESAMPLE_COL,
    ID_COL,
    TIME_COL,
    STATUS_COL,
    ARM_COL,
    WEIGHT_COL,
]

# Status labels
STATUS_CENSORED = 'censored'
STATUS_EVENT = 'event'
STATUS_COMPETING = 'competing'

STATUS_LABELS = [STATUS_CENSORED, STATUS_EVENT, STATUS_COMPETING]

# Numeric status codes accepted on input (0=censored, 1=event, 2=competing)
STATUS_CODE_MAP = {
    0: STATUS_CENSORED,
    1: STATUS_EVENT,
    2: STATUS_COMPETING,
}

# Treatment arms
ARMS = [0, 1]

# Intermediate columns
ARM_TOTAL_COL = 'arm_total'
CENSOR_WEIGHT_COL = 'censor_weight'
EVENT_WEIGHT_COL = 'event_weight'
COMPETING_WEIGHT_COL = 'competing_weight'

STATUS_WEIGHT_COLUMNS = {
    STATUS_CENSORED: CENSOR_WEIGHT_COL,
    STATUS_EVENT: EVENT_WEIGHT_COL,
    STATUS_COMPETING: COMPETING_WEIGHT_COL,
}

CUM_CENSOR_COL = 'cum_censor'
CUM_COMPETING_COL = 'cum_competing'
AT_RISK_COL = 'at_risk'
AT_RISK_PREV_COL = 'at_risk_previous'

FACTOR_COL = 'factor'
CUM_SURVIVAL_COL = 'cum_survival'
CUM_SURVIVAL_PREV_COL = 'cum_survival_previous'

INCREMENT_COL = 'increment'
MCC_COL = 'mcc'

# Grid / contrast columns
MCC_ARM0_COL = 'mcc_arm0'
MCC_ARM1_COL = 'mcc_arm1'
MCCD_COL = 'MCCD'
MCCR_COL = 'MCCR'

CONTRAST_COLUMNS = [MCC_ARM0_COL, MCC_ARM1_COL, MCCD_COL, MCCR_COL]

# Bootstrap standard deviation columns, keyed by the metric they describe
SE_COLUMNS = {
    MCC_ARM0_COL: 'se_arm0',
    MCC_ARM1_COL: 'se_arm1',
    MCCD_COL: 'se_diff',
    MCCR_COL: 'se_ratio',
}

# Output table naming
OUTPUT_METRIC_NAMES = {
    MCC_ARM0_COL: 'MCC_arm0',
    MCC_ARM1_COL: 'MCC_arm1',
    MCCD_COL: 'MCCD',
    MCCR_COL: 'MCCR',
}

OUTPUT_COLUMNS = [
    TIME_COL,
    'MCC_arm0', 'MCC_arm0_LCL', 'MCC_arm0_UCL',
    'MCC_arm1', 'MCC_arm1_LCL', 'MCC_arm1_UCL',
    'MCCD', 'MCCD_LCL', 'MCCD_UCL',
    'MCCR', 'MCCR_LCL', 'MCCR_UCL',
]

# Normal-approximation critical value for 95% intervals
Z_CRITICAL = 1.96

# MCCR when mcc_arm0 is zero or the ratio is undefined
UNDEFINED_RATIO_VALUE = 1.0

# Floating-point slack when checking the at-risk weight
AT_RISK_TOLERANCE = 1e-9

# Default report times for format_results_table
REPORT_TIMES = [30, 60, 90, 180, 365]
