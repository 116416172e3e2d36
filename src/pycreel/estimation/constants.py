"""
Constants used throughout creel estimation.
"""

# Confidence intervals
DEFAULT_CONF_LEVEL = 0.95

# Variance methods
LINEARIZATION = "linearization"
SURVEY_ALIAS = "survey"
BOOTSTRAP = "bootstrap"
JACKKNIFE = "jackknife"
BRR = "brr"
REPLICATE_METHODS = (BOOTSTRAP, JACKKNIFE, BRR)
VARIANCE_METHODS = (LINEARIZATION, SURVEY_ALIAS) + REPLICATE_METHODS

# Statistics computed by the variance engine
STATISTICS = ("total", "mean", "ratio")

# Replicate generation
DEFAULT_BOOTSTRAP_REPLICATES = 500
BOOTSTRAP_CHUNK_SIZE = 256
PARALLEL_CHUNK_THRESHOLD = 4

# Sample size thresholds
SMALL_GROUP_THRESHOLD = 3
ADEQUATE_SAMPLE_SIZE = 30

# Inclusion probabilities above 1 by less than this are rounding noise
PROBABILITY_TOLERANCE = 1e-3

# Share of truncated interviews above which truncation is a warning
TRUNCATION_WARNING_RATE = 0.10

# Weight diagnostics: a weight is extreme beyond these multiples of the mean
EXTREME_WEIGHT_HIGH = 5.0
EXTREME_WEIGHT_LOW = 0.2

MINUTES_PER_HOUR = 60.0

# Internal design columns
WEIGHT_COL = "_weight"
STRATUM_COL = "_stratum"
PSU_COL = "_psu"
FPC_COL = "_fpc"
ROW_COL = "_row"
DESIGN_COLS = (WEIGHT_COL, STRATUM_COL, PSU_COL, FPC_COL, ROW_COL)
