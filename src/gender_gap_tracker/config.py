from __future__ import annotations

import os
from pathlib import Path
from typing import Tuple

from gender_gap_tracker.core.errors import ConfigurationError

# ---------------------------------------------------------------------------
# Project paths
# ---------------------------------------------------------------------------

# Root of the project (repo root)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Data directories
DATA_DIR = PROJECT_ROOT / "data"
WAVES_DIR = DATA_DIR / "waves"            # one CSV per generated wave + combined file
METADATA_DIR = DATA_DIR / "metadata"      # scale / vocabulary workbook
TREND_STORE_PATH = Path(
    os.getenv("GAP_TRACKER_TREND_STORE", str(DATA_DIR / "trend_series.csv")).strip()
)

# ---------------------------------------------------------------------------
# App identity
# ---------------------------------------------------------------------------

APP_NAME = "Gender Gap Tracker"
APP_VERSION = "0.1.0"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"Environment variable {name}={raw!r} is not a number.") from exc


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"Environment variable {name}={raw!r} is not an integer.") from exc


# ---------------------------------------------------------------------------
# Remote pool source
#
# Optional CSV endpoint serving the full respondent pool. When empty, the
# pool must be read from a local file (see core.data_loader).
# ---------------------------------------------------------------------------

RESPONDENT_POOL_URL = os.getenv("GAP_TRACKER_POOL_URL", "").strip()

# ---------------------------------------------------------------------------
# Respondent schema
# ---------------------------------------------------------------------------

RESPONDENT_ID_COL = "respondent_id"
WEIGHT_COL = "weight"

# The five weighting variables of the source survey; waves are stratified on all of them
STRATIFICATION_FIELDS: Tuple[str, ...] = ("age", "gender", "region", "ethnicity", "education")

GENDER_COL = "gender"
MALE_LABEL = "male"
FEMALE_LABEL = "female"
GENERATION_COL = "age"
EDUCATION_COL = "education"
HIGH_EDUCATION_LABEL = "high"
REGION_COL = "region"

# Category used for missing values wherever a missing value must still be grouped
MISSING_CATEGORY = "NA"

# Non-answers recoded to missing when a pool is loaded
NA_TOKENS: Tuple[str, ...] = ("Don't know", "dk", "no_answer", "prefer_not_to_say")

# ---------------------------------------------------------------------------
# Wave generation defaults
# ---------------------------------------------------------------------------

DEFAULT_SEED = _env_int("GAP_TRACKER_SEED", 42)
DEFAULT_N_WAVES = _env_int("GAP_TRACKER_N_WAVES", 4)
DEFAULT_MIN_WAVE_SIZE = _env_int("GAP_TRACKER_MIN_WAVE_SIZE", 5000)
DEFAULT_MAX_WAVE_SHARE = 0.25
DEFAULT_MAX_WAVE_SIZE = 6000

# Scale-down factor applied on top of the exact feasibility ratio
FEASIBILITY_MARGIN = 0.95

# Last wave takes the whole remaining pool when it is smaller than ratio * target
LAST_WAVE_ABSORB_RATIO = _env_float("GAP_TRACKER_LAST_WAVE_RATIO", 1.5)

# Max absolute deviation of a category share between wave and pool
DRIFT_TOLERANCE = _env_float("GAP_TRACKER_DRIFT_TOLERANCE", 0.02)
MIN_DRIFT_WAVE_SIZE = 200

# First wave is labelled with this month; later waves follow month by month
FIRST_WAVE_MONTH = os.getenv("GAP_TRACKER_FIRST_WAVE_MONTH", "2024-05").strip()
WAVE_FIELDWORK_DAYS = 28

# ---------------------------------------------------------------------------
# Estimation defaults
# ---------------------------------------------------------------------------

MIN_EFFECTIVE_N = _env_float("GAP_TRACKER_MIN_EFFECTIVE_N", 30.0)
CONFIDENCE_LEVEL = _env_float("GAP_TRACKER_CONFIDENCE_LEVEL", 0.95)
TREND_CHANGE_THRESHOLD = _env_float("GAP_TRACKER_CHANGE_THRESHOLD", 0.05)
