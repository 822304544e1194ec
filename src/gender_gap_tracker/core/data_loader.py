from __future__ import annotations

import io
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import logging

import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from gender_gap_tracker.config import (
    NA_TOKENS,
    RESPONDENT_ID_COL,
    RESPONDENT_POOL_URL,
    WAVES_DIR,
    WEIGHT_COL,
)
from gender_gap_tracker.core.errors import DataLoaderError
from gender_gap_tracker.core.partitioner import Wave
from gender_gap_tracker.core.pool import index_by_id, validate_pool
from gender_gap_tracker.core.trend import TrendSeries

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def _build_retry_session() -> requests.Session:
    """
    Build a requests Session with conservative retries.
    Pool exports are large and the hosting endpoint can be transiently flaky.
    """
    session = requests.Session()

    retry = Retry(
        total=5,
        connect=5,
        read=5,
        status=5,
        backoff_factor=0.6,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET"}),
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retry, pool_connections=4, pool_maxsize=4)
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    return session


_SESSION: Optional[requests.Session] = None


def _get_session() -> requests.Session:
    global _SESSION
    if _SESSION is None:
        _SESSION = _build_retry_session()
    return _SESSION


def _fetch_csv(url: str, timeout_seconds: int, id_col: str = RESPONDENT_ID_COL) -> pd.DataFrame:
    try:
        resp = _get_session().get(url, timeout=timeout_seconds)
    except requests.RequestException as exc:
        raise DataLoaderError(f"HTTP error while fetching respondent pool: {exc}") from exc

    if resp.status_code != 200:
        preview = (resp.text or "")[:200]
        raise DataLoaderError(f"Pool download failed (status={resp.status_code}). Preview: {preview}")

    try:
        return pd.read_csv(io.StringIO(resp.text), dtype={id_col: str})
    except (ValueError, pd.errors.ParserError) as exc:
        raise DataLoaderError(f"Pool download is not a readable CSV: {exc}") from exc


def _read_file(path: Path, id_col: str = RESPONDENT_ID_COL) -> pd.DataFrame:
    if not path.exists():
        raise DataLoaderError(f"Respondent pool file not found: {path}")

    suffix = path.suffix.lower()
    try:
        if suffix == ".csv":
            return pd.read_csv(path, dtype={id_col: str})
        if suffix in {".xlsx", ".xls"}:
            return pd.read_excel(path, dtype={id_col: str})
        if suffix == ".sav":
            # needs pyreadstat
            return pd.read_spss(path)
    except ImportError as exc:
        raise DataLoaderError(f"Reading {suffix} files needs an optional dependency: {exc}") from exc
    except (ValueError, pd.errors.ParserError) as exc:
        raise DataLoaderError(f"Could not parse {path}: {exc}") from exc

    raise DataLoaderError(f"Unsupported pool format '{suffix}' for {path}")


def normalize_na_tokens(df: pd.DataFrame, tokens: Sequence[str] = NA_TOKENS) -> pd.DataFrame:
    """Replace survey non-answers with missing values in every column."""
    out = df.copy()
    token_set = set(tokens)
    for col in out.columns:
        if not pd.api.types.is_numeric_dtype(out[col]) and not pd.api.types.is_bool_dtype(out[col]):
            values = out[col].astype(object)
            out[col] = values.where(~values.isin(token_set), None)
    return out


def load_respondent_pool(
    source: Optional[PathLike] = None,
    *,
    weight_col: str = WEIGHT_COL,
    id_col: str = RESPONDENT_ID_COL,
    timeout_seconds: int = 120,
    validate: bool = True,
) -> pd.DataFrame:
    """
    Read the respondent pool from a local file or an http(s) URL.

    Key behavior:
      - non-answers ("Don't know", "dk", ...) become missing
      - weight_col / id_col are renamed to the canonical column names
      - ids are strings
      - the pool contract is checked unless validate=False

    Falls back to RESPONDENT_POOL_URL when no source is given.
    """
    src = str(source) if source is not None else RESPONDENT_POOL_URL
    if not src:
        raise DataLoaderError("No pool source given and GAP_TRACKER_POOL_URL is not set.")

    if src.startswith(("http://", "https://")):
        logger.info("Fetching respondent pool from %s", src)
        df = _fetch_csv(src, timeout_seconds, id_col)
    else:
        logger.info("Loading respondent pool from %s", src)
        df = _read_file(Path(src), id_col)

    df = df.rename(columns={weight_col: WEIGHT_COL, id_col: RESPONDENT_ID_COL})
    df = normalize_na_tokens(df)
    if RESPONDENT_ID_COL in df.columns:
        df[RESPONDENT_ID_COL] = df[RESPONDENT_ID_COL].astype(str).str.strip()

    if validate:
        validate_pool(df)

    logger.info("Pool loaded: %d rows x %d columns", df.shape[0], df.shape[1])
    return df


# ---------------------------------------------------------------------------
# Waves
# ---------------------------------------------------------------------------

def wave_frame(pool: pd.DataFrame, wave: Wave) -> pd.DataFrame:
    """Pool rows for one wave, tagged with survey_wave, wave_number, survey_date."""
    rows = index_by_id(pool).loc[list(wave.respondent_ids)].reset_index(drop=True)
    rows["survey_wave"] = wave.label
    rows["wave_number"] = wave.number
    if wave.interview_dates:
        rows["survey_date"] = pd.to_datetime(list(wave.interview_dates))
    return rows


def save_waves(
    pool: pd.DataFrame,
    waves: Sequence[Wave],
    output_dir: PathLike = WAVES_DIR,
    prefix: str = "wave_",
) -> Dict[str, Path]:
    """
    Write one CSV per wave plus a combined file. Returns label -> path,
    with the combined file under 'combined'.
    """
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    written: Dict[str, Path] = {}
    frames: List[pd.DataFrame] = []
    for wave in waves:
        df = wave_frame(pool, wave)
        path = out_dir / f"{prefix}{wave.number}_{wave.label}.csv"
        df.to_csv(path, index=False)
        written[wave.label] = path
        frames.append(df)
        logger.info("Saved %s (%d rows)", path, len(df))

    combined = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()
    combined_path = out_dir / f"{prefix}all_combined.csv"
    combined.to_csv(combined_path, index=False)
    written["combined"] = combined_path
    logger.info("Saved combined dataset %s (%d rows)", combined_path, len(combined))
    return written


# ---------------------------------------------------------------------------
# Trend table
# ---------------------------------------------------------------------------

def write_trend_table(series: TrendSeries, path: PathLike) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    series.to_frame().to_csv(target, index=False)
    logger.info("Trend table written to %s (%d rows)", target, len(series))
    return target


# Only these columns may hold missing values; text columns are read verbatim
# so a cohort labelled "NA" survives the round trip.
_TREND_NULLABLE_COLUMNS = (
    "mean_male", "mean_female", "gap", "ci_low", "ci_high",
    "n_male", "n_female", "se", "p_value", "note",
)
_TREND_TEXT_COLUMNS = ("wave_label", "scale", "dimension", "cohort")


def read_trend_table(path: PathLike) -> TrendSeries:
    """Load a persisted trend table; a missing file is an empty history."""
    source = Path(path)
    if not source.exists():
        logger.info("No trend history at %s; starting empty", source)
        return TrendSeries()
    try:
        header = list(pd.read_csv(source, nrows=0).columns)
        df = pd.read_csv(
            source,
            dtype={c: str for c in _TREND_TEXT_COLUMNS if c in header},
            keep_default_na=False,
            na_values={c: ["", "nan", "NaN"] for c in _TREND_NULLABLE_COLUMNS if c in header},
        )
    except (ValueError, pd.errors.ParserError) as exc:
        raise DataLoaderError(f"Could not parse trend table {source}: {exc}") from exc
    return TrendSeries.from_frame(df)
