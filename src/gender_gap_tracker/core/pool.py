from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import logging

import numpy as np
import pandas as pd

from gender_gap_tracker.config import (
    GENDER_COL,
    GENERATION_COL,
    RESPONDENT_ID_COL,
    STRATIFICATION_FIELDS,
    WEIGHT_COL,
)
from gender_gap_tracker.core.errors import ConfigurationError, PoolValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Respondent:
    """
    Read-only view of one pool row.

    The pool itself stays a DataFrame; this record is for callers that want
    to work respondent by respondent.
    """
    respondent_id: str
    weight: float
    demographics: Dict[str, Optional[str]]
    responses: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(
        cls,
        row: pd.Series,
        demographic_fields: Sequence[str] = STRATIFICATION_FIELDS,
    ) -> "Respondent":
        demographics: Dict[str, Optional[str]] = {}
        for name in demographic_fields:
            value = row.get(name)
            demographics[name] = None if _is_missing(value) else str(value)

        skip = set(demographic_fields) | {RESPONDENT_ID_COL, WEIGHT_COL}
        responses = {k: row[k] for k in row.index if k not in skip}
        return cls(
            respondent_id=str(row[RESPONDENT_ID_COL]),
            weight=float(row[WEIGHT_COL]),
            demographics=demographics,
            responses=responses,
        )


def _is_missing(x: Any) -> bool:
    if x is None:
        return True
    try:
        return bool(pd.isna(x))
    except (TypeError, ValueError):
        return False


def require_columns(pool: pd.DataFrame, columns: Iterable[str], what: str) -> None:
    missing = [c for c in columns if c not in pool.columns]
    if missing:
        raise ConfigurationError(
            f"Missing required {what} fields: {', '.join(missing)}. "
            f"Present columns: {list(pool.columns)}"
        )


def validate_pool(
    pool: pd.DataFrame,
    id_col: str = RESPONDENT_ID_COL,
    weight_col: str = WEIGHT_COL,
) -> None:
    """
    Check the respondent contract:
      - identifier and weight columns exist
      - identifiers are present and unique
      - weights are finite and strictly positive
    """
    require_columns(pool, [id_col, weight_col], "respondent")

    ids = pool[id_col]
    if ids.isna().any():
        raise PoolValidationError(f"{int(ids.isna().sum())} respondents have no identifier.")

    dupes = ids[ids.duplicated()]
    if not dupes.empty:
        preview = list(dupes.astype(str).unique()[:5])
        raise PoolValidationError(f"Duplicate respondent ids in pool, e.g. {preview}")

    weights = pd.to_numeric(pool[weight_col], errors="coerce").to_numpy(dtype=float)
    bad = ~np.isfinite(weights) | (weights <= 0)
    if bad.any():
        raise PoolValidationError(
            f"{int(bad.sum())} respondents have a missing, non-finite or non-positive weight."
        )


def index_by_id(pool: pd.DataFrame, id_col: str = RESPONDENT_ID_COL) -> pd.DataFrame:
    """Return the pool indexed by string respondent id."""
    out = pool.copy()
    out.index = out[id_col].astype(str)
    out.index.name = id_col
    return out


def weights_by_id(pool: pd.DataFrame) -> Dict[str, float]:
    return dict(zip(pool[RESPONDENT_ID_COL].astype(str), pool[WEIGHT_COL].astype(float)))


def add_gender_age(pool: pd.DataFrame, sep: str = "_") -> pd.DataFrame:
    """
    Add a 'gender_age' cohort label such as 'female_18_TO_24'.

    Missing parts are dropped from the label; a respondent missing both gets NA.
    """
    out = pool.copy()
    labels: List[Optional[str]] = []
    for gender, age in zip(out[GENDER_COL], out[GENERATION_COL]):
        parts = [str(p) for p in (gender, age) if not _is_missing(p)]
        labels.append(sep.join(parts) if parts else None)
    out["gender_age"] = labels
    return out
