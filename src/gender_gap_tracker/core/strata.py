from __future__ import annotations

from typing import Dict, List, Sequence, Tuple

import logging

import pandas as pd

from gender_gap_tracker.config import MISSING_CATEGORY, RESPONDENT_ID_COL
from gender_gap_tracker.core.pool import require_columns

logger = logging.getLogger(__name__)

StrataKey = Tuple[str, ...]


def normalize_category(series: pd.Series) -> pd.Series:
    """String categories with missing values mapped to their own category."""
    return series.astype(object).where(series.notna(), MISSING_CATEGORY).astype(str).str.strip()


def strata_keys(pool: pd.DataFrame, fields: Sequence[str]) -> pd.Series:
    """One StrataKey per respondent, aligned with the pool index."""
    if not fields:
        raise ValueError("At least one stratification field is required.")
    require_columns(pool, fields, "stratification")

    columns = [normalize_category(pool[f]) for f in fields]
    keys = list(zip(*columns))
    return pd.Series(keys, index=pool.index, dtype=object)


def build_strata_index(
    pool: pd.DataFrame,
    fields: Sequence[str],
    id_col: str = RESPONDENT_ID_COL,
) -> Dict[StrataKey, List[str]]:
    """
    Map every StrataKey to the ids that share it.

    Keys are returned in lexicographic order and ids keep pool order, so the
    partitioner can consume random draws in a stable sequence. Counts sum to
    the pool size because missing values form their own category.

    Raises ConfigurationError if any field is absent from the pool.
    """
    require_columns(pool, [id_col], "respondent")
    keys = strata_keys(pool, fields)

    grouped: Dict[StrataKey, List[str]] = {}
    for key, rid in zip(keys, pool[id_col].astype(str)):
        grouped.setdefault(key, []).append(rid)

    index = {k: grouped[k] for k in sorted(grouped)}

    sizes = [len(v) for v in index.values()]
    logger.info(
        "Built %d strata over %s (smallest=%s, largest=%s)",
        len(index), list(fields), min(sizes, default=0), max(sizes, default=0),
    )
    return index


def strata_frame(index: Dict[StrataKey, List[str]], fields: Sequence[str]) -> pd.DataFrame:
    """Stratum counts as a table, largest first."""
    rows = [dict(zip(fields, key), n=len(ids)) for key, ids in index.items()]
    df = pd.DataFrame(rows, columns=list(fields) + ["n"])
    return df.sort_values("n", ascending=False, kind="mergesort").reset_index(drop=True)
