from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Tuple

import logging

import pandas as pd

from gender_gap_tracker.config import METADATA_DIR
from gender_gap_tracker.core.errors import ConfigurationError
from gender_gap_tracker.core.scales import AGREE_VOCABULARY, DEFAULT_SCALES, ScaleDefinition

logger = logging.getLogger(__name__)

# Name we expect for the metadata workbook, under data/metadata/
METADATA_WORKBOOK_NAME = "scale_metadata.xlsx"

# In-memory caches
_METADATA_XLS: Optional[pd.ExcelFile] = None
_METADATA_PATH: Optional[Path] = None
_SCALES_CACHE: Optional[Tuple[ScaleDefinition, ...]] = None
_VOCAB_CACHE: Optional[Tuple[str, ...]] = None


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _find_metadata_workbook(metadata_dir: Path = METADATA_DIR) -> Optional[Path]:
    """
    Locate the metadata workbook.

    Primary expectation:
      data/metadata/scale_metadata.xlsx

    Otherwise the first .xlsx under the directory is used. Returns None when
    there is no workbook at all, in which case the default instrument applies.
    """
    primary = metadata_dir / METADATA_WORKBOOK_NAME
    if primary.exists():
        return primary

    candidates: List[Path] = sorted(metadata_dir.glob("*.xlsx")) if metadata_dir.exists() else []
    if not candidates:
        return None

    chosen = candidates[0]
    logger.warning("Using metadata workbook %s (could not find %s).", chosen, primary)
    return chosen


def _get_metadata_workbook(path: Optional[Path] = None, refresh: bool = False) -> Optional[pd.ExcelFile]:
    global _METADATA_XLS, _METADATA_PATH
    if _METADATA_XLS is not None and not refresh and (path is None or path == _METADATA_PATH):
        return _METADATA_XLS

    found = path if path is not None else _find_metadata_workbook()
    if found is None:
        return None
    if not found.exists():
        raise ConfigurationError(f"Metadata workbook not found: {found}")

    logger.info("Loading metadata workbook: %s", found)
    _METADATA_XLS = pd.ExcelFile(found)
    _METADATA_PATH = found
    return _METADATA_XLS


def clear_cache() -> None:
    global _METADATA_XLS, _METADATA_PATH, _SCALES_CACHE, _VOCAB_CACHE
    _METADATA_XLS = _METADATA_PATH = None
    _SCALES_CACHE = _VOCAB_CACHE = None


# ---------------------------------------------------------------------------
# Scale definitions (SCALES sheet)
# ---------------------------------------------------------------------------

def load_scale_definitions(path: Optional[Path] = None, refresh: bool = False) -> Tuple[ScaleDefinition, ...]:
    """
    Load composite scale definitions from the 'SCALES' sheet.

    Expected columns (case-insensitive):
      - scale     (e.g., 'social_conservatism')
      - item      (column name of one attitude item)
      - inverted  (optional; truthy on any row inverts the whole scale)
      - lower / upper (optional bounds; default 0 and 1)

    Items keep their sheet order. Without a workbook, DEFAULT_SCALES is returned.
    """
    global _SCALES_CACHE
    if _SCALES_CACHE is not None and not refresh and path is None:
        return _SCALES_CACHE

    xls = _get_metadata_workbook(path, refresh=refresh)
    if xls is None:
        logger.info("No metadata workbook; using default scale definitions.")
        return DEFAULT_SCALES

    if "SCALES" not in xls.sheet_names:
        raise ConfigurationError(f"Metadata workbook has no 'SCALES' sheet: {xls.sheet_names}")
    df = xls.parse("SCALES")
    lower = {str(c).strip().lower(): c for c in df.columns}

    scale_col = lower.get("scale")
    item_col = lower.get("item")
    if not (scale_col and item_col):
        raise ConfigurationError("SCALES sheet does not contain the expected columns ('scale', 'item').")
    inv_col = lower.get("inverted")
    lo_col = lower.get("lower")
    hi_col = lower.get("upper")

    items: Dict[str, List[str]] = {}
    inverted: Dict[str, bool] = {}
    bounds: Dict[str, Tuple[float, float]] = {}
    for _, row in df.iterrows():
        name = str(row[scale_col]).strip()
        item = str(row[item_col]).strip()
        if not name or not item or name.lower() == "nan" or item.lower() == "nan":
            continue
        items.setdefault(name, []).append(item)
        if inv_col is not None and pd.notna(row[inv_col]):
            flag = str(row[inv_col]).strip().lower() in {"true", "1", "yes", "y"}
            inverted[name] = inverted.get(name, False) or flag
        if lo_col is not None and hi_col is not None and pd.notna(row[lo_col]) and pd.notna(row[hi_col]):
            bounds[name] = (float(row[lo_col]), float(row[hi_col]))

    if not items:
        raise ConfigurationError("SCALES sheet defines no scales.")

    definitions = tuple(
        ScaleDefinition(
            name=name,
            items=tuple(item_list),
            inverted=inverted.get(name, False),
            bounds=bounds.get(name, (0.0, 1.0)),
        )
        for name, item_list in items.items()
    )
    _SCALES_CACHE = definitions
    return definitions


# ---------------------------------------------------------------------------
# Item vocabulary (VOCABULARY sheet)
# ---------------------------------------------------------------------------

def load_item_vocabulary(path: Optional[Path] = None, refresh: bool = False) -> Tuple[str, ...]:
    """
    Load the ordinal answer labels from the 'VOCABULARY' sheet.

    Expected columns:
      - position  (1 = lowest anchor)
      - label     (e.g., 'Strongly disagree')

    Without a workbook or sheet, the five-point agree vocabulary is returned.
    """
    global _VOCAB_CACHE
    if _VOCAB_CACHE is not None and not refresh and path is None:
        return _VOCAB_CACHE

    xls = _get_metadata_workbook(path, refresh=refresh)
    if xls is None or "VOCABULARY" not in xls.sheet_names:
        return AGREE_VOCABULARY

    df = xls.parse("VOCABULARY")
    lower = {str(c).strip().lower(): c for c in df.columns}
    pos_col, label_col = lower.get("position"), lower.get("label")
    if not (pos_col and label_col):
        raise ConfigurationError("VOCABULARY sheet does not contain the expected columns ('position', 'label').")

    ordered = df[[pos_col, label_col]].dropna().sort_values(pos_col, kind="mergesort")
    vocabulary = tuple(str(v).strip() for v in ordered[label_col])
    if len(vocabulary) < 2:
        raise ConfigurationError("VOCABULARY sheet needs at least two labels.")

    _VOCAB_CACHE = vocabulary
    return vocabulary
