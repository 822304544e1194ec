from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import logging
import math

import numpy as np
import pandas as pd

from gender_gap_tracker.config import RESPONDENT_ID_COL
from gender_gap_tracker.core.errors import ConfigurationError
from gender_gap_tracker.core.pool import require_columns

logger = logging.getLogger(__name__)

# Five-point agree/disagree vocabulary, lowest anchor first
AGREE_VOCABULARY: Tuple[str, ...] = (
    "Strongly disagree",
    "Disagree",
    "Neither agree nor disagree",
    "Agree",
    "Strongly agree",
)

DEFAULT_BOUNDS: Tuple[float, float] = (0.0, 1.0)


@dataclass(frozen=True)
class ScaleDefinition:
    """
    A composite scale: the mean of its items' scores.

    inverted flips every item around the midpoint of `bounds` before averaging,
    so that a higher value always means more of the named trait.
    """
    name: str
    items: Tuple[str, ...]
    inverted: bool = False
    bounds: Tuple[float, float] = DEFAULT_BOUNDS

    def __post_init__(self) -> None:
        if not self.items:
            raise ConfigurationError(f"Scale '{self.name}' has no items.")
        lo, hi = self.bounds
        if not lo < hi:
            raise ConfigurationError(f"Scale '{self.name}' has invalid bounds {self.bounds}.")


@dataclass(frozen=True)
class ScaleScore:
    value: Optional[float]
    missing_items: int
    n_items: int

    @property
    def defined(self) -> bool:
        return self.value is not None


SOCIAL_CONSERVATISM = ScaleDefinition(
    name="social_conservatism",
    items=("soc_respect", "soc_deathpen", "soc_schools", "soc_censor", "soc_punish"),
)

# Agreeing with these items is a left-wing position, hence the inversion
ECONOMIC_RIGHTISM = ScaleDefinition(
    name="economic_rightism",
    items=("econ_redist", "econ_bigbiz", "econ_unfair", "econ_onelaw", "econ_exploit"),
    inverted=True,
)

DEFAULT_SCALES: Tuple[ScaleDefinition, ...] = (SOCIAL_CONSERVATISM, ECONOMIC_RIGHTISM)


def anchor_map(vocabulary: Sequence[str], bounds: Tuple[float, float] = DEFAULT_BOUNDS) -> Dict[str, float]:
    """Evenly spaced anchors from bounds[0] (first label) to bounds[1] (last label)."""
    if len(vocabulary) < 2:
        raise ConfigurationError("An item vocabulary needs at least two labels.")
    if len(set(vocabulary)) != len(vocabulary):
        raise ConfigurationError(f"Duplicate labels in item vocabulary: {list(vocabulary)}")
    lo, hi = bounds
    step = (hi - lo) / (len(vocabulary) - 1)
    anchors = {label: lo + i * step for i, label in enumerate(vocabulary)}
    # endpoints exactly, whatever the float step does
    anchors[vocabulary[-1]] = hi
    return anchors


def recode_item(
    series: pd.Series,
    vocabulary: Sequence[str] = AGREE_VOCABULARY,
    bounds: Tuple[float, float] = DEFAULT_BOUNDS,
) -> pd.Series:
    """Map labels to anchors; anything outside the vocabulary becomes NaN, never 0."""
    anchors = anchor_map(vocabulary, bounds)
    labels = series.astype(object).where(series.notna(), None)
    return labels.map(lambda x: anchors.get(str(x).strip(), np.nan) if x is not None else np.nan).astype(float)


def scale_frame(
    pool: pd.DataFrame,
    vocabulary: Sequence[str] = AGREE_VOCABULARY,
    definitions: Sequence[ScaleDefinition] = DEFAULT_SCALES,
) -> pd.DataFrame:
    """
    Composite scores for every respondent as a table.

    Columns: respondent_id, then '<scale>' and '<scale>_na_count' per scale.
    A scale whose items are all missing is NaN for that respondent.
    """
    require_columns(pool, [RESPONDENT_ID_COL], "respondent")
    for d in definitions:
        require_columns(pool, d.items, f"scale-definition ('{d.name}')")

    out = pd.DataFrame({RESPONDENT_ID_COL: pool[RESPONDENT_ID_COL].astype(str).to_numpy()})
    for d in definitions:
        lo, hi = d.bounds
        items = pd.DataFrame({item: recode_item(pool[item], vocabulary, d.bounds) for item in d.items})
        if d.inverted:
            items = (lo + hi) - items
        values = items.mean(axis=1, skipna=True).clip(lower=lo, upper=hi)
        out[d.name] = values.to_numpy()
        out[f"{d.name}_na_count"] = items.isna().sum(axis=1).astype(int).to_numpy()

        undefined = int(out[d.name].isna().sum())
        if undefined:
            logger.info("Scale %s undefined for %d respondents (all items missing)", d.name, undefined)
    return out


class ScaleBuilder:
    """
    Derives ScaleScores once per respondent and keeps them for the run.

    Calling build() again with overlapping pools only scores ids not seen yet.
    """

    def __init__(
        self,
        vocabulary: Sequence[str] = AGREE_VOCABULARY,
        definitions: Sequence[ScaleDefinition] = DEFAULT_SCALES,
    ) -> None:
        names = [d.name for d in definitions]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate scale names: {names}")
        self.vocabulary = tuple(vocabulary)
        self.definitions = tuple(definitions)
        self._cache: Dict[str, Dict[str, ScaleScore]] = {}

    @property
    def scale_names(self) -> List[str]:
        return [d.name for d in self.definitions]

    def build(self, pool: pd.DataFrame) -> Dict[str, Dict[str, ScaleScore]]:
        require_columns(pool, [RESPONDENT_ID_COL], "respondent")
        ids = pool[RESPONDENT_ID_COL].astype(str)

        fresh = pool[~ids.isin(list(self._cache)).to_numpy()]
        if not fresh.empty:
            frame = scale_frame(fresh, self.vocabulary, self.definitions)
            for rec in frame.to_dict(orient="records"):
                scores: Dict[str, ScaleScore] = {}
                for d in self.definitions:
                    value = rec[d.name]
                    scores[d.name] = ScaleScore(
                        value=None if math.isnan(value) else float(value),
                        missing_items=int(rec[f"{d.name}_na_count"]),
                        n_items=len(d.items),
                    )
                self._cache[str(rec[RESPONDENT_ID_COL])] = scores
            logger.info("Scored %d respondents on %s", len(frame), self.scale_names)

        return {rid: self._cache[rid] for rid in ids}


def build_scales(
    pool: pd.DataFrame,
    item_vocabulary: Sequence[str] = AGREE_VOCABULARY,
    scale_definitions: Sequence[ScaleDefinition] = DEFAULT_SCALES,
) -> Dict[str, Dict[str, ScaleScore]]:
    return ScaleBuilder(item_vocabulary, scale_definitions).build(pool)


def scale_values(scores: Mapping[str, Mapping[str, ScaleScore]], scale: str) -> Dict[str, Optional[float]]:
    """Flatten to {respondent_id: value} for one scale."""
    return {rid: s[scale].value for rid, s in scores.items() if scale in s}


def filter_by_coverage(
    scores: Mapping[str, Mapping[str, ScaleScore]],
    scale: str,
    max_missing: int,
) -> Dict[str, Dict[str, ScaleScore]]:
    """Keep respondents whose `scale` is defined with at most max_missing missing items."""
    return {
        rid: dict(s)
        for rid, s in scores.items()
        if scale in s and s[scale].defined and s[scale].missing_items <= max_missing
    }
