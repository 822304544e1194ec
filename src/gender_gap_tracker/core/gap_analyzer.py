from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import logging
import math

import numpy as np
import pandas as pd
from scipy import stats

from gender_gap_tracker.config import (
    CONFIDENCE_LEVEL,
    FEMALE_LABEL,
    GENDER_COL,
    MALE_LABEL,
    MIN_EFFECTIVE_N,
    RESPONDENT_ID_COL,
)
from gender_gap_tracker.core.aggregator import WeightedStat, weighted_stat
from gender_gap_tracker.core.errors import CellIssue, InsufficientDataError
from gender_gap_tracker.core.pool import require_columns
from gender_gap_tracker.core.scales import ScaleScore
from gender_gap_tracker.core.strata import normalize_category

logger = logging.getLogger(__name__)

ALL_LEVELS = "ALL"

ScoreInput = Mapping[str, Union[Mapping[str, ScaleScore], Optional[float]]]


@dataclass
class GapRecord:
    """
    Gender gap in one scale within one level of a cohort dimension.

    gap is mean_male - mean_female. When evaluable is False the gap and its
    interval are None; the per-gender means are kept when they exist.
    """
    scale: str
    dimension: str
    cohort: str
    mean_male: Optional[float]
    mean_female: Optional[float]
    gap: Optional[float]
    se: Optional[float]
    ci_low: Optional[float]
    ci_high: Optional[float]
    p_value: Optional[float]
    significant: bool
    n_male: float
    n_female: float
    evaluable: bool = True
    note: Optional[str] = None

    @property
    def female_minus_male(self) -> Optional[float]:
        return None if self.gap is None else -self.gap


@dataclass(frozen=True)
class HeterogeneityStat:
    """
    Spread of views inside one cohort.

    share_low / share_high are the weighted shares lying more than one
    weighted SD below / above the weighted mean; bimodality is their sum.
    """
    mean: float
    sd: float
    share_low: float
    share_high: float
    n_eff: float

    @property
    def bimodality(self) -> float:
        return self.share_low + self.share_high


@dataclass
class GapAnalysis:
    records: List[GapRecord] = field(default_factory=list)
    issues: List[CellIssue] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Input shaping
# ---------------------------------------------------------------------------

def _values_for(scale_scores: ScoreInput, scale_name: str) -> Dict[str, Optional[float]]:
    """Accept either build_scales() output or a flat {id: value} mapping."""
    out: Dict[str, Optional[float]] = {}
    for rid, entry in scale_scores.items():
        if isinstance(entry, Mapping):
            score = entry.get(scale_name)
            out[str(rid)] = score.value if score is not None else None
        else:
            out[str(rid)] = entry
    return out


def _demographics_by_id(demographics: pd.DataFrame) -> pd.DataFrame:
    if RESPONDENT_ID_COL in demographics.columns:
        out = demographics.set_index(demographics[RESPONDENT_ID_COL].astype(str))
    else:
        out = demographics.copy()
        out.index = out.index.astype(str)
    return out


def _analysis_frame(
    scale_scores: ScoreInput,
    weights: Mapping[str, float],
    demographics: pd.DataFrame,
    scale_name: str,
    dimension: str,
    gender_col: str,
) -> pd.DataFrame:
    demo = _demographics_by_id(demographics)
    require_columns(demo, [gender_col, dimension], "cohort")

    values = _values_for(scale_scores, scale_name)
    ids = [rid for rid in demo.index if rid in values and rid in weights]
    frame = pd.DataFrame(
        {
            "value": [values[r] for r in ids],
            "weight": [float(weights[r]) for r in ids],
            "gender": demo.loc[ids, gender_col].to_numpy() if ids else [],
            "level": normalize_category(demo.loc[ids, dimension]).to_numpy() if ids else [],
        },
        index=pd.Index(ids, name=RESPONDENT_ID_COL),
    )
    frame["value"] = pd.to_numeric(frame["value"], errors="coerce")
    return frame


# ---------------------------------------------------------------------------
# Gap
# ---------------------------------------------------------------------------

def _z_for(confidence: float) -> float:
    if not 0 < confidence < 1:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")
    return float(stats.norm.ppf(1 - (1 - confidence) / 2))


def gap_from_stats(
    male: WeightedStat,
    female: WeightedStat,
    confidence: float = CONFIDENCE_LEVEL,
) -> Tuple[float, float, float, float, float]:
    """
    (gap, se, ci_low, ci_high, p_value) for two independent weighted means,
    normal approximation.
    """
    gap = male.mean - female.mean
    se = math.sqrt(male.se ** 2 + female.se ** 2)
    z = _z_for(confidence)
    if se > 0:
        p_value = float(2 * stats.norm.sf(abs(gap) / se))
    else:
        p_value = 1.0 if gap == 0 else 0.0
    return gap, se, gap - z * se, gap + z * se, p_value


def _cell(frame: pd.DataFrame, label: str) -> WeightedStat:
    cell = frame[frame["gender"].astype(str) == label]
    return weighted_stat(cell["value"].tolist(), cell["weight"].tolist())


def _gap_record(
    frame: pd.DataFrame,
    scale: str,
    dimension: str,
    level: str,
    male_label: str,
    female_label: str,
    min_n_eff: float,
    confidence: float,
    issues: List[CellIssue],
) -> GapRecord:
    found: Dict[str, Optional[WeightedStat]] = {}
    problems: List[str] = []
    for label in (male_label, female_label):
        try:
            stat = _cell(frame, label)
        except InsufficientDataError as exc:
            stat = None
            problems.append(f"{label}: {exc}")
            issues.append(CellIssue(scale, dimension, level, label, str(exc)))
        else:
            if stat.n_eff < min_n_eff or math.isnan(stat.se):
                reason = f"effective n {stat.n_eff:.1f} below minimum {min_n_eff:g}"
                problems.append(f"{label}: {reason}")
                issues.append(CellIssue(scale, dimension, level, label, reason))
        found[label] = stat

    male, female = found[male_label], found[female_label]
    record = GapRecord(
        scale=scale,
        dimension=dimension,
        cohort=level,
        mean_male=male.mean if male else None,
        mean_female=female.mean if female else None,
        gap=None,
        se=None,
        ci_low=None,
        ci_high=None,
        p_value=None,
        significant=False,
        n_male=male.n_eff if male else 0.0,
        n_female=female.n_eff if female else 0.0,
    )

    if problems:
        record.evaluable = False
        record.note = "not evaluable: " + "; ".join(problems)
        logger.warning("Gap %s / %s=%s %s", scale, dimension, level, record.note)
        return record

    gap, se, lo, hi, p = gap_from_stats(male, female, confidence)
    record.gap, record.se, record.ci_low, record.ci_high, record.p_value = gap, se, lo, hi, p
    record.significant = lo > 0 or hi < 0
    return record


def analyze_gap_detailed(
    scale_scores: ScoreInput,
    weights: Mapping[str, float],
    demographics: pd.DataFrame,
    scale_name: str,
    secondary_dimension: str,
    gender_col: str = GENDER_COL,
    male_label: str = MALE_LABEL,
    female_label: str = FEMALE_LABEL,
    min_n_eff: float = MIN_EFFECTIVE_N,
    confidence: float = CONFIDENCE_LEVEL,
    include_overall: bool = False,
) -> GapAnalysis:
    """
    Gap records for every level of `secondary_dimension`, plus the cell
    issues that made any of them not evaluable.

    Respondents whose scale is undefined drop out of this scale's estimates
    only. Missing dimension values form their own level.
    """
    frame = _analysis_frame(scale_scores, weights, demographics, scale_name, secondary_dimension, gender_col)
    analysis = GapAnalysis()

    levels: List[Tuple[str, pd.DataFrame]] = [
        (str(level), grp) for level, grp in frame.groupby("level", sort=True)
    ]
    if include_overall:
        levels.append((ALL_LEVELS, frame))

    for level, grp in levels:
        analysis.records.append(
            _gap_record(
                grp, scale_name, secondary_dimension, level,
                male_label, female_label, min_n_eff, confidence, analysis.issues,
            )
        )

    evaluable = sum(r.evaluable for r in analysis.records)
    logger.info(
        "Gap analysis %s by %s: %d levels, %d evaluable",
        scale_name, secondary_dimension, len(analysis.records), evaluable,
    )
    return analysis


def analyze_gap(
    scale_scores: ScoreInput,
    weights: Mapping[str, float],
    demographics: pd.DataFrame,
    scale_name: str,
    secondary_dimension: str,
    **options,
) -> List[GapRecord]:
    return analyze_gap_detailed(
        scale_scores, weights, demographics, scale_name, secondary_dimension, **options
    ).records


# ---------------------------------------------------------------------------
# Heterogeneity
# ---------------------------------------------------------------------------

def heterogeneity(values: Sequence[Optional[float]], weights: Sequence[float]) -> HeterogeneityStat:
    """Weighted SD and the shares of respondents beyond one SD on each side."""
    stat = weighted_stat(values, weights)
    x = np.asarray([np.nan if v is None else v for v in values], dtype=float)
    w = np.asarray(weights, dtype=float)
    keep = ~np.isnan(x)
    x, w = x[keep], w[keep]

    low = float(w[x < stat.mean - stat.sd].sum()) / stat.total_weight
    high = float(w[x > stat.mean + stat.sd].sum()) / stat.total_weight
    return HeterogeneityStat(mean=stat.mean, sd=stat.sd, share_low=low, share_high=high, n_eff=stat.n_eff)


def cohort_heterogeneity(
    scale_scores: ScoreInput,
    weights: Mapping[str, float],
    demographics: pd.DataFrame,
    scale_name: str,
    dimension: str,
    level: str,
    gender: Optional[str] = None,
    gender_col: str = GENDER_COL,
) -> HeterogeneityStat:
    """
    Heterogeneity of one cohort level, for one gender or both combined.

    Raises InsufficientDataError when the cohort has no usable scores.
    """
    frame = _analysis_frame(scale_scores, weights, demographics, scale_name, dimension, gender_col)
    cell = frame[frame["level"] == str(level)]
    if gender is not None:
        cell = cell[cell["gender"].astype(str) == gender]
    return heterogeneity(cell["value"].tolist(), cell["weight"].tolist())
