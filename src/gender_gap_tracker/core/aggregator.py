"""
Weighted estimates under a simple-random-sampling design with weights.

Variance uses the linearised estimator for a ratio mean (the same formula a
survey design with ids=~1 applies):

    var(mean) = n / (n - 1) * sum(w_i^2 * (x_i - mean)^2) / (sum w_i)^2

Effective sample size is Kish's (sum w)^2 / sum(w^2).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Hashable, List, Mapping, Optional, Sequence

import logging
import math

import numpy as np
import pandas as pd

from gender_gap_tracker.core.errors import CellIssue, InsufficientDataError

logger = logging.getLogger(__name__)

Cohort = Hashable


@dataclass(frozen=True)
class WeightedStat:
    mean: float
    se: float
    n_eff: float
    n: int
    total_weight: float
    sd: float

    @property
    def variance(self) -> float:
        return self.sd ** 2


def _clean(values: Sequence[Optional[float]], weights: Sequence[float]) -> tuple:
    x = np.asarray([np.nan if v is None else v for v in values], dtype=float)
    w = np.asarray(weights, dtype=float)
    if x.shape != w.shape:
        raise ValueError(f"values and weights differ in length ({x.size} vs {w.size})")
    keep = ~np.isnan(x)
    return x[keep], w[keep]


def weighted_stat(values: Sequence[Optional[float]], weights: Sequence[float]) -> WeightedStat:
    """
    Weighted mean, standard error and effective n of `values`.

    Missing values (None / NaN) are dropped together with their weights.
    Raises InsufficientDataError when nothing usable is left or the remaining
    weight is not positive.
    """
    x, w = _clean(values, weights)
    if x.size == 0:
        raise InsufficientDataError("no respondents with a non-missing value")
    if np.isnan(w).any():
        raise InsufficientDataError("missing weight for a non-missing value")

    total = float(w.sum())
    if total <= 0:
        raise InsufficientDataError(f"total weight is {total}, must be positive")

    mean = float(np.dot(w, x) / total)
    dev = x - mean
    sd = math.sqrt(float(np.dot(w, dev ** 2)) / total)

    n = int(x.size)
    if n > 1:
        se = math.sqrt(n / (n - 1) * float(np.sum((w * dev) ** 2)) / total ** 2)
    else:
        se = float("nan")

    n_eff = total ** 2 / float(np.dot(w, w))
    return WeightedStat(mean=mean, se=se, n_eff=n_eff, n=n, total_weight=total, sd=sd)


def aggregate(
    cohort_assignment: Mapping[str, Cohort],
    scale_scores: Mapping[str, Optional[float]],
    weights: Mapping[str, float],
    issues: Optional[List[CellIssue]] = None,
    scale: str = "",
    dimension: str = "",
) -> Dict[Cohort, WeightedStat]:
    """
    Weighted statistics of one scale within each cohort.

    Respondents without a cohort, a score entry or a weight are left out.
    Cohorts that cannot be estimated are omitted from the result, logged, and
    appended to `issues` when a list is supplied.
    """
    members: Dict[Cohort, List[str]] = {}
    for rid, cohort in cohort_assignment.items():
        if cohort is None or rid not in weights or rid not in scale_scores:
            continue
        members.setdefault(cohort, []).append(rid)

    out: Dict[Cohort, WeightedStat] = {}
    for cohort in sorted(members, key=str):
        ids = members[cohort]
        try:
            out[cohort] = weighted_stat([scale_scores[r] for r in ids], [weights[r] for r in ids])
        except InsufficientDataError as exc:
            logger.warning("Cohort %s not estimable: %s", cohort, exc)
            if issues is not None:
                issues.append(
                    CellIssue(scale=scale, dimension=dimension, cohort=str(cohort), gender=None, reason=str(exc))
                )
    return out


def aggregate_frame(
    frame: pd.DataFrame,
    value_col: str,
    weight_col: str,
    by: Sequence[str],
) -> pd.DataFrame:
    """
    DataFrame flavour of aggregate(): one row per group with
    mean, se, n_eff, n, total_weight, sd. Unestimable groups get NaN stats.
    """
    rows = []
    for key, grp in frame.groupby(list(by), dropna=False, sort=True):
        key = key if isinstance(key, tuple) else (key,)
        row = dict(zip(by, key))
        try:
            stat = weighted_stat(grp[value_col].tolist(), grp[weight_col].tolist())
            row.update(
                mean=stat.mean, se=stat.se, n_eff=stat.n_eff, n=stat.n,
                total_weight=stat.total_weight, sd=stat.sd,
            )
        except InsufficientDataError as exc:
            logger.warning("Group %s not estimable: %s", row, exc)
            row.update(mean=np.nan, se=np.nan, n_eff=0.0, n=0, total_weight=0.0, sd=np.nan)
        rows.append(row)
    return pd.DataFrame(rows, columns=list(by) + ["mean", "se", "n_eff", "n", "total_weight", "sd"])
