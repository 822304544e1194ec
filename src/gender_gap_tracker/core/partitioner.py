from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, FrozenSet, Hashable, List, Mapping, Optional, Sequence, Set, Tuple

import calendar
import logging
import math

import numpy as np
import pandas as pd

from gender_gap_tracker.config import (
    DEFAULT_MAX_WAVE_SHARE,
    DEFAULT_MAX_WAVE_SIZE,
    DEFAULT_MIN_WAVE_SIZE,
    DEFAULT_N_WAVES,
    DEFAULT_SEED,
    DRIFT_TOLERANCE,
    EDUCATION_COL,
    FEASIBILITY_MARGIN,
    FEMALE_LABEL,
    FIRST_WAVE_MONTH,
    GENDER_COL,
    HIGH_EDUCATION_LABEL,
    LAST_WAVE_ABSORB_RATIO,
    MIN_DRIFT_WAVE_SIZE,
    REGION_COL,
    RESPONDENT_ID_COL,
    STRATIFICATION_FIELDS,
    WAVE_FIELDWORK_DAYS,
)
from gender_gap_tracker.core.errors import (
    ConfigurationError,
    DriftWarning,
    FeasibilityAdjustment,
    InvariantViolation,
)
from gender_gap_tracker.core.pool import Respondent, index_by_id, validate_pool
from gender_gap_tracker.core.strata import StrataKey, build_strata_index, normalize_category

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Wave:
    """
    A named, dated view over the pool: a set of respondent ids.

    interview_dates is aligned with respondent_ids.
    """
    label: str
    number: int
    start_date: date
    end_date: date
    respondent_ids: Tuple[str, ...]
    interview_dates: Tuple[date, ...] = ()
    target_size: Optional[int] = None

    @property
    def ids(self) -> FrozenSet[str]:
        return frozenset(self.respondent_ids)

    @property
    def size(self) -> int:
        return len(self.respondent_ids)

    @property
    def date_range(self) -> str:
        return f"{self.start_date.isoformat()} to {self.end_date.isoformat()}"


@dataclass(frozen=True)
class DriftRecord:
    wave_label: str
    field: str
    category: str
    pool_share: float
    wave_share: float

    @property
    def deviation(self) -> float:
        return abs(self.wave_share - self.pool_share)


@dataclass
class DriftReport:
    """
    Demographic drift of every wave against the pool, per stratification field.

    Waves smaller than min_wave_size are measured but never flagged.
    """
    tolerance: float
    min_wave_size: int
    records: List[DriftRecord] = field(default_factory=list)
    max_deviation: Dict[Tuple[str, str], float] = field(default_factory=dict)
    assessed_waves: List[str] = field(default_factory=list)
    warnings: List[DriftWarning] = field(default_factory=list)
    adjustment: Optional[FeasibilityAdjustment] = None

    @property
    def within_tolerance(self) -> bool:
        return not self.warnings

    @property
    def status(self) -> str:
        return "within_tolerance" if self.within_tolerance else "drift_warning"

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {
                "wave": r.wave_label,
                "field": r.field,
                "category": r.category,
                "pool_share": r.pool_share,
                "wave_share": r.wave_share,
                "deviation": r.deviation,
            }
            for r in self.records
        ]
        return pd.DataFrame(
            rows, columns=["wave", "field", "category", "pool_share", "wave_share", "deviation"]
        )

    def summary_frame(self) -> pd.DataFrame:
        flagged = {(w.wave_label, w.field) for w in self.warnings}
        rows = [
            {
                "wave": wave,
                "field": fld,
                "max_deviation": dev,
                "assessed": wave in self.assessed_waves,
                "flagged": (wave, fld) in flagged,
            }
            for (wave, fld), dev in self.max_deviation.items()
        ]
        return pd.DataFrame(rows, columns=["wave", "field", "max_deviation", "assessed", "flagged"])


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------

def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def linear_schedule(n_waves: int, minimum: int, maximum: int) -> List[int]:
    """
    Target sizes interpolated linearly from minimum to maximum.

    maximum is clamped to at least minimum so the schedule never decreases.
    """
    if n_waves <= 0:
        raise ConfigurationError(f"n_waves must be positive, got {n_waves}.")
    if minimum <= 0:
        raise ConfigurationError(f"Minimum wave size must be positive, got {minimum}.")

    upper = max(maximum, minimum)
    return [_round_half_up(v) for v in np.linspace(minimum, upper, num=n_waves)]


def default_schedule(
    pool_size: int,
    n_waves: int = DEFAULT_N_WAVES,
    min_size: int = DEFAULT_MIN_WAVE_SIZE,
    max_share: float = DEFAULT_MAX_WAVE_SHARE,
    max_size: int = DEFAULT_MAX_WAVE_SIZE,
) -> List[int]:
    """Schedule capped at max_share of the pool or max_size, whichever is smaller."""
    cap = min(pool_size * max_share, max_size)
    return linear_schedule(n_waves, min_size, _round_half_up(cap))


def validate_schedule(schedule: Sequence[int], n_waves: Optional[int] = None) -> List[int]:
    sizes = [int(s) for s in schedule]
    if not sizes:
        raise ConfigurationError("Wave schedule is empty.")
    if n_waves is not None and len(sizes) != n_waves:
        raise ConfigurationError(f"Schedule has {len(sizes)} entries for {n_waves} waves.")
    if any(s <= 0 for s in sizes):
        raise ConfigurationError(f"Wave sizes must be positive: {sizes}")
    if any(b < a for a, b in zip(sizes, sizes[1:])):
        raise ConfigurationError(f"Wave schedule must be non-decreasing: {sizes}")
    return sizes


def make_feasible(
    schedule: Sequence[int],
    pool_size: int,
    margin: float = FEASIBILITY_MARGIN,
) -> Tuple[List[int], Optional[FeasibilityAdjustment]]:
    """
    Scale the schedule down by a common factor when it asks for more
    respondents than the pool holds.
    """
    sizes = list(schedule)
    total = sum(sizes)
    if total <= pool_size:
        return sizes, None

    factor = pool_size / total * margin
    adjusted = [max(1, _round_half_up(s * factor)) for s in sizes]
    adjustment = FeasibilityAdjustment(
        requested=sizes, adjusted=adjusted, factor=factor, pool_size=pool_size
    )
    logger.warning("Schedule adjusted: %s", adjustment.describe())
    return adjusted, adjustment


def largest_remainder(
    total: int,
    sizes: Mapping[Hashable, int],
    priority: Optional[Mapping[Hashable, int]] = None,
) -> Dict[Hashable, int]:
    """
    Apportion `total` units across groups in proportion to `sizes`.

    Integer arithmetic throughout: floors first, then the leftover units go to
    the largest remainders. Equal remainders are ordered by `priority` (lower
    first), then by key. The allocations sum to `total` exactly (when
    total <= sum(sizes)).
    """
    population = sum(sizes.values())
    if population <= 0 or total <= 0:
        return {k: 0 for k in sizes}

    alloc: Dict[Hashable, int] = {}
    remainders: List[Tuple[int, Hashable]] = []
    for key, n in sizes.items():
        quotient, remainder = divmod(total * n, population)
        alloc[key] = quotient
        remainders.append((remainder, key))

    leftover = total - sum(alloc.values())
    rank = priority or {}
    remainders.sort(key=lambda rk: (-rk[0], rank.get(rk[1], 0), rk[1]))
    for _, key in remainders[:leftover]:
        alloc[key] += 1
    return alloc


# ---------------------------------------------------------------------------
# Wave calendar
# ---------------------------------------------------------------------------

def wave_calendar(
    n_waves: int,
    first_month: str = FIRST_WAVE_MONTH,
    fieldwork_days: int = WAVE_FIELDWORK_DAYS,
) -> List[Tuple[str, date, date]]:
    """Label and fieldwork window for each wave, one calendar month apart."""
    try:
        start = datetime.strptime(first_month, "%Y-%m").date()
    except ValueError as exc:
        raise ConfigurationError(f"first_month must look like 'YYYY-MM', got {first_month!r}.") from exc

    out: List[Tuple[str, date, date]] = []
    for i in range(n_waves):
        month_index = start.month - 1 + i
        year = start.year + month_index // 12
        month = month_index % 12 + 1
        first_day = date(year, month, 1)
        label = f"{calendar.month_name[month]}_{year}"
        out.append((label, first_day, first_day + timedelta(days=fieldwork_days - 1)))
    return out


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def verify_waves(waves: Sequence[Wave], pool_ids: Set[str]) -> None:
    """
    Raise InvariantViolation if any two waves share a respondent, if a wave
    holds an id twice, or if a wave holds an id outside the pool.
    """
    for i in range(len(waves)):
        for j in range(i + 1, len(waves)):
            overlap = waves[i].ids & waves[j].ids
            if overlap:
                raise InvariantViolation(
                    f"Wave {waves[i].label} and wave {waves[j].label} share "
                    f"{len(overlap)} respondents."
                )

    used = [rid for w in waves for rid in w.respondent_ids]
    unique = set(used)
    if len(used) != len(unique):
        raise InvariantViolation(
            f"Total observations across waves ({len(used)}) differ from unique "
            f"respondents used ({len(unique)})."
        )

    outside = unique - pool_ids
    if outside:
        raise InvariantViolation(f"{len(outside)} wave members are not in the source pool.")


def compute_drift(
    pool: pd.DataFrame,
    waves: Sequence[Wave],
    fields: Sequence[str],
    tolerance: float = DRIFT_TOLERANCE,
    min_wave_size: int = MIN_DRIFT_WAVE_SIZE,
) -> DriftReport:
    """Per wave and field, compare category shares with the pool's shares."""
    indexed = index_by_id(pool)
    report = DriftReport(tolerance=tolerance, min_wave_size=min_wave_size)

    pool_shares = {f: normalize_category(indexed[f]).value_counts(normalize=True) for f in fields}

    for wave in waves:
        assessed = wave.size >= min_wave_size
        if assessed:
            report.assessed_waves.append(wave.label)
        members = indexed.loc[list(wave.respondent_ids)]

        for f in fields:
            wave_shares = normalize_category(members[f]).value_counts(normalize=True)
            categories = sorted(set(pool_shares[f].index) | set(wave_shares.index))

            worst = 0.0
            worst_cat: Optional[str] = None
            for cat in categories:
                rec = DriftRecord(
                    wave_label=wave.label,
                    field=f,
                    category=str(cat),
                    pool_share=float(pool_shares[f].get(cat, 0.0)),
                    wave_share=float(wave_shares.get(cat, 0.0)) if wave.size else 0.0,
                )
                report.records.append(rec)
                if rec.deviation > worst:
                    worst, worst_cat = rec.deviation, rec.category

            report.max_deviation[(wave.label, f)] = worst
            if assessed and worst > tolerance:
                warning = DriftWarning(
                    wave_label=wave.label,
                    field=f,
                    max_deviation=worst,
                    tolerance=tolerance,
                    category=worst_cat,
                )
                logger.warning("Drift: %s", warning.describe())
                report.warnings.append(warning)

    return report


# ---------------------------------------------------------------------------
# Partitioner
# ---------------------------------------------------------------------------

class WavePartitioner:
    """
    Split one pool into non-overlapping, stratified waves.

    Each wave draws from what earlier waves left behind (the exclusion set is
    threaded through the loop), so allocation within a run is strictly
    sequential. Everything random flows from one seeded generator consumed in
    stratum-key order.
    """

    def __init__(
        self,
        fields: Sequence[str] = STRATIFICATION_FIELDS,
        seed: int = DEFAULT_SEED,
        tolerance: float = DRIFT_TOLERANCE,
        last_wave_ratio: float = LAST_WAVE_ABSORB_RATIO,
        feasibility_margin: float = FEASIBILITY_MARGIN,
        min_drift_wave_size: int = MIN_DRIFT_WAVE_SIZE,
        first_month: str = FIRST_WAVE_MONTH,
    ) -> None:
        if not 0 < feasibility_margin <= 1:
            raise ConfigurationError(f"feasibility_margin must be in (0, 1], got {feasibility_margin}.")
        if last_wave_ratio < 1:
            raise ConfigurationError(f"last_wave_ratio must be >= 1, got {last_wave_ratio}.")
        self.fields = tuple(fields)
        self.seed = seed
        self.tolerance = tolerance
        self.last_wave_ratio = last_wave_ratio
        self.feasibility_margin = feasibility_margin
        self.min_drift_wave_size = min_drift_wave_size
        self.first_month = first_month

    def partition(
        self,
        pool: pd.DataFrame,
        schedule: Sequence[int],
        strata_index: Optional[Dict[StrataKey, List[str]]] = None,
    ) -> Tuple[List[Wave], DriftReport]:
        validate_pool(pool)
        sizes = validate_schedule(schedule)
        if strata_index is None:
            strata_index = build_strata_index(pool, self.fields)

        pool_ids = set(pool[RESPONDENT_ID_COL].astype(str))
        sizes, adjustment = make_feasible(sizes, len(pool_ids), self.feasibility_margin)

        rng = np.random.default_rng(self.seed)
        slots = wave_calendar(len(sizes), self.first_month)
        excluded: Set[str] = set()
        waves: List[Wave] = []

        for i, target in enumerate(sizes):
            label, start, end = slots[i]
            remaining = {
                key: [rid for rid in ids if rid not in excluded]
                for key, ids in sorted(strata_index.items())
            }
            available = sum(len(v) for v in remaining.values())
            is_last = i == len(sizes) - 1

            if is_last and available < target * self.last_wave_ratio:
                logger.info(
                    "Wave %s is last: absorbing all %d remaining respondents (target %d)",
                    label, available, target,
                )
                drawn = [rid for ids in remaining.values() for rid in ids]
            elif available <= target:
                logger.warning(
                    "Wave %s: only %d respondents left for target %d; taking all",
                    label, available, target,
                )
                drawn = [rid for ids in remaining.values() for rid in ids]
            else:
                drawn = self._draw_stratified(label, remaining, target, rng)

            offsets = rng.integers(0, (end - start).days + 1, size=len(drawn))
            dates = tuple(start + timedelta(days=int(d)) for d in offsets)

            wave = Wave(
                label=label,
                number=i + 1,
                start_date=start,
                end_date=end,
                respondent_ids=tuple(drawn),
                interview_dates=dates,
                target_size=target,
            )
            excluded.update(drawn)
            waves.append(wave)
            logger.info(
                "Wave %d (%s): %d respondents drawn, target %d, %d remaining",
                wave.number, label, wave.size, target, available - wave.size,
            )

        verify_waves(waves, pool_ids)

        report = compute_drift(
            pool, waves, self.fields, tolerance=self.tolerance, min_wave_size=self.min_drift_wave_size
        )
        report.adjustment = adjustment
        logger.info("Partition finished: %d waves, drift status=%s", len(waves), report.status)
        return waves, report

    @staticmethod
    def _draw_stratified(
        label: str,
        remaining: Dict[StrataKey, List[str]],
        target: int,
        rng: np.random.Generator,
    ) -> List[str]:
        # ties between equal remainders follow a seeded random order
        order = rng.permutation(len(remaining))
        priority = {key: int(order[i]) for i, key in enumerate(remaining)}
        allocation = largest_remainder(target, {k: len(v) for k, v in remaining.items()}, priority)

        drawn: List[str] = []
        for key, members in remaining.items():
            k = allocation[key]
            if k <= 0:
                continue
            if k >= len(members):
                if k > len(members):
                    logger.warning(
                        "Wave %s: stratum %s has %d members for an allocation of %d; taking all",
                        label, key, len(members), k,
                    )
                drawn.extend(members)
                continue
            picks = rng.choice(len(members), size=k, replace=False)
            drawn.extend(members[j] for j in sorted(picks))
            logger.debug("Wave %s: stratum %s -> %d of %d", label, key, k, len(members))
        return drawn


def partition_into_waves(
    pool: pd.DataFrame,
    schedule: Sequence[int],
    seed: int = DEFAULT_SEED,
    tolerance: float = DRIFT_TOLERANCE,
    fields: Sequence[str] = STRATIFICATION_FIELDS,
    **options,
) -> Tuple[List[Wave], DriftReport]:
    """Functional entry point; see WavePartitioner for the options."""
    partitioner = WavePartitioner(fields=fields, seed=seed, tolerance=tolerance, **options)
    return partitioner.partition(pool, schedule)


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

def _pct(values: Sequence[Optional[str]], label: str) -> float:
    known = [v for v in values if v is not None]
    if not known:
        return float("nan")
    return round(sum(v == label for v in known) / len(known) * 100, 1)


def summarize_waves(pool: pd.DataFrame, waves: Sequence[Wave]) -> pd.DataFrame:
    """
    One row per wave: size, dates, % female, % high education, regions covered.

    Re-checks that no respondent appears in two waves.
    """
    verify_waves(waves, set(pool[RESPONDENT_ID_COL].astype(str)))
    indexed = index_by_id(pool)
    fields = (GENDER_COL, EDUCATION_COL, REGION_COL)

    rows = []
    for w in waves:
        members = [
            Respondent.from_row(row, fields).demographics
            for _, row in indexed.loc[list(w.respondent_ids)].iterrows()
        ]
        regions = {m[REGION_COL] for m in members if m[REGION_COL] is not None}
        rows.append(
            {
                "wave": w.label,
                "wave_number": w.number,
                "n_respondents": w.size,
                "target": w.target_size,
                "date_range": w.date_range,
                "pct_female": _pct([m[GENDER_COL] for m in members], FEMALE_LABEL),
                "pct_degree": _pct([m[EDUCATION_COL] for m in members], HIGH_EDUCATION_LABEL),
                "n_regions": len(regions),
            }
        )
    return pd.DataFrame(rows)
