from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

import copy
import logging
import math

import pandas as pd

from gender_gap_tracker.config import TREND_CHANGE_THRESHOLD
from gender_gap_tracker.core.errors import ConfigurationError
from gender_gap_tracker.core.gap_analyzer import GapRecord

logger = logging.getLogger(__name__)

# Flat persisted layout, one row per (wave, scale, dimension, cohort)
TREND_COLUMNS = [
    "wave_label",
    "wave_date",
    "scale",
    "dimension",
    "cohort",
    "mean_male",
    "mean_female",
    "gap",
    "ci_low",
    "ci_high",
    "n_male",
    "n_female",
    "significant",
    "se",
    "p_value",
    "evaluable",
    "note",
]

SeriesKey = Tuple[str, str, str]  # (scale, dimension, cohort)


@dataclass(frozen=True)
class TrendEntry:
    wave_label: str
    wave_date: date
    record: GapRecord


@dataclass(frozen=True)
class TrendDelta:
    """
    Change in the gap between two consecutive evaluable waves of one series.
    """
    scale: str
    dimension: str
    cohort: str
    wave_start: str
    wave_end: str
    gap_start: float
    gap_end: float
    delta: float
    direction: str  # 'increase', 'decrease', 'no_change'


def _direction_from_delta(delta: float, tolerance: float = 0.005) -> str:
    """
    Interpret a numeric delta as 'increase', 'decrease', or 'no_change'.

    Tolerance keeps tiny fluctuations from being read as movement.
    """
    if math.isnan(delta):
        return "no_change"
    if delta > tolerance:
        return "increase"
    if delta < -tolerance:
        return "decrease"
    return "no_change"


class TrendSeries:
    """
    Longitudinal gap history keyed by (scale, dimension, cohort), each series
    ordered by wave date.

    Appending a wave label that is already present replaces that wave's
    entries instead of duplicating them.
    """

    def __init__(self, entries: Iterable[TrendEntry] = ()) -> None:
        self._series: Dict[SeriesKey, List[TrendEntry]] = {}
        for e in entries:
            self._series.setdefault(self._key(e.record), []).append(e)
        for key in self._series:
            self._sort(key)

    @staticmethod
    def _key(record: GapRecord) -> SeriesKey:
        return (record.scale, record.dimension, record.cohort)

    def _sort(self, key: SeriesKey) -> None:
        self._series[key].sort(key=lambda e: (e.wave_date, e.wave_label))

    # -- mutation -----------------------------------------------------------

    def append(self, records: Iterable[GapRecord], wave_label: str, wave_date: date) -> "TrendSeries":
        records = list(records)
        if not wave_label:
            raise ConfigurationError("wave_label is required to track records.")

        replaced = self.drop_wave(wave_label)
        if replaced:
            logger.info("Wave %s already tracked; replacing %d entries", wave_label, replaced)

        for rec in records:
            key = self._key(rec)
            self._series.setdefault(key, []).append(TrendEntry(wave_label, wave_date, rec))
            self._sort(key)
        logger.info("Tracked %d records for wave %s (%s)", len(records), wave_label, wave_date)
        return self

    def drop_wave(self, wave_label: str) -> int:
        removed = 0
        for key in list(self._series):
            kept = [e for e in self._series[key] if e.wave_label != wave_label]
            removed += len(self._series[key]) - len(kept)
            if kept:
                self._series[key] = kept
            else:
                del self._series[key]
        return removed

    def copy(self) -> "TrendSeries":
        return copy.deepcopy(self)

    # -- queries ------------------------------------------------------------

    def keys(self) -> List[SeriesKey]:
        return sorted(self._series)

    def wave_labels(self) -> List[str]:
        seen: Dict[str, date] = {}
        for entries in self._series.values():
            for e in entries:
                seen[e.wave_label] = e.wave_date
        return [label for label, _ in sorted(seen.items(), key=lambda kv: (kv[1], kv[0]))]

    def series(self, scale: str, cohort: str, dimension: Optional[str] = None) -> List[TrendEntry]:
        """
        Entries for one (scale, cohort) pair, oldest first.

        dimension may be omitted when the cohort level is unambiguous.
        """
        if dimension is not None:
            return list(self._series.get((scale, dimension, cohort), []))
        matches = [k for k in self._series if k[0] == scale and k[2] == cohort]
        if len(matches) > 1:
            raise ConfigurationError(
                f"Cohort {cohort!r} of scale {scale!r} exists under several dimensions: "
                f"{sorted(k[1] for k in matches)}; pass dimension."
            )
        return list(self._series[matches[0]]) if matches else []

    def deltas(self, scale: str, cohort: str, dimension: Optional[str] = None) -> List[TrendDelta]:
        """Wave-over-wave deltas across the evaluable entries of one series."""
        entries = [e for e in self.series(scale, cohort, dimension) if e.record.gap is not None]
        out: List[TrendDelta] = []
        for prev, cur in zip(entries, entries[1:]):
            delta = cur.record.gap - prev.record.gap
            out.append(
                TrendDelta(
                    scale=scale,
                    dimension=cur.record.dimension,
                    cohort=cohort,
                    wave_start=prev.wave_label,
                    wave_end=cur.wave_label,
                    gap_start=prev.record.gap,
                    gap_end=cur.record.gap,
                    delta=delta,
                    direction=_direction_from_delta(delta),
                )
            )
        return out

    def latest_delta(self, scale: str, cohort: str, dimension: Optional[str] = None) -> Optional[TrendDelta]:
        """
        Delta between the latest entry and the previous evaluable one.

        None when the latest entry is not evaluable, so an old change is not
        reported again for a wave that could not be estimated.
        """
        entries = self.series(scale, cohort, dimension)
        if not entries or entries[-1].record.gap is None:
            return None
        deltas = self.deltas(scale, cohort, dimension)
        return deltas[-1] if deltas else None

    def alerts(self, threshold: float = TREND_CHANGE_THRESHOLD) -> List[TrendDelta]:
        """Latest deltas whose magnitude exceeds threshold, across every series."""
        out: List[TrendDelta] = []
        for scale, dimension, cohort in self.keys():
            d = self.latest_delta(scale, cohort, dimension)
            if d is not None and abs(d.delta) > threshold:
                out.append(d)
        if out:
            logger.warning("%d trend alerts above %.3f", len(out), threshold)
        return out

    def __len__(self) -> int:
        return sum(len(v) for v in self._series.values())

    # -- flat table ---------------------------------------------------------

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for key in self.keys():
            for e in self._series[key]:
                row = asdict(e.record)
                row["wave_label"] = e.wave_label
                row["wave_date"] = e.wave_date
                rows.append(row)
        df = pd.DataFrame(rows, columns=TREND_COLUMNS)
        if not df.empty:
            df = df.sort_values(["wave_date", "wave_label", "scale", "dimension", "cohort"], kind="mergesort")
        return df.reset_index(drop=True)

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> "TrendSeries":
        missing = [c for c in TREND_COLUMNS[:13] if c not in df.columns]
        if missing:
            raise ConfigurationError(f"Trend table is missing columns: {missing}")

        entries: List[TrendEntry] = []
        for row in df.to_dict(orient="records"):
            gap = _opt_float(row.get("gap"))
            record = GapRecord(
                scale=str(row["scale"]),
                dimension=str(row["dimension"]),
                cohort=str(row["cohort"]),
                mean_male=_opt_float(row.get("mean_male")),
                mean_female=_opt_float(row.get("mean_female")),
                gap=gap,
                se=_opt_float(row.get("se")),
                ci_low=_opt_float(row.get("ci_low")),
                ci_high=_opt_float(row.get("ci_high")),
                p_value=_opt_float(row.get("p_value")),
                significant=_as_bool(row.get("significant")),
                n_male=_opt_float(row.get("n_male")) or 0.0,
                n_female=_opt_float(row.get("n_female")) or 0.0,
                evaluable=_as_bool(row["evaluable"]) if "evaluable" in row else gap is not None,
                note=None if _opt_float_missing(row.get("note")) else str(row.get("note")),
            )
            entries.append(TrendEntry(str(row["wave_label"]), pd.Timestamp(row["wave_date"]).date(), record))
        return cls(entries)


def _opt_float_missing(x) -> bool:
    if x is None:
        return True
    try:
        return bool(pd.isna(x))
    except (TypeError, ValueError):
        return False


def _opt_float(x) -> Optional[float]:
    return None if _opt_float_missing(x) else float(x)


def _as_bool(x) -> bool:
    if isinstance(x, str):
        return x.strip().lower() in {"true", "1", "yes"}
    if _opt_float_missing(x):
        return False
    return bool(x)


def track(
    history: Optional[TrendSeries],
    new_records: Iterable[GapRecord],
    wave_label: str,
    wave_date: date,
) -> TrendSeries:
    """Return a new TrendSeries with the wave's records appended; history is left untouched."""
    updated = history.copy() if history is not None else TrendSeries()
    return updated.append(new_records, wave_label, wave_date)
