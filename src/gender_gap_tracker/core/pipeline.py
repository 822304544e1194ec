from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

import logging

import pandas as pd

from gender_gap_tracker.config import (
    CONFIDENCE_LEVEL,
    DEFAULT_SEED,
    DRIFT_TOLERANCE,
    FEASIBILITY_MARGIN,
    FIRST_WAVE_MONTH,
    GENERATION_COL,
    LAST_WAVE_ABSORB_RATIO,
    MIN_DRIFT_WAVE_SIZE,
    MIN_EFFECTIVE_N,
    STRATIFICATION_FIELDS,
    TREND_CHANGE_THRESHOLD,
)
from gender_gap_tracker.core.errors import CellIssue, ConfigurationError
from gender_gap_tracker.core.gap_analyzer import GapRecord, analyze_gap_detailed
from gender_gap_tracker.core.partitioner import DriftReport, Wave, WavePartitioner, default_schedule
from gender_gap_tracker.core.pool import index_by_id, validate_pool, weights_by_id
from gender_gap_tracker.core.metadata_loader import load_item_vocabulary, load_scale_definitions
from gender_gap_tracker.core.scales import ScaleBuilder, ScaleDefinition
from gender_gap_tracker.core.strata import build_strata_index
from gender_gap_tracker.core.trend import TrendDelta, TrendSeries, track

logger = logging.getLogger(__name__)


@dataclass
class PipelineParameters:
    """
    Everything one generation run needs.

    schedule=None means default_schedule(len(pool), n_waves).
    vocabulary / scales=None means whatever the metadata workbook defines,
    or the built-in instrument when there is none.
    """
    n_waves: int = 4
    schedule: Optional[List[int]] = None
    seed: int = DEFAULT_SEED
    strata_fields: Tuple[str, ...] = STRATIFICATION_FIELDS
    tolerance: float = DRIFT_TOLERANCE
    last_wave_ratio: float = LAST_WAVE_ABSORB_RATIO
    feasibility_margin: float = FEASIBILITY_MARGIN
    min_drift_wave_size: int = MIN_DRIFT_WAVE_SIZE
    first_month: str = FIRST_WAVE_MONTH
    vocabulary: Optional[Tuple[str, ...]] = None
    scales: Optional[Tuple[ScaleDefinition, ...]] = None
    secondary_dimension: str = GENERATION_COL
    min_n_eff: float = MIN_EFFECTIVE_N
    confidence: float = CONFIDENCE_LEVEL
    change_threshold: float = TREND_CHANGE_THRESHOLD
    include_overall: bool = False


@dataclass
class PipelineResult:
    params: PipelineParameters
    waves: List[Wave]
    drift_report: DriftReport
    records_by_wave: Dict[str, List[GapRecord]]
    trend: TrendSeries
    issues: List[CellIssue] = field(default_factory=list)
    alerts: List[TrendDelta] = field(default_factory=list)

    def records_frame(self) -> pd.DataFrame:
        """This run's records only, in the persisted trend layout."""
        labels = set(self.records_by_wave)
        df = self.trend.to_frame()
        return df[df["wave_label"].isin(labels)].reset_index(drop=True)

    def issues_frame(self) -> pd.DataFrame:
        rows = [
            {"wave": i.wave_label, "scale": i.scale, "dimension": i.dimension, "cohort": i.cohort,
             "gender": i.gender, "reason": i.reason}
            for i in self.issues
        ]
        return pd.DataFrame(rows, columns=["wave", "scale", "dimension", "cohort", "gender", "reason"])


def run_pipeline(
    pool: pd.DataFrame,
    params: Optional[PipelineParameters] = None,
    history: Optional[TrendSeries] = None,
) -> PipelineResult:
    """
    One generation run: strata -> waves -> scales -> gap records -> trend.

    Fatal conditions (ConfigurationError, InvariantViolation) propagate.
    Unestimable cells are marked not evaluable and listed in result.issues.
    """
    params = params or PipelineParameters()
    logger.info("Running pipeline with params=%s", params)

    validate_pool(pool)
    if params.secondary_dimension not in pool.columns:
        raise ConfigurationError(f"Secondary dimension '{params.secondary_dimension}' is not a pool column.")

    schedule = params.schedule or default_schedule(len(pool), params.n_waves)
    if params.schedule and len(params.schedule) != params.n_waves:
        raise ConfigurationError(f"Schedule has {len(params.schedule)} entries for {params.n_waves} waves.")

    strata_index = build_strata_index(pool, params.strata_fields)
    partitioner = WavePartitioner(
        fields=params.strata_fields,
        seed=params.seed,
        tolerance=params.tolerance,
        last_wave_ratio=params.last_wave_ratio,
        feasibility_margin=params.feasibility_margin,
        min_drift_wave_size=params.min_drift_wave_size,
        first_month=params.first_month,
    )
    waves, drift_report = partitioner.partition(pool, schedule, strata_index)

    # Scores depend only on the respondent, so score the pool once for every wave
    vocabulary = params.vocabulary or load_item_vocabulary()
    definitions = params.scales or load_scale_definitions()
    builder = ScaleBuilder(vocabulary, definitions)
    scores = builder.build(pool)
    weights = weights_by_id(pool)
    demographics = index_by_id(pool)

    trend = history.copy() if history is not None else TrendSeries()
    records_by_wave: Dict[str, List[GapRecord]] = {}
    issues: List[CellIssue] = []

    for wave in waves:
        wave_scores = {rid: scores[rid] for rid in wave.respondent_ids}
        wave_demo = demographics.loc[list(wave.respondent_ids)]
        wave_records: List[GapRecord] = []
        for definition in definitions:
            analysis = analyze_gap_detailed(
                wave_scores,
                weights,
                wave_demo,
                definition.name,
                params.secondary_dimension,
                min_n_eff=params.min_n_eff,
                confidence=params.confidence,
                include_overall=params.include_overall,
            )
            wave_records.extend(analysis.records)
            issues.extend(replace(i, wave_label=wave.label) for i in analysis.issues)

        records_by_wave[wave.label] = wave_records
        trend = track(trend, wave_records, wave.label, wave.start_date)

    alerts = trend.alerts(params.change_threshold)
    result = PipelineResult(
        params=params,
        waves=waves,
        drift_report=drift_report,
        records_by_wave=records_by_wave,
        trend=trend,
        issues=issues,
        alerts=alerts,
    )
    logger.info(
        "Pipeline finished: %d waves, %d gap records, %d cell issues, %d alerts",
        len(waves), sum(len(r) for r in records_by_wave.values()), len(result.issues), len(alerts),
    )
    return result
