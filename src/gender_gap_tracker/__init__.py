"""
Gender gap tracker.

Splits one respondent pool into non-overlapping, demographically
representative survey waves and tracks weighted ideological gender gaps
across generations, wave by wave.
"""
from gender_gap_tracker.config import APP_VERSION as __version__

from gender_gap_tracker.core.aggregator import WeightedStat, aggregate, weighted_stat
from gender_gap_tracker.core.errors import (
    ConfigurationError,
    GapTrackerError,
    InsufficientDataError,
    InvariantViolation,
)
from gender_gap_tracker.core.gap_analyzer import GapRecord, analyze_gap, cohort_heterogeneity
from gender_gap_tracker.core.partitioner import Wave, partition_into_waves
from gender_gap_tracker.core.pipeline import PipelineParameters, run_pipeline
from gender_gap_tracker.core.scales import ScaleDefinition, ScaleScore, build_scales
from gender_gap_tracker.core.strata import build_strata_index
from gender_gap_tracker.core.trend import TrendSeries, track
