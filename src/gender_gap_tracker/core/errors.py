from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


class GapTrackerError(Exception):
    """Base class for every error raised by the tracker."""


class ConfigurationError(GapTrackerError):
    """A required stratification, scale or schedule setting is absent or invalid. Fatal."""


class InvariantViolation(GapTrackerError):
    """
    Waves overlap or assignment counts do not add up.

    This is a logic defect in the partitioner, never a data problem, and the
    run must stop rather than continue with corrupted waves.
    """


class InsufficientDataError(GapTrackerError):
    """A cohort cell has no usable values or no positive weight. Recoverable per cell."""


class PoolValidationError(GapTrackerError):
    """The respondent pool breaks the record contract (duplicate ids, bad weights)."""


class DataLoaderError(GapTrackerError):
    """Raised when reading or writing through a boundary adapter fails."""


# ---------------------------------------------------------------------------
# Non-fatal conditions
#
# These are reported alongside results rather than raised.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FeasibilityAdjustment:
    """The requested wave schedule exceeded the pool and was scaled down."""
    requested: List[int]
    adjusted: List[int]
    factor: float
    pool_size: int

    def describe(self) -> str:
        return (
            f"Requested {sum(self.requested)} respondents across waves but only "
            f"{self.pool_size} available; sizes scaled by {self.factor:.4f} "
            f"from {self.requested} to {self.adjusted}."
        )


@dataclass(frozen=True)
class DriftWarning:
    """A wave's category shares for one field drifted beyond tolerance."""
    wave_label: str
    field: str
    max_deviation: float
    tolerance: float
    category: Optional[str] = None

    def describe(self) -> str:
        return (
            f"Wave {self.wave_label}: '{self.field}' deviates by {self.max_deviation:.4f} "
            f"(category {self.category}) > tolerance {self.tolerance:.4f}."
        )


@dataclass(frozen=True)
class CellIssue:
    """One cohort/gender cell that could not be estimated."""
    scale: str
    dimension: str
    cohort: str
    gender: Optional[str]
    reason: str
    wave_label: Optional[str] = None
