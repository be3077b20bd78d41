"""
Vigil Core Output Schemas

Pydantic V2 models for values the engine publishes:
- RiskState: the immutable per-evaluation decision snapshot
- BaselineSnapshot: persisted per-modality statistics and mixture models
"""

import math
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from core.config import FEATURE_DIM
from core.schemas.inputs import Modality


# =============================================================================
# Enums
# =============================================================================

_LEVEL_ORDER = {"LOW": 0, "MEDIUM": 1, "HIGH": 2, "CRITICAL": 3}


class RiskLevel(str, Enum):
    """Coarse risk band. Ordered LOW < MEDIUM < HIGH < CRITICAL."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def severity(self) -> int:
        return _LEVEL_ORDER[self.value]

    def __lt__(self, other):
        if isinstance(other, RiskLevel):
            return self.severity < other.severity
        return NotImplemented

    def __le__(self, other):
        if isinstance(other, RiskLevel):
            return self.severity <= other.severity
        return NotImplemented

    def __gt__(self, other):
        if isinstance(other, RiskLevel):
            return self.severity > other.severity
        return NotImplemented

    def __ge__(self, other):
        if isinstance(other, RiskLevel):
            return self.severity >= other.severity
        return NotImplemented


class PolicyAction(str, Enum):
    """Decision returned for each processed risk sample."""
    MONITOR = "MONITOR"
    ESCALATE = "ESCALATE"
    RESET = "RESET"


class CalibrationStage(str, Enum):
    """Where the session is in its learning lifecycle."""
    COLLECTING = "COLLECTING"
    TIER0_READY = "TIER0_READY"
    COMPLETE = "COMPLETE"


# =============================================================================
# Risk State
# =============================================================================

class FeatureBound(BaseModel):
    """Recent-window mean and std for one feature (UI bounds)."""
    model_config = ConfigDict(frozen=True)

    mean: float
    std: float


class RiskState(BaseModel):
    """
    Published risk snapshot.

    Frozen: the pipeline replaces the whole object on every evaluation,
    so readers never need a lock.
    """
    model_config = ConfigDict(frozen=True)

    risk: float = Field(default=0.0, ge=0.0, le=100.0, description="Smoothed session risk")
    level: RiskLevel = Field(default=RiskLevel.LOW)
    is_escalated: bool = Field(default=False)
    trust_credits: int = Field(default=3, ge=0)
    consecutive_high: int = Field(default=0, ge=0)
    consecutive_low: int = Field(default=0, ge=0)
    action: PolicyAction = Field(default=PolicyAction.MONITOR)

    # Readiness
    tier0_ready: bool = Field(default=False)
    tier1_ready: bool = Field(default=False)
    tier0_modalities: List[Modality] = Field(default_factory=list)
    tier1_modalities: List[Modality] = Field(default_factory=list)

    # Calibration progress
    is_learning: bool = Field(default=True)
    calibration_stage: CalibrationStage = Field(default=CalibrationStage.COLLECTING)
    calibration_percent: int = Field(default=0, ge=0, le=100)
    touch_count: int = Field(default=0, ge=0)
    typing_count: int = Field(default=0, ge=0)
    touch_target: int = Field(default=30, ge=1)
    typing_target: int = Field(default=100, ge=1)
    baseline_bounds: Dict[Modality, List[FeatureBound]] = Field(default_factory=dict)

    # Diagnostics
    p0: Optional[float] = Field(default=None, description="Tier-0 probability of last evaluation")
    p1: Optional[float] = Field(default=None, description="Tier-1 probability of last evaluation")
    generation: int = Field(default=0, ge=0, description="Session working set generation")
    timestamp: float = Field(default=0.0)


# =============================================================================
# Baseline Snapshot
# =============================================================================

def _require_finite(values, name: str) -> None:
    for v in values:
        if isinstance(v, list):
            _require_finite(v, name)
        elif not math.isfinite(v):
            raise ValueError(f"{name} contains non-finite value {v}")


def _require_shape(matrix: List[List[float]], rows: int, name: str) -> None:
    if len(matrix) != rows or any(len(row) != FEATURE_DIM for row in matrix):
        raise ValueError(f"{name} must be {rows}x{FEATURE_DIM}")


class MixtureSnapshot(BaseModel):
    """Two-component diagonal mixture plus its preprocessing state."""
    weights: List[float]
    means: List[List[float]]
    variances: List[List[float]]
    medians: List[float]
    mads: List[float]
    nll_mean: float
    nll_std: float
    nll_count: int = Field(..., ge=1)

    @model_validator(mode="after")
    def _validate(self) -> "MixtureSnapshot":
        k = len(self.weights)
        if k == 0:
            raise ValueError("weights must not be empty")
        _require_shape(self.means, k, "means")
        _require_shape(self.variances, k, "variances")
        if len(self.medians) != FEATURE_DIM or len(self.mads) != FEATURE_DIM:
            raise ValueError(f"medians and mads must have length {FEATURE_DIM}")
        for name in ("weights", "means", "variances", "medians", "mads"):
            _require_finite(getattr(self, name), name)
        _require_finite([self.nll_mean, self.nll_std], "nll")
        if abs(sum(self.weights) - 1.0) > 1e-6:
            raise ValueError("weights must sum to 1")
        if any(v <= 0 for row in self.variances for v in row):
            raise ValueError("variances must be positive")
        return self


class ModalitySnapshot(BaseModel):
    """Tier-0 baseline and optional Tier-1 mixture for one modality."""
    mean: List[float]
    covariance: List[List[float]]
    sample_count: int = Field(..., ge=1)
    mixture: Optional[MixtureSnapshot] = None

    @field_validator("mean")
    @classmethod
    def _check_mean(cls, v: List[float]) -> List[float]:
        if len(v) != FEATURE_DIM:
            raise ValueError(f"mean must have length {FEATURE_DIM}")
        _require_finite(v, "mean")
        return v

    @field_validator("covariance")
    @classmethod
    def _check_covariance(cls, v: List[List[float]]) -> List[List[float]]:
        _require_shape(v, FEATURE_DIM, "covariance")
        _require_finite(v, "covariance")
        return v


class BaselineSnapshot(BaseModel):
    """Everything needed to resume scoring without re-collecting samples."""
    profile_id: str = Field(default="default")
    created_at: float = Field(..., description="Seconds since epoch")
    modalities: Dict[Modality, ModalitySnapshot] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _non_empty(self) -> "BaselineSnapshot":
        if not self.modalities:
            raise ValueError("snapshot holds no modality baselines")
        return self
