"""
Vigil Engine Configuration

Pydantic models holding every tunable threshold of the risk pipeline.
Defaults reproduce the calibrated on-device behavior; any value can be
overridden through VIGIL_* environment variables (a .env file is honored).
"""

import logging
import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator


logger = logging.getLogger(__name__)


FEATURE_DIM: int = 10


# =============================================================================
# Tier Sections
# =============================================================================

class Tier0Config(BaseModel):
    """Baseline statistics (Mahalanobis) settings."""
    window_size: int = Field(default=30, ge=2, description="Recent-window length used for scoring")
    min_window_samples: int = Field(default=10, ge=1, description="Samples required before a distance is produced")
    min_baseline_touch: int = Field(default=30, ge=2)
    min_baseline_typing: int = Field(default=30, ge=2)
    min_baseline_motion: int = Field(default=50, ge=2)
    covariance_epsilon: float = Field(default=1e-6, gt=0.0, description="Diagonal regularization")

    @property
    def buffer_capacity(self) -> int:
        return 2 * self.window_size

    @model_validator(mode="after")
    def _check_window(self) -> "Tier0Config":
        if self.min_window_samples > self.window_size:
            raise ValueError("min_window_samples cannot exceed window_size")
        for name in ("min_baseline_touch", "min_baseline_typing", "min_baseline_motion"):
            if getattr(self, name) > self.buffer_capacity:
                raise ValueError(f"{name} cannot exceed buffer capacity {self.buffer_capacity}")
        return self


class Tier1Config(BaseModel):
    """Per-modality anomaly scorer settings."""
    strategy: str = Field(default="gmm", pattern="^(gmm|reconstruction)$")
    min_samples: int = Field(default=100, ge=10, description="Calibration samples before training")
    max_samples: int = Field(default=5000, ge=100)
    components: int = Field(default=2, ge=1)
    max_iterations: int = Field(default=20, ge=1)
    tolerance: float = Field(default=1e-3, gt=0.0, description="Relative log-likelihood improvement to stop EM")
    variance_floor: float = Field(default=1e-4, gt=0.0)
    weight_floor: float = Field(default=0.01, gt=0.0, lt=0.5)
    epsilon: float = Field(default=1e-6, gt=0.0)
    z_clip: float = Field(default=4.0, gt=0.0)
    mad_floor: float = Field(default=1e-9, gt=0.0)
    std_floor: float = Field(default=1e-9, gt=0.0)
    pca_components: int = Field(default=4, ge=1, le=10)
    min_error_history: int = Field(default=100, ge=2)


class FusionConfig(BaseModel):
    """Risk fusion weights, gating and smoothing."""
    degrees_of_freedom: int = Field(default=10, ge=1)
    tier1_gate_probability: float = Field(default=0.30, ge=0.0, le=1.0)
    tier1_max_interval_s: float = Field(default=10.0, gt=0.0)
    w0_initial: float = Field(default=0.7, ge=0.0, le=1.0)
    w0_final: float = Field(default=0.5, ge=0.0, le=1.0)
    w0_decay_runs: int = Field(default=20, ge=1, description="Tier-1 runs over which w0 decays")
    ema_alpha: float = Field(default=0.3, gt=0.0, le=1.0)
    touch_weight_active: float = Field(default=0.6, ge=0.0)
    touch_weight_idle: float = Field(default=0.4, ge=0.0)
    typing_weight: float = Field(default=0.6, ge=0.0)
    motion_weight: float = Field(default=0.5, ge=0.0)
    motion_weight_stationary: float = Field(default=0.2, ge=0.0)
    stationary_motion_energy: float = Field(default=0.05, ge=0.0, description="Mean |feature| below which motion is stationary")


class PolicyConfig(BaseModel):
    """Escalation thresholds and trust credit rules."""
    critical_threshold: float = Field(default=85.0, ge=0.0, le=100.0)
    high_threshold: float = Field(default=75.0, ge=0.0, le=100.0)
    medium_threshold: float = Field(default=60.0, ge=0.0, le=100.0)
    # above critical_threshold so one 85-95 sample still needs the consecutive-high run
    immediate_escalation_risk: float = Field(default=95.0, ge=0.0, le=100.0)
    consecutive_high_to_escalate: int = Field(default=5, ge=1)
    consecutive_low_to_deescalate: int = Field(default=10, ge=1)
    max_trust_credits: int = Field(default=3, ge=0)
    credit_regen_interval_s: float = Field(default=30.0, gt=0.0)

    @model_validator(mode="after")
    def _check_order(self) -> "PolicyConfig":
        if not (self.medium_threshold <= self.high_threshold <= self.critical_threshold):
            raise ValueError("thresholds must satisfy medium <= high <= critical")
        return self


class EngineConfig(BaseModel):
    """Top-level configuration for one Vigil engine instance."""
    tier0: Tier0Config = Field(default_factory=Tier0Config)
    tier1: Tier1Config = Field(default_factory=Tier1Config)
    fusion: FusionConfig = Field(default_factory=FusionConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    tier1_workers: int = Field(default=1, ge=1)
    tick_interval_s: float = Field(default=1.0, gt=0.0)
    touch_target: int = Field(default=30, ge=1, description="Touch samples expected during calibration")
    typing_target: int = Field(default=100, ge=1, description="Typing samples expected during calibration")
    profile_id: str = Field(default="default")


# =============================================================================
# Environment Loading
# =============================================================================

# env var -> (section, field); section None means top-level
_ENV_OVERRIDES: Dict[str, tuple] = {
    "VIGIL_WINDOW_SIZE": ("tier0", "window_size"),
    "VIGIL_MIN_WINDOW_SAMPLES": ("tier0", "min_window_samples"),
    "VIGIL_TIER1_STRATEGY": ("tier1", "strategy"),
    "VIGIL_TIER1_MIN_SAMPLES": ("tier1", "min_samples"),
    "VIGIL_FUSION_W0_INITIAL": ("fusion", "w0_initial"),
    "VIGIL_FUSION_W0_FINAL": ("fusion", "w0_final"),
    "VIGIL_FUSION_EMA_ALPHA": ("fusion", "ema_alpha"),
    "VIGIL_POLICY_IMMEDIATE_RISK": ("policy", "immediate_escalation_risk"),
    "VIGIL_POLICY_MAX_CREDITS": ("policy", "max_trust_credits"),
    "VIGIL_TIER1_WORKERS": (None, "tier1_workers"),
    "VIGIL_TICK_INTERVAL_S": (None, "tick_interval_s"),
    "VIGIL_PROFILE_ID": (None, "profile_id"),
}


def load_config(env: Optional[Dict[str, str]] = None) -> EngineConfig:
    """
    Build an EngineConfig from defaults plus environment overrides.

    Args:
        env: Mapping to read instead of os.environ (tests).

    Returns:
        Validated EngineConfig.
    """
    if env is None:
        load_dotenv()
        env = dict(os.environ)

    data: Dict[str, Any] = {}
    for var, (section, field) in _ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        if section is None:
            data[field] = raw
        else:
            data.setdefault(section, {})[field] = raw
        logger.debug(f"Config override {var}={raw}")

    # pydantic coerces the string values to the declared field types
    return EngineConfig.model_validate(data)
