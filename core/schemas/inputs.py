"""
Vigil Core Input Schemas

Pydantic V2 models for everything the host feeds into the engine:
- Feature vectors produced by the capture collaborators (touch, typing, motion)
- Biometric prompt outcomes
"""

import math
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Enums
# =============================================================================

class Modality(str, Enum):
    """Behavioral signal family a feature vector was extracted from."""
    TOUCH = "TOUCH"
    MOTION = "MOTION"
    TYPING = "TYPING"


class BiometricOutcome(str, Enum):
    """Result of a re-authentication prompt shown by the host."""
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    CANCELLED = "CANCELLED"


# =============================================================================
# Feature Payloads
# =============================================================================

class FeatureVectorPayload(BaseModel):
    """
    One fixed-shape feature vector.

    Length is not validated here so the engine can raise its own
    InvalidInputError; non-finite values are accepted and sanitized
    downstream.
    """
    features: List[float] = Field(..., description="Ordered feature values (expected length 10)")
    modality: Modality = Field(..., description="Signal family of the vector")
    timestamp: Optional[float] = Field(
        default=None,
        description="Client capture timestamp in seconds; informational, gating uses the engine clock",
    )

    @field_validator("features", mode="before")
    @classmethod
    def _none_to_nan(cls, v):
        # JSON has no NaN literal; clients send null for missing values
        if isinstance(v, list):
            return [math.nan if item is None else item for item in v]
        return v


class FeatureBatchPayload(BaseModel):
    """Several feature vectors submitted in capture order."""
    vectors: List[FeatureVectorPayload] = Field(..., min_length=1, max_length=500)


class BiometricOutcomePayload(BaseModel):
    """Outcome reported by the host after a biometric prompt."""
    outcome: BiometricOutcome = Field(..., description="SUCCESS, FAILURE or CANCELLED")
