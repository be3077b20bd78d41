"""
Vigil Core Schemas

Public exports for input and output Pydantic models.
"""

# Input schemas
from core.schemas.inputs import (
    BiometricOutcome,
    BiometricOutcomePayload,
    FeatureBatchPayload,
    FeatureVectorPayload,
    Modality,
)

# Output schemas
from core.schemas.outputs import (
    BaselineSnapshot,
    CalibrationStage,
    FeatureBound,
    MixtureSnapshot,
    ModalitySnapshot,
    PolicyAction,
    RiskLevel,
    RiskState,
)

__all__ = [
    # Input
    "Modality",
    "BiometricOutcome",
    "FeatureVectorPayload",
    "FeatureBatchPayload",
    "BiometricOutcomePayload",
    # Output
    "RiskLevel",
    "PolicyAction",
    "CalibrationStage",
    "FeatureBound",
    "RiskState",
    "MixtureSnapshot",
    "ModalitySnapshot",
    "BaselineSnapshot",
]
