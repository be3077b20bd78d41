"""
Schema Validation Tests

Input payload parsing, RiskState immutability and snapshot validation.
"""

import math

import pytest
from pydantic import ValidationError

from core.schemas.inputs import BiometricOutcomePayload, FeatureBatchPayload, FeatureVectorPayload, Modality
from core.schemas.outputs import BaselineSnapshot, MixtureSnapshot, ModalitySnapshot, RiskState


def identity_covariance():
    return [[1.0 if i == j else 0.0 for j in range(10)] for i in range(10)]


def mixture_payload(**overrides):
    data = {
        "weights": [0.4, 0.6],
        "means": [[0.0] * 10, [1.0] * 10],
        "variances": [[1.0] * 10, [0.5] * 10],
        "medians": [0.5] * 10,
        "mads": [0.1] * 10,
        "nll_mean": 12.0,
        "nll_std": 2.0,
        "nll_count": 100,
    }
    data.update(overrides)
    return data


# =============================================================================
# Inputs
# =============================================================================

class TestInputSchemas:
    """Host-facing payloads."""

    def test_feature_payload(self):
        p = FeatureVectorPayload(features=[0.1] * 10, modality="TOUCH")
        assert p.modality is Modality.TOUCH
        assert p.timestamp is None

    def test_length_not_enforced_at_schema_level(self):
        """Dimensionality is the engine's call (InvalidInputError)."""
        p = FeatureVectorPayload(features=[0.1] * 9, modality="TYPING")
        assert len(p.features) == 9

    def test_null_features_become_nan(self):
        p = FeatureVectorPayload(features=[None] + [0.1] * 9, modality="MOTION")
        assert math.isnan(p.features[0])

    def test_unknown_modality(self):
        with pytest.raises(ValidationError):
            FeatureVectorPayload(features=[0.1] * 10, modality="GAZE")

    def test_empty_batch_rejected(self):
        with pytest.raises(ValidationError):
            FeatureBatchPayload(vectors=[])

    def test_biometric_outcome(self):
        assert BiometricOutcomePayload(outcome="CANCELLED").outcome.value == "CANCELLED"
        with pytest.raises(ValidationError):
            BiometricOutcomePayload(outcome="MAYBE")


# =============================================================================
# Risk State
# =============================================================================

class TestRiskState:
    """Published snapshot."""

    def test_frozen(self):
        state = RiskState()
        with pytest.raises(ValidationError):
            state.risk = 50.0

    def test_risk_bounds(self):
        with pytest.raises(ValidationError):
            RiskState(risk=101.0)

    def test_json_round_trip(self):
        state = RiskState(risk=42.0, tier0_modalities=[Modality.TOUCH])
        assert RiskState.model_validate_json(state.model_dump_json()) == state


# =============================================================================
# Snapshots
# =============================================================================

class TestSnapshotValidation:
    """Finite, well-shaped snapshots only."""

    def test_valid_snapshot(self):
        snap = BaselineSnapshot(
            created_at=1.0,
            modalities={
                "TOUCH": {
                    "mean": [0.5] * 10,
                    "covariance": identity_covariance(),
                    "sample_count": 30,
                    "mixture": mixture_payload(),
                },
            },
        )
        assert snap.modalities[Modality.TOUCH].mixture.weights == [0.4, 0.6]

    def test_nan_mean_rejected(self):
        with pytest.raises(ValidationError):
            ModalitySnapshot(mean=[math.nan] + [0.5] * 9, covariance=identity_covariance(), sample_count=30)

    def test_inf_covariance_rejected(self):
        cov = identity_covariance()
        cov[3][3] = math.inf
        with pytest.raises(ValidationError):
            ModalitySnapshot(mean=[0.5] * 10, covariance=cov, sample_count=30)

    def test_covariance_shape(self):
        with pytest.raises(ValidationError):
            ModalitySnapshot(mean=[0.5] * 10, covariance=[[1.0] * 10] * 9, sample_count=30)

    def test_mixture_weights_must_sum_to_one(self):
        with pytest.raises(ValidationError):
            MixtureSnapshot(**mixture_payload(weights=[0.5, 0.6]))

    def test_mixture_non_finite_rejected(self):
        with pytest.raises(ValidationError):
            MixtureSnapshot(**mixture_payload(nll_std=math.nan))

    def test_mixture_variances_positive(self):
        with pytest.raises(ValidationError):
            MixtureSnapshot(**mixture_payload(variances=[[0.0] * 10, [1.0] * 10]))

    def test_empty_snapshot_rejected(self):
        with pytest.raises(ValidationError):
            BaselineSnapshot(created_at=1.0, modalities={})
