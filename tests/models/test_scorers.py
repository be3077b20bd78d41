"""
Tier-1 Anomaly Scorer Tests

Both strategies behind the AnomalyScorer interface: calibration buffering,
lazy training, probability calibration and persistence hooks.
"""

import numpy as np
import pytest

from core.config import Tier1Config
from core.exceptions import InvalidInputError
from core.models.scorers import (
    GaussianMixtureScorer,
    NllSummary,
    ReconstructionScorer,
    create_scorer,
    half_normal_probability,
    pool_summaries,
)
from core.schemas.inputs import Modality
from tests.conftest import owner_samples


IMPOSTOR_WINDOW = [0.9] * 10


def calibrate(scorer, modality=Modality.TOUCH, n=120, seed=7):
    for v in owner_samples(n, seed=seed):
        scorer.add_sample(v, modality)
    return scorer


def owner_window(n: int = 30, seed: int = 1234):
    return np.mean(owner_samples(n, seed=seed), axis=0).tolist()


# =============================================================================
# Helpers
# =============================================================================

class TestHalfNormal:
    """z-score to probability mapping."""

    def test_below_mean_is_zero(self):
        assert half_normal_probability(-1.0) == 0.0
        assert half_normal_probability(0.0) == pytest.approx(0.0)

    def test_monotone_and_bounded(self):
        values = [half_normal_probability(z) for z in (0.5, 1.0, 2.0, 5.0)]
        assert values == sorted(values)
        assert all(0.0 <= v <= 1.0 for v in values)
        assert half_normal_probability(1.0) == pytest.approx(0.6827, abs=1e-3)

    def test_infinite_z(self):
        assert half_normal_probability(float("inf")) == 1.0


class TestPoolSummaries:
    """Pooled NLL statistics equal those of the concatenated samples."""

    def test_exact_pooling(self):
        rng = np.random.default_rng(3)
        a = rng.normal(10, 2, 80)
        b = rng.normal(14, 1, 120)
        pooled = pool_summaries([
            NllSummary(len(a), float(a.mean()), float(a.std())),
            NllSummary(len(b), float(b.mean()), float(b.std())),
        ])
        both = np.concatenate([a, b])
        assert pooled.count == 200
        assert pooled.mean == pytest.approx(both.mean())
        assert pooled.std == pytest.approx(both.std())

    def test_std_floor(self):
        pooled = pool_summaries([NllSummary(5, 1.0, 0.0)], std_floor=1e-9)
        assert pooled.std == 1e-9

    def test_empty(self):
        assert pool_summaries([]) is None


# =============================================================================
# Shared Interface Behavior
# =============================================================================

@pytest.fixture(params=["gmm", "reconstruction"])
def scorer(request):
    return create_scorer(Tier1Config(strategy=request.param))


class TestScorerInterface:
    """Behavior every strategy shares."""

    def test_factory_selects_strategy(self):
        assert isinstance(create_scorer(Tier1Config(strategy="gmm")), GaussianMixtureScorer)
        assert isinstance(create_scorer(Tier1Config(strategy="reconstruction")), ReconstructionScorer)

    def test_not_ready_before_min_samples(self, scorer):
        calibrate(scorer, n=99)
        assert scorer.train_if_needed() == []
        assert not scorer.is_ready(Modality.TOUCH)
        assert scorer.score(owner_window(), Modality.TOUCH) is None
        assert scorer.probability(owner_window(), Modality.TOUCH) is None

    def test_trains_at_min_samples(self, scorer):
        calibrate(scorer, n=100)
        assert scorer.train_if_needed() == [Modality.TOUCH]
        assert scorer.is_ready(Modality.TOUCH)
        assert scorer.is_any_modality_ready()
        assert not scorer.is_ready(Modality.TYPING)

    def test_score_trains_lazily(self, scorer):
        calibrate(scorer, Modality.TYPING)
        assert scorer.score(owner_window(), Modality.TYPING) is not None
        assert scorer.is_ready(Modality.TYPING)

    def test_owner_low_impostor_high(self, scorer):
        calibrate(scorer)
        p_owner = scorer.probability(owner_window(), Modality.TOUCH)
        p_impostor = scorer.probability(IMPOSTOR_WINDOW, Modality.TOUCH)

        assert p_owner < 0.5, f"{scorer.name}: owner probability {p_owner:.3f}"
        assert p_impostor > 0.9, f"{scorer.name}: impostor probability {p_impostor:.3f}"

        print(f"\n✅ {scorer.name}: owner={p_owner:.3f} impostor={p_impostor:.3f}")

    def test_wrong_length_sample_rejected(self, scorer):
        with pytest.raises(InvalidInputError):
            scorer.add_sample([0.5] * 9, Modality.TOUCH)
        assert scorer.calibration_counts()[Modality.TOUCH] == 0

    def test_calibration_buffer_bounded(self):
        scorer = create_scorer(Tier1Config(min_samples=10, max_samples=100))
        calibrate(scorer, n=150)
        assert scorer.calibration_counts()[Modality.TOUCH] == 100

    def test_reset(self, scorer):
        calibrate(scorer)
        scorer.train_if_needed()
        scorer.reset()
        assert not scorer.is_any_modality_ready()
        assert scorer.calibration_counts()[Modality.TOUCH] == 0

    def test_fit_finishing_after_reset_is_dropped(self, scorer, monkeypatch):
        real_fit = scorer._fit

        def fit_then_reset(modality, Z):
            fitted = real_fit(modality, Z)
            scorer.reset()
            return fitted

        monkeypatch.setattr(scorer, "_fit", fit_then_reset)
        calibrate(scorer)
        assert scorer.train_if_needed() == []
        assert not scorer.is_ready(Modality.TOUCH)
        assert not scorer.needs_training()


# =============================================================================
# Gaussian Mixture Strategy
# =============================================================================

class TestGaussianMixtureScorer:
    """Density strategy specifics."""

    def test_model_shape(self):
        scorer = calibrate(GaussianMixtureScorer())
        scorer.train_if_needed()
        model = scorer.model(Modality.TOUCH)
        assert model.weights.shape == (2,)
        assert model.means.shape == (2, 10)
        assert model.training_nll.shape == (120,)

    def test_calibration_is_aggregate_across_modalities(self):
        scorer = GaussianMixtureScorer()
        calibrate(scorer, Modality.TOUCH, seed=1)
        calibrate(scorer, Modality.TYPING, seed=2)
        scorer.train_if_needed()

        nll = np.concatenate([
            scorer.model(Modality.TOUCH).training_nll,
            scorer.model(Modality.TYPING).training_nll,
        ])
        mean, std = scorer._calibration(Modality.TOUCH)
        assert mean == pytest.approx(nll.mean())
        assert std == pytest.approx(nll.std())

    def test_export_restore_round_trip_scores_identically(self):
        source = calibrate(GaussianMixtureScorer())
        source.train_if_needed()
        exported = source.export_modality(Modality.TOUCH)

        target = GaussianMixtureScorer()
        assert target.restore_modality(Modality.TOUCH, exported) is True
        assert target.is_ready(Modality.TOUCH)
        assert target.probability(IMPOSTOR_WINDOW, Modality.TOUCH) == pytest.approx(
            source.probability(IMPOSTOR_WINDOW, Modality.TOUCH)
        )

    def test_export_none_when_untrained(self):
        assert GaussianMixtureScorer().export_modality(Modality.MOTION) is None


# =============================================================================
# Reconstruction Strategy
# =============================================================================

class TestReconstructionScorer:
    """Reconstruction strategy specifics."""

    def test_needs_error_history(self):
        scorer = ReconstructionScorer(Tier1Config(min_samples=50, min_error_history=100))
        calibrate(scorer, n=60)
        scorer.train_if_needed()
        # model trained but fewer errors observed than required
        assert scorer.is_trained(Modality.TOUCH)
        assert not scorer.is_ready(Modality.TOUCH)
        assert scorer.probability(owner_window(), Modality.TOUCH) is None
        assert scorer.train_if_needed() == []

        # later samples feed the error history instead of retraining
        calibrate(scorer, n=40, seed=8)
        assert scorer.is_ready(Modality.TOUCH)
        assert scorer.probability(owner_window(), Modality.TOUCH) is not None

    def test_cannot_persist(self):
        scorer = calibrate(ReconstructionScorer())
        scorer.train_if_needed()
        assert scorer.export_modality(Modality.TOUCH) is None
        assert scorer.restore_modality(Modality.TOUCH, {}) is False
