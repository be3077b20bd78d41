"""
Diagonal Gaussian Mixture Tests

EM behavior on synthetic standardized data.
"""

import numpy as np
import pytest

from core.models.mixture import MixtureModel, fit_mixture, floor_weights


def two_clusters(n: int = 200, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    a = rng.normal(-1.5, 0.4, size=(n // 2, 10))
    b = rng.normal(1.5, 0.4, size=(n - n // 2, 10))
    # first half cluster a, second half cluster b: EM seeds from rows 0 and n//2
    return np.vstack([a, b])


class TestWeightFloor:
    """Weight flooring keeps a valid distribution."""

    def test_floor_raises_small_weight(self):
        w = floor_weights(np.array([0.001, 0.999]), 0.01)
        assert w.min() >= 0.01
        assert w.sum() == pytest.approx(1.0)

    def test_untouched_when_above_floor(self):
        w = floor_weights(np.array([0.3, 0.7]), 0.01)
        np.testing.assert_allclose(w, [0.3, 0.7])


class TestFitMixture:
    """EM invariants."""

    def test_log_likelihood_non_decreasing(self):
        model = fit_mixture(two_clusters())
        trace = model.log_likelihood_trace
        assert len(trace) >= 2
        for prev, cur in zip(trace, trace[1:]):
            assert cur >= prev - 1e-3 * abs(prev), f"log-likelihood dropped {prev:.3f} -> {cur:.3f}"

    def test_weights_valid(self):
        model = fit_mixture(two_clusters())
        assert model.weights.sum() == pytest.approx(1.0, abs=1e-9)
        assert np.all(model.weights >= 0.01)

    def test_variances_floored(self):
        Z = np.zeros((120, 10))
        model = fit_mixture(Z, variance_floor=1e-4)
        assert np.all(model.variances >= 1e-4)
        assert np.all(np.isfinite(model.training_nll))

    def test_finds_both_clusters(self):
        model = fit_mixture(two_clusters())
        centers = sorted(model.means.mean(axis=1))
        assert centers[0] == pytest.approx(-1.5, abs=0.3)
        assert centers[1] == pytest.approx(1.5, abs=0.3)

    def test_iteration_cap(self):
        model = fit_mixture(two_clusters(), max_iterations=3, tolerance=1e-12)
        # one evaluation per iteration plus the final one
        assert len(model.log_likelihood_trace) <= 4

    def test_training_nll_recorded_per_sample(self):
        Z = two_clusters(150)
        model = fit_mixture(Z)
        assert model.training_nll.shape == (150,)
        np.testing.assert_allclose(model.nll(Z), model.training_nll, rtol=1e-9)

    def test_outlier_has_higher_nll(self):
        model = fit_mixture(two_clusters())
        inlier = model.nll(np.full(10, 1.5))[0]
        outlier = model.nll(np.full(10, 4.0))[0]
        assert outlier > inlier


class TestMixtureModel:
    """Direct construction."""

    def test_single_vector_scoring(self):
        model = MixtureModel(
            weights=np.array([0.5, 0.5]),
            means=np.zeros((2, 10)),
            variances=np.ones((2, 10)),
            training_nll=np.empty(0),
        )
        nll = model.nll(np.zeros(10))
        # -log N(0 | 0, I) in 10-D = 0.5 * 10 * log(2 pi)
        assert nll[0] == pytest.approx(0.5 * 10 * np.log(2 * np.pi), abs=1e-5)
