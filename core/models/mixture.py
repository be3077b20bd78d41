"""
Vigil Diagonal Gaussian Mixture

Small-K diagonal-covariance GMM fitted with expectation-maximization in
log-space. Models are immutable: retraining builds a new MixtureModel.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List

import numpy as np
from numpy.typing import NDArray
from scipy.special import logsumexp


logger = logging.getLogger(__name__)


LOG_2PI: float = math.log(2.0 * math.pi)


@dataclass(frozen=True)
class MixtureModel:
    """
    Fitted mixture.

    Attributes:
        weights: (K,) component weights, each >= weight floor, summing to 1.
        means: (K, D) component means in standardized space.
        variances: (K, D) diagonal variances, each >= variance floor.
        training_nll: (N,) negative log-likelihood of every training sample.
        log_likelihood_trace: Total log-likelihood after each E-step.
    """
    weights: NDArray[np.float64]
    means: NDArray[np.float64]
    variances: NDArray[np.float64]
    training_nll: NDArray[np.float64]
    log_likelihood_trace: List[float] = field(default_factory=list)
    epsilon: float = 1e-6

    @property
    def n_components(self) -> int:
        return int(self.weights.shape[0])

    def component_log_densities(self, Z: NDArray[np.float64]) -> NDArray[np.float64]:
        return _weighted_log_densities(Z, self.weights, self.means, self.variances, self.epsilon)

    def nll(self, Z: NDArray[np.float64]) -> NDArray[np.float64]:
        """Per-sample negative log-likelihood; Z is (N, D) or (D,)."""
        Z = np.atleast_2d(np.asarray(Z, dtype=np.float64))
        return -logsumexp(self.component_log_densities(Z), axis=1)


def _weighted_log_densities(
    Z: NDArray[np.float64],
    weights: NDArray[np.float64],
    means: NDArray[np.float64],
    variances: NDArray[np.float64],
    epsilon: float,
) -> NDArray[np.float64]:
    """log(w_k + eps) + log N(z | mu_k, diag(var_k)) for every sample and component."""
    d = Z.shape[1]
    # (N, 1, D) - (1, K, D) -> (N, K, D)
    diff = Z[:, None, :] - means[None, :, :]
    quad = np.sum(diff * diff / variances[None, :, :], axis=2)
    log_det = np.sum(np.log(variances), axis=1)
    log_gauss = -0.5 * (quad + log_det[None, :] + d * LOG_2PI)
    return log_gauss + np.log(weights + epsilon)[None, :]


def floor_weights(weights: NDArray[np.float64], floor: float) -> NDArray[np.float64]:
    """
    Raise weights below floor to floor and rescale the rest so the total is 1.

    Every returned weight is >= floor (requires K * floor < 1).
    """
    w = np.asarray(weights, dtype=np.float64) / np.sum(weights)
    floored = np.zeros(w.shape, dtype=bool)
    for _ in range(w.shape[0]):
        low = (w < floor) & ~floored
        if not np.any(low):
            break
        floored |= low
        free = ~floored
        remaining = 1.0 - floor * np.count_nonzero(floored)
        w = np.where(floored, floor, w)
        w[free] = w[free] / np.sum(w[free]) * remaining
    return w


def _initial_indices(n: int, k: int) -> List[int]:
    # component 0 seeds from the first sample, the rest spread through the corpus
    return [0] + [min(n - 1, max(1, i * n // k)) for i in range(1, k)]


def fit_mixture(
    Z: NDArray[np.float64],
    n_components: int = 2,
    max_iterations: int = 20,
    tolerance: float = 1e-3,
    variance_floor: float = 1e-4,
    weight_floor: float = 0.01,
    epsilon: float = 1e-6,
) -> MixtureModel:
    """
    Fit a diagonal GMM by EM.

    Args:
        Z: Standardized training samples, shape (N, D), N >= 2.
        n_components: K.
        max_iterations: EM iteration cap.
        tolerance: Stop once the relative log-likelihood improvement drops below this.

    Returns:
        Fitted MixtureModel with per-sample training NLLs.
    """
    Z = np.asarray(Z, dtype=np.float64)
    n, _ = Z.shape
    k = n_components

    means = Z[_initial_indices(n, k)].copy()
    variances = np.tile(np.maximum(Z.var(axis=0), variance_floor), (k, 1))
    weights = np.full(k, 1.0 / k)

    trace: List[float] = []
    converged = False
    for iteration in range(max_iterations):
        # E-step
        log_p = _weighted_log_densities(Z, weights, means, variances, epsilon)
        log_norm = logsumexp(log_p, axis=1)
        ll = float(np.sum(log_norm))
        trace.append(ll)

        if len(trace) > 1:
            prev = trace[-2]
            if (ll - prev) / max(abs(prev), epsilon) < tolerance:
                converged = True
                break

        resp = np.exp(log_p - log_norm[:, None])

        # M-step
        nk = resp.sum(axis=0) + epsilon
        weights = floor_weights(nk / n, weight_floor)
        means = (resp.T @ Z) / nk[:, None]
        for j in range(k):
            diff = Z - means[j]
            variances[j] = (resp[:, j] @ (diff * diff)) / nk[j]
        variances = np.maximum(variances, variance_floor)

    if not converged:
        log_norm = logsumexp(_weighted_log_densities(Z, weights, means, variances, epsilon), axis=1)
        trace.append(float(np.sum(log_norm)))

    logger.debug(f"EM finished after {len(trace)} evaluations, log-likelihood={trace[-1]:.3f}")

    return MixtureModel(
        weights=weights,
        means=means,
        variances=variances,
        training_nll=-log_norm,
        log_likelihood_trace=trace,
        epsilon=epsilon,
    )
