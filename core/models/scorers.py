"""
Vigil Per-Modality Anomaly Scorers (Tier-1)

One AnomalyScorer interface, two interchangeable strategies:

- GaussianMixtureScorer: robust standardization -> 2-component diagonal GMM,
  raw score is the NLL under the mixture.
- ReconstructionScorer: robust standardization -> linear (PCA) autoencoder,
  raw score is the mean squared reconstruction error.

Both collect calibration samples per modality, train once per modality when
enough samples are buffered, and convert raw scores to probabilities with a
half-normal mapping of the z-score against their calibration statistics.
"""

import logging
import math
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Sequence, Set, Tuple

import numpy as np
from numpy.typing import NDArray
from river.stats import Mean, Var
from scipy.stats import norm

from core.config import Tier1Config
from core.models.baseline import sanitize_vector
from core.models.mixture import MixtureModel, fit_mixture
from core.models.preprocessing import (
    PreprocessingParams,
    fit_preprocessing,
    restore_preprocessing,
    standardize,
)
from core.schemas.inputs import Modality


logger = logging.getLogger(__name__)


def half_normal_probability(z: float) -> float:
    """Map a z-score to [0, 1]: max(0, 2*Phi(z) - 1). Scores below the mean map to 0."""
    if not math.isfinite(z):
        return 1.0 if z > 0 else 0.0
    return float(max(0.0, min(1.0, 2.0 * norm.cdf(z) - 1.0)))


# =============================================================================
# Interface
# =============================================================================

class AnomalyScorer(ABC):
    """
    Per-modality Tier-1 scorer.

    Calibration samples are kept in a bounded buffer per modality (oldest
    evicted). Training for a modality happens once; reset() discards
    everything.
    """

    name: str = "scorer"

    def __init__(self, config: Optional[Tier1Config] = None) -> None:
        self.config = config or Tier1Config()
        self._lock = threading.RLock()
        self._samples: Dict[Modality, Deque[NDArray[np.float64]]] = {
            m: deque(maxlen=self.config.max_samples) for m in Modality
        }
        self._preprocessing: Dict[Modality, PreprocessingParams] = {}
        self._training: Set[Modality] = set()
        self._epoch = 0  # bumped by reset(); fits from an older epoch are dropped

    # -------------------------------------------------------------------------
    # Calibration
    # -------------------------------------------------------------------------

    def add_sample(self, features: Sequence[float], modality: Modality) -> None:
        """Buffer one calibration sample (sanitized, length-checked)."""
        vector = sanitize_vector(features)
        with self._lock:
            self._samples[modality].append(vector)
            if self.is_trained(modality):
                self._on_sample(modality, standardize(vector, self._preprocessing[modality]))

    def calibration_counts(self) -> Dict[Modality, int]:
        with self._lock:
            return {m: len(self._samples[m]) for m in Modality}

    def needs_training(self) -> bool:
        """True when some untrained, idle modality has enough calibration samples."""
        with self._lock:
            return any(
                not self.is_trained(m)
                and m not in self._training
                and len(self._samples[m]) >= self.config.min_samples
                for m in Modality
            )

    def train_if_needed(self) -> List[Modality]:
        """
        Train every untrained modality that has at least min_samples.

        The sample matrix is copied under the lock and the fit runs without
        it, so ingestion and scoring are never held up by training. Fits
        finishing after a reset() are dropped.

        Returns:
            Modalities trained by this call.
        """
        with self._lock:
            epoch = self._epoch
            jobs = []
            for modality in Modality:
                if self.is_trained(modality) or modality in self._training:
                    continue
                if len(self._samples[modality]) < self.config.min_samples:
                    continue
                jobs.append((modality, np.vstack(list(self._samples[modality]))))
                self._training.add(modality)

        trained = []
        try:
            for modality, X in jobs:
                params = fit_preprocessing(
                    X,
                    modality,
                    mad_floor=self.config.mad_floor,
                    epsilon=self.config.epsilon,
                    z_clip=self.config.z_clip,
                )
                fitted = self._fit(modality, standardize(X, params))

                with self._lock:
                    if self._epoch != epoch:
                        logger.debug(f"Discarding Tier-1 {self.name} fit for {modality.value}, scorer was reset")
                        break
                    self._preprocessing[modality] = params
                    self._install(modality, fitted)
                trained.append(modality)
                logger.info(f"Tier-1 {self.name} trained for {modality.value} ({X.shape[0]} samples)")
        finally:
            with self._lock:
                if self._epoch == epoch:
                    self._training.difference_update(m for m, _ in jobs)
                    if trained:
                        self._recalibrate()
        return trained

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def score(self, window: Sequence[float], modality: Modality) -> Optional[float]:
        """
        Raw anomaly score for a window-mean vector.

        Trains lazily; None when the modality cannot be trained yet.
        """
        if not self.is_trained(modality):
            self.train_if_needed()
        with self._lock:
            if not self.is_trained(modality):
                return None
            z = standardize(sanitize_vector(window), self._preprocessing[modality])
            raw = self._raw_score(modality, z)
        if raw is None or not math.isfinite(raw):
            return None
        return raw

    def probability(self, window: Sequence[float], modality: Modality) -> Optional[float]:
        """Calibrated anomaly probability in [0, 1], None if unavailable."""
        raw = self.score(window, modality)
        if raw is None:
            return None
        with self._lock:
            stats = self._calibration(modality)
        if stats is None:
            return None
        mean, std = stats
        return half_normal_probability((raw - mean) / std)

    def is_any_modality_ready(self) -> bool:
        return any(self.is_ready(m) for m in Modality)

    def ready_modalities(self) -> List[Modality]:
        return [m for m in Modality if self.is_ready(m)]

    def reset(self) -> None:
        with self._lock:
            for buffer in self._samples.values():
                buffer.clear()
            self._preprocessing.clear()
            self._training.clear()
            self._epoch += 1
            self._clear_models()

    # -------------------------------------------------------------------------
    # Persistence hooks (strategies that cannot persist keep the defaults)
    # -------------------------------------------------------------------------

    def export_modality(self, modality: Modality) -> Optional[Dict]:
        return None

    def restore_modality(self, modality: Modality, data: Dict) -> bool:
        return False

    # -------------------------------------------------------------------------
    # Strategy hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    def is_ready(self, modality: Modality) -> bool:
        """True once the modality has a trained model and calibration."""

    def is_trained(self, modality: Modality) -> bool:
        return self.is_ready(modality)

    def _on_sample(self, modality: Modality, z: NDArray[np.float64]) -> None:
        """Calibration sample arriving after the modality was trained."""

    @abstractmethod
    def _fit(self, modality: Modality, Z: NDArray[np.float64]) -> Any:
        """Train on standardized samples; runs without the lock and must not touch scorer state."""

    @abstractmethod
    def _install(self, modality: Modality, fitted: Any) -> None:
        """Adopt the result of _fit; called under the lock."""

    @abstractmethod
    def _raw_score(self, modality: Modality, z: NDArray[np.float64]) -> Optional[float]:
        """Score one standardized vector."""

    @abstractmethod
    def _calibration(self, modality: Modality) -> Optional[Tuple[float, float]]:
        """(mean, std) of raw scores on normal data."""

    def _recalibrate(self) -> None:
        """Refresh calibration after new modalities were trained."""

    @abstractmethod
    def _clear_models(self) -> None:
        """Drop every trained model."""


# =============================================================================
# Gaussian Mixture Strategy
# =============================================================================

@dataclass(frozen=True)
class NllSummary:
    """Count, mean and population std of a set of training NLLs."""
    count: int
    mean: float
    std: float


def pool_summaries(summaries: Sequence[NllSummary], std_floor: float = 1e-9) -> Optional[NllSummary]:
    """Exact mean/std of the union of several sample sets."""
    total = sum(s.count for s in summaries)
    if total == 0:
        return None
    mean = sum(s.count * s.mean for s in summaries) / total
    var = sum(s.count * (s.std ** 2 + (s.mean - mean) ** 2) for s in summaries) / total
    return NllSummary(count=total, mean=mean, std=max(math.sqrt(var), std_floor))


class GaussianMixtureScorer(AnomalyScorer):
    """
    Density strategy: NLL under a per-modality diagonal GMM.

    Live NLLs are compared against the aggregate NLL distribution of all
    trained modalities' training samples.
    """

    name = "gmm"

    def __init__(self, config: Optional[Tier1Config] = None) -> None:
        super().__init__(config)
        self._models: Dict[Modality, MixtureModel] = {}
        self._summaries: Dict[Modality, NllSummary] = {}
        self._aggregate: Optional[NllSummary] = None

    def is_ready(self, modality: Modality) -> bool:
        return modality in self._models

    def model(self, modality: Modality) -> Optional[MixtureModel]:
        return self._models.get(modality)

    def _fit(self, modality: Modality, Z: NDArray[np.float64]) -> Tuple[MixtureModel, NllSummary]:
        cfg = self.config
        model = fit_mixture(
            Z,
            n_components=cfg.components,
            max_iterations=cfg.max_iterations,
            tolerance=cfg.tolerance,
            variance_floor=cfg.variance_floor,
            weight_floor=cfg.weight_floor,
            epsilon=cfg.epsilon,
        )
        nll = model.training_nll
        summary = NllSummary(
            count=int(nll.shape[0]),
            mean=float(np.mean(nll)),
            std=float(np.std(nll)),
        )
        return model, summary

    def _install(self, modality: Modality, fitted: Tuple[MixtureModel, NllSummary]) -> None:
        self._models[modality], self._summaries[modality] = fitted

    def _recalibrate(self) -> None:
        self._aggregate = pool_summaries(list(self._summaries.values()), self.config.std_floor)
        if self._aggregate is not None:
            logger.info(
                f"Tier-1 NLL calibration: mean={self._aggregate.mean:.4f} "
                f"std={self._aggregate.std:.4f} over {self._aggregate.count} samples"
            )

    def _raw_score(self, modality: Modality, z: NDArray[np.float64]) -> Optional[float]:
        return float(self._models[modality].nll(z)[0])

    def _calibration(self, modality: Modality) -> Optional[Tuple[float, float]]:
        if self._aggregate is None:
            return None
        return self._aggregate.mean, self._aggregate.std

    def _clear_models(self) -> None:
        self._models.clear()
        self._summaries.clear()
        self._aggregate = None

    def export_modality(self, modality: Modality) -> Optional[Dict]:
        with self._lock:
            model = self._models.get(modality)
            if model is None:
                return None
            params = self._preprocessing[modality]
            summary = self._summaries[modality]
            return {
                "weights": model.weights.tolist(),
                "means": model.means.tolist(),
                "variances": model.variances.tolist(),
                "medians": params.medians.tolist(),
                "mads": params.mads.tolist(),
                "nll_mean": summary.mean,
                "nll_std": summary.std,
                "nll_count": summary.count,
            }

    def restore_modality(self, modality: Modality, data: Dict) -> bool:
        cfg = self.config
        model = MixtureModel(
            weights=np.asarray(data["weights"], dtype=np.float64),
            means=np.asarray(data["means"], dtype=np.float64),
            variances=np.asarray(data["variances"], dtype=np.float64),
            training_nll=np.empty(0),
            epsilon=cfg.epsilon,
        )
        with self._lock:
            self._preprocessing[modality] = restore_preprocessing(
                modality, data["medians"], data["mads"], cfg.epsilon, cfg.z_clip
            )
            self._models[modality] = model
            self._summaries[modality] = NllSummary(
                count=int(data["nll_count"]),
                mean=float(data["nll_mean"]),
                std=float(data["nll_std"]),
            )
            self._recalibrate()
        logger.info(f"Tier-1 mixture restored for {modality.value}")
        return True


# =============================================================================
# Reconstruction Strategy
# =============================================================================

@dataclass(frozen=True)
class LinearAutoencoder:
    """PCA encoder/decoder: reconstruct = mean + (z - mean) @ W @ W.T."""
    center: NDArray[np.float64]
    components: NDArray[np.float64]  # (D, k), orthonormal columns

    def reconstruction_error(self, Z: NDArray[np.float64]) -> NDArray[np.float64]:
        Z = np.atleast_2d(Z)
        centered = Z - self.center
        recon = centered @ self.components @ self.components.T
        return np.mean((centered - recon) ** 2, axis=1)


def fit_autoencoder(Z: NDArray[np.float64], n_components: int) -> LinearAutoencoder:
    center = Z.mean(axis=0)
    # rows of vt are principal directions, ordered by singular value
    _, _, vt = np.linalg.svd(Z - center, full_matrices=False)
    k = min(n_components, vt.shape[0])
    return LinearAutoencoder(center=center, components=vt[:k].T.copy())


class ReconstructionScorer(AnomalyScorer):
    """
    Reconstruction strategy: mean squared error of a linear autoencoder.

    Error statistics are accumulated with streaming River estimators and
    only used once min_error_history errors have been observed.
    """

    name = "reconstruction"

    def __init__(self, config: Optional[Tier1Config] = None) -> None:
        super().__init__(config)
        self._models: Dict[Modality, LinearAutoencoder] = {}
        self._error_mean: Dict[Modality, Mean] = {}
        self._error_var: Dict[Modality, Var] = {}
        self._error_count: Dict[Modality, int] = {}

    def is_ready(self, modality: Modality) -> bool:
        return (
            modality in self._models
            and self._error_count.get(modality, 0) >= self.config.min_error_history
        )

    def is_trained(self, modality: Modality) -> bool:
        return modality in self._models

    def _on_sample(self, modality: Modality, z: NDArray[np.float64]) -> None:
        # keep learning the normal error level until enough history exists
        if self._error_count[modality] < self.config.min_error_history:
            self._observe_error(modality, float(self._models[modality].reconstruction_error(z)[0]))

    def _fit(self, modality: Modality, Z: NDArray[np.float64]) -> Tuple[LinearAutoencoder, NDArray[np.float64]]:
        model = fit_autoencoder(Z, self.config.pca_components)
        return model, model.reconstruction_error(Z)

    def _install(self, modality: Modality, fitted: Tuple[LinearAutoencoder, NDArray[np.float64]]) -> None:
        model, errors = fitted
        self._models[modality] = model
        self._error_mean[modality] = Mean()
        self._error_var[modality] = Var()
        self._error_count[modality] = 0
        for error in errors:
            self._observe_error(modality, float(error))

    def _observe_error(self, modality: Modality, error: float) -> None:
        self._error_mean[modality].update(error)
        self._error_var[modality].update(error)
        self._error_count[modality] += 1

    def _raw_score(self, modality: Modality, z: NDArray[np.float64]) -> Optional[float]:
        return float(self._models[modality].reconstruction_error(z)[0])

    def _calibration(self, modality: Modality) -> Optional[Tuple[float, float]]:
        if self._error_count.get(modality, 0) < self.config.min_error_history:
            return None
        mean = self._error_mean[modality].get()
        std = math.sqrt(max(self._error_var[modality].get(), 0.0))
        return mean, max(std, self.config.std_floor)

    def _clear_models(self) -> None:
        self._models.clear()
        self._error_mean.clear()
        self._error_var.clear()
        self._error_count.clear()


# =============================================================================
# Factory
# =============================================================================

SCORERS = {
    GaussianMixtureScorer.name: GaussianMixtureScorer,
    ReconstructionScorer.name: ReconstructionScorer,
}


def create_scorer(config: Optional[Tier1Config] = None) -> AnomalyScorer:
    """Instantiate the strategy named by config.strategy."""
    config = config or Tier1Config()
    return SCORERS[config.strategy](config)
