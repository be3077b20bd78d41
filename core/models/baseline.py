"""
Vigil Baseline Statistics Engine (Tier-0)

Per-modality rolling buffers, a one-shot mean/covariance baseline and the
squared Mahalanobis distance of the recent window against it.

Pipeline per modality:
    add_features -> bounded buffer -> (min samples reached) -> Baseline
    compute_distance -> recent window mean -> Cholesky solve -> d^2

The Cholesky factor is computed once when the baseline is established and
reused for every distance; no explicit inverse is ever formed.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
from scipy.linalg import LinAlgError, cholesky, solve_triangular

from core.config import FEATURE_DIM, Tier0Config
from core.exceptions import InvalidInputError, NumericalInstabilityError
from core.schemas.inputs import Modality


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Baseline:
    """Established statistics for one modality. Never mutated."""
    mean: NDArray[np.float64]
    covariance: NDArray[np.float64]
    cholesky: NDArray[np.float64]
    sample_count: int


# =============================================================================
# Vector Helpers
# =============================================================================

def sanitize_vector(features: Sequence[float]) -> NDArray[np.float64]:
    """
    Validate dimensionality and replace non-finite values with 0.

    Raises:
        InvalidInputError: If the vector is not numeric or its length is not 10.
    """
    try:
        arr = np.asarray(features, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"Feature vector is not numeric: {e}") from e

    if arr.ndim != 1 or arr.shape[0] != FEATURE_DIM:
        raise InvalidInputError(
            f"Feature vector must have length {FEATURE_DIM}, got shape {arr.shape}"
        )
    return np.nan_to_num(arr, nan=0.0, posinf=0.0, neginf=0.0)


def valid_rows(samples: Sequence) -> Optional[NDArray[np.float64]]:
    """Stack the well-formed, finite samples; None when nothing survives."""
    rows = []
    for sample in samples:
        row = np.asarray(sample, dtype=np.float64)
        if row.shape != (FEATURE_DIM,) or not np.all(np.isfinite(row)):
            continue
        rows.append(row)
    if not rows:
        return None
    return np.vstack(rows)


def estimate_baseline(samples: Sequence, epsilon: float = 1e-6) -> Baseline:
    """
    Estimate mean and regularized population covariance, then factor it.

    Raises:
        NumericalInstabilityError: If no sample is usable or the covariance
            is not positive-definite after adding epsilon to the diagonal.
    """
    X = valid_rows(samples)
    if X is None:
        raise NumericalInstabilityError("No valid samples to estimate a baseline")

    mean = X.mean(axis=0)
    centered = X - mean
    covariance = centered.T @ centered / X.shape[0]
    covariance += epsilon * np.eye(FEATURE_DIM)

    return Baseline(
        mean=mean,
        covariance=covariance,
        cholesky=factor_covariance(covariance),
        sample_count=int(X.shape[0]),
    )


def factor_covariance(covariance: NDArray[np.float64]) -> NDArray[np.float64]:
    """Lower Cholesky factor, or NumericalInstabilityError."""
    if not np.all(np.isfinite(covariance)):
        raise NumericalInstabilityError("Covariance contains non-finite values")
    try:
        return cholesky(covariance, lower=True)
    except LinAlgError as e:
        raise NumericalInstabilityError(f"Covariance not positive-definite: {e}") from e


# =============================================================================
# Engine
# =============================================================================

class BaselineStatsEngine:
    """
    Tier-0 scorer: rolling buffers plus frozen per-modality baselines.

    One lock per modality; producers for different modalities never contend.
    Distances are None (not an error) until the baseline exists and the
    buffer holds at least min_window_samples.
    """

    def __init__(self, config: Optional[Tier0Config] = None) -> None:
        self.config = config or Tier0Config()
        self._capacity = self.config.buffer_capacity
        self._buffers: Dict[Modality, Deque[NDArray[np.float64]]] = {
            m: deque(maxlen=self._capacity) for m in Modality
        }
        self._locks: Dict[Modality, threading.Lock] = {m: threading.Lock() for m in Modality}
        self._baselines: Dict[Modality, Optional[Baseline]] = {m: None for m in Modality}

    def min_baseline_samples(self, modality: Modality) -> int:
        return {
            Modality.TOUCH: self.config.min_baseline_touch,
            Modality.TYPING: self.config.min_baseline_typing,
            Modality.MOTION: self.config.min_baseline_motion,
        }[modality]

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    def add_features(self, features: Sequence[float], modality: Modality) -> bool:
        """
        Append one vector to the modality buffer.

        Returns:
            True if this sample established the modality baseline.

        Raises:
            InvalidInputError: On wrong dimensionality (buffer left unchanged).
        """
        vector = sanitize_vector(features)

        with self._locks[modality]:
            buffer = self._buffers[modality]
            buffer.append(vector)  # deque maxlen evicts the oldest

            if self._baselines[modality] is not None:
                return False
            if len(buffer) < self.min_baseline_samples(modality):
                return False
            return self._establish_locked(modality)

    def _establish_locked(self, modality: Modality) -> bool:
        buffer = self._buffers[modality]
        try:
            self._baselines[modality] = estimate_baseline(list(buffer), self.config.covariance_epsilon)
        except NumericalInstabilityError as e:
            logger.warning(f"Discarding {modality.value} baseline, re-collecting samples: {e}")
            self._baselines[modality] = None
            buffer.clear()
            return False

        logger.info(f"Tier-0 baseline established for {modality.value} ({len(buffer)} samples)")
        return True

    def rebuild_baselines(self) -> List[Modality]:
        """
        Re-estimate every modality that has enough buffered samples.

        Returns:
            Modalities whose baseline was (re)built.
        """
        rebuilt = []
        for modality in Modality:
            with self._locks[modality]:
                if len(self._buffers[modality]) < self.min_baseline_samples(modality):
                    continue
                if self._establish_locked(modality):
                    rebuilt.append(modality)
        return rebuilt

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def _recent(self, modality: Modality) -> Tuple[Optional[Baseline], List[NDArray[np.float64]]]:
        with self._locks[modality]:
            buffer = self._buffers[modality]
            n = min(len(buffer), self.config.window_size)
            recent = list(buffer)[len(buffer) - n:]
            return self._baselines[modality], recent

    def window_features(self, modality: Modality) -> Optional[NDArray[np.float64]]:
        """Mean of the recent window (at most window_size samples)."""
        _, recent = self._recent(modality)
        X = valid_rows(recent)
        if X is None:
            return None
        return X.mean(axis=0)

    def window_stats(self, modality: Modality) -> Optional[List[Tuple[float, float]]]:
        """Per-feature (mean, std) of the recent window."""
        _, recent = self._recent(modality)
        X = valid_rows(recent)
        if X is None:
            return None
        return list(zip(X.mean(axis=0).tolist(), X.std(axis=0).tolist()))

    def compute_distance(self, modality: Modality) -> Optional[float]:
        """
        Squared Mahalanobis distance of the recent window mean.

        Returns:
            d^2 >= 0, or None when the baseline or window is not ready.
        """
        baseline, recent = self._recent(modality)
        if baseline is None or len(recent) < self.config.min_window_samples:
            return None

        X = valid_rows(recent)
        if X is None:
            return None

        diff = X.mean(axis=0) - baseline.mean
        y = solve_triangular(baseline.cholesky, diff, lower=True, check_finite=False)
        d2 = float(y @ y)
        if not np.isfinite(d2):
            return None
        return max(0.0, d2)

    def combined_distance(self) -> Optional[float]:
        """Worst offender across modalities, None if no modality is scorable."""
        distances = [d for d in (self.compute_distance(m) for m in Modality) if d is not None]
        if not distances:
            return None
        return max(distances)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def is_baseline_ready(self, modality: Modality) -> bool:
        return self._baselines[modality] is not None

    def is_any_baseline_ready(self) -> bool:
        return any(b is not None for b in self._baselines.values())

    def ready_modalities(self) -> List[Modality]:
        return [m for m in Modality if self._baselines[m] is not None]

    def sample_count(self, modality: Modality) -> int:
        return len(self._buffers[modality])

    def baseline(self, modality: Modality) -> Optional[Baseline]:
        return self._baselines[modality]

    def restore_baseline(
        self,
        modality: Modality,
        mean: Sequence[float],
        covariance: Sequence[Sequence[float]],
        sample_count: int,
    ) -> None:
        """
        Install a previously persisted baseline.

        The covariance is used as stored (it already carries regularization).

        Raises:
            NumericalInstabilityError: If the covariance cannot be factored.
        """
        mean_arr = np.asarray(mean, dtype=np.float64)
        cov_arr = np.asarray(covariance, dtype=np.float64)
        if mean_arr.shape != (FEATURE_DIM,) or cov_arr.shape != (FEATURE_DIM, FEATURE_DIM):
            raise NumericalInstabilityError("Baseline has the wrong shape")

        baseline = Baseline(
            mean=mean_arr,
            covariance=cov_arr,
            cholesky=factor_covariance(cov_arr),
            sample_count=int(sample_count),
        )
        with self._locks[modality]:
            self._baselines[modality] = baseline
        logger.info(f"Tier-0 baseline restored for {modality.value}")

    def reset(self) -> None:
        for modality in Modality:
            with self._locks[modality]:
                self._buffers[modality].clear()
                self._baselines[modality] = None
