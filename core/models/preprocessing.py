"""
Vigil Tier-1 Preprocessing

Fixed-bound clipping, per-feature variance-stabilizing transforms and
robust (median/MAD) standardization applied before the mixture model.

Bounds are hardcoded per modality so normalization does not drift with the
calibration corpus; only the median and MAD are learned.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Tuple

import numpy as np
from numpy.typing import NDArray

from core.config import FEATURE_DIM
from core.schemas.inputs import Modality


# Consistency constant: MAD * 1.4826 estimates sigma for Gaussian data
MAD_SCALE: float = 1.4826


class Transform(str, Enum):
    """Per-feature transform applied after clipping."""
    IDENTITY = "IDENTITY"
    LOG1P = "LOG1P"      # strictly positive, right-skewed timing/scale features
    SQRT = "SQRT"        # variance-like features


# Feature order matches the capture collaborators' 10-wide vectors.
# Touch and typing share layout: durations, pressure/size ratios, velocities, jitter.
_INTERACTION_BOUNDS: List[Tuple[float, float, Transform]] = [
    (0.01, 3.0, Transform.LOG1P),
    (0.0, 3.0, Transform.LOG1P),
    (0.1, 1.0, Transform.IDENTITY),
    (0.1, 1.0, Transform.IDENTITY),
    (0.1, 100.0, Transform.LOG1P),
    (0.0, 10.0, Transform.SQRT),
    (0.0, 0.5, Transform.SQRT),
    (0.0, 0.5, Transform.SQRT),
    (0.0, 10.0, Transform.SQRT),
    (0.1, 1000.0, Transform.LOG1P),
]

# Motion: six axis energies, magnitude, two jerk terms, stationarity ratio
_MOTION_BOUNDS: List[Tuple[float, float, Transform]] = (
    [(0.0, 50.0, Transform.SQRT)] * 6
    + [(0.0, 100.0, Transform.LOG1P)]
    + [(0.0, 20.0, Transform.SQRT)] * 2
    + [(0.0, 1.0, Transform.IDENTITY)]
)

DEFAULT_BOUNDS: Dict[Modality, List[Tuple[float, float, Transform]]] = {
    Modality.TOUCH: _INTERACTION_BOUNDS,
    Modality.TYPING: _INTERACTION_BOUNDS,
    Modality.MOTION: _MOTION_BOUNDS,
}


@dataclass(frozen=True)
class PreprocessingParams:
    """Learned robust-standardization state for one modality."""
    modality: Modality
    medians: NDArray[np.float64]
    mads: NDArray[np.float64]
    epsilon: float = 1e-6
    z_clip: float = 4.0

    @property
    def scales(self) -> NDArray[np.float64]:
        return MAD_SCALE * self.mads + self.epsilon


def clip_and_transform(X: NDArray[np.float64], modality: Modality) -> NDArray[np.float64]:
    """
    Clip every feature to its bounds and apply its transform.

    Accepts a single vector or a 2-D batch; returns the same shape.
    """
    X = np.asarray(X, dtype=np.float64)
    bounds = DEFAULT_BOUNDS[modality]
    lower = np.array([s[0] for s in bounds])
    upper = np.array([s[1] for s in bounds])
    out = np.clip(X, lower, upper)

    for j, (_, _, transform) in enumerate(bounds):
        if transform is Transform.LOG1P:
            out[..., j] = np.log1p(out[..., j])
        elif transform is Transform.SQRT:
            out[..., j] = np.sqrt(out[..., j])
    return out


def fit_preprocessing(
    X: NDArray[np.float64],
    modality: Modality,
    mad_floor: float = 1e-9,
    epsilon: float = 1e-6,
    z_clip: float = 4.0,
) -> PreprocessingParams:
    """
    Learn per-feature medians and MADs over the transformed corpus.

    Args:
        X: Raw calibration samples, shape (N, 10).
        modality: Selects the fixed bounds/transforms.
        mad_floor: Lower bound for every MAD (constant features).

    Returns:
        Frozen PreprocessingParams.
    """
    T = clip_and_transform(X, modality)
    medians = np.median(T, axis=0)
    mads = np.maximum(np.median(np.abs(T - medians), axis=0), mad_floor)
    return PreprocessingParams(
        modality=modality,
        medians=medians,
        mads=mads,
        epsilon=epsilon,
        z_clip=z_clip,
    )


def standardize(X: NDArray[np.float64], params: PreprocessingParams) -> NDArray[np.float64]:
    """Clip, transform, then robust z-score clipped to +/- z_clip."""
    T = clip_and_transform(X, params.modality)
    Z = (T - params.medians) / params.scales
    return np.clip(Z, -params.z_clip, params.z_clip)


def restore_preprocessing(
    modality: Modality,
    medians: List[float],
    mads: List[float],
    epsilon: float = 1e-6,
    z_clip: float = 4.0,
) -> PreprocessingParams:
    medians_arr = np.asarray(medians, dtype=np.float64).reshape(FEATURE_DIM)
    mads_arr = np.asarray(mads, dtype=np.float64).reshape(FEATURE_DIM)
    return PreprocessingParams(modality, medians_arr, mads_arr, epsilon, z_clip)
