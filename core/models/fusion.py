r"""
Vigil Risk Fusion Engine

Turns the Tier-0 distance and optional Tier-1 probabilities into a single
smoothed 0-100 session risk.

    d^2 --chi2 cdf--> p0 ----------------------\
                                                 >-- w0*p0 + (1-w0)*p1 -> EMA -> risk
    per-modality p1 --context weights--> p1 ---/

Tier-1 is expensive, so it only runs when p0 looks suspicious or when it
has not run for a while.
"""

import logging
import time
from typing import Callable, Dict, Optional, Sequence

import numpy as np
from scipy.stats import chi2

from core.config import FusionConfig
from core.schemas.inputs import Modality


logger = logging.getLogger(__name__)


class RiskFusionEngine:
    """
    Confidence-weighted fusion with gated Tier-1 and EMA smoothing.

    Not internally synchronized; the session pipeline serializes access.
    """

    def __init__(
        self,
        config: Optional[FusionConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or FusionConfig()
        self._clock = clock
        self._ema: Optional[float] = None
        self._last_tier1_run: Optional[float] = None
        self._tier1_runs: int = 0

    # -------------------------------------------------------------------------
    # Probabilities
    # -------------------------------------------------------------------------

    def distance_to_probability(self, d2: Optional[float]) -> Optional[float]:
        """Lower-tail chi-squared CDF of a squared Mahalanobis distance."""
        if d2 is None:
            return None
        if not np.isfinite(d2):
            return 1.0 if d2 > 0 else None
        return float(chi2.cdf(max(d2, 0.0), df=self.config.degrees_of_freedom))

    def should_run_tier1(self, p0: Optional[float], now: Optional[float] = None) -> bool:
        """Run Tier-1 when p0 exceeds the gate or the last run is stale."""
        if p0 is not None and p0 > self.config.tier1_gate_probability:
            return True
        if self._last_tier1_run is None:
            return True
        now = self._clock() if now is None else now
        return (now - self._last_tier1_run) >= self.config.tier1_max_interval_s

    def is_stationary(self, motion_window: Optional[Sequence[float]]) -> bool:
        """Device looks at rest when the motion axis energies are near zero."""
        if motion_window is None:
            return False
        energies = np.abs(np.asarray(motion_window, dtype=np.float64)[:6])
        return float(np.mean(energies)) < self.config.stationary_motion_energy

    def modality_weights(
        self,
        last_modality: Optional[Modality],
        stationary: bool = False,
    ) -> Dict[Modality, float]:
        """Context weights: favor touch when it drove the last event, demote motion at rest."""
        cfg = self.config
        return {
            Modality.TOUCH: cfg.touch_weight_active if last_modality == Modality.TOUCH else cfg.touch_weight_idle,
            Modality.TYPING: cfg.typing_weight,
            Modality.MOTION: cfg.motion_weight_stationary if stationary else cfg.motion_weight,
        }

    def combine_tier1(
        self,
        probabilities: Dict[Modality, Optional[float]],
        weights: Dict[Modality, float],
    ) -> Optional[float]:
        """Weighted mean over available modalities, renormalized; None if none available."""
        total = 0.0
        weight_sum = 0.0
        for modality, p in probabilities.items():
            if p is None or not np.isfinite(p):
                continue
            w = weights.get(modality, 0.0)
            total += w * p
            weight_sum += w
        if weight_sum <= 0.0:
            return None
        return float(np.clip(total / weight_sum, 0.0, 1.0))

    # -------------------------------------------------------------------------
    # Fusion
    # -------------------------------------------------------------------------

    @property
    def w0(self) -> float:
        """Tier-0 weight, decaying linearly from w0_initial to w0_final over Tier-1 runs."""
        cfg = self.config
        progress = min(self._tier1_runs / cfg.w0_decay_runs, 1.0)
        return cfg.w0_initial + (cfg.w0_final - cfg.w0_initial) * progress

    @property
    def smoothed_risk(self) -> Optional[float]:
        return self._ema

    @property
    def tier1_runs(self) -> int:
        return self._tier1_runs

    def fuse(self, p0: Optional[float], p1: Optional[float]) -> Optional[float]:
        """
        Fuse tier probabilities into the smoothed risk.

        Args:
            p0: Tier-0 probability, may be None before the baseline exists.
            p1: Tier-1 probability; falls back to p0 when None.

        Returns:
            Smoothed risk in [0, 100], or None if neither tier produced a value.
        """
        if p0 is None and p1 is None:
            return None
        if p1 is None:
            p1 = p0
        if p0 is None:
            p0 = p1

        w0 = self.w0
        raw = 100.0 * (w0 * p0 + (1.0 - w0) * p1)
        raw = float(np.clip(raw, 0.0, 100.0))

        if self._ema is None:
            self._ema = raw
        else:
            alpha = self.config.ema_alpha
            self._ema = alpha * raw + (1.0 - alpha) * self._ema
        self._ema = float(np.clip(self._ema, 0.0, 100.0))

        logger.debug(f"Fusion p0={p0:.3f} p1={p1:.3f} w0={w0:.2f} raw={raw:.1f} smoothed={self._ema:.1f}")
        return self._ema

    def mark_tier1_run(self, now: Optional[float] = None) -> None:
        self._last_tier1_run = self._clock() if now is None else now
        self._tier1_runs += 1

    def reset_smoothing(self) -> None:
        """Zero the running average so post-authentication risk restarts low."""
        self._ema = 0.0

    def reset(self) -> None:
        self._ema = None
        self._last_tier1_run = None
        self._tier1_runs = 0
