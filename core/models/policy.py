"""
Vigil Policy State Machine

Hysteresis-based escalation decisions over the smoothed session risk.

Zones (defaults):
    risk >= 95           -> escalate immediately
    risk >  75 (HIGH)    -> red: escalate after 5 consecutive samples
    60 <= risk <= 75     -> yellow: every 5 consecutive samples spend a trust
                            credit; escalate once credits are exhausted
    risk <  60 (MEDIUM)  -> green: de-escalate after 10 consecutive samples,
                            regenerate one credit per 30 s

A single sample never flips the escalation flag unless it crosses the
immediate cutoff.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from core.config import PolicyConfig
from core.schemas.inputs import BiometricOutcome
from core.schemas.outputs import PolicyAction, RiskLevel


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicyState:
    """Immutable policy snapshot published after every transition."""
    risk: float = 0.0
    level: RiskLevel = RiskLevel.LOW
    is_escalated: bool = False
    trust_credits: int = 3
    consecutive_high: int = 0
    consecutive_low: int = 0
    consecutive_yellow: int = 0
    action: PolicyAction = PolicyAction.MONITOR
    regen_anchor: Optional[float] = None  # start of the current green credit period


def clamp_risk(risk: Optional[float]) -> float:
    """Clamp to [0, 100]; NaN and None become 0."""
    if risk is None or math.isnan(risk):
        return 0.0
    return max(0.0, min(100.0, float(risk)))


class PolicyStateMachine:
    """
    Escalation state machine.

    Mutations are serialized by an internal lock; `state` returns the last
    published frozen PolicyState without locking.
    """

    def __init__(
        self,
        config: Optional[PolicyConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or PolicyConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = self._initial_state()

    def _initial_state(self) -> PolicyState:
        return PolicyState(trust_credits=self.config.max_trust_credits)

    @property
    def state(self) -> PolicyState:
        return self._state

    def classify(self, risk: float) -> RiskLevel:
        cfg = self.config
        if risk >= cfg.critical_threshold:
            return RiskLevel.CRITICAL
        if risk >= cfg.high_threshold:
            return RiskLevel.HIGH
        if risk >= cfg.medium_threshold:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    # -------------------------------------------------------------------------
    # Risk samples
    # -------------------------------------------------------------------------

    def process_risk(self, risk: Optional[float], now: Optional[float] = None) -> PolicyAction:
        """
        Feed one smoothed risk sample.

        Never raises; out-of-range and NaN inputs are clamped.

        Returns:
            ESCALATE while escalated, RESET on the de-escalating sample,
            MONITOR otherwise.
        """
        cfg = self.config
        risk = clamp_risk(risk)
        now = self._clock() if now is None else now

        with self._lock:
            s = self._state
            high, low, yellow = s.consecutive_high, s.consecutive_low, s.consecutive_yellow
            anchor = s.regen_anchor
            credits = s.trust_credits
            escalated = s.is_escalated

            if risk > cfg.high_threshold:
                high, low, yellow, anchor = high + 1, 0, 0, None
            elif risk < cfg.medium_threshold:
                high, low, yellow = 0, low + 1, 0
                if anchor is None:
                    anchor = now
            else:
                high, low, yellow, anchor = 0, 0, yellow + 1, None

            credits, anchor = self._regenerate(credits, anchor, now)

            action = PolicyAction.MONITOR
            if not escalated:
                if risk >= cfg.immediate_escalation_risk:
                    escalated = True
                    logger.warning(f"Escalating: risk {risk:.1f} crossed immediate cutoff")
                elif high >= cfg.consecutive_high_to_escalate:
                    escalated = True
                    logger.warning(f"Escalating: {high} consecutive high-risk samples")
                elif yellow >= cfg.consecutive_high_to_escalate:
                    yellow = 0
                    if credits > 0:
                        credits -= 1
                        logger.info(f"Sustained medium risk, trust credit spent ({credits} left)")
                    else:
                        escalated = True
                        logger.warning("Escalating: sustained medium risk with no trust credits")
                if escalated:
                    action = PolicyAction.ESCALATE
            elif low >= cfg.consecutive_low_to_deescalate:
                escalated = False
                low = 0
                action = PolicyAction.RESET
                logger.info("De-escalating after sustained low risk")
            else:
                action = PolicyAction.ESCALATE

            self._state = PolicyState(
                risk=risk,
                level=self.classify(risk),
                is_escalated=escalated,
                trust_credits=credits,
                consecutive_high=high,
                consecutive_low=low,
                consecutive_yellow=yellow,
                action=action,
                regen_anchor=anchor,
            )
            return action

    def _regenerate(self, credits: int, anchor: Optional[float], now: float):
        """Award one credit per full interval since anchor; anchor advances by whole intervals."""
        if anchor is None:
            return credits, None
        interval = self.config.credit_regen_interval_s
        periods = int((now - anchor) // interval)
        if periods <= 0:
            return credits, anchor
        new_credits = min(self.config.max_trust_credits, credits + periods)
        if new_credits > credits:
            logger.debug(f"Trust credits regenerated {credits} -> {new_credits}")
        return new_credits, anchor + periods * interval

    def tick(self, now: Optional[float] = None) -> PolicyState:
        """Time-driven evaluation (credit regeneration) without a new sample."""
        now = self._clock() if now is None else now
        with self._lock:
            s = self._state
            credits, anchor = self._regenerate(s.trust_credits, s.regen_anchor, now)
            if credits != s.trust_credits or anchor != s.regen_anchor:
                self._state = replace(s, trust_credits=credits, regen_anchor=anchor)
            return self._state

    # -------------------------------------------------------------------------
    # Biometric outcomes
    # -------------------------------------------------------------------------

    def on_biometric_success(self) -> PolicyState:
        """Owner re-authenticated: risk 0, full credits, counters cleared. Idempotent."""
        with self._lock:
            self._state = replace(self._initial_state(), action=PolicyAction.RESET)
            logger.info("Biometric success, policy reset")
            return self._state

    def on_biometric_failure(self) -> PolicyState:
        """Failed prompt: stay escalated and lose one credit."""
        with self._lock:
            s = self._state
            self._state = replace(
                s,
                is_escalated=True,
                trust_credits=max(0, s.trust_credits - 1),
                action=PolicyAction.ESCALATE,
            )
            logger.warning(f"Biometric failure, credits now {self._state.trust_credits}")
            return self._state

    def on_biometric_cancelled(self) -> PolicyState:
        logger.info("Biometric prompt cancelled, state unchanged")
        return self._state

    def handle_outcome(self, outcome: BiometricOutcome) -> PolicyState:
        if outcome == BiometricOutcome.SUCCESS:
            return self.on_biometric_success()
        if outcome == BiometricOutcome.FAILURE:
            return self.on_biometric_failure()
        return self.on_biometric_cancelled()

    def reset(self) -> None:
        with self._lock:
            self._state = self._initial_state()
