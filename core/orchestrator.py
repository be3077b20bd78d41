r"""
Vigil Orchestrator

Session pipeline tying the tiers together:

    feature vector -> Tier-0 buffers -> d^2 -> p0 --(gate)--> Tier-1 job -> p1
                                               \-> fusion -> policy -> RiskState

While the session is calibrating, vectors only feed the buffers and the
published risk stays 0 / MONITOR. Calibration completes once a Tier-1 model
is trained; Tier-0 baselines are then rebuilt over the full buffers.

Tier-1 training and scoring run on an executor. Every job captures the
working-set generation it was started for; results for an older
generation (a reset happened meanwhile) are dropped.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from core.config import EngineConfig, Tier1Config
from core.exceptions import InvalidInputError, NotReadyError, NumericalInstabilityError, SnapshotError
from core.models.baseline import BaselineStatsEngine, sanitize_vector
from core.models.fusion import RiskFusionEngine
from core.models.policy import PolicyStateMachine
from core.models.scorers import AnomalyScorer, create_scorer
from core.schemas.inputs import BiometricOutcome, Modality
from core.schemas.outputs import (
    BaselineSnapshot,
    CalibrationStage,
    FeatureBound,
    ModalitySnapshot,
    PolicyAction,
    RiskState,
)


logger = logging.getLogger(__name__)


StateCallback = Callable[[RiskState], None]


class SnapshotSink(Protocol):
    """Anything that can persist a baseline snapshot (e.g. BaselineStore)."""

    def save(self, snapshot: BaselineSnapshot) -> bool:
        ...


# =============================================================================
# Session Working Set
# =============================================================================

class SessionWorkingSet:
    """
    Everything owned by one session. Replaced wholesale on reset, never
    partially cleared.
    """

    def __init__(
        self,
        generation: int,
        config: EngineConfig,
        scorer_factory: Callable[[Tier1Config], AnomalyScorer],
        clock: Callable[[], float],
    ) -> None:
        self.generation = generation
        self.baseline = BaselineStatsEngine(config.tier0)
        self.scorer = scorer_factory(config.tier1)
        self.fusion = RiskFusionEngine(config.fusion, clock)
        self.calibrated: bool = False
        self.last_modality: Optional[Modality] = None
        self.training_inflight: bool = False
        self.tier1_inflight: bool = False


# =============================================================================
# Orchestrator
# =============================================================================

class VigilOrchestrator:
    """
    Continuous-authentication pipeline for one device session.

    Collaborators are injected; nothing here is a process-wide singleton.

    Args:
        config: Engine configuration (defaults when omitted).
        policy: Policy state machine; survives working-set replacement.
        scorer_factory: Builds the Tier-1 strategy for each working set.
        executor: Runs Tier-1 jobs. A private thread pool is created when omitted.
        clock: Monotonic seconds used for gating and credit regeneration.
        wall_clock: Epoch seconds stamped onto published states.
        snapshot_sink: Receives the baseline snapshot when calibration completes.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        policy: Optional[PolicyStateMachine] = None,
        scorer_factory: Callable[[Tier1Config], AnomalyScorer] = create_scorer,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        snapshot_sink: Optional[SnapshotSink] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self._clock = clock
        self._wall_clock = wall_clock
        self._scorer_factory = scorer_factory
        self._snapshot_sink = snapshot_sink
        self.policy = policy or PolicyStateMachine(self.config.policy, clock)

        self._owns_executor = executor is None
        self._executor: Executor = executor or ThreadPoolExecutor(
            max_workers=self.config.tier1_workers,
            thread_name_prefix="vigil-tier1",
        )

        self._lock = threading.RLock()
        self._subscribers: List[StateCallback] = []
        self._working = self._new_working_set(generation=1)
        self._state: RiskState = self._build_state(self._working, risk=0.0, action=PolicyAction.MONITOR)

    def _new_working_set(self, generation: int) -> SessionWorkingSet:
        return SessionWorkingSet(generation, self.config, self._scorer_factory, self._clock)

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    @property
    def current_state(self) -> RiskState:
        """Last published state; lock-free."""
        return self._state

    @property
    def working_set(self) -> SessionWorkingSet:
        return self._working

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        """
        Register a callback invoked with every published RiskState.

        Callbacks run on the publishing thread and must not block.

        Returns:
            A function that removes the subscription.
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, state: RiskState) -> RiskState:
        self._state = state
        for callback in list(self._subscribers):
            try:
                callback(state)
            except Exception as e:
                logger.error(f"State subscriber failed: {e}")
        return state

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    def submit_features(
        self,
        features: Sequence[float],
        modality: Modality,
        timestamp: Optional[float] = None,
    ) -> RiskState:
        """
        Ingest one feature vector and re-evaluate the session.

        Args:
            timestamp: Client capture time. Gating runs on the engine clock,
                so this is only reported when a sample is dropped.

        Raises:
            InvalidInputError: Wrong dimensionality; nothing is buffered.
        """
        if not isinstance(modality, Modality):
            try:
                modality = Modality(modality)
            except ValueError as e:
                raise InvalidInputError(f"Unknown modality {modality!r}") from e

        vector = sanitize_vector(features)
        ws = self._working

        ws.baseline.add_features(vector, modality)
        if not ws.scorer.is_ready(modality):
            ws.scorer.add_sample(vector, modality)

        with self._lock:
            if ws.generation != self._working.generation:
                logger.debug(f"Dropping {modality.value} sample captured at {timestamp} across a reset")
                return self._state
            ws.last_modality = modality

            if not ws.calibrated:
                self._schedule_training(ws)
                # training may complete inline and publish a calibrated state
                if not ws.calibrated:
                    return self._publish(self._build_state(ws, risk=0.0, action=PolicyAction.MONITOR))
                return self._state

            return self._evaluate(ws)

    def submit_batch(self, vectors: Sequence) -> RiskState:
        """Ingest (features, modality[, timestamp]) tuples in order."""
        state = self._state
        for item in vectors:
            state = self.submit_features(*item)
        return state

    # -------------------------------------------------------------------------
    # Calibration
    # -------------------------------------------------------------------------

    def _schedule_training(self, ws: SessionWorkingSet) -> None:
        if ws.training_inflight or not ws.scorer.needs_training():
            return
        ws.training_inflight = True
        future = self._executor.submit(ws.scorer.train_if_needed)
        future.add_done_callback(lambda f, ws=ws: self._on_trained(ws, f))

    def _on_trained(self, ws: SessionWorkingSet, future: Future) -> None:
        snapshot = None
        with self._lock:
            ws.training_inflight = False
            if ws.generation != self._working.generation:
                logger.debug(f"Discarding Tier-1 training for stale generation {ws.generation}")
                return
            try:
                trained = future.result()
            except Exception as e:
                logger.error(f"Tier-1 training failed: {e}")
                return

            if trained and not ws.calibrated and ws.scorer.is_any_modality_ready():
                ws.calibrated = True
                rebuilt = ws.baseline.rebuild_baselines()
                logger.info(
                    f"Calibration complete: Tier-1 {[m.value for m in trained]}, "
                    f"Tier-0 rebuilt {[m.value for m in rebuilt]}"
                )
                self._publish(self._build_state(ws, risk=0.0, action=PolicyAction.MONITOR))
                if self._snapshot_sink is not None and ws.baseline.is_any_baseline_ready():
                    snapshot = self._snapshot_locked(ws)

        if snapshot is not None:
            self._snapshot_sink.save(snapshot)

    def seed_demo_baseline(self, samples_per_modality: int = 120, seed: Optional[int] = None) -> RiskState:
        """
        Fill touch and typing calibration with synthetic in-range samples and
        train synchronously. Used for demos and smoke tests.
        """
        rng = random.Random(seed)
        with self._lock:
            ws = self._working
            for i in range(2 * samples_per_modality):
                modality = Modality.TOUCH if i % 2 == 0 else Modality.TYPING
                vector = [rng.random() * 0.5 + 0.25 for _ in range(10)]
                ws.baseline.add_features(vector, modality)
                ws.scorer.add_sample(vector, modality)
            ws.scorer.train_if_needed()
            ws.baseline.rebuild_baselines()
            ws.calibrated = ws.scorer.is_any_modality_ready()
            logger.info(f"Seeded demo baseline ({samples_per_modality} samples per modality)")
            return self._publish(self._build_state(ws, risk=0.0, action=PolicyAction.MONITOR))

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def _evaluate(self, ws: SessionWorkingSet) -> RiskState:
        p0 = ws.fusion.distance_to_probability(ws.baseline.combined_distance())

        if not ws.tier1_inflight and ws.fusion.should_run_tier1(p0):
            windows = {m: ws.baseline.window_features(m) for m in Modality}
            if any(w is not None for w in windows.values()):
                stationary = ws.fusion.is_stationary(windows[Modality.MOTION])
                weights = ws.fusion.modality_weights(ws.last_modality, stationary)
                ws.tier1_inflight = True
                future = self._executor.submit(self._score_tier1, ws, windows, weights)
                future.add_done_callback(lambda f, ws=ws, p0=p0: self._on_tier1(ws, p0, f))
                return self._state

        return self._complete(ws, p0, None)

    @staticmethod
    def _score_tier1(ws: SessionWorkingSet, windows: Dict, weights: Dict[Modality, float]) -> Optional[float]:
        probabilities = {
            m: ws.scorer.probability(w, m)
            for m, w in windows.items()
            if w is not None
        }
        return ws.fusion.combine_tier1(probabilities, weights)

    def _on_tier1(self, ws: SessionWorkingSet, p0: Optional[float], future: Future) -> None:
        with self._lock:
            ws.tier1_inflight = False
            if ws.generation != self._working.generation:
                logger.debug(f"Discarding Tier-1 result for stale generation {ws.generation}")
                return
            try:
                p1 = future.result()
            except Exception as e:
                logger.error(f"Tier-1 scoring failed, continuing with Tier-0 only: {e}")
                p1 = None
            if p1 is not None:
                ws.fusion.mark_tier1_run()
            self._complete(ws, p0, p1)

    def _complete(self, ws: SessionWorkingSet, p0: Optional[float], p1: Optional[float]) -> RiskState:
        risk = ws.fusion.fuse(p0, p1)
        if risk is None:
            # no tier could score: hold position, never escalate on missing data
            return self._publish(self._build_state(ws, risk=self.policy.state.risk, action=PolicyAction.MONITOR))

        action = self.policy.process_risk(risk)
        if action == PolicyAction.ESCALATE and not self._state.is_escalated:
            logger.warning(f"Session escalated at risk {risk:.1f}")
        return self._publish(self._build_state(ws, risk=risk, action=action, p0=p0, p1=p1))

    # -------------------------------------------------------------------------
    # Host commands
    # -------------------------------------------------------------------------

    def submit_biometric_outcome(self, outcome: BiometricOutcome) -> RiskState:
        with self._lock:
            ws = self._working
            self.policy.handle_outcome(BiometricOutcome(outcome))
            if outcome == BiometricOutcome.SUCCESS:
                ws.fusion.reset_smoothing()
            ps = self.policy.state
            return self._publish(self._build_state(ws, risk=ps.risk, action=ps.action))

    def request_reset(self) -> RiskState:
        """Discard the working set and policy; calibration starts over."""
        with self._lock:
            self._working = self._new_working_set(self._working.generation + 1)
            self.policy.reset()
            logger.info(f"Session reset, generation {self._working.generation}")
            return self._publish(self._build_state(self._working, risk=0.0, action=PolicyAction.MONITOR))

    def tick(self, now: Optional[float] = None) -> RiskState:
        """Periodic re-evaluation: credit regeneration and a fresh published state."""
        with self._lock:
            ws = self._working
            ps = self.policy.tick(now)
            if not ws.calibrated:
                self._schedule_training(ws)
            return self._publish(self._build_state(ws, risk=ps.risk, action=ps.action))

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def snapshot(self) -> BaselineSnapshot:
        """
        Export Tier-0 baselines and any persistable Tier-1 models.

        Raises:
            NotReadyError: No modality has an established baseline.
        """
        with self._lock:
            return self._snapshot_locked(self._working)

    def _snapshot_locked(self, ws: SessionWorkingSet) -> BaselineSnapshot:
        modalities = {}
        for modality in ws.baseline.ready_modalities():
            baseline = ws.baseline.baseline(modality)
            modalities[modality] = ModalitySnapshot(
                mean=baseline.mean.tolist(),
                covariance=baseline.covariance.tolist(),
                sample_count=baseline.sample_count,
                mixture=ws.scorer.export_modality(modality),
            )
        if not modalities:
            raise NotReadyError("No established baseline to snapshot")
        return BaselineSnapshot(
            profile_id=self.config.profile_id,
            created_at=self._wall_clock(),
            modalities=modalities,
        )

    def restore_snapshot(self, snapshot: BaselineSnapshot) -> RiskState:
        """
        Resume from a persisted snapshot in a fresh working set.

        Raises:
            SnapshotError: A covariance cannot be factored.
        """
        with self._lock:
            ws = self._new_working_set(self._working.generation + 1)
            for modality, data in snapshot.modalities.items():
                try:
                    ws.baseline.restore_baseline(modality, data.mean, data.covariance, data.sample_count)
                except NumericalInstabilityError as e:
                    raise SnapshotError(f"Unusable {modality.value} baseline: {e}") from e
                if data.mixture is not None:
                    ws.scorer.restore_modality(modality, data.mixture.model_dump())
            ws.calibrated = True
            self._working = ws
            self.policy.reset()
            logger.info(f"Restored snapshot for profile {snapshot.profile_id} ({len(snapshot.modalities)} modalities)")
            return self._publish(self._build_state(ws, risk=0.0, action=PolicyAction.MONITOR))

    # -------------------------------------------------------------------------
    # State assembly
    # -------------------------------------------------------------------------

    def _build_state(
        self,
        ws: SessionWorkingSet,
        risk: float,
        action: PolicyAction,
        p0: Optional[float] = None,
        p1: Optional[float] = None,
    ) -> RiskState:
        ps = self.policy.state
        counts = ws.scorer.calibration_counts()
        touch_target = self.config.touch_target
        typing_target = self.config.typing_target
        tier0 = ws.baseline.ready_modalities()
        tier1 = ws.scorer.ready_modalities()

        if ws.calibrated:
            stage = CalibrationStage.COMPLETE
            percent = 100
        else:
            stage = CalibrationStage.TIER0_READY if tier0 else CalibrationStage.COLLECTING
            touch_frac = min(1.0, counts[Modality.TOUCH] / touch_target)
            typing_frac = min(1.0, counts[Modality.TYPING] / typing_target)
            percent = int(100 * (touch_frac + typing_frac) / 2)
            # only a trained Tier-1 model ends calibration
            percent = min(percent, 99)

        bounds = {}
        for modality in tier0:
            stats = ws.baseline.window_stats(modality)
            if stats is not None:
                bounds[modality] = [FeatureBound(mean=m, std=s) for m, s in stats]

        return RiskState(
            risk=max(0.0, min(100.0, risk)),
            level=self.policy.classify(risk),
            is_escalated=ps.is_escalated,
            trust_credits=ps.trust_credits,
            consecutive_high=ps.consecutive_high,
            consecutive_low=ps.consecutive_low,
            action=action,
            tier0_ready=bool(tier0),
            tier1_ready=bool(tier1),
            tier0_modalities=tier0,
            tier1_modalities=tier1,
            is_learning=not ws.calibrated,
            calibration_stage=stage,
            calibration_percent=percent,
            touch_count=min(counts[Modality.TOUCH], touch_target),
            typing_count=min(counts[Modality.TYPING], typing_target),
            touch_target=touch_target,
            typing_target=typing_target,
            baseline_bounds=bounds,
            p0=p0,
            p1=p1,
            generation=ws.generation,
            timestamp=self._wall_clock(),
        )

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)
