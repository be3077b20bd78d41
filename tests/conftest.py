"""
Vigil Test Suite - Shared Pytest Fixtures

This conftest.py provides fixtures for all test categories including:
- Synthetic owner / impostor feature vector generators
- Deterministic clock and inline executor for the session pipeline
- Mocked Redis client for persistence tests

Usage:
    pytest tests/ -v -s
"""

from concurrent.futures import Executor, Future
from typing import List
from unittest.mock import MagicMock

import numpy as np
import pytest

from core.config import EngineConfig
from core.models.policy import PolicyStateMachine
from core.orchestrator import VigilOrchestrator


# =============================================================================
# Sample Generators
# =============================================================================

def owner_samples(n: int, seed: int = 7, center: float = 0.5, spread: float = 0.05) -> List[List[float]]:
    """
    Stable owner behavior: every feature near `center`.

    Values stay inside every modality's clip bounds so preprocessing is not
    saturated.
    """
    rng = np.random.default_rng(seed)
    return (center + spread * rng.standard_normal((n, 10))).clip(0.15, 0.95).tolist()


def impostor_samples(n: int, seed: int = 99, center: float = 0.9, spread: float = 0.02) -> List[List[float]]:
    """Shifted behavior far from the owner's baseline."""
    return owner_samples(n, seed=seed, center=center, spread=spread)


# =============================================================================
# Pipeline Helpers
# =============================================================================

class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def __init__(self) -> None:
        self.submitted = 0

    def submit(self, fn, *args, **kwargs) -> Future:
        self.submitted += 1
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class PendingExecutor(Executor):
    """Holds submitted work until run_all() is called."""

    def __init__(self) -> None:
        self.pending = []

    def submit(self, fn, *args, **kwargs) -> Future:
        future: Future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_all(self) -> None:
        pending, self.pending = self.pending, []
        for future, fn, args, kwargs in pending:
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as e:
                future.set_exception(e)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def executor() -> InlineExecutor:
    return InlineExecutor()


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def orchestrator(config, executor, clock):
    """Orchestrator with inline Tier-1 jobs and a fake clock."""
    orch = VigilOrchestrator(
        config=config,
        policy=PolicyStateMachine(config.policy, clock),
        executor=executor,
        clock=clock,
        wall_clock=clock,
    )
    yield orch
    orch.close()


@pytest.fixture
def calibrated_orchestrator(orchestrator):
    """Orchestrator that has finished calibration on owner touch + typing data."""
    for i, vector in enumerate(owner_samples(240)):
        modality = "TOUCH" if i % 2 == 0 else "TYPING"
        orchestrator.submit_features(vector, modality)
    assert orchestrator.current_state.is_learning is False
    return orchestrator


@pytest.fixture
def mock_redis():
    """
    MagicMock standing in for a redis.Redis client.

    pipeline() returns the same mock every time so tests can inspect the
    transaction calls.
    """
    client = MagicMock()
    pipe = MagicMock()
    pipe.get.return_value = None
    client.pipeline.return_value = pipe
    client.get.return_value = None
    return client
