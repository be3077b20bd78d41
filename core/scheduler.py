"""
Vigil Scheduling

Asyncio helpers around the orchestrator:
- PeriodicEvaluator: re-evaluates the session on a fixed cadence until stopped
- StateBroadcaster: fans published RiskStates out to per-client asyncio queues
"""

import asyncio
import logging
from typing import Callable, List, Optional

from core.orchestrator import VigilOrchestrator
from core.schemas.outputs import RiskState


logger = logging.getLogger(__name__)


class PeriodicEvaluator:
    """
    Calls orchestrator.tick() every interval_s seconds.

    Stopping is explicit: stop() sets the stop event and awaits the task, so
    a tick in progress always finishes.
    """

    def __init__(self, orchestrator: VigilOrchestrator, interval_s: float = 1.0) -> None:
        self._orchestrator = orchestrator
        self.interval_s = interval_s
        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.ticks: int = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="vigil-periodic-evaluator")
        logger.info(f"Periodic evaluator started (interval {self.interval_s}s)")
        return self._task

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self._orchestrator.tick()
                self.ticks += 1
            except Exception as e:
                logger.error(f"Periodic evaluation failed: {e}")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None
        logger.info("Periodic evaluator stopped")


class StateBroadcaster:
    """
    Thread-safe bridge from orchestrator callbacks to asyncio consumers.

    Each listener gets a bounded queue; when a slow consumer's queue is
    full the oldest state is dropped, since only the latest matters.
    """

    def __init__(self, maxsize: int = 32) -> None:
        self._maxsize = maxsize
        self._queues: List[asyncio.Queue] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def attach(self, orchestrator: VigilOrchestrator) -> Callable[[], None]:
        """Subscribe to the orchestrator; must be called from the event loop."""
        self._loop = asyncio.get_running_loop()
        return orchestrator.subscribe(self._on_state)

    def listen(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        self._queues.append(queue)
        return queue

    def unlisten(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    @property
    def listener_count(self) -> int:
        return len(self._queues)

    def _on_state(self, state: RiskState) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._fan_out, state)

    def _fan_out(self, state: RiskState) -> None:
        for queue in list(self._queues):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(state)
