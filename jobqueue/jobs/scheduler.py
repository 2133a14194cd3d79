"""
Adaptive poll timer that drives queue ticks.
"""

import asyncio
from collections.abc import Awaitable, Callable

from jobqueue.config.logging import get_logger

logger = get_logger(__name__)


class PollScheduler:
    """
    Calls `tick` whenever it is woken or its current interval elapses.

    The interval starts at base_ms, grows by `factor` after every empty tick
    (capped at max_ms) and drops back to base_ms on reset(). Only the loop task
    calls `tick`, so ticks never overlap.
    """

    def __init__(
        self,
        tick: Callable[[], Awaitable[object]],
        base_ms: int,
        max_ms: int,
        factor: float = 1.5,
        name: str = "job-queue-poller",
    ):
        self._tick = tick
        self.base_ms = base_ms
        self.max_ms = max_ms
        self.factor = factor
        self.name = name
        self.interval_ms: float = base_ms
        self._wake = asyncio.Event()
        self._stopped = True
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def reset(self) -> None:
        """Return to the minimum interval (work was found or enqueued)."""
        self.interval_ms = self.base_ms

    def back_off(self) -> None:
        """Stretch the interval after an empty tick."""
        self.interval_ms = min(self.interval_ms * self.factor, self.max_ms)

    def wake(self) -> None:
        """Run the next tick as soon as the loop gets control."""
        self._wake.set()

    def start(self) -> None:
        if self.is_running:
            return
        self._stopped = False
        # First tick runs immediately
        self._wake.set()
        self._task = asyncio.create_task(self._run(), name=self.name)

    def stop(self) -> None:
        """Stop re-arming the timer. A tick already in progress finishes on its own."""
        self._stopped = True
        self._wake.set()

    async def join(self, timeout: float | None = None) -> bool:
        """Wait for the loop task to exit. Returns False if it is still running."""
        if self._task is None:
            return True
        done, _ = await asyncio.wait({self._task}, timeout=timeout)
        return bool(done)

    async def _run(self) -> None:
        while not self._stopped:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval_ms / 1000)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

            if self._stopped:
                break

            try:
                await self._tick()
            except Exception as e:
                # The tick is aborted and retried on the next interval
                logger.error("poll_tick_failed", error=str(e), exc_info=True)
                self.back_off()
