"""
Periodic background task with explicit start/stop.

Every timer-driven loop in the controller (reconciliation, sampling, scaling
evaluation, pattern pruning, health checks) runs as a PeriodicTask owned by
its component. Each completed tick is a heartbeat the orchestrator watches.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs ``callback`` every ``interval`` seconds until stopped.

    Exceptions from the callback are logged and the loop continues on the
    next tick. After ``max_consecutive_failures`` failures in a row the task
    gives up and stops itself, which the orchestrator sees as a dead
    component.
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[], Awaitable[object]],
        interval: float,
        clock: Callable[[], float] = time.time,
        run_immediately: bool = True,
        max_consecutive_failures: int | None = None,
    ):
        self.name = name
        self.callback = callback
        self.interval = interval
        self.clock = clock
        self.run_immediately = run_immediately
        self.max_consecutive_failures = max_consecutive_failures

        self.ticks = 0
        self.failures = 0
        self.consecutive_failures = 0
        self.last_heartbeat: float | None = None
        self.last_error: str | None = None
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the loop."""
        if self.running:
            logger.warning(f"Task {self.name} already running")
            return

        self._running = True
        self.consecutive_failures = 0
        # A fresh start counts as a heartbeat so a restart is not immediately stale
        self.last_heartbeat = self.clock()
        self._task = asyncio.create_task(self._run_loop(), name=self.name)
        logger.debug(f"Task {self.name} started (interval {self.interval}s)")

    async def stop(self) -> None:
        """Stop the loop and wait for it to exit."""
        self._running = False
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug(f"Task {self.name} stopped")

    async def run_once(self) -> bool:
        """
        Run the callback once, recording the outcome.

        Returns:
            True if the callback completed, False if it raised
        """
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            self.consecutive_failures += 1
            self.last_error = str(e)
            logger.error(f"Error in {self.name} loop: {e}", exc_info=True)
            return False

        self.ticks += 1
        self.consecutive_failures = 0
        self.last_heartbeat = self.clock()
        return True

    async def _run_loop(self) -> None:
        """Main loop."""
        if not self.run_immediately:
            await asyncio.sleep(self.interval)

        while self._running:
            await self.run_once()

            if (
                self.max_consecutive_failures is not None
                and self.consecutive_failures >= self.max_consecutive_failures
            ):
                logger.error(
                    f"Task {self.name} failed {self.consecutive_failures} times "
                    "in a row, giving up"
                )
                self._running = False
                return

            await asyncio.sleep(self.interval)

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "running": self.running,
            "interval": self.interval,
            "ticks": self.ticks,
            "failures": self.failures,
            "consecutive_failures": self.consecutive_failures,
            "last_heartbeat": self.last_heartbeat,
            "last_error": self.last_error,
        }
