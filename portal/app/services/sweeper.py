"""Background cleanup of expired request guard state.

Rate windows from clients that never come back and CSRF tokens from
abandoned sessions are only removed by a sweep. The sweeper runs one on
a fixed interval for the lifetime of the application, independent of
request traffic.
"""

import asyncio
from typing import Optional

from portal.app.core.logging import get_logger
from portal.app.middleware.request_guard import RequestGuard

logger = get_logger(__name__)


class ExpiredEntrySweeper:
    """Periodically calls RequestGuard.sweep_expired()."""

    def __init__(self, guard: RequestGuard, interval: float = 3600.0):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._guard = guard
        self._interval = interval
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._task is not None:
            logger.debug("Sweeper already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started expired entry sweeper (interval: {self._interval}s)")

    async def stop(self) -> None:
        """Stop the background sweep task."""
        if self._task is None:
            return

        self._stop_event.set()

        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Sweeper task did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info("Stopped expired entry sweeper")

    def sweep_once(self) -> tuple[int, int]:
        windows, tokens = self._guard.sweep_expired()
        self.runs += 1
        return windows, tokens

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                # Interval elapsed
                pass
            else:
                break

            try:
                self.sweep_once()
            except Exception as e:
                logger.error(f"Error during expired entry sweep: {e}")
