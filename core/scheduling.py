"""
BLOOMFIT Periodic Task

Cancellable fixed-delay loop on the asyncio event loop. Used for the
detection loop (~30 FPS) and the 1 Hz session timer.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs an async body repeatedly with a fixed delay between iterations.

    The next iteration is only scheduled after the current body returns, so
    at most one body call is ever in flight. cancel() takes effect
    synchronously: the flag is dropped and the pending sleep (or body) is
    cancelled before it returns.
    """

    def __init__(
        self,
        body: Callable[[], Awaitable[None]],
        interval: float,
        name: str = "periodic",
        run_immediately: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.body = body
        self.interval = interval
        self.name = name
        self.run_immediately = run_immediately
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._active = False
        self.iterations = 0

    @property
    def running(self) -> bool:
        return self._active and self._task is not None and not self._task.done()

    def start(self) -> "PeriodicTask":
        """Schedule the loop on the running event loop. No-op if already running."""
        if self.running:
            return self
        self._active = True
        self.iterations = 0
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        logger.debug(f"⏱️ {self.name} started (interval: {self.interval}s)")
        return self

    def cancel(self) -> None:
        """Stop the loop. Safe to call repeatedly and from inside the body."""
        was_active = self._active
        self._active = False
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        if was_active:
            logger.debug(f"⏹️ {self.name} cancelled after {self.iterations} iterations")

    async def _run(self) -> None:
        if not self.run_immediately:
            await self._sleep(self.interval)
        while self._active:
            try:
                await self.body()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"{self.name} iteration failed: {e}")
            self.iterations += 1
            if not self._active:
                break
            await self._sleep(self.interval)
