"""Periodic refresh task for the conversation cache."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from wellmom_chat.core.exceptions import ChatException

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """Runs an async callback every `interval` seconds on the running loop."""

    def __init__(self, callback: Callable[[], Awaitable[object]], interval: float):
        """
        Initialize scheduler.

        Args:
            callback: Coroutine function called on each tick
            interval: Seconds between ticks. 0 or less disables the scheduler
        """
        self.callback = callback
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start ticking. Returns False when disabled or no loop is running."""
        if self.running or self.interval <= 0:
            return False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, refresh scheduler not started.")
            return False
        self._task = loop.create_task(self._run())
        logger.info(f"Refresh scheduler started (interval={self.interval}s)")
        return True

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info("Refresh scheduler stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.callback()
            except ChatException as e:
                # Stale-but-available: keep ticking, the next round may succeed
                logger.warning(f"Scheduled refresh failed: {e.detail}")
            except Exception:
                logger.exception("Unexpected error in scheduled refresh")
