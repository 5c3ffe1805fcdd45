"""
Best-effort background work: secondary writes and announcements that must
never block or fail the handler that triggered them.
"""
import asyncio
from typing import Awaitable, Set

from logging_config import get_logger

logger = get_logger(__name__)

class BestEffortTasks:
    """Runs coroutines in the background, logging (not raising) their failures."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, description: str) -> asyncio.Task:
        task = asyncio.create_task(self._run(coro, description))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, coro: Awaitable, description: str) -> None:
        try:
            await coro
            logger.debug(f"Best-effort task done: {description}")
        except asyncio.CancelledError:
            logger.debug(f"Best-effort task cancelled: {description}")
            raise
        except Exception as e:
            logger.warning(f"Best-effort task failed: {description}: {e}")

    async def drain(self) -> None:
        """Wait until every task spawned so far (and any they spawn) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
