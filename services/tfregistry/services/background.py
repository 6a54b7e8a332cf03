"""Bounded dispatcher for work spawned off the request path.

Webhook publishes and operator-triggered mirror syncs run as detached
asyncio tasks. At most ``max_in_flight`` run at once; beyond
``max_pending`` outstanding tasks new work is refused so a webhook flood
cannot grow memory without bound.
"""

import asyncio
from collections.abc import Awaitable, Callable

from tfregistry.logging_config import get_logger

logger = get_logger(__name__)


class TaskDispatcher:
    def __init__(self, max_in_flight: int = 8, max_pending: int = 256) -> None:
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._max_pending = max(max_pending, max_in_flight)
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, work: Callable[[], Awaitable[object]], name: str) -> bool:
        """Schedule ``work()`` in the background. Returns False if refused."""
        if self._closed:
            logger.warning("Dispatcher closed, task refused", task=name)
            return False
        if len(self._tasks) >= self._max_pending:
            logger.warning(
                "Background queue full, task refused", task=name, pending=len(self._tasks)
            )
            return False

        task = asyncio.create_task(self._run(work, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run(self, work: Callable[[], Awaitable[object]], name: str) -> None:
        async with self._semaphore:
            try:
                await work()
            except asyncio.CancelledError:
                logger.info("Background task cancelled", task=name)
                raise
            except Exception:
                logger.error("Background task failed", task=name, exc_info=True)

    async def drain(self) -> None:
        """Wait for every outstanding task (used by tests and graceful shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop accepting work, give running tasks ``timeout`` seconds, then cancel."""
        self._closed = True
        if not self._tasks:
            return
        _, still_running = await asyncio.wait(list(self._tasks), timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("Cancelled background tasks at shutdown", count=len(still_running))
