"""Tracked background jobs (backups, restores, snapshots, ISO downloads)."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Coroutine, Dict, Optional

logger = logging.getLogger(__name__)

# Recorded on job rows whose task was cancelled or did not survive a restart.
INTERRUPTED = "interrupted by a panel shutdown"


class JobRunner:
    """Run fire-and-forget coroutines on the loop while keeping a handle on them.

    Jobs record their own outcome (a ``failed`` status column); the runner only
    keeps references so tasks are not garbage collected mid-flight, lets tests
    wait for quiescence and cancels stragglers on shutdown.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, asyncio.Task[Any]] = {}
        self._counter = itertools.count(1)

    @property
    def active(self) -> int:
        return len(self._tasks)

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        key = f"{name}#{next(self._counter)}"
        loop = asyncio.get_running_loop()
        task = loop.create_task(coro, name=key)
        self._tasks[key] = task

        def _cleanup(finished: asyncio.Task[Any]) -> None:
            self._tasks.pop(key, None)
            if finished.cancelled():
                logger.debug("Job %s cancelled", key)
                return
            exc = finished.exception()
            if exc is not None:
                logger.error("Job %s crashed: %s", key, exc, exc_info=exc)

        task.add_done_callback(_cleanup)
        logger.debug("Scheduled job %s", key)
        return task

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until no job is running, including jobs spawned while waiting."""

        async def _drain() -> None:
            while self._tasks:
                await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

        await asyncio.wait_for(_drain(), timeout)

    async def shutdown(self) -> None:
        """Cancel every job; each one records itself as interrupted before exiting."""

        # A task cancelled before its first step never runs its own except blocks.
        await asyncio.sleep(0)
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d background job(s)", len(tasks))


__all__ = ["INTERRUPTED", "JobRunner"]
