"""Host process inspection and signalling for hypervisor processes."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

import psutil

from .shell import CommandRunner

logger = logging.getLogger(__name__)

# psutil reports create_time with sub-second jitter between calls on some kernels.
START_TIME_TOLERANCE = 1.0


class ProcessProbe:
    """Liveness checks keyed by pid plus recorded start time.

    Comparing the start time guards against a recycled pid that now belongs to
    an unrelated process.
    """

    def create_time(self, pid: int) -> Optional[float]:
        try:
            return psutil.Process(pid).create_time()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess, ValueError):
            return None

    def is_alive(self, pid: Optional[int], started_at: Optional[float] = None) -> bool:
        if not pid or pid <= 0:
            return False
        try:
            proc = psutil.Process(pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                return False
            if started_at is not None and abs(proc.create_time() - started_at) > START_TIME_TOLERANCE:
                logger.info("pid %s was reused by another process", pid)
                return False
            return True
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # Exists but owned by another user; treat as alive.
            return True

    async def terminate(
        self,
        pid: int,
        *,
        force: bool = False,
        grace_seconds: float = 2.0,
        started_at: Optional[float] = None,
    ) -> bool:
        """Signal ``pid``; return ``True`` if a signal was delivered."""

        if not self.is_alive(pid, started_at):
            logger.debug("pid %s already gone; nothing to signal", pid)
            return False
        sig = signal.SIGKILL if force else signal.SIGTERM
        try:
            psutil.Process(pid).send_signal(sig)
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied as exc:
            logger.warning("Not permitted to signal pid %s: %s", pid, exc)
            return False
        logger.info("Sent %s to pid %s", sig.name, pid)

        if not force and grace_seconds > 0:
            await asyncio.sleep(grace_seconds)
            if self.is_alive(pid, started_at):
                logger.warning("pid %s still alive %.1fs after SIGTERM", pid, grace_seconds)
        return True


async def pin_cpus(runner: CommandRunner, pid: int, cpu_list: str) -> bool:
    """Bind every thread of ``pid`` to ``cpu_list`` (``taskset`` syntax)."""

    result = await runner.run(["taskset", "-a", "-pc", cpu_list, str(pid)])
    if not result.ok:
        logger.warning("CPU pinning %s for pid %s failed: %s", cpu_list, pid, result.detail)
        return False
    return True


__all__ = ["START_TIME_TOLERANCE", "ProcessProbe", "pin_cpus"]
