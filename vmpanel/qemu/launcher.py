"""Detached hypervisor launch through a ``nohup`` shell wrapper."""

from __future__ import annotations

import asyncio
import asyncio.subprocess
import logging
import os
import shlex
import time
from collections import deque
from dataclasses import dataclass
from typing import Optional, Sequence

from .errors import VMLaunchError
from .process import ProcessProbe

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LaunchResult:
    pid: int
    started_at: Optional[float]


def read_log_tail(path: str, lines: int = 100) -> str:
    """Return the last ``lines`` lines of ``path``, or ``""`` if it does not exist."""

    if lines <= 0:
        return ""
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            return "".join(deque(handle, maxlen=lines))
    except FileNotFoundError:
        return ""


def _read_pidfile(path: str) -> Optional[int]:
    try:
        with open(path, "r") as handle:
            raw = handle.read().strip()
    except OSError:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class ProcessLauncher:
    """Start a command in the background with output appended to a log file.

    The shell echoes the pid of the backgrounded child. QEMU daemonizes itself,
    so that pid exits almost immediately; when a pidfile is given the daemon's
    own pid is read from it instead.
    """

    def __init__(
        self,
        *,
        probe: Optional[ProcessProbe] = None,
        shell: str = "bash",
        pidfile_wait_seconds: float = 5.0,
        poll_interval: float = 0.1,
    ) -> None:
        self._probe = probe or ProcessProbe()
        self._shell = shell
        self._pidfile_wait = pidfile_wait_seconds
        self._poll_interval = poll_interval

    async def launch(
        self,
        argv: Sequence[str],
        *,
        name: str,
        log_path: str,
        pidfile: Optional[str] = None,
    ) -> LaunchResult:
        os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
        if pidfile:
            os.makedirs(os.path.dirname(pidfile) or ".", exist_ok=True)
            try:
                os.unlink(pidfile)
            except FileNotFoundError:
                pass

        script = f"nohup {shlex.join(argv)} > {shlex.quote(log_path)} 2>&1 & echo $!"
        logger.debug("Launching VM %s: %s", name, script)
        try:
            proc = await asyncio.create_subprocess_exec(
                self._shell,
                "-c",
                script,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise VMLaunchError(name, f"could not run {self._shell}: {exc}") from exc
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise VMLaunchError(name, stderr.decode(errors="replace").strip() or "launch shell failed")
        try:
            shell_pid = int(stdout.decode().strip().splitlines()[-1])
        except (IndexError, ValueError) as exc:
            raise VMLaunchError(name, f"unexpected launcher output {stdout!r}") from exc

        pid = shell_pid
        if pidfile:
            pid = await self._wait_for_pidfile(pidfile, shell_pid, name=name, log_path=log_path)

        started_at = self._probe.create_time(pid)
        logger.info("VM %s launched with pid %s", name, pid)
        return LaunchResult(pid=pid, started_at=started_at)

    async def _wait_for_pidfile(self, pidfile: str, shell_pid: int, *, name: str, log_path: str) -> int:
        deadline = time.monotonic() + self._pidfile_wait
        while True:
            pid = _read_pidfile(pidfile)
            if pid is not None:
                return pid
            if time.monotonic() >= deadline:
                break
            await asyncio.sleep(self._poll_interval)

        if self._probe.is_alive(shell_pid):
            logger.warning("No pidfile for VM %s after %.1fs; tracking pid %s", name, self._pidfile_wait, shell_pid)
            return shell_pid
        tail = read_log_tail(log_path, 20).strip()
        raise VMLaunchError(name, tail or "hypervisor exited before writing its pidfile")


__all__ = ["LaunchResult", "ProcessLauncher", "read_log_tail"]
