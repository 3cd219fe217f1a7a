"""Async wrapper around the host command-line tools the VM code shells out to."""

from __future__ import annotations

import asyncio
import asyncio.subprocess
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from .errors import ImageToolError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def detail(self) -> str:
        return (self.stderr or self.stdout).strip() or f"exit status {self.returncode}"


class CommandRunner:
    """Run external programs without a shell and collect their output.

    ``stdout_path`` streams the program's stdout straight into a file, which is
    how the gzip-based backup and restore jobs write large archives.
    """

    async def run(
        self,
        args: Sequence[str],
        *,
        stdout_path: Optional[str] = None,
        input_data: Optional[bytes] = None,
    ) -> CommandResult:
        argv = tuple(str(arg) for arg in args)
        logger.debug("Running command: %s", " ".join(argv))
        stdout_file = open(stdout_path, "wb") if stdout_path else None
        try:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
                    stdout=stdout_file if stdout_file is not None else asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError:
                return CommandResult(argv, 127, "", f"{argv[0]}: command not found")
            stdout, stderr = await proc.communicate(input_data)
        finally:
            if stdout_file is not None:
                stdout_file.close()

        return CommandResult(
            argv,
            proc.returncode if proc.returncode is not None else -1,
            (stdout or b"").decode("utf-8", errors="replace"),
            (stderr or b"").decode("utf-8", errors="replace"),
        )

    async def check(
        self,
        args: Sequence[str],
        *,
        stdout_path: Optional[str] = None,
        input_data: Optional[bytes] = None,
    ) -> CommandResult:
        """Run ``args`` and raise :class:`ImageToolError` on a non-zero exit."""

        result = await self.run(args, stdout_path=stdout_path, input_data=input_data)
        if not result.ok:
            raise ImageToolError(result.args[0], result.detail, result.returncode)
        return result


__all__ = ["CommandResult", "CommandRunner"]
