"""Disk-image operations built on ``qemu-img`` and ``gzip``."""

from __future__ import annotations

import logging
import os
import shutil
from typing import Dict, List

from fastapi.concurrency import run_in_threadpool

from .errors import ImageToolError
from .shell import CommandRunner

logger = logging.getLogger(__name__)


def parse_snapshot_list(output: str) -> List[Dict[str, str]]:
    """Parse ``qemu-img snapshot -l`` output into one dict per snapshot.

    The first two lines are the "Snapshot list:" banner and the column header;
    rows with fewer than four whitespace-separated fields are skipped.
    """

    snapshots: List[Dict[str, str]] = []
    for index, line in enumerate(output.splitlines()):
        if index < 2 or not line.strip():
            continue
        fields = line.split()
        if len(fields) < 4:
            continue
        snapshots.append(
            {
                "id": fields[0],
                "tag": fields[1],
                "vm_size": fields[2],
                "date": fields[3],
                "vm_clock": "",
            }
        )
    return snapshots


class ImageTool:
    def __init__(self, runner: CommandRunner, qemu_img: str = "qemu-img") -> None:
        self._runner = runner
        self._qemu_img = qemu_img

    async def create_disk(self, path: str, size_gb: int, disk_format: str = "qcow2") -> None:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        await self._runner.check([self._qemu_img, "create", "-f", disk_format or "qcow2", path, f"{size_gb}G"])
        logger.info("Created %s disk %s (%sG)", disk_format, path, size_gb)

    async def create_overlay(self, path: str, backing_path: str, backing_format: str = "qcow2") -> bool:
        """Create a copy-on-write overlay of ``backing_path``.

        Falls back to a full copy when ``qemu-img`` cannot create the overlay;
        returns ``True`` only when an overlay was created.
        """

        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        result = await self._runner.run(
            [self._qemu_img, "create", "-f", "qcow2", "-b", backing_path, "-F", backing_format, path]
        )
        if result.ok:
            return True
        logger.warning("Overlay on %s failed (%s); copying the image instead", backing_path, result.detail)
        try:
            await run_in_threadpool(shutil.copyfile, backing_path, path)
        except OSError as exc:
            raise ImageToolError("copy", f"{backing_path} -> {path}: {exc}") from exc
        return False

    async def convert(self, source: str, destination: str, disk_format: str = "qcow2") -> int:
        """Write a standalone copy of ``source`` with any backing chain flattened."""

        os.makedirs(os.path.dirname(destination) or ".", exist_ok=True)
        await self._runner.check([self._qemu_img, "convert", "-O", disk_format, source, destination])
        return os.path.getsize(destination)

    async def resize(self, path: str, size_gb: int, disk_format: str = "qcow2") -> None:
        await self._runner.check([self._qemu_img, "resize", "-f", disk_format or "qcow2", path, f"{size_gb}G"])
        logger.info("Resized disk %s to %sG", path, size_gb)

    async def compress(self, source: str, destination: str) -> int:
        """Gzip ``source`` into ``destination``; returns the archive size in bytes."""

        os.makedirs(os.path.dirname(destination) or ".", exist_ok=True)
        await self._runner.check(["gzip", "-c", source], stdout_path=destination)
        return os.path.getsize(destination)

    async def decompress(self, source: str, destination: str) -> None:
        os.makedirs(os.path.dirname(destination) or ".", exist_ok=True)
        await self._runner.check(["gunzip", "-c", source], stdout_path=destination)

    async def snapshot_create(self, disk_path: str, tag: str) -> None:
        await self._runner.check([self._qemu_img, "snapshot", "-c", tag, disk_path])

    async def snapshot_apply(self, disk_path: str, tag: str) -> None:
        await self._runner.check([self._qemu_img, "snapshot", "-a", tag, disk_path])

    async def snapshot_delete(self, disk_path: str, tag: str) -> None:
        await self._runner.check([self._qemu_img, "snapshot", "-d", tag, disk_path])

    async def snapshot_list(self, disk_path: str) -> List[Dict[str, str]]:
        if not disk_path:
            return []
        result = await self._runner.run([self._qemu_img, "snapshot", "-l", disk_path])
        if not result.ok:
            logger.debug("Listing snapshots of %s failed: %s", disk_path, result.detail)
            return []
        return parse_snapshot_list(result.stdout)


__all__ = ["ImageTool", "parse_snapshot_list"]
