"""Host inventory the VM forms need: physical disks and Linux bridges."""

from __future__ import annotations

import logging
from typing import Dict, List

from .shell import CommandRunner

logger = logging.getLogger(__name__)


def parse_lsblk(output: str) -> List[Dict[str, str]]:
    disks: List[Dict[str, str]] = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 3 or parts[2] != "disk":
            continue
        disk = {"device": f"/dev/{parts[0]}", "size": parts[1]}
        if len(parts) >= 4:
            disk["model"] = " ".join(parts[3:])
        disks.append(disk)
    return disks


def parse_bridges(output: str) -> List[str]:
    bridges: List[str] = []
    for line in output.splitlines():
        if not line or line[0].isspace() or ":" not in line:
            continue
        parts = line.split()
        if len(parts) > 1:
            bridges.append(parts[1].rstrip(":").split("@", 1)[0])
    return bridges


async def list_physical_disks(runner: CommandRunner) -> List[Dict[str, str]]:
    result = await runner.run(["lsblk", "-ndo", "NAME,SIZE,TYPE,MODEL"])
    if not result.ok:
        logger.warning("lsblk failed: %s", result.detail)
        return []
    return parse_lsblk(result.stdout)


async def list_bridges(runner: CommandRunner) -> List[str]:
    result = await runner.run(["ip", "link", "show", "type", "bridge"])
    if not result.ok:
        logger.warning("Listing bridges failed: %s", result.detail)
        return []
    return parse_bridges(result.stdout)


__all__ = ["list_bridges", "list_physical_disks", "parse_bridges", "parse_lsblk"]
