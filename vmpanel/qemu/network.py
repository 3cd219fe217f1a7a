"""Post-launch host networking for VMs: tap bridging, VLAN tags and ``tc`` shaping."""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from ..core.config import VMSettings
from .command import tap_name
from .shell import CommandRunner

logger = logging.getLogger(__name__)


def _mode(vm: Any) -> str:
    value = getattr(vm, "network_mode", "nat")
    return str(getattr(value, "value", value) or "nat")


def rate_kbit(bytes_per_second: int) -> str:
    return f"{max(1, (bytes_per_second * 8) // 1000)}kbit"


class TapNetwork:
    """Attach a bridged VM's tap interface to its bridge once QEMU created it."""

    def __init__(self, runner: CommandRunner, settings: VMSettings) -> None:
        self._runner = runner
        self._settings = settings

    async def attach(self, vm: Any) -> bool:
        if _mode(vm) != "bridge" or not getattr(vm, "network_bridge", ""):
            return False
        tap = tap_name(vm.name, self._settings.tap_name_length)
        result = await self._runner.run(["ip", "link", "set", tap, "master", vm.network_bridge, "up"])
        if not result.ok:
            logger.warning("Could not attach %s to bridge %s: %s", tap, vm.network_bridge, result.detail)
            return False

        vlan_id = getattr(vm, "vlan_id", None)
        if vlan_id:
            result = await self._runner.run(
                ["bridge", "vlan", "add", "dev", tap, "vid", str(vlan_id), "pvid", "untagged"]
            )
            if not result.ok:
                logger.warning("Could not tag %s with VLAN %s: %s", tap, vlan_id, result.detail)
        logger.info("Attached %s to bridge %s", tap, vm.network_bridge)
        return True


class BandwidthThrottler:
    """Shape a VM's traffic on its tap device.

    Seen from the host, packets leaving the tap are the guest's downloads and
    packets arriving on it are the guest's uploads. NAT and user-mode guests
    share the host stack and cannot be shaped individually.
    """

    def __init__(self, runner: CommandRunner, settings: VMSettings) -> None:
        self._runner = runner
        self._settings = settings

    async def apply(self, vm: Any, pid: int) -> bool:
        down: Optional[int] = getattr(vm, "bandwidth_limit_down", None)
        up: Optional[int] = getattr(vm, "bandwidth_limit_up", None)
        if not down and not up:
            return False
        if _mode(vm) != "bridge":
            logger.info(
                "VM %s (pid %s) uses %s networking; per-VM bandwidth caps need bridge mode",
                vm.name,
                pid,
                _mode(vm),
            )
            return False

        tap = tap_name(vm.name, self._settings.tap_name_length)
        commands: List[List[str]] = []
        if down:
            rate = rate_kbit(down)
            commands += [
                ["tc", "qdisc", "replace", "dev", tap, "root", "handle", "1:", "htb", "default", "10"],
                ["tc", "class", "replace", "dev", tap, "parent", "1:", "classid", "1:10",
                 "htb", "rate", rate, "ceil", rate],
            ]
        if up:
            rate = rate_kbit(up)
            commands += [
                ["tc", "qdisc", "replace", "dev", tap, "handle", "ffff:", "ingress"],
                ["tc", "filter", "replace", "dev", tap, "parent", "ffff:", "protocol", "all",
                 "u32", "match", "u32", "0", "0", "police", "rate", rate, "burst", "64k", "drop"],
            ]

        ok = True
        for args in commands:
            result = await self._runner.run(args)
            if not result.ok:
                logger.warning("tc failed for VM %s: %s", vm.name, result.detail)
                ok = False
        if ok:
            logger.info("Applied bandwidth caps to VM %s on %s (down=%s up=%s)", vm.name, tap, down, up)
        return ok


__all__ = ["BandwidthThrottler", "TapNetwork", "rate_kbit"]
