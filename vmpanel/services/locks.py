"""Per-VM mutexes that make state-transition preconditions atomic."""

from __future__ import annotations

import asyncio
from typing import Dict


class VMLockRegistry:
    """Hand out one ``asyncio.Lock`` per VM id.

    Start, stop, restart, delete, configuration updates and restores all take
    the lock of the VM they act on, so a "not running" check and the action
    that depends on it cannot interleave with another transition.
    """

    def __init__(self) -> None:
        self._locks: Dict[int, asyncio.Lock] = {}

    def lock(self, vm_id: int) -> asyncio.Lock:
        lock = self._locks.get(vm_id)
        if lock is None:
            lock = self._locks[vm_id] = asyncio.Lock()
        return lock

    def discard(self, vm_id: int) -> None:
        lock = self._locks.get(vm_id)
        if lock is not None and not lock.locked():
            self._locks.pop(vm_id, None)

    def __len__(self) -> int:
        return len(self._locks)


__all__ = ["VMLockRegistry"]
