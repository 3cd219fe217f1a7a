"""Repository helpers for virtual machine records."""

from __future__ import annotations

import logging
import random
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ...qemu.errors import InvalidVMConfigError, PortExhaustedError, VMExistsError
from ..models import VirtualMachine, VMBackup, VMSnapshot, VMStatus

logger = logging.getLogger(__name__)

# Upper bound on claim retries when a concurrent creator wins a port or MAC race.
MAX_CLAIM_ATTEMPTS = 8


def generate_mac_address(rng: Optional[random.Random] = None) -> str:
    rng = rng or random.SystemRandom()
    return "52:54:00:%02x:%02x:%02x" % (rng.randint(0, 255), rng.randint(0, 255), rng.randint(0, 255))


def _lowest_free(taken: Iterable[Optional[int]], port_range: Tuple[int, int]) -> Optional[int]:
    used = {port for port in taken if port is not None}
    start, end = port_range
    for port in range(start, end + 1):
        if port not in used:
            return port
    return None


async def get_vm(session: AsyncSession, vm_id: int) -> Optional[VirtualMachine]:
    return await session.get(VirtualMachine, vm_id)


async def get_vm_by_name(session: AsyncSession, name: str) -> Optional[VirtualMachine]:
    stmt = select(VirtualMachine).where(VirtualMachine.name == name)
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_vms(session: AsyncSession) -> List[VirtualMachine]:
    stmt = select(VirtualMachine).order_by(VirtualMachine.name)
    return list((await session.execute(stmt)).scalars().all())


async def find_free_ports(
    session: AsyncSession,
    *,
    spice_range: Tuple[int, int],
    vnc_range: Tuple[int, int],
) -> Tuple[int, int]:
    rows = (await session.execute(select(VirtualMachine.spice_port, VirtualMachine.vnc_port))).all()
    taken = [port for row in rows for port in row]
    spice = _lowest_free(taken, spice_range)
    if spice is None:
        raise PortExhaustedError("SPICE", spice_range)
    vnc = _lowest_free(taken, vnc_range)
    if vnc is None:
        raise PortExhaustedError("VNC", vnc_range)
    return spice, vnc


async def insert_vm(
    session: AsyncSession,
    fields: Dict[str, Any],
    *,
    spice_range: Tuple[int, int],
    vnc_range: Tuple[int, int],
    mac_factory: Callable[[], str] = generate_mac_address,
    max_attempts: int = MAX_CLAIM_ATTEMPTS,
) -> VirtualMachine:
    """Insert a VM row, claiming display ports and a MAC atomically.

    Ports and MAC addresses are protected by unique constraints; allocation
    picks the lowest free port and relies on the insert itself to detect a
    concurrent claim, retrying with fresh values after a rollback. Values the
    caller supplied explicitly are never replaced.
    """

    if await get_vm_by_name(session, fields["name"]) is not None:
        raise VMExistsError(fields["name"])

    explicit_spice = fields.get("spice_port")
    explicit_vnc = fields.get("vnc_port")
    explicit_mac = fields.get("mac_address")
    last_error: Optional[IntegrityError] = None

    for attempt in range(1, max_attempts + 1):
        values = dict(fields)
        if not explicit_spice or not explicit_vnc:
            spice, vnc = await find_free_ports(session, spice_range=spice_range, vnc_range=vnc_range)
            values["spice_port"] = explicit_spice or spice
            values["vnc_port"] = explicit_vnc or vnc
        if not explicit_mac:
            values["mac_address"] = mac_factory()

        vm = VirtualMachine(**values)
        session.add(vm)
        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            last_error = exc
            if await get_vm_by_name(session, fields["name"]) is not None:
                raise VMExistsError(fields["name"]) from exc
            if explicit_spice and explicit_vnc and explicit_mac:
                raise InvalidVMConfigError(
                    f"SPICE port {explicit_spice}, VNC port {explicit_vnc} or MAC {explicit_mac} is already in use"
                ) from exc
            logger.info(
                "Port/MAC claim for VM %s collided (attempt %d/%d); retrying",
                fields["name"],
                attempt,
                max_attempts,
            )
            continue
        return vm

    raise PortExhaustedError("SPICE/VNC", spice_range) from last_error


async def update_vm_fields(session: AsyncSession, vm: VirtualMachine, changes: Dict[str, Any]) -> VirtualMachine:
    for key, value in changes.items():
        setattr(vm, key, value)
    await session.commit()
    return vm


async def mark_running(
    session: AsyncSession,
    vm: VirtualMachine,
    *,
    pid: int,
    started_at: Optional[float],
) -> VirtualMachine:
    vm.status = VMStatus.RUNNING
    vm.pid = pid
    vm.process_started_at = started_at
    vm.last_started_at = datetime.now(timezone.utc)
    await session.commit()
    return vm


async def mark_stopped(session: AsyncSession, vm: VirtualMachine) -> VirtualMachine:
    vm.status = VMStatus.STOPPED
    vm.pid = None
    vm.process_started_at = None
    await session.commit()
    return vm


async def delete_vm(session: AsyncSession, vm: VirtualMachine) -> None:
    """Delete a VM row; backups are detached (vm_id nulled) and snapshots removed."""

    await session.execute(update(VMBackup).where(VMBackup.vm_id == vm.id).values(vm_id=None))
    await session.execute(delete(VMSnapshot).where(VMSnapshot.vm_id == vm.id))
    await session.delete(vm)
    await session.commit()


__all__ = [
    "MAX_CLAIM_ATTEMPTS",
    "generate_mac_address",
    "get_vm",
    "get_vm_by_name",
    "list_vms",
    "find_free_ports",
    "insert_vm",
    "update_vm_fields",
    "mark_running",
    "mark_stopped",
    "delete_vm",
]
