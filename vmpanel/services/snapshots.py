"""Internal disk snapshots (qemu-img) and live snapshots (QMP)."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..db.models import SnapshotStatus, SnapshotType, VirtualMachine, VMSnapshot
from ..db.repositories import snapshots as snapshot_repo
from ..db.repositories import vms as vm_repo
from ..qemu.errors import (
    InvalidVMConfigError,
    SnapshotNotFoundError,
    VMError,
    VMNotFoundError,
    VMNotRunningError,
    VMRunningError,
)
from .jobs import INTERRUPTED

if TYPE_CHECKING:
    from .container import PanelServices

logger = logging.getLogger(__name__)


def default_snapshot_name(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime("snapshot_%Y-%m-%d_%H-%M-%S")


def _disk_size(path: str) -> Optional[int]:
    try:
        return os.path.getsize(path)
    except OSError:
        return None


class SnapshotManager:
    def __init__(self, services: "PanelServices") -> None:
        self._services = services

    async def _require_vm(self, session, vm_id: int) -> VirtualMachine:
        vm = await vm_repo.get_vm(session, vm_id)
        if vm is None:
            raise VMNotFoundError(vm_id)
        return vm

    async def list_snapshots(self, vm_id: int) -> Dict[str, Any]:
        """Return the recorded snapshots plus what ``qemu-img`` sees in the image."""

        async with self._services.session_factory() as session:
            vm = await self._require_vm(session, vm_id)
            rows = await snapshot_repo.list_snapshots_for_vm(session, vm_id)
        native = await self._services.images.snapshot_list(vm.disk_path)
        return {"snapshots": rows, "native": native}

    async def create_snapshot(
        self,
        vm_id: int,
        *,
        name: str = "",
        description: str = "",
        snapshot_type: SnapshotType = SnapshotType.DISK,
        parent_id: Optional[int] = None,
        created_by: Optional[int] = None,
    ) -> VMSnapshot:
        async with self._services.session_factory() as session:
            vm = await self._require_vm(session, vm_id)
            snapshot = await snapshot_repo.create_snapshot_record(
                session,
                vm_id=vm.id,
                name=name or default_snapshot_name(),
                snapshot_type=snapshot_type,
                description=description,
                parent_id=parent_id,
                created_by=created_by,
            )
        self._services.jobs.spawn(f"snapshot-{snapshot.id}", self._run_create(snapshot.id, vm_id))
        logger.info("Snapshot %s (%s) of VM %s scheduled", snapshot.name, snapshot_type.value, vm.name)
        return snapshot

    async def _run_create(self, snapshot_id: int, vm_id: int) -> None:
        services = self._services
        async with services.session_factory() as session:
            try:
                vm = await self._require_vm(session, vm_id)
                snapshot = await snapshot_repo.get_snapshot(session, vm_id, snapshot_id)
                if snapshot is None:
                    raise SnapshotNotFoundError(snapshot_id, vm_id)

                if snapshot.snapshot_type == SnapshotType.DISK and not vm.is_running:
                    await services.images.snapshot_create(vm.disk_path, snapshot.name)
                elif vm.is_running:
                    await services.qmp.snapshot_save(vm.qmp_socket_path, snapshot.name)
                else:
                    raise VMNotRunningError(vm.name)
            except asyncio.CancelledError:
                async with services.session_factory() as cleanup:
                    await snapshot_repo.set_snapshot_status(
                        cleanup, snapshot_id, SnapshotStatus.FAILED, error_message=INTERRUPTED
                    )
                raise
            except Exception as exc:
                logger.exception("Snapshot %s of VM %s failed", snapshot_id, vm_id)
                await snapshot_repo.set_snapshot_status(
                    session, snapshot_id, SnapshotStatus.FAILED, error_message=str(exc)
                )
                return

            await snapshot_repo.set_snapshot_status(
                session, snapshot_id, SnapshotStatus.COMPLETED, size_bytes=_disk_size(vm.disk_path)
            )
        logger.info("Snapshot %s of VM %s completed", snapshot.name, vm.name)

    async def restore_snapshot(self, vm_id: int, snapshot_id: int) -> VMSnapshot:
        services = self._services
        async with services.locks.lock(vm_id):
            async with services.session_factory() as session:
                vm = await self._require_vm(session, vm_id)
                snapshot = await snapshot_repo.get_snapshot(session, vm_id, snapshot_id)
                if snapshot is None:
                    raise SnapshotNotFoundError(snapshot_id, vm_id)
                if snapshot.status != SnapshotStatus.COMPLETED:
                    raise InvalidVMConfigError(
                        f"Snapshot '{snapshot.name}' is {snapshot.status.value} and cannot be restored"
                    )

                if snapshot.snapshot_type == SnapshotType.DISK:
                    if vm.is_running:
                        raise VMRunningError(vm.name, "restore a disk snapshot")
                    await services.images.snapshot_apply(vm.disk_path, snapshot.name)
                else:
                    if not vm.is_running:
                        raise VMNotRunningError(vm.name)
                    await services.qmp.snapshot_load(vm.qmp_socket_path, snapshot.name)
        logger.info("Restored snapshot %s on VM %s", snapshot.name, vm.name)
        return snapshot

    async def delete_snapshot(self, vm_id: int, snapshot_id: int) -> None:
        services = self._services
        async with services.locks.lock(vm_id):
            async with services.session_factory() as session:
                vm = await self._require_vm(session, vm_id)
                snapshot = await snapshot_repo.get_snapshot(session, vm_id, snapshot_id)
                if snapshot is None:
                    raise SnapshotNotFoundError(snapshot_id, vm_id)

                if snapshot.status == SnapshotStatus.COMPLETED:
                    try:
                        if vm.is_running:
                            await services.qmp.snapshot_delete(vm.qmp_socket_path, snapshot.name)
                        else:
                            await services.images.snapshot_delete(vm.disk_path, snapshot.name)
                    except VMError as exc:
                        logger.warning(
                            "Removing snapshot %s from VM %s's image failed: %s", snapshot.name, vm.name, exc
                        )
                await snapshot_repo.delete_snapshot_record(session, snapshot)
        logger.info("Deleted snapshot %s of VM %s", snapshot.name, vm.name)


__all__ = ["SnapshotManager", "default_snapshot_name"]
