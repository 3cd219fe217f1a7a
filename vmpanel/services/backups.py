"""Compressed disk backups taken and restored in background jobs."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from fastapi.concurrency import run_in_threadpool

from ..db.models import BackupStatus, VMBackup
from ..db.repositories import backups as backup_repo
from ..db.repositories import vms as vm_repo
from ..qemu.errors import (
    BackupNotFoundError,
    InvalidVMConfigError,
    VMNotFoundError,
    VMRunningError,
)
from .jobs import INTERRUPTED

if TYPE_CHECKING:
    from .container import PanelServices

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".qcow2.gz"
_BUSY_STATES = {BackupStatus.CREATING, BackupStatus.RESTORING}


def backup_name_for(vm_name: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y-%m-%d_%H-%M-%S")
    return f"{vm_name}_{stamp}"


def _remove_quietly(path: str) -> None:
    if not path:
        return
    try:
        os.remove(path)
    except OSError:
        pass


class BackupManager:
    def __init__(self, services: "PanelServices") -> None:
        self._services = services

    async def list_backups(self, vm_id: int) -> List[VMBackup]:
        async with self._services.session_factory() as session:
            if await vm_repo.get_vm(session, vm_id) is None:
                raise VMNotFoundError(vm_id)
            return await backup_repo.list_backups_for_vm(session, vm_id)

    async def get_backup(self, backup_id: int) -> VMBackup:
        async with self._services.session_factory() as session:
            backup = await backup_repo.get_backup(session, backup_id)
        if backup is None:
            raise BackupNotFoundError(backup_id)
        return backup

    async def create_backup(self, vm_id: int, *, notes: str = "", created_by: Optional[int] = None) -> VMBackup:
        """Record a ``creating`` backup and compress the disk in the background.

        Running VMs are not refused; the archive is then only crash-consistent.
        """

        settings = self._services.settings
        async with self._services.session_factory() as session:
            vm = await vm_repo.get_vm(session, vm_id)
            if vm is None:
                raise VMNotFoundError(vm_id)
            if not vm.disk_path:
                raise InvalidVMConfigError(f"VM '{vm.name}' has no disk image to back up")

            name = backup_name_for(vm.name)
            path = os.path.join(settings.backup_dir, f"{name}{BACKUP_SUFFIX}")
            backup = await backup_repo.create_backup_record(
                session,
                vm_id=vm.id,
                vm_name=vm.name,
                backup_name=name,
                backup_path=path,
                notes=notes,
                created_by=created_by,
            )
            disk_path = vm.disk_path

        self._services.jobs.spawn(f"backup-{backup.id}", self._run_backup(backup.id, disk_path, path))
        logger.info("Backup %s of VM %s scheduled -> %s", backup.id, backup.vm_name, path)
        return backup

    async def _record_failure(self, backup_id: int, message: str) -> None:
        async with self._services.session_factory() as session:
            await backup_repo.set_backup_status(session, backup_id, BackupStatus.FAILED, error_message=message)

    async def _run_backup(self, backup_id: int, disk_path: str, destination: str) -> None:
        try:
            if not os.path.exists(disk_path):
                raise FileNotFoundError(f"disk image {disk_path} does not exist")
            size = await self._services.images.compress(disk_path, destination)
        except asyncio.CancelledError:
            _remove_quietly(destination)
            await self._record_failure(backup_id, INTERRUPTED)
            raise
        except Exception as exc:
            logger.exception("Backup %s failed", backup_id)
            _remove_quietly(destination)
            await self._record_failure(backup_id, str(exc))
            return

        async with self._services.session_factory() as session:
            await backup_repo.set_backup_status(session, backup_id, BackupStatus.COMPLETED, size=size)
        logger.info("Backup %s completed (%d bytes)", backup_id, size)

    async def restore_backup(self, backup_id: int) -> VMBackup:
        """Schedule a restore of a finished archive over its VM's disk.

        Only archives that were written completely are accepted. A failed
        restore leaves the archive usable, so the restore can be retried.
        """

        services = self._services
        backup = await self.get_backup(backup_id)
        if backup.vm_id is None:
            raise VMNotFoundError(backup.vm_name)
        if backup.status in _BUSY_STATES:
            raise InvalidVMConfigError(f"Backup '{backup.backup_name}' is {backup.status.value}")
        if not backup.backup_size:
            raise InvalidVMConfigError(f"Backup '{backup.backup_name}' never completed")
        if not os.path.isfile(backup.backup_path):
            raise InvalidVMConfigError(f"Backup archive {backup.backup_path} is missing")

        async with services.locks.lock(backup.vm_id):
            async with services.session_factory() as session:
                vm = await vm_repo.get_vm(session, backup.vm_id)
                if vm is None:
                    raise VMNotFoundError(backup.vm_id)
                if vm.is_running:
                    raise VMRunningError(vm.name, "restore a backup")
                backup = await backup_repo.set_backup_status(session, backup_id, BackupStatus.RESTORING)

        services.jobs.spawn(f"restore-{backup_id}", self._run_restore(backup_id))
        logger.info("Restore of backup %s into VM %s scheduled", backup_id, backup.vm_name)
        return backup

    async def _run_restore(self, backup_id: int) -> None:
        services = self._services
        async with services.session_factory() as session:
            backup = await backup_repo.get_backup(session, backup_id)
        if backup is None or backup.vm_id is None:
            logger.warning("Backup %s or its VM vanished before the restore ran", backup_id)
            return

        # The VM lock is held for the whole copy so the guest cannot be started mid-restore.
        async with services.locks.lock(backup.vm_id):
            async with services.session_factory() as session:
                partial = ""
                try:
                    vm = await vm_repo.get_vm(session, backup.vm_id)
                    if vm is None:
                        raise VMNotFoundError(backup.vm_id)
                    if vm.is_running:
                        raise VMRunningError(vm.name, "restore a backup")
                    # The live disk is only replaced once the archive unpacked completely.
                    partial = vm.disk_path + ".part"
                    if backup.compressed:
                        await services.images.decompress(backup.backup_path, partial)
                    else:
                        await run_in_threadpool(shutil.copyfile, backup.backup_path, partial)
                    os.replace(partial, vm.disk_path)
                except asyncio.CancelledError:
                    _remove_quietly(partial)
                    await self._record_failure(backup_id, INTERRUPTED)
                    raise
                except Exception as exc:
                    logger.exception("Restore of backup %s failed", backup_id)
                    _remove_quietly(partial)
                    await self._record_failure(backup_id, str(exc))
                    return
                await backup_repo.set_backup_status(
                    session, backup_id, BackupStatus.COMPLETED, size=backup.backup_size
                )
        logger.info("Backup %s restored into VM %s", backup_id, backup.vm_name)

    async def delete_backup(self, backup_id: int) -> None:
        async with self._services.session_factory() as session:
            backup = await backup_repo.get_backup(session, backup_id)
            if backup is None:
                raise BackupNotFoundError(backup_id)
            if backup.status in _BUSY_STATES:
                raise InvalidVMConfigError(f"Backup '{backup.backup_name}' is {backup.status.value}")
            try:
                os.remove(backup.backup_path)
            except FileNotFoundError:
                logger.debug("Backup file %s already gone", backup.backup_path)
            await backup_repo.delete_backup_record(session, backup)
        logger.info("Deleted backup %s (%s)", backup_id, backup.backup_name)


__all__ = ["BACKUP_SUFFIX", "BackupManager", "backup_name_for"]
