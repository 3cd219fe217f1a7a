"""Repository helpers for VM backup records."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import BackupStatus, VMBackup


async def get_backup(session: AsyncSession, backup_id: int) -> Optional[VMBackup]:
    return await session.get(VMBackup, backup_id)


async def list_backups_for_vm(session: AsyncSession, vm_id: int) -> List[VMBackup]:
    stmt = (
        select(VMBackup)
        .where(VMBackup.vm_id == vm_id)
        .order_by(VMBackup.created_at.desc(), VMBackup.id.desc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def create_backup_record(
    session: AsyncSession,
    *,
    vm_id: int,
    vm_name: str,
    backup_name: str,
    backup_path: str,
    notes: str = "",
    created_by: Optional[int] = None,
) -> VMBackup:
    backup = VMBackup(
        vm_id=vm_id,
        vm_name=vm_name,
        backup_name=backup_name,
        backup_path=backup_path,
        compressed=True,
        compression_type="gzip",
        status=BackupStatus.CREATING,
        notes=notes,
        created_by=created_by,
    )
    session.add(backup)
    await session.commit()
    return backup


async def set_backup_status(
    session: AsyncSession,
    backup_id: int,
    status: BackupStatus,
    *,
    size: Optional[int] = None,
    error_message: Optional[str] = None,
) -> Optional[VMBackup]:
    """Record a backup status transition; terminal states stamp ``completed_at``."""

    backup = await session.get(VMBackup, backup_id)
    if backup is None:
        return None
    backup.status = status
    if size is not None:
        backup.backup_size = size
    backup.error_message = error_message
    if status in (BackupStatus.COMPLETED, BackupStatus.FAILED):
        backup.completed_at = datetime.now(timezone.utc)
    await session.commit()
    return backup


async def fail_unfinished_backups(session: AsyncSession, message: str) -> int:
    """Mark every ``creating``/``restoring`` backup as failed; returns how many changed."""

    stmt = (
        update(VMBackup)
        .where(VMBackup.status.in_((BackupStatus.CREATING, BackupStatus.RESTORING)))
        .values(status=BackupStatus.FAILED, error_message=message, completed_at=datetime.now(timezone.utc))
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount or 0


async def delete_backup_record(session: AsyncSession, backup: VMBackup) -> None:
    await session.delete(backup)
    await session.commit()


__all__ = [
    "get_backup",
    "list_backups_for_vm",
    "create_backup_record",
    "set_backup_status",
    "delete_backup_record",
    "fail_unfinished_backups",
]
