"""Repository helpers for VM snapshot records."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import SnapshotStatus, SnapshotType, VMSnapshot


async def get_snapshot(session: AsyncSession, vm_id: int, snapshot_id: int) -> Optional[VMSnapshot]:
    snapshot = await session.get(VMSnapshot, snapshot_id)
    if snapshot is None or snapshot.vm_id != vm_id:
        return None
    return snapshot


async def list_snapshots_for_vm(session: AsyncSession, vm_id: int) -> List[VMSnapshot]:
    stmt = (
        select(VMSnapshot)
        .where(VMSnapshot.vm_id == vm_id)
        .order_by(VMSnapshot.created_at.desc(), VMSnapshot.id.desc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def create_snapshot_record(
    session: AsyncSession,
    *,
    vm_id: int,
    name: str,
    snapshot_type: SnapshotType,
    description: str = "",
    parent_id: Optional[int] = None,
    created_by: Optional[int] = None,
) -> VMSnapshot:
    snapshot = VMSnapshot(
        vm_id=vm_id,
        name=name,
        description=description,
        snapshot_type=snapshot_type,
        parent_id=parent_id,
        status=SnapshotStatus.CREATING,
        created_by=created_by,
    )
    session.add(snapshot)
    await session.commit()
    return snapshot


async def set_snapshot_status(
    session: AsyncSession,
    snapshot_id: int,
    status: SnapshotStatus,
    *,
    size_bytes: Optional[int] = None,
    error_message: Optional[str] = None,
) -> Optional[VMSnapshot]:
    snapshot = await session.get(VMSnapshot, snapshot_id)
    if snapshot is None:
        return None
    snapshot.status = status
    if size_bytes is not None:
        snapshot.size_bytes = size_bytes
    snapshot.error_message = error_message
    if status != SnapshotStatus.CREATING:
        snapshot.completed_at = datetime.now(timezone.utc)
    await session.commit()
    return snapshot


async def fail_unfinished_snapshots(session: AsyncSession, message: str) -> int:
    stmt = (
        update(VMSnapshot)
        .where(VMSnapshot.status == SnapshotStatus.CREATING)
        .values(status=SnapshotStatus.FAILED, error_message=message, completed_at=datetime.now(timezone.utc))
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount or 0


async def delete_snapshot_record(session: AsyncSession, snapshot: VMSnapshot) -> None:
    await session.delete(snapshot)
    await session.commit()


__all__ = [
    "get_snapshot",
    "list_snapshots_for_vm",
    "create_snapshot_record",
    "set_snapshot_status",
    "delete_snapshot_record",
    "fail_unfinished_snapshots",
]
