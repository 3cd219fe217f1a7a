"""Repository helpers for the ISO library."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import DownloadStatus, ISOImage


async def get_iso(session: AsyncSession, iso_id: int) -> Optional[ISOImage]:
    return await session.get(ISOImage, iso_id)


async def get_iso_by_filename(session: AsyncSession, filename: str) -> Optional[ISOImage]:
    stmt = select(ISOImage).where(ISOImage.filename == filename)
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_isos(session: AsyncSession) -> List[ISOImage]:
    stmt = select(ISOImage).order_by(ISOImage.name)
    return list((await session.execute(stmt)).scalars().all())


async def upsert_iso(session: AsyncSession, fields: Dict[str, Any]) -> ISOImage:
    """Insert an ISO row, or refresh the existing one registered under the same filename."""

    iso = await get_iso_by_filename(session, fields["filename"])
    if iso is None:
        iso = ISOImage(**fields)
        session.add(iso)
    else:
        for key, value in fields.items():
            setattr(iso, key, value)
    await session.commit()
    return iso


async def update_download_state(
    session: AsyncSession,
    iso_id: int,
    *,
    status: DownloadStatus,
    progress: Optional[int] = None,
    error: Optional[str] = None,
    file_size: Optional[int] = None,
    checksum: Optional[str] = None,
) -> Optional[ISOImage]:
    iso = await session.get(ISOImage, iso_id)
    if iso is None:
        return None
    iso.download_status = status
    if progress is not None:
        iso.download_progress = progress
    if error is not None:
        iso.download_error = error
    if file_size is not None:
        iso.file_size = file_size
    if checksum is not None:
        iso.checksum_sha256 = checksum
    await session.commit()
    return iso


async def fail_unfinished_downloads(session: AsyncSession, message: str) -> int:
    stmt = (
        update(ISOImage)
        .where(ISOImage.download_status.in_((DownloadStatus.PENDING, DownloadStatus.DOWNLOADING)))
        .values(download_status=DownloadStatus.FAILED, download_error=message)
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount or 0


async def delete_iso(session: AsyncSession, iso: ISOImage) -> None:
    await session.delete(iso)
    await session.commit()


__all__ = [
    "get_iso",
    "get_iso_by_filename",
    "list_isos",
    "upsert_iso",
    "update_download_state",
    "delete_iso",
    "fail_unfinished_downloads",
]
