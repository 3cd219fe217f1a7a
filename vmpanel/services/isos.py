"""ISO library: uploads, streamed URL downloads and download progress."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import posixpath
import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, BinaryIO, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse

import httpx
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError

from ..db.models import DownloadStatus, ISOImage
from ..db.repositories import isos as iso_repo
from ..qemu.errors import InvalidVMConfigError, ISONotFoundError
from .catalog import PREDEFINED_ISOS
from .jobs import INTERRUPTED

if TYPE_CHECKING:
    from .container import PanelServices

logger = logging.getLogger(__name__)

ISO_SUFFIX = ".iso"
COPY_CHUNK_SIZE = 1024 * 1024


@dataclass
class DownloadProgress:
    iso_id: int
    url: str
    filename: str
    status: str = DownloadStatus.DOWNLOADING.value
    downloaded: int = 0
    total: int = 0
    percent: int = 0
    error: str = ""
    updated_at: float = field(default_factory=time.time)


class DownloadProgressTracker:
    """In-memory progress for downloads started by this process."""

    def __init__(self) -> None:
        self._entries: Dict[int, DownloadProgress] = {}
        self._lock = asyncio.Lock()

    async def start(self, iso_id: int, *, url: str, filename: str) -> None:
        async with self._lock:
            self._entries[iso_id] = DownloadProgress(iso_id=iso_id, url=url, filename=filename)

    async def update(self, iso_id: int, downloaded: int, total: int) -> int:
        """Record bytes received so far and return the whole-percent progress."""

        percent = min(100, downloaded * 100 // total) if total > 0 else 0
        async with self._lock:
            entry = self._entries.get(iso_id)
            if entry is not None:
                entry.downloaded = downloaded
                entry.total = total
                entry.percent = percent
                entry.updated_at = time.time()
        return percent

    async def finish(self, iso_id: int, status: DownloadStatus, error: str = "") -> None:
        async with self._lock:
            entry = self._entries.get(iso_id)
            if entry is not None:
                entry.status = status.value
                entry.error = error
                if status == DownloadStatus.COMPLETED:
                    entry.percent = 100
                entry.updated_at = time.time()

    async def get(self, iso_id: int) -> Optional[Dict[str, Any]]:
        async with self._lock:
            entry = self._entries.get(iso_id)
            return asdict(entry) if entry is not None else None

    async def discard(self, iso_id: int) -> None:
        async with self._lock:
            self._entries.pop(iso_id, None)


def describe_iso(iso: ISOImage) -> Dict[str, Any]:
    return {
        "id": iso.id,
        "name": iso.name,
        "filename": iso.filename,
        "file_path": iso.file_path,
        "file_size": iso.file_size,
        "checksum_sha256": iso.checksum_sha256,
        "os_type": iso.os_type,
        "os_version": iso.os_version,
        "description": iso.description,
        "download_url": iso.download_url,
        "download_status": iso.download_status.value,
        "download_progress": iso.download_progress,
        "download_error": iso.download_error,
        "is_predefined": iso.is_predefined,
        "created_at": iso.created_at.isoformat() if iso.created_at else None,
    }


def _discard(path: str) -> None:
    try:
        os.remove(path)
    except OSError:
        pass


def scan_iso_dir(iso_dir: str) -> List[Dict[str, Any]]:
    """List ``*.iso`` files on disk; used when the catalog cannot be queried."""

    entries: List[Dict[str, Any]] = []
    try:
        names = sorted(os.listdir(iso_dir))
    except FileNotFoundError:
        return entries
    for filename in names:
        if not filename.lower().endswith(ISO_SUFFIX):
            continue
        path = os.path.join(iso_dir, filename)
        if not os.path.isfile(path):
            continue
        entries.append(
            {
                "id": None,
                "name": filename[: -len(ISO_SUFFIX)],
                "filename": filename,
                "file_path": path,
                "file_size": os.path.getsize(path),
                "download_status": DownloadStatus.COMPLETED.value,
                "download_progress": 100,
            }
        )
    return entries


def filename_from_url(url: str) -> str:
    name = posixpath.basename(unquote(urlparse(url).path))
    if not name.lower().endswith(ISO_SUFFIX):
        name += ISO_SUFFIX
    return name


def _safe_filename(filename: str) -> str:
    name = (filename or "").strip()
    if not name or name in {".", ".."} or "/" in name or "\\" in name or "\x00" in name:
        raise InvalidVMConfigError(f"Invalid ISO filename '{filename}'")
    if not name.lower().endswith(ISO_SUFFIX) or len(name) <= len(ISO_SUFFIX):
        raise InvalidVMConfigError("Only .iso files are accepted")
    return name


def _copy_and_hash(source: BinaryIO, destination: str) -> Tuple[int, str]:
    digest = hashlib.sha256()
    size = 0
    with open(destination, "wb") as handle:
        while True:
            chunk = source.read(COPY_CHUNK_SIZE)
            if not chunk:
                break
            handle.write(chunk)
            digest.update(chunk)
            size += len(chunk)
    return size, digest.hexdigest()


class ISOLibrary:
    def __init__(self, services: "PanelServices") -> None:
        self._services = services

    @staticmethod
    def predefined() -> List[Dict[str, str]]:
        return [dict(entry) for entry in PREDEFINED_ISOS]

    async def list_isos(self) -> List[Dict[str, Any]]:
        try:
            async with self._services.session_factory() as session:
                rows = await iso_repo.list_isos(session)
        except SQLAlchemyError as exc:
            logger.warning("ISO catalog query failed (%s); scanning %s instead", exc, self._services.settings.iso_dir)
            return await run_in_threadpool(scan_iso_dir, self._services.settings.iso_dir)
        return [describe_iso(row) for row in rows]

    async def upload(
        self,
        filename: str,
        source: BinaryIO,
        *,
        os_type: str = "",
        os_version: str = "",
        description: str = "",
        created_by: Optional[int] = None,
    ) -> ISOImage:
        name = _safe_filename(filename)
        iso_dir = self._services.settings.iso_dir
        os.makedirs(iso_dir, exist_ok=True)
        destination = os.path.join(iso_dir, name)
        size, checksum = await run_in_threadpool(_copy_and_hash, source, destination)

        async with self._services.session_factory() as session:
            iso = await iso_repo.upsert_iso(
                session,
                {
                    "name": name[: -len(ISO_SUFFIX)],
                    "filename": name,
                    "file_path": destination,
                    "file_size": size,
                    "checksum_sha256": checksum,
                    "os_type": os_type,
                    "os_version": os_version,
                    "description": description,
                    "download_status": DownloadStatus.COMPLETED,
                    "download_progress": 100,
                    "download_error": "",
                    "created_by": created_by,
                },
            )
        logger.info("Uploaded ISO %s (%d bytes)", name, size)
        return iso

    async def start_download(
        self,
        url: str,
        *,
        filename: str = "",
        os_type: str = "",
        os_version: str = "",
        description: str = "",
        created_by: Optional[int] = None,
    ) -> ISOImage:
        if urlparse(url).scheme not in {"http", "https"}:
            raise InvalidVMConfigError("ISO downloads need an http(s) URL")
        name = _safe_filename(filename or filename_from_url(url))
        iso_dir = self._services.settings.iso_dir
        os.makedirs(iso_dir, exist_ok=True)
        destination = os.path.join(iso_dir, name)

        async with self._services.session_factory() as session:
            existing = await iso_repo.get_iso_by_filename(session, name)
            if existing is not None and existing.download_status == DownloadStatus.DOWNLOADING:
                raise InvalidVMConfigError(f"ISO '{name}' is already being downloaded")
            iso = await iso_repo.upsert_iso(
                session,
                {
                    "name": name[: -len(ISO_SUFFIX)],
                    "filename": name,
                    "file_path": destination,
                    "os_type": os_type,
                    "os_version": os_version,
                    "description": description,
                    "download_url": url,
                    "download_status": DownloadStatus.DOWNLOADING,
                    "download_progress": 0,
                    "download_error": "",
                    "created_by": created_by,
                },
            )

        await self._services.downloads.start(iso.id, url=url, filename=name)
        self._services.jobs.spawn(f"iso-download-{iso.id}", self._run_download(iso.id, url, destination))
        logger.info("Downloading %s -> %s", url, destination)
        return iso

    async def _run_download(self, iso_id: int, url: str, destination: str) -> None:
        services = self._services
        partial = destination + ".part"
        digest = hashlib.sha256()
        downloaded = 0
        last_percent = -1

        async with services.session_factory() as session:
            try:
                async with services.http_client_factory() as client:
                    async with client.stream("GET", url, follow_redirects=True) as response:
                        response.raise_for_status()
                        total = int(response.headers.get("content-length") or 0)
                        with open(partial, "wb") as handle:
                            async for chunk in response.aiter_bytes():
                                handle.write(chunk)
                                digest.update(chunk)
                                downloaded += len(chunk)
                                percent = await services.downloads.update(iso_id, downloaded, total)
                                if percent != last_percent:
                                    last_percent = percent
                                    await iso_repo.update_download_state(
                                        session, iso_id, status=DownloadStatus.DOWNLOADING, progress=percent
                                    )
                os.replace(partial, destination)
            except asyncio.CancelledError:
                _discard(partial)
                async with services.session_factory() as cleanup:
                    await iso_repo.update_download_state(
                        cleanup, iso_id, status=DownloadStatus.FAILED, error=INTERRUPTED
                    )
                await services.downloads.finish(iso_id, DownloadStatus.FAILED, INTERRUPTED)
                raise
            except (httpx.HTTPError, OSError, ValueError, SQLAlchemyError) as exc:
                logger.error("Download of %s failed: %s", url, exc)
                _discard(partial)
                await session.rollback()
                await iso_repo.update_download_state(
                    session, iso_id, status=DownloadStatus.FAILED, error=str(exc) or exc.__class__.__name__
                )
                await services.downloads.finish(iso_id, DownloadStatus.FAILED, str(exc))
                return

            await iso_repo.update_download_state(
                session,
                iso_id,
                status=DownloadStatus.COMPLETED,
                progress=100,
                error="",
                file_size=downloaded,
                checksum=digest.hexdigest(),
            )
        await services.downloads.finish(iso_id, DownloadStatus.COMPLETED)
        logger.info("Downloaded %s (%d bytes)", destination, downloaded)

    async def progress(self, iso_id: int) -> Dict[str, Any]:
        tracked = await self._services.downloads.get(iso_id)
        if tracked is not None:
            return {
                "iso_id": iso_id,
                "status": tracked["status"],
                "progress": tracked["percent"],
                "downloaded": tracked["downloaded"],
                "total": tracked["total"],
                "error": tracked["error"],
                "source": "memory",
            }
        async with self._services.session_factory() as session:
            iso = await iso_repo.get_iso(session, iso_id)
        if iso is None:
            raise ISONotFoundError(iso_id)
        return {
            "iso_id": iso.id,
            "status": iso.download_status.value,
            "progress": iso.download_progress,
            "downloaded": iso.file_size,
            "total": iso.file_size,
            "error": iso.download_error,
            "source": "database",
        }

    async def delete_iso(self, iso_id: int) -> None:
        async with self._services.session_factory() as session:
            iso = await iso_repo.get_iso(session, iso_id)
            if iso is None:
                raise ISONotFoundError(iso_id)
            if iso.download_status == DownloadStatus.DOWNLOADING:
                raise InvalidVMConfigError(f"ISO '{iso.filename}' is still downloading")
            try:
                await run_in_threadpool(os.remove, iso.file_path)
            except FileNotFoundError:
                logger.debug("ISO file %s already gone", iso.file_path)
            await iso_repo.delete_iso(session, iso)
        await self._services.downloads.discard(iso_id)
        logger.info("Deleted ISO %s", iso.filename)


__all__ = [
    "DownloadProgress",
    "DownloadProgressTracker",
    "ISOLibrary",
    "describe_iso",
    "filename_from_url",
    "scan_iso_dir",
]
