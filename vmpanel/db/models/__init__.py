"""Aggregate ORM model exports for convenience imports."""

from .base import Base, NAMING_CONVENTION, metadata
from .entities import (
    BackupStatus,
    DisplayType,
    DownloadStatus,
    FirmwareType,
    ISOImage,
    NetworkMode,
    SnapshotStatus,
    SnapshotType,
    VirtualMachine,
    VMBackup,
    VMSnapshot,
    VMStatus,
    VMTemplate,
)

__all__ = [
    "Base",
    "NAMING_CONVENTION",
    "metadata",
    "BackupStatus",
    "DisplayType",
    "DownloadStatus",
    "FirmwareType",
    "ISOImage",
    "NetworkMode",
    "SnapshotStatus",
    "SnapshotType",
    "VirtualMachine",
    "VMBackup",
    "VMSnapshot",
    "VMStatus",
    "VMTemplate",
]
