"""ORM models for virtual machines and their backups, snapshots, templates and boot media."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, portable_enum, utcnow


class VMStatus(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class FirmwareType(str, Enum):
    BIOS = "bios"
    UEFI = "uefi"


class NetworkMode(str, Enum):
    NAT = "nat"
    BRIDGE = "bridge"
    USER = "user"


class DisplayType(str, Enum):
    SPICE = "spice"
    VNC = "vnc"
    NONE = "none"
    DEFAULT = "default"


class BackupStatus(str, Enum):
    CREATING = "creating"
    COMPLETED = "completed"
    FAILED = "failed"
    RESTORING = "restoring"


class SnapshotStatus(str, Enum):
    CREATING = "creating"
    COMPLETED = "completed"
    FAILED = "failed"


class SnapshotType(str, Enum):
    DISK = "disk"
    MEMORY = "memory"
    FULL = "full"


class DownloadStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"


class VirtualMachine(Base):
    """Configured QEMU/KVM guest plus the runtime state observed for it."""

    __tablename__ = "virtual_machines"

    __table_args__ = (
        UniqueConstraint("network_bridge", "mac_address", name="uq_virtual_machines_bridge_mac"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    uuid: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)

    cpu_cores: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    cpu_type: Mapped[str] = mapped_column(String(64), default="host", nullable=False)
    cpu_pinning: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    numa_topology: Mapped[str] = mapped_column(String(255), default="", nullable=False)

    ram_mb: Mapped[int] = mapped_column(Integer, default=1024, nullable=False)
    balloon_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    hugepages_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    disk_path: Mapped[str] = mapped_column(String(1024), default="", nullable=False)
    disk_size_gb: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    disk_format: Mapped[str] = mapped_column(String(16), default="qcow2", nullable=False)
    cache_mode: Mapped[str] = mapped_column(String(32), default="writeback", nullable=False)
    discard_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    physical_disk_device: Mapped[str] = mapped_column(String(255), default="", nullable=False)

    boot_order: Mapped[str] = mapped_column(String(32), default="cd,hd", nullable=False)
    iso_path: Mapped[str] = mapped_column(String(1024), default="", nullable=False)
    boot_from_disk: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    firmware_type: Mapped[FirmwareType] = mapped_column(
        portable_enum(FirmwareType, "firmware_type"),
        default=FirmwareType.BIOS,
        nullable=False,
    )
    secure_boot: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    tpm_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    network_mode: Mapped[NetworkMode] = mapped_column(
        portable_enum(NetworkMode, "network_mode"),
        default=NetworkMode.NAT,
        nullable=False,
    )
    # Empty string for NAT/user networking so MACs stay unique within that domain too.
    network_bridge: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    mac_address: Mapped[str] = mapped_column(String(17), nullable=False)
    network_model: Mapped[str] = mapped_column(String(32), default="virtio", nullable=False)
    vlan_id: Mapped[Optional[int]] = mapped_column(Integer)
    bandwidth_limit_down: Mapped[Optional[int]] = mapped_column(Integer)
    bandwidth_limit_up: Mapped[Optional[int]] = mapped_column(Integer)

    display_type: Mapped[DisplayType] = mapped_column(
        portable_enum(DisplayType, "display_type"),
        default=DisplayType.DEFAULT,
        nullable=False,
    )
    spice_port: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    vnc_port: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    spice_password: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    vnc_password: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    qmp_socket_path: Mapped[str] = mapped_column(String(1024), nullable=False)

    status: Mapped[VMStatus] = mapped_column(
        portable_enum(VMStatus, "vm_status"),
        default=VMStatus.STOPPED,
        nullable=False,
    )
    pid: Mapped[Optional[int]] = mapped_column(Integer)
    process_started_at: Mapped[Optional[float]] = mapped_column(Float)

    autostart: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    autostart_delay: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tags: Mapped[str] = mapped_column(Text, default="", nullable=False)
    os_type: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    os_version: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    template_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("vm_templates.id", ondelete="SET NULL")
    )

    created_by: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )
    last_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    @property
    def is_running(self) -> bool:
        return self.status == VMStatus.RUNNING


class VMBackup(Base):
    """Compressed copy of a VM disk image; outlives the VM it was taken from."""

    __tablename__ = "vm_backups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vm_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("virtual_machines.id", ondelete="SET NULL")
    )
    vm_name: Mapped[str] = mapped_column(String(255), nullable=False)
    backup_name: Mapped[str] = mapped_column(String(255), nullable=False)
    backup_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    backup_size: Mapped[Optional[int]] = mapped_column(BigInteger)
    compressed: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    compression_type: Mapped[str] = mapped_column(String(16), default="gzip", nullable=False)
    status: Mapped[BackupStatus] = mapped_column(
        portable_enum(BackupStatus, "backup_status"),
        default=BackupStatus.CREATING,
        nullable=False,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[str] = mapped_column(Text, default="", nullable=False)
    created_by: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class VMSnapshot(Base):
    """Internal disk-image or live (memory/full) snapshot of a VM."""

    __tablename__ = "vm_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vm_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("virtual_machines.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    snapshot_type: Mapped[SnapshotType] = mapped_column(
        portable_enum(SnapshotType, "snapshot_type"),
        default=SnapshotType.DISK,
        nullable=False,
    )
    parent_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("vm_snapshots.id", ondelete="SET NULL")
    )
    size_bytes: Mapped[Optional[int]] = mapped_column(BigInteger)
    status: Mapped[SnapshotStatus] = mapped_column(
        portable_enum(SnapshotStatus, "snapshot_status"),
        default=SnapshotStatus.CREATING,
        nullable=False,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class VMTemplate(Base):
    """Frozen VM configuration with an optional base disk and cloud-init data."""

    __tablename__ = "vm_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    cpu_cores: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    ram_mb: Mapped[int] = mapped_column(Integer, default=1024, nullable=False)
    cpu_type: Mapped[str] = mapped_column(String(64), default="host", nullable=False)
    disk_size_gb: Mapped[int] = mapped_column(Integer, default=20, nullable=False)
    disk_format: Mapped[str] = mapped_column(String(16), default="qcow2", nullable=False)
    network_mode: Mapped[NetworkMode] = mapped_column(
        portable_enum(NetworkMode, "network_mode"),
        default=NetworkMode.NAT,
        nullable=False,
    )
    display_type: Mapped[DisplayType] = mapped_column(
        portable_enum(DisplayType, "display_type"),
        default=DisplayType.DEFAULT,
        nullable=False,
    )
    firmware_type: Mapped[FirmwareType] = mapped_column(
        portable_enum(FirmwareType, "firmware_type"),
        default=FirmwareType.BIOS,
        nullable=False,
    )
    os_type: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    os_version: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    disk_path: Mapped[str] = mapped_column(String(1024), default="", nullable=False)
    disk_size_actual: Mapped[Optional[int]] = mapped_column(BigInteger)
    cloud_init_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cloud_init_user_data: Mapped[str] = mapped_column(Text, default="", nullable=False)
    cloud_init_meta_data: Mapped[str] = mapped_column(Text, default="", nullable=False)
    cloud_init_network_config: Mapped[str] = mapped_column(Text, default="", nullable=False)
    is_public: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    download_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_by: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )


class ISOImage(Base):
    """Boot media catalog entry, either uploaded or fetched from a URL."""

    __tablename__ = "iso_library"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    file_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger)
    checksum_sha256: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    os_type: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    os_version: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    download_url: Mapped[str] = mapped_column(String(2048), default="", nullable=False)
    download_status: Mapped[DownloadStatus] = mapped_column(
        portable_enum(DownloadStatus, "download_status"),
        default=DownloadStatus.COMPLETED,
        nullable=False,
    )
    download_progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    download_error: Mapped[str] = mapped_column(Text, default="", nullable=False)
    is_predefined: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_by: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )
