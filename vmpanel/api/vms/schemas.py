import re
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from ...db.models import DisplayType, FirmwareType, NetworkMode, SnapshotType

MAC_PATTERN = r"^([0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$"
SNAPSHOT_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9._-]{0,127}$")

CacheMode = Literal["none", "writeback", "writethrough", "directsync", "unsafe"]
NicModel = Literal["virtio", "e1000", "e1000e", "rtl8139"]
DiskFormat = Literal["qcow2", "raw"]

# Columns that may legitimately be cleared with an explicit null.
NULLABLE_VM_FIELDS = frozenset({"vlan_id", "bandwidth_limit_down", "bandwidth_limit_up"})


def _check_password(label: str, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if len(value) > 64:
        raise ValueError(f"{label} must be 64 characters or fewer")
    if not value.isascii():
        raise ValueError(f"{label} must contain only ASCII characters")
    return value


class _VMConfigChecks(BaseModel):
    """Cross-field rules shared by create and update payloads."""

    @model_validator(mode="after")
    def _check_config(self):
        mode = getattr(self, "network_mode", None)
        bridge = getattr(self, "network_bridge", None)
        if mode == NetworkMode.BRIDGE and bridge is not None and not bridge.strip():
            raise ValueError("network_bridge is required when network_mode is 'bridge'")
        if getattr(self, "secure_boot", None) and getattr(self, "firmware_type", None) == FirmwareType.BIOS:
            raise ValueError("secure_boot requires firmware_type 'uefi'")
        for label in ("spice_password", "vnc_password"):
            value = getattr(self, label, None)
            if value is not None:
                setattr(self, label, _check_password(label, value))
        return self


class VMCreateRequest(_VMConfigChecks):
    name: str = Field(min_length=1, max_length=63)
    description: str = ""

    cpu_cores: int = Field(1, ge=1, le=512)
    cpu_type: str = "host"
    cpu_pinning: str = ""
    numa_topology: str = ""

    ram_mb: int = Field(1024, ge=64)
    balloon_enabled: bool = False
    hugepages_enabled: bool = False

    disk_path: str = ""
    disk_size_gb: int = Field(20, ge=0)
    disk_format: DiskFormat = "qcow2"
    cache_mode: CacheMode = "writeback"
    discard_enabled: bool = False
    physical_disk_device: str = ""

    boot_order: str = "cd,hd"
    iso_path: str = ""
    boot_from_disk: bool = False
    firmware_type: FirmwareType = FirmwareType.BIOS
    secure_boot: bool = False
    tpm_enabled: bool = False

    network_mode: NetworkMode = NetworkMode.NAT
    network_bridge: str = ""
    network_model: NicModel = "virtio"
    mac_address: Optional[str] = Field(None, pattern=MAC_PATTERN)
    vlan_id: Optional[int] = Field(None, ge=1, le=4094)
    bandwidth_limit_down: Optional[int] = Field(None, ge=0)
    bandwidth_limit_up: Optional[int] = Field(None, ge=0)

    display_type: DisplayType = DisplayType.DEFAULT
    spice_password: Optional[str] = None
    vnc_password: Optional[str] = None

    autostart: bool = False
    autostart_delay: int = Field(0, ge=0)
    tags: str = ""
    os_type: str = ""
    os_version: str = ""

    @model_validator(mode="after")
    def _check_name(self) -> "VMCreateRequest":
        self.name = self.name.strip()
        if not self.name:
            raise ValueError("name is required")
        return self

    def to_fields(self) -> Dict[str, Any]:
        fields = self.model_dump()
        for key in ("mac_address", "spice_password", "vnc_password"):
            if not fields.get(key):
                fields.pop(key, None)
        if fields.get("mac_address"):
            fields["mac_address"] = fields["mac_address"].lower()
        return fields


class VMUpdateRequest(_VMConfigChecks):
    """Partial VM update; only the fields present in the request are applied."""

    name: Optional[str] = Field(None, min_length=1, max_length=63)
    description: Optional[str] = None
    cpu_cores: Optional[int] = Field(None, ge=1, le=512)
    cpu_type: Optional[str] = None
    cpu_pinning: Optional[str] = None
    numa_topology: Optional[str] = None
    ram_mb: Optional[int] = Field(None, ge=64)
    balloon_enabled: Optional[bool] = None
    hugepages_enabled: Optional[bool] = None
    disk_size_gb: Optional[int] = Field(None, ge=0)
    cache_mode: Optional[CacheMode] = None
    discard_enabled: Optional[bool] = None
    physical_disk_device: Optional[str] = None
    boot_order: Optional[str] = None
    iso_path: Optional[str] = None
    boot_from_disk: Optional[bool] = None
    firmware_type: Optional[FirmwareType] = None
    secure_boot: Optional[bool] = None
    tpm_enabled: Optional[bool] = None
    network_mode: Optional[NetworkMode] = None
    network_bridge: Optional[str] = None
    network_model: Optional[NicModel] = None
    vlan_id: Optional[int] = Field(None, ge=1, le=4094)
    bandwidth_limit_down: Optional[int] = Field(None, ge=0)
    bandwidth_limit_up: Optional[int] = Field(None, ge=0)
    display_type: Optional[DisplayType] = None
    spice_password: Optional[str] = None
    vnc_password: Optional[str] = None
    autostart: Optional[bool] = None
    autostart_delay: Optional[int] = Field(None, ge=0)
    tags: Optional[str] = None
    os_type: Optional[str] = None
    os_version: Optional[str] = None

    def to_changes(self) -> Dict[str, Any]:
        changes = self.model_dump(exclude_unset=True)
        return {
            key: value
            for key, value in changes.items()
            if value is not None or key in NULLABLE_VM_FIELDS
        }


class SaveAsTemplateRequest(BaseModel):
    name: str = ""
    description: str = ""
    include_disk: bool = True
    is_public: bool = False


class StopRequest(BaseModel):
    force: bool = False


class KeyComboRequest(BaseModel):
    key: str


class BackupCreateRequest(BaseModel):
    notes: str = ""


class SnapshotCreateRequest(BaseModel):
    name: str = ""
    description: str = ""
    snapshot_type: SnapshotType = SnapshotType.DISK
    parent_id: Optional[int] = None

    @model_validator(mode="after")
    def _check_name(self) -> "SnapshotCreateRequest":
        self.name = self.name.strip()
        if self.name and not SNAPSHOT_NAME_PATTERN.match(self.name):
            raise ValueError(
                "snapshot names must start with a letter and contain only letters, digits, '.', '_' or '-'"
            )
        return self


class ISODownloadRequest(BaseModel):
    url: str = Field(min_length=1)
    filename: Optional[str] = None
    os_type: str = ""
    os_version: str = ""
    description: str = ""


__all__ = [
    "BackupCreateRequest",
    "ISODownloadRequest",
    "KeyComboRequest",
    "SaveAsTemplateRequest",
    "SnapshotCreateRequest",
    "StopRequest",
    "VMCreateRequest",
    "VMUpdateRequest",
]
