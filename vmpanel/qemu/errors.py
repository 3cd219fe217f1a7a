"""Shared exception definitions for the VM lifecycle helpers."""

from __future__ import annotations

from typing import Optional


class VMError(RuntimeError):
    """Base error for VM lifecycle failures."""


class VMNotFoundError(VMError):
    def __init__(self, vm_id: object):
        super().__init__(f"VM '{vm_id}' not found")
        self.vm_id = vm_id


class VMExistsError(VMError):
    def __init__(self, name: str):
        super().__init__(f"VM '{name}' already exists")
        self.name = name


class VMRunningError(VMError):
    def __init__(self, name: str, action: Optional[str] = None):
        if action is None:
            message = f"VM '{name}' is already running"
        else:
            message = f"VM '{name}' is running; stop it first to {action}"
        super().__init__(message)
        self.name = name
        self.action = action


class VMNotRunningError(VMError):
    def __init__(self, name: str):
        super().__init__(f"VM '{name}' is not currently running")
        self.name = name


class VMLaunchError(VMError):
    def __init__(self, name: str, detail: str):
        super().__init__(f"Failed to start VM '{name}': {detail}")
        self.name = name
        self.detail = detail


class InvalidVMConfigError(VMError):
    """Raised when a VM or template configuration cannot be applied."""


class PortExhaustedError(VMError):
    def __init__(self, kind: str, port_range: tuple[int, int]):
        start, end = port_range
        super().__init__(f"No free {kind} port left in range {start}-{end}")
        self.kind = kind
        self.port_range = port_range


class BackupNotFoundError(VMError):
    def __init__(self, backup_id: object):
        super().__init__(f"Backup '{backup_id}' not found")
        self.backup_id = backup_id


class SnapshotNotFoundError(VMError):
    def __init__(self, snapshot_id: object, vm_id: object = None):
        if vm_id is None:
            message = f"Snapshot '{snapshot_id}' not found"
        else:
            message = f"Snapshot '{snapshot_id}' not found on VM '{vm_id}'"
        super().__init__(message)
        self.snapshot_id = snapshot_id
        self.vm_id = vm_id


class TemplateNotFoundError(VMError):
    def __init__(self, template_id: object):
        super().__init__(f"Template '{template_id}' not found")
        self.template_id = template_id


class TemplateExistsError(VMError):
    def __init__(self, name: str):
        super().__init__(f"Template '{name}' already exists")
        self.name = name


class ISONotFoundError(VMError):
    def __init__(self, iso_id: object):
        super().__init__(f"ISO '{iso_id}' not found")
        self.iso_id = iso_id


class ImageToolError(VMError):
    """An external image or packaging tool exited unsuccessfully."""

    def __init__(self, tool: str, detail: str, returncode: Optional[int] = None):
        super().__init__(f"{tool} failed: {detail}")
        self.tool = tool
        self.detail = detail
        self.returncode = returncode


class QMPError(VMError):
    """Error reported by (or while talking to) a VM's QMP control socket."""

    def __init__(self, error_class: str, desc: str):
        super().__init__(f"QMP {error_class}: {desc}")
        self.error_class = error_class
        self.desc = desc


class CloudInitError(VMError):
    """Raised when cloud-init seed media cannot be rendered."""


__all__ = [
    "VMError",
    "VMNotFoundError",
    "VMExistsError",
    "VMRunningError",
    "VMNotRunningError",
    "VMLaunchError",
    "InvalidVMConfigError",
    "PortExhaustedError",
    "BackupNotFoundError",
    "SnapshotNotFoundError",
    "TemplateNotFoundError",
    "TemplateExistsError",
    "ISONotFoundError",
    "ImageToolError",
    "QMPError",
    "CloudInitError",
]
