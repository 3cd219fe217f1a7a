"""Per-VM file locations derived from host settings."""

from __future__ import annotations

import os

from ..core.config import VMSettings


def disk_path(settings: VMSettings, name: str, disk_format: str = "qcow2") -> str:
    return os.path.join(settings.vm_dir, f"{name}.{disk_format}")


def log_path(settings: VMSettings, name: str) -> str:
    return os.path.join(settings.log_dir, f"{name}.log")


def qmp_socket_path(settings: VMSettings, vm_uuid: str) -> str:
    return os.path.join(settings.qmp_dir, f"{vm_uuid}.sock")


def tpm_socket_path(settings: VMSettings, vm_uuid: str) -> str:
    return os.path.join(settings.qmp_dir, f"{vm_uuid}-tpm.sock")


def tpm_state_dir(settings: VMSettings, name: str) -> str:
    return os.path.join(settings.vm_dir, f"{name}_tpm")


def uefi_vars_path(settings: VMSettings, name: str) -> str:
    return os.path.join(settings.vm_dir, f"{name}_VARS.fd")


def pidfile_path(settings: VMSettings, vm_uuid: str) -> str:
    return os.path.join(settings.run_dir, f"{vm_uuid}.pid")


def cloud_init_iso_path(settings: VMSettings, name: str) -> str:
    return os.path.join(settings.vm_dir, f"{name}-cloud-init.iso")


__all__ = [
    "disk_path",
    "log_path",
    "qmp_socket_path",
    "tpm_socket_path",
    "tpm_state_dir",
    "uefi_vars_path",
    "pidfile_path",
    "cloud_init_iso_path",
]
