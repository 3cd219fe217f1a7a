"""UEFI firmware and emulated TPM preparation that must happen before launch."""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from typing import Any, Optional

from ..core.config import VMSettings
from .errors import VMLaunchError
from .paths import tpm_socket_path, tpm_state_dir, uefi_vars_path
from .shell import CommandRunner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FirmwareImages:
    code: str
    vars: str
    secure: bool = False


def _firmware_value(vm: Any) -> str:
    value = getattr(vm, "firmware_type", "bios")
    return str(getattr(value, "value", value) or "bios")


def prepare_firmware(vm: Any, settings: VMSettings) -> Optional[FirmwareImages]:
    """Resolve OVMF images for a UEFI guest and seed its private variable store.

    Returns ``None`` for BIOS guests and for UEFI guests on hosts without OVMF,
    which then boot with the default BIOS. The variable store is copied once per
    VM so guests never share (or write to) the distribution's template.
    """

    if _firmware_value(vm) != "uefi":
        return None

    code, template_vars, secure = settings.ovmf_code, settings.ovmf_vars, False
    if getattr(vm, "secure_boot", False):
        if os.path.exists(settings.ovmf_secure_code) and os.path.exists(settings.ovmf_secure_vars):
            code, template_vars, secure = settings.ovmf_secure_code, settings.ovmf_secure_vars, True
        else:
            logger.warning("Secure boot images missing for VM %s; using plain OVMF", vm.name)

    if not os.path.exists(code):
        logger.warning("OVMF firmware %s not found; VM %s falls back to BIOS", code, vm.name)
        return None

    vars_path = uefi_vars_path(settings, vm.name)
    if not os.path.exists(vars_path):
        if not os.path.exists(template_vars):
            logger.warning("OVMF vars template %s not found; VM %s falls back to BIOS", template_vars, vm.name)
            return None
        os.makedirs(os.path.dirname(vars_path), exist_ok=True)
        shutil.copyfile(template_vars, vars_path)
        logger.info("Created UEFI variable store %s", vars_path)

    return FirmwareImages(code=code, vars=vars_path, secure=secure)


class SwtpmManager:
    """Start the per-VM ``swtpm`` emulator that QEMU's TPM chardev connects to."""

    def __init__(self, runner: CommandRunner, binary: str = "swtpm") -> None:
        self._runner = runner
        self._binary = binary

    def available(self) -> bool:
        return shutil.which(self._binary) is not None

    async def ensure_running(self, vm: Any, settings: VMSettings) -> str:
        socket_path = tpm_socket_path(settings, vm.uuid)
        if os.path.exists(socket_path):
            return socket_path
        if not self.available():
            raise VMLaunchError(vm.name, "TPM is enabled but swtpm is not installed")

        state_dir = tpm_state_dir(settings, vm.name)
        os.makedirs(state_dir, exist_ok=True)
        os.makedirs(os.path.dirname(socket_path), exist_ok=True)
        result = await self._runner.run(
            [
                self._binary,
                "socket",
                "--tpm2",
                "--tpmstate", f"dir={state_dir}",
                "--ctrl", f"type=unixio,path={socket_path}",
                "--terminate",
                "--daemon",
            ]
        )
        if not result.ok:
            raise VMLaunchError(vm.name, f"swtpm failed: {result.detail}")
        logger.info("Started swtpm for VM %s at %s", vm.name, socket_path)
        return socket_path


__all__ = ["FirmwareImages", "prepare_firmware", "SwtpmManager"]
