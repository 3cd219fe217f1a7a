"""VM lifecycle orchestration: create, configure, start, stop and delete guests."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import secrets
import string
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import NetworkMode, VirtualMachine, VMStatus
from ..db.repositories import vms as vm_repo
from ..qemu import paths
from ..qemu.command import build_command
from ..qemu.errors import (
    InvalidVMConfigError,
    QMPError,
    VMExistsError,
    VMNotFoundError,
    VMNotRunningError,
    VMRunningError,
)
from ..qemu.firmware import prepare_firmware
from ..qemu.launcher import read_log_tail
from ..qemu.process import pin_cpus
from ..qemu.qmp import KEY_COMBOS

if TYPE_CHECKING:
    from .container import PanelServices

logger = logging.getLogger(__name__)

VM_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,62}$")
SPICE_PASSWORD_LENGTH = 12
# VNC authentication only looks at the first eight characters.
VNC_PASSWORD_LENGTH = 8
DEFAULT_VNC_PORT = 5900

_ALPHANUMERIC = string.ascii_letters + string.digits


def generate_password(length: int = SPICE_PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(_ALPHANUMERIC) for _ in range(length))


def validate_vm_name(name: str) -> str:
    if not name or not VM_NAME_PATTERN.match(name):
        raise InvalidVMConfigError(
            "VM names must start with a letter or digit and contain only letters, digits, '.', '_' or '-'"
        )
    return name


def _mode(value: Any) -> str:
    return str(getattr(value, "value", value) or "")


def _normalise_network(fields: Dict[str, Any]) -> None:
    mode = _mode(fields.get("network_mode") or NetworkMode.NAT)
    if mode == NetworkMode.BRIDGE.value:
        if not fields.get("network_bridge"):
            raise InvalidVMConfigError("Bridge networking requires network_bridge")
    else:
        # MAC uniqueness is scoped per bridge; NAT and user guests share the "" domain.
        fields["network_bridge"] = ""


def _remove_quietly(path: Optional[str]) -> None:
    if not path:
        return
    try:
        os.remove(path)
        logger.debug("Removed %s", path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove %s: %s", path, exc)


class VMLifecycle:
    """Lifecycle orchestrator for panel-managed VMs.

    Every state transition runs under the VM's lock from ``services.locks`` and
    opens its own database session, so request handlers never share a
    transaction with the background jobs started from them.
    """

    def __init__(self, services: "PanelServices") -> None:
        self._services = services

    @property
    def settings(self):
        return self._services.settings

    def _session(self) -> AsyncSession:
        return self._services.session_factory()

    async def _require(self, session: AsyncSession, vm_id: int) -> VirtualMachine:
        vm = await vm_repo.get_vm(session, vm_id)
        if vm is None:
            raise VMNotFoundError(vm_id)
        return vm

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def list_vms(self) -> List[VirtualMachine]:
        async with self._session() as session:
            return await vm_repo.list_vms(session)

    async def get_vm(self, vm_id: int) -> VirtualMachine:
        async with self._session() as session:
            return await self._require(session, vm_id)

    async def refresh_status(self, vm_id: int) -> VirtualMachine:
        """Return the VM, first correcting a ``running`` record whose process died."""

        async with self._services.locks.lock(vm_id):
            async with self._session() as session:
                vm = await self._require(session, vm_id)
                await self._reconcile(session, vm)
                return vm

    async def _reconcile(self, session: AsyncSession, vm: VirtualMachine) -> None:
        if vm.status != VMStatus.RUNNING:
            return
        if self._services.probe.is_alive(vm.pid, vm.process_started_at):
            return
        logger.info("VM %s (pid %s) is no longer running; marking it stopped", vm.name, vm.pid)
        await vm_repo.mark_stopped(session, vm)

    async def read_logs(self, vm_id: int, lines: int = 100) -> str:
        vm = await self.get_vm(vm_id)
        return await run_in_threadpool(read_log_tail, paths.log_path(self.settings, vm.name), lines)

    # ------------------------------------------------------------------
    # Create / update / delete
    # ------------------------------------------------------------------
    async def register_vm(self, fields: Dict[str, Any], *, created_by: Optional[int] = None) -> VirtualMachine:
        """Insert a VM row with a fresh UUID, MAC, ports, passwords and QMP path.

        No files are touched; callers that need a disk create it themselves.
        """

        values = dict(fields)
        validate_vm_name(values.get("name", ""))
        _normalise_network(values)
        vm_uuid = str(uuid.uuid4())
        values["uuid"] = vm_uuid
        values["qmp_socket_path"] = paths.qmp_socket_path(self.settings, vm_uuid)
        values.setdefault("disk_format", "qcow2")
        if not values.get("disk_path"):
            values["disk_path"] = paths.disk_path(self.settings, values["name"], values["disk_format"])
        if not values.get("spice_password"):
            values["spice_password"] = generate_password(SPICE_PASSWORD_LENGTH)
        if not values.get("vnc_password"):
            values["vnc_password"] = generate_password(VNC_PASSWORD_LENGTH)
        values["status"] = VMStatus.STOPPED
        values["pid"] = None
        values["created_by"] = created_by

        async with self._session() as session:
            vm = await vm_repo.insert_vm(
                session,
                values,
                spice_range=self.settings.spice_port_range,
                vnc_range=self.settings.vnc_port_range,
            )
        logger.info(
            "Registered VM %s (uuid=%s spice=%s vnc=%s mac=%s)",
            vm.name,
            vm.uuid,
            vm.spice_port,
            vm.vnc_port,
            vm.mac_address,
        )
        return vm

    async def create_vm(self, fields: Dict[str, Any], *, created_by: Optional[int] = None) -> VirtualMachine:
        for directory in (self.settings.vm_dir, self.settings.qmp_dir, self.settings.log_dir):
            os.makedirs(directory, exist_ok=True)

        vm = await self.register_vm(fields, created_by=created_by)
        if vm.disk_size_gb > 0 and not os.path.exists(vm.disk_path):
            try:
                await self._services.images.create_disk(vm.disk_path, vm.disk_size_gb, vm.disk_format)
            except Exception:
                logger.exception("Disk creation for VM %s failed; removing its record", vm.name)
                async with self._session() as session:
                    row = await vm_repo.get_vm(session, vm.id)
                    if row is not None:
                        await vm_repo.delete_vm(session, row)
                raise
        return vm

    async def update_vm(self, vm_id: int, changes: Dict[str, Any]) -> VirtualMachine:
        async with self._services.locks.lock(vm_id):
            async with self._session() as session:
                vm = await self._require(session, vm_id)
                await self._reconcile(session, vm)
                if vm.is_running:
                    raise VMRunningError(vm.name, "change its configuration")
                if not changes:
                    return vm

                new_name = changes.get("name")
                if new_name and new_name != vm.name:
                    validate_vm_name(new_name)
                    if await vm_repo.get_vm_by_name(session, new_name) is not None:
                        raise VMExistsError(new_name)

                merged = {
                    "network_mode": changes.get("network_mode", vm.network_mode),
                    "network_bridge": changes.get("network_bridge", vm.network_bridge),
                }
                _normalise_network(merged)
                if "network_mode" in changes or "network_bridge" in changes:
                    changes = {**changes, "network_bridge": merged["network_bridge"]}

                new_size = changes.get("disk_size_gb")
                if new_size is not None and new_size != vm.disk_size_gb:
                    await self._resize_disk(vm, new_size)

                await vm_repo.update_vm_fields(session, vm, changes)
                logger.info("Updated VM %s: %s", vm.name, ", ".join(sorted(changes)))
                return vm

    async def _resize_disk(self, vm: VirtualMachine, size_gb: int) -> None:
        if size_gb < vm.disk_size_gb:
            raise InvalidVMConfigError(
                f"Disk of VM '{vm.name}' can only grow ({vm.disk_size_gb}G -> {size_gb}G requested)"
            )
        if vm.physical_disk_device:
            raise InvalidVMConfigError(f"VM '{vm.name}' uses a physical disk that cannot be resized")
        images = self._services.images
        if vm.disk_path and os.path.exists(vm.disk_path):
            await images.resize(vm.disk_path, size_gb, vm.disk_format)
        elif vm.disk_path:
            await images.create_disk(vm.disk_path, size_gb, vm.disk_format)

    async def delete_vm(self, vm_id: int) -> None:
        async with self._services.locks.lock(vm_id):
            async with self._session() as session:
                vm = await self._require(session, vm_id)
                if vm.is_running or vm.pid:
                    await self._stop_locked(session, vm, force=True)

                for path in (
                    vm.disk_path,
                    vm.qmp_socket_path,
                    paths.uefi_vars_path(self.settings, vm.name),
                    paths.log_path(self.settings, vm.name),
                    paths.pidfile_path(self.settings, vm.uuid),
                    paths.cloud_init_iso_path(self.settings, vm.name),
                ):
                    _remove_quietly(path)

                name = vm.name
                await vm_repo.delete_vm(session, vm)
        self._services.locks.discard(vm_id)
        logger.info("Deleted VM %s", name)

    # ------------------------------------------------------------------
    # Start / stop / restart
    # ------------------------------------------------------------------
    async def start(self, vm_id: int) -> VirtualMachine:
        async with self._services.locks.lock(vm_id):
            async with self._session() as session:
                vm = await self._require(session, vm_id)
                return await self._start_locked(session, vm)

    async def stop(self, vm_id: int, *, force: bool = False) -> VirtualMachine:
        async with self._services.locks.lock(vm_id):
            async with self._session() as session:
                vm = await self._require(session, vm_id)
                await self._stop_locked(session, vm, force=force)
                return vm

    async def restart(self, vm_id: int) -> VirtualMachine:
        async with self._services.locks.lock(vm_id):
            async with self._session() as session:
                vm = await self._require(session, vm_id)
                if vm.is_running or vm.pid:
                    await self._stop_locked(session, vm, force=False)
                    await asyncio.sleep(self.settings.restart_delay_seconds)
                await session.refresh(vm)
                return await self._start_locked(session, vm)

    async def _start_locked(self, session: AsyncSession, vm: VirtualMachine) -> VirtualMachine:
        if vm.is_running:
            raise VMRunningError(vm.name)

        settings = self.settings
        firmware = await run_in_threadpool(prepare_firmware, vm, settings)
        if vm.tpm_enabled:
            await self._services.swtpm.ensure_running(vm, settings)
        os.makedirs(settings.qmp_dir, exist_ok=True)
        _remove_quietly(vm.qmp_socket_path)

        argv = build_command(vm, settings, firmware)
        result = await self._services.launcher.launch(
            argv,
            name=vm.name,
            log_path=paths.log_path(settings, vm.name),
            pidfile=paths.pidfile_path(settings, vm.uuid),
        )
        await vm_repo.mark_running(session, vm, pid=result.pid, started_at=result.started_at)
        logger.info("Started VM %s (pid %s)", vm.name, result.pid)

        await self._after_launch(vm, result.pid)
        return vm

    async def _after_launch(self, vm: VirtualMachine, pid: int) -> None:
        """Best-effort host wiring once QEMU is up; failures only degrade the guest."""

        services = self._services
        await services.tap_network.attach(vm)
        if vm.cpu_pinning:
            await pin_cpus(services.runner, pid, vm.cpu_pinning)
        if vm.bandwidth_limit_down or vm.bandwidth_limit_up:
            await services.throttler.apply(vm, pid)
        if _mode(vm.display_type) == "vnc" and vm.vnc_password:
            try:
                await services.qmp.set_display_password(vm.qmp_socket_path, "vnc", vm.vnc_password)
            except QMPError as exc:
                logger.warning("Could not set the VNC password of VM %s: %s", vm.name, exc)

    async def _stop_locked(self, session: AsyncSession, vm: VirtualMachine, *, force: bool) -> bool:
        signalled = False
        if vm.pid:
            signalled = await self._services.probe.terminate(
                vm.pid,
                force=force,
                grace_seconds=self.settings.stop_grace_seconds,
                started_at=vm.process_started_at,
            )
        await vm_repo.mark_stopped(session, vm)
        _remove_quietly(paths.pidfile_path(self.settings, vm.uuid))
        logger.info("Stopped VM %s (force=%s, signalled=%s)", vm.name, force, signalled)
        return signalled

    # ------------------------------------------------------------------
    # Console helpers
    # ------------------------------------------------------------------
    async def require_running(self, vm_id: int) -> VirtualMachine:
        vm = await self.refresh_status(vm_id)
        if not vm.is_running:
            raise VMNotRunningError(vm.name)
        return vm

    async def console_info(self, vm_id: int) -> Dict[str, Any]:
        vm = await self.require_running(vm_id)
        host = self.settings.console_host
        vnc_port = vm.vnc_port or DEFAULT_VNC_PORT
        session = await self._services.console_sessions.create(
            vm.id, host=host, port=vnc_port, password=vm.vnc_password or None
        )
        token = str(session["token"])
        return {
            "vm_id": vm.id,
            "display_type": _mode(vm.display_type),
            "vnc": {"host": host, "port": vnc_port, "password": vm.vnc_password},
            "spice": {"host": host, "port": vm.spice_port, "password": vm.spice_password},
            "token": token,
            "expires_at": session["expires_at"],
            "websocket_url": f"/api/vms/{vm.id}/console/ws?token={token}",
        }

    async def console_target(self, vm_id: int) -> Tuple[str, int]:
        vm = await self.require_running(vm_id)
        return self.settings.console_host, vm.vnc_port or DEFAULT_VNC_PORT

    async def spice_connection_file(self, vm_id: int) -> Tuple[str, str]:
        """Render a ``remote-viewer`` connection file for the VM's SPICE display."""

        vm = await self.get_vm(vm_id)
        lines = [
            "[virt-viewer]",
            "type=spice",
            f"host={self.settings.console_host}",
            f"port={vm.spice_port}",
        ]
        if vm.spice_password:
            lines.append(f"password={vm.spice_password}")
        lines += [
            f"title={vm.name}",
            "delete-this-file=1",
            "fullscreen=0",
            "toggle-fullscreen=shift+f11",
            "release-cursor=shift+f12",
        ]
        return f"{vm.name}.vv", "\n".join(lines) + "\n"

    async def send_key(self, vm_id: int, combo: str) -> None:
        if combo not in KEY_COMBOS:
            raise InvalidVMConfigError(
                f"Unknown key combination '{combo}'; expected one of {', '.join(sorted(KEY_COMBOS))}"
            )
        vm = await self.require_running(vm_id)
        await self._services.qmp.send_key_combo(vm.qmp_socket_path, combo)
        logger.info("Sent %s to VM %s", combo, vm.name)


__all__ = [
    "DEFAULT_VNC_PORT",
    "VMLifecycle",
    "generate_password",
    "validate_vm_name",
]
