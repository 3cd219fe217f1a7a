"""VM templates: CRUD, save-from-VM and instantiation with overlay disks."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..db.models import VirtualMachine, VMTemplate
from ..db.repositories import templates as template_repo
from ..db.repositories import vms as vm_repo
from ..qemu import paths
from ..qemu.errors import (
    InvalidVMConfigError,
    TemplateExistsError,
    TemplateNotFoundError,
    VMExistsError,
    VMNotFoundError,
    VMRunningError,
)
from .catalog import PREDEFINED_TEMPLATES
from .lifecycle import validate_vm_name

if TYPE_CHECKING:
    from .container import PanelServices

logger = logging.getLogger(__name__)

_OVERRIDABLE = ("cpu_cores", "ram_mb", "disk_size_gb")


def _remove_quietly(path: Optional[str]) -> None:
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove %s: %s", path, exc)


class TemplateManager:
    def __init__(self, services: "PanelServices") -> None:
        self._services = services

    @staticmethod
    def predefined() -> List[Dict[str, Any]]:
        return [dict(entry) for entry in PREDEFINED_TEMPLATES]

    async def list_templates(self) -> List[VMTemplate]:
        async with self._services.session_factory() as session:
            return await template_repo.list_templates(session)

    async def get_template(self, template_id: int) -> VMTemplate:
        async with self._services.session_factory() as session:
            template = await template_repo.get_template(session, template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template

    async def create_template(self, fields: Dict[str, Any], *, created_by: Optional[int] = None) -> VMTemplate:
        values = dict(fields)
        values["created_by"] = created_by
        if values.get("disk_path") and os.path.exists(values["disk_path"]):
            values["disk_size_actual"] = os.path.getsize(values["disk_path"])
        async with self._services.session_factory() as session:
            template = await template_repo.insert_template(session, values)
        logger.info("Created template %s", template.name)
        return template

    async def update_template(self, template_id: int, changes: Dict[str, Any]) -> VMTemplate:
        async with self._services.session_factory() as session:
            template = await template_repo.get_template(session, template_id)
            if template is None:
                raise TemplateNotFoundError(template_id)
            if changes:
                await template_repo.update_template_fields(session, template, changes)
        return template

    async def delete_template(self, template_id: int) -> None:
        async with self._services.session_factory() as session:
            template = await template_repo.get_template(session, template_id)
            if template is None:
                raise TemplateNotFoundError(template_id)
            _remove_quietly(template.disk_path)
            await template_repo.delete_template(session, template)
        logger.info("Deleted template %s", template.name)

    # ------------------------------------------------------------------
    # VM <-> template
    # ------------------------------------------------------------------
    async def save_from_vm(
        self,
        vm_id: int,
        *,
        name: str = "",
        description: str = "",
        include_disk: bool = True,
        is_public: bool = False,
        created_by: Optional[int] = None,
    ) -> VMTemplate:
        """Freeze a stopped VM's configuration (and a flattened disk copy) as a template."""

        services = self._services
        async with services.locks.lock(vm_id):
            async with services.session_factory() as session:
                vm = await vm_repo.get_vm(session, vm_id)
                if vm is None:
                    raise VMNotFoundError(vm_id)
                if vm.is_running:
                    raise VMRunningError(vm.name, "save it as a template")
                template_name = name or f"{vm.name}_template"
                if await template_repo.get_template_by_name(session, template_name) is not None:
                    raise TemplateExistsError(template_name)

                fields: Dict[str, Any] = {
                    "name": template_name,
                    "description": description or vm.description,
                    "cpu_cores": vm.cpu_cores,
                    "ram_mb": vm.ram_mb,
                    "cpu_type": vm.cpu_type,
                    "disk_size_gb": vm.disk_size_gb,
                    "disk_format": vm.disk_format,
                    "network_mode": vm.network_mode,
                    "display_type": vm.display_type,
                    "firmware_type": vm.firmware_type,
                    "os_type": vm.os_type,
                    "os_version": vm.os_version,
                    "is_public": is_public,
                    "created_by": created_by,
                }
                source_disk = vm.disk_path

            if include_disk and source_disk and os.path.exists(source_disk):
                os.makedirs(services.settings.template_dir, exist_ok=True)
                destination = os.path.join(services.settings.template_dir, f"{template_name}.qcow2")
                if os.path.exists(destination):
                    raise InvalidVMConfigError(f"Template disk {destination} already exists")
                fields["disk_size_actual"] = await services.images.convert(source_disk, destination, "qcow2")
                fields["disk_path"] = destination
                fields["disk_format"] = "qcow2"

            async with services.session_factory() as session:
                try:
                    template = await template_repo.insert_template(session, fields)
                except TemplateExistsError:
                    _remove_quietly(fields.get("disk_path"))
                    raise
        logger.info("Saved VM %s as template %s", vm.name, template.name)
        return template

    async def instantiate(
        self,
        template_id: int,
        request: Dict[str, Any],
        *,
        created_by: Optional[int] = None,
    ) -> VirtualMachine:
        """Create a VM from a template.

        The disk is a copy-on-write overlay on the template image when there is
        one, otherwise a blank image. Overrides apply only when positive, and a
        caller-supplied ISO takes precedence over generated cloud-init media.
        """

        services = self._services
        settings = services.settings
        template = await self.get_template(template_id)
        name = validate_vm_name(request.get("name", ""))

        async with services.session_factory() as session:
            if await vm_repo.get_vm_by_name(session, name) is not None:
                raise VMExistsError(name)

        sizing = {key: getattr(template, key) for key in _OVERRIDABLE}
        for key in _OVERRIDABLE:
            value = request.get(key)
            if value is not None and value > 0:
                sizing[key] = value

        disk_path = paths.disk_path(settings, name, "qcow2")
        if os.path.exists(disk_path):
            raise InvalidVMConfigError(f"Disk image {disk_path} already exists")

        created_files: List[str] = []
        if template.disk_path and os.path.exists(template.disk_path):
            await services.images.create_overlay(disk_path, template.disk_path, template.disk_format or "qcow2")
            disk_format = "qcow2"
        else:
            disk_format = template.disk_format or "qcow2"
            disk_path = paths.disk_path(settings, name, disk_format)
            await services.images.create_disk(disk_path, sizing["disk_size_gb"], disk_format)
        created_files.append(disk_path)

        iso_path = request.get("iso_path") or ""
        if template.cloud_init_enabled:
            seed = await self._build_cloud_init(template, name, request)
            if seed:
                created_files.append(seed)
                iso_path = iso_path or seed

        fields: Dict[str, Any] = {
            "name": name,
            "description": request.get("description") or template.description,
            "cpu_cores": sizing["cpu_cores"],
            "ram_mb": sizing["ram_mb"],
            "cpu_type": template.cpu_type,
            "disk_path": disk_path,
            "disk_size_gb": sizing["disk_size_gb"],
            "disk_format": disk_format,
            "boot_order": "cd,hd",
            "iso_path": iso_path,
            "network_mode": template.network_mode,
            "network_model": "virtio",
            "display_type": template.display_type,
            "firmware_type": template.firmware_type,
            "os_type": template.os_type,
            "os_version": template.os_version,
            "template_id": template.id,
        }
        try:
            vm = await services.vms.register_vm(fields, created_by=created_by)
        except Exception:
            for path in created_files:
                _remove_quietly(path)
            raise

        async with services.session_factory() as session:
            await template_repo.increment_download_count(session, template.id)
        logger.info("Instantiated VM %s from template %s", vm.name, template.name)
        return vm

    async def _build_cloud_init(self, template: VMTemplate, vm_name: str, request: Dict[str, Any]) -> Optional[str]:
        builder = self._services.cloud_init
        documents = await builder.render(
            vm_name,
            hostname=request.get("cloud_init_hostname") or "",
            username=request.get("cloud_init_username") or "",
            password=request.get("cloud_init_password") or "",
            ssh_keys=request.get("cloud_init_ssh_keys") or "",
            user_data_template=template.cloud_init_user_data,
            meta_data_template=template.cloud_init_meta_data,
            network_config=template.cloud_init_network_config,
        )
        return await builder.build_iso(paths.cloud_init_iso_path(self._services.settings, vm_name), documents)


__all__ = ["TemplateManager"]
