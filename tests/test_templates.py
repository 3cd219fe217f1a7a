"""Tests for vmpanel.services.templates."""

import os
from unittest.mock import AsyncMock

import pytest

from vmpanel.db.models import FirmwareType, VMStatus
from vmpanel.qemu import paths
from vmpanel.qemu.errors import (
    PortExhaustedError,
    TemplateExistsError,
    TemplateNotFoundError,
    VMExistsError,
    VMRunningError,
)

USER_DATA_TEMPLATE = "#cloud-config\nhostname: {{hostname}}\nusers:\n  - name: {{username}}\n"


def write_disk(path, data=b"QFI\xfb golden image"):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as handle:
        handle.write(data)
    return path


async def golden_template(services, vm_settings, **fields):
    values = {
        "name": "debian-golden",
        "description": "Debian 12 base",
        "cpu_cores": 4,
        "ram_mb": 4096,
        "disk_size_gb": 30,
        "disk_format": "qcow2",
        "firmware_type": FirmwareType.UEFI,
        "os_type": "linux",
        "os_version": "debian-12",
        "disk_path": write_disk(os.path.join(vm_settings.template_dir, "debian-golden.qcow2")),
    }
    values.update(fields)
    return await services.templates.create_template(values, created_by=1)


def test_predefined_catalog():
    from vmpanel.services.templates import TemplateManager

    names = [entry["name"] for entry in TemplateManager.predefined()]

    assert len(names) == 6
    assert "Windows 11" in names


@pytest.mark.asyncio
async def test_create_template_measures_disk(services, vm_settings):
    template = await golden_template(services, vm_settings)

    assert template.disk_size_actual == os.path.getsize(template.disk_path)
    assert template.download_count == 0


@pytest.mark.asyncio
async def test_duplicate_template_name(services, vm_settings):
    await golden_template(services, vm_settings)

    with pytest.raises(TemplateExistsError):
        await golden_template(services, vm_settings)


@pytest.mark.asyncio
async def test_instantiate_uses_overlay_on_template_disk(services, host, vm_settings):
    template = await golden_template(services, vm_settings)

    vm = await services.templates.instantiate(template.id, {"name": "web01"}, created_by=1)

    assert vm.disk_path == paths.disk_path(vm_settings, "web01")
    assert vm.disk_path != template.disk_path
    assert os.path.exists(vm.disk_path)
    assert host.runner.find(
        "qemu-img", "create", "-f", "qcow2", "-b", template.disk_path, "-F", "qcow2", vm.disk_path
    )
    assert (vm.cpu_cores, vm.ram_mb, vm.disk_size_gb) == (4, 4096, 30)
    assert vm.firmware_type == FirmwareType.UEFI
    assert vm.template_id == template.id
    assert vm.status == VMStatus.STOPPED
    assert vm.uuid and vm.mac_address and vm.spice_port and vm.vnc_port
    assert (await services.templates.get_template(template.id)).download_count == 1


@pytest.mark.asyncio
async def test_only_positive_overrides_apply(services, vm_settings):
    template = await golden_template(services, vm_settings)

    vm = await services.templates.instantiate(
        template.id, {"name": "web02", "cpu_cores": 8, "ram_mb": 0, "disk_size_gb": -5}
    )

    assert (vm.cpu_cores, vm.ram_mb, vm.disk_size_gb) == (8, 4096, 30)


@pytest.mark.asyncio
async def test_overlay_failure_falls_back_to_copy(services, host, vm_settings):
    template = await golden_template(services, vm_settings)
    host.runner.failures["qemu-img"] = "backing file not supported"

    vm = await services.templates.instantiate(template.id, {"name": "copied"})

    with open(vm.disk_path, "rb") as handle:
        assert handle.read() == b"QFI\xfb golden image"


@pytest.mark.asyncio
async def test_template_without_disk_gets_blank_image(services, host, vm_settings):
    template = await golden_template(services, vm_settings, disk_path="", disk_format="raw", disk_size_gb=8)

    vm = await services.templates.instantiate(template.id, {"name": "blank"})

    assert vm.disk_path.endswith("blank.raw")
    assert host.runner.find("qemu-img", "create", "-f", "raw", vm.disk_path, "8G")


@pytest.mark.asyncio
async def test_cloud_init_seed_becomes_boot_media(services, host, vm_settings):
    template = await golden_template(
        services, vm_settings, cloud_init_enabled=True, cloud_init_user_data=USER_DATA_TEMPLATE
    )

    vm = await services.templates.instantiate(
        template.id,
        {"name": "ci01", "cloud_init_hostname": "ci01.lan", "cloud_init_username": "ops"},
    )

    seed = paths.cloud_init_iso_path(vm_settings, "ci01")
    assert vm.iso_path == seed
    assert os.path.exists(seed)
    assert host.runner.find("genisoimage", "-output", seed, "-volid", "cidata")


@pytest.mark.asyncio
async def test_caller_iso_wins_over_seed(services, vm_settings):
    template = await golden_template(services, vm_settings, cloud_init_enabled=True)

    vm = await services.templates.instantiate(template.id, {"name": "ci02", "iso_path": "/isos/installer.iso"})

    assert vm.iso_path == "/isos/installer.iso"


@pytest.mark.asyncio
async def test_name_clash_creates_no_files(services, host, vm_settings):
    await services.vms.create_vm({"name": "taken", "disk_size_gb": 0})
    template = await golden_template(services, vm_settings)

    with pytest.raises(VMExistsError):
        await services.templates.instantiate(template.id, {"name": "taken"})

    assert host.runner.find("qemu-img", "create") == []


@pytest.mark.asyncio
async def test_failed_registration_removes_created_files(services, vm_settings, monkeypatch):
    template = await golden_template(services, vm_settings, cloud_init_enabled=True)
    monkeypatch.setattr(
        services.vms, "register_vm", AsyncMock(side_effect=PortExhaustedError("SPICE", (5900, 5909)))
    )

    with pytest.raises(PortExhaustedError):
        await services.templates.instantiate(template.id, {"name": "orphan"})

    assert not os.path.exists(paths.disk_path(vm_settings, "orphan"))
    assert not os.path.exists(paths.cloud_init_iso_path(vm_settings, "orphan"))
    assert (await services.templates.get_template(template.id)).download_count == 0


@pytest.mark.asyncio
async def test_save_stopped_vm_as_template(services, host, vm_settings):
    vm = await services.vms.create_vm({"name": "builder", "cpu_cores": 3, "ram_mb": 3072, "disk_size_gb": 12})

    template = await services.templates.save_from_vm(vm.id, description="from builder")

    assert template.name == "builder_template"
    assert template.cpu_cores == 3
    assert template.disk_path == os.path.join(vm_settings.template_dir, "builder_template.qcow2")
    assert template.disk_size_actual == os.path.getsize(template.disk_path)
    assert host.runner.find("qemu-img", "convert", "-O", "qcow2", vm.disk_path, template.disk_path)


@pytest.mark.asyncio
async def test_save_running_vm_is_rejected(services):
    vm = await services.vms.create_vm({"name": "busy", "disk_size_gb": 5})
    await services.vms.start(vm.id)

    with pytest.raises(VMRunningError):
        await services.templates.save_from_vm(vm.id)


@pytest.mark.asyncio
async def test_save_with_taken_template_name(services, vm_settings):
    await golden_template(services, vm_settings)
    vm = await services.vms.create_vm({"name": "builder", "disk_size_gb": 5})

    with pytest.raises(TemplateExistsError):
        await services.templates.save_from_vm(vm.id, name="debian-golden")


@pytest.mark.asyncio
async def test_update_and_delete_template(services, vm_settings):
    template = await golden_template(services, vm_settings)

    updated = await services.templates.update_template(template.id, {"ram_mb": 1024})
    assert updated.ram_mb == 1024

    await services.templates.delete_template(template.id)

    assert not os.path.exists(template.disk_path)
    with pytest.raises(TemplateNotFoundError):
        await services.templates.get_template(template.id)
