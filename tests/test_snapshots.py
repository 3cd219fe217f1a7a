"""Tests for vmpanel.services.snapshots."""

import os
from datetime import datetime

import pytest

from vmpanel.db.models import SnapshotStatus, SnapshotType
from vmpanel.qemu.errors import (
    InvalidVMConfigError,
    QMPError,
    SnapshotNotFoundError,
    VMNotRunningError,
    VMRunningError,
)
from vmpanel.services.snapshots import default_snapshot_name

QEMU_IMG_LISTING = """Snapshot list:
ID        TAG               VM SIZE                DATE     VM CLOCK     ICOUNT
1         before-upgrade        0 B 2024-03-09 07:05:01 00:00:00.000          0
"""


async def create_vm(services, name="snapvm"):
    return await services.vms.create_vm({"name": name, "disk_size_gb": 10})


async def snapshot(services, vm, name="before-upgrade", snapshot_type=SnapshotType.DISK):
    record = await services.snapshots.create_snapshot(vm.id, name=name, snapshot_type=snapshot_type)
    await services.jobs.wait_idle(timeout=5)
    listing = await services.snapshots.list_snapshots(vm.id)
    return next(row for row in listing["snapshots"] if row.id == record.id)


def test_default_name():
    assert default_snapshot_name(datetime(2024, 1, 2, 3, 4, 5)) == "snapshot_2024-01-02_03-04-05"


@pytest.mark.asyncio
async def test_disk_snapshot_of_stopped_vm_uses_qemu_img(services, host):
    vm = await create_vm(services)

    row = await snapshot(services, vm)

    assert row.status == SnapshotStatus.COMPLETED
    assert row.size_bytes == os.path.getsize(vm.disk_path)
    assert row.completed_at is not None
    assert host.runner.find("qemu-img", "snapshot", "-c", "before-upgrade", vm.disk_path)
    host.qmp.snapshot_save.assert_not_awaited()


@pytest.mark.asyncio
async def test_running_vm_snapshots_through_qmp(services, host):
    vm = await create_vm(services)
    await services.vms.start(vm.id)

    row = await snapshot(services, vm, snapshot_type=SnapshotType.FULL)

    assert row.status == SnapshotStatus.COMPLETED
    host.qmp.snapshot_save.assert_awaited_once_with(vm.qmp_socket_path, "before-upgrade")


@pytest.mark.asyncio
async def test_memory_snapshot_of_stopped_vm_fails(services):
    vm = await create_vm(services)

    row = await snapshot(services, vm, snapshot_type=SnapshotType.MEMORY)

    assert row.status == SnapshotStatus.FAILED
    assert "not currently running" in row.error_message


@pytest.mark.asyncio
async def test_qemu_img_failure_is_recorded(services, host):
    vm = await create_vm(services)
    host.runner.failures["qemu-img"] = "Device or resource busy"

    row = await snapshot(services, vm)

    assert row.status == SnapshotStatus.FAILED
    assert "Device or resource busy" in row.error_message


@pytest.mark.asyncio
async def test_listing_includes_native_snapshots(services, host):
    vm = await create_vm(services)
    host.runner.snapshot_output = QEMU_IMG_LISTING

    listing = await services.snapshots.list_snapshots(vm.id)

    assert listing["snapshots"] == []
    assert listing["native"][0]["tag"] == "before-upgrade"


@pytest.mark.asyncio
async def test_disk_restore_requires_stopped_vm(services, host):
    vm = await create_vm(services)
    row = await snapshot(services, vm)
    await services.vms.start(vm.id)

    with pytest.raises(VMRunningError):
        await services.snapshots.restore_snapshot(vm.id, row.id)

    await services.vms.stop(vm.id)
    await services.snapshots.restore_snapshot(vm.id, row.id)

    assert host.runner.find("qemu-img", "snapshot", "-a", "before-upgrade", vm.disk_path)


@pytest.mark.asyncio
async def test_memory_restore_requires_running_vm(services, host):
    vm = await create_vm(services)
    await services.vms.start(vm.id)
    row = await snapshot(services, vm, snapshot_type=SnapshotType.MEMORY)
    await services.vms.stop(vm.id)

    with pytest.raises(VMNotRunningError):
        await services.snapshots.restore_snapshot(vm.id, row.id)

    await services.vms.start(vm.id)
    await services.snapshots.restore_snapshot(vm.id, row.id)

    host.qmp.snapshot_load.assert_awaited_once_with(vm.qmp_socket_path, "before-upgrade")


@pytest.mark.asyncio
async def test_failed_snapshot_cannot_be_restored(services):
    vm = await create_vm(services)
    row = await snapshot(services, vm, snapshot_type=SnapshotType.MEMORY)

    with pytest.raises(InvalidVMConfigError):
        await services.snapshots.restore_snapshot(vm.id, row.id)


@pytest.mark.asyncio
async def test_snapshot_of_another_vm_is_not_found(services):
    vm = await create_vm(services)
    other = await create_vm(services, name="other")
    row = await snapshot(services, vm)

    with pytest.raises(SnapshotNotFoundError):
        await services.snapshots.restore_snapshot(other.id, row.id)


@pytest.mark.asyncio
async def test_delete_removes_native_snapshot_and_record(services, host):
    vm = await create_vm(services)
    row = await snapshot(services, vm)

    await services.snapshots.delete_snapshot(vm.id, row.id)

    assert host.runner.find("qemu-img", "snapshot", "-d", "before-upgrade", vm.disk_path)
    assert (await services.snapshots.list_snapshots(vm.id))["snapshots"] == []


@pytest.mark.asyncio
async def test_delete_survives_qmp_failure(services, host):
    vm = await create_vm(services)
    await services.vms.start(vm.id)
    row = await snapshot(services, vm)
    host.qmp.snapshot_delete.side_effect = QMPError("GenericError", "Snapshot not found")

    await services.snapshots.delete_snapshot(vm.id, row.id)

    assert (await services.snapshots.list_snapshots(vm.id))["snapshots"] == []
