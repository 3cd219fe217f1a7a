"""Tests for vmpanel.services.backups."""

import asyncio
import os
from datetime import datetime

import pytest

from vmpanel.db.models import BackupStatus, SnapshotStatus, SnapshotType
from vmpanel.db.repositories import backups as backup_repo
from vmpanel.db.repositories import snapshots as snapshot_repo
from vmpanel.db.repositories import vms as vm_repo
from vmpanel.qemu.errors import BackupNotFoundError, InvalidVMConfigError, VMNotFoundError, VMRunningError
from vmpanel.services.backups import BACKUP_SUFFIX, backup_name_for
from vmpanel.services.jobs import INTERRUPTED


async def create_vm(services, name="test1"):
    return await services.vms.create_vm({"name": name, "disk_size_gb": 20})


async def finished_backup(services, vm):
    backup = await services.backups.create_backup(vm.id, notes="nightly")
    await services.jobs.wait_idle(timeout=5)
    return await services.backups.get_backup(backup.id)


def test_backup_name_uses_timestamp():
    assert backup_name_for("web", datetime(2024, 3, 9, 7, 5, 1)) == "web_2024-03-09_07-05-01"


@pytest.mark.asyncio
async def test_backup_completes_in_background(services, vm_settings):
    vm = await create_vm(services)

    backup = await services.backups.create_backup(vm.id, notes="nightly")

    assert backup.status == BackupStatus.CREATING
    assert backup.backup_path.startswith(vm_settings.backup_dir)
    assert backup.backup_path.endswith(BACKUP_SUFFIX)

    await services.jobs.wait_idle(timeout=5)
    done = await services.backups.get_backup(backup.id)

    assert done.status == BackupStatus.COMPLETED
    assert done.backup_size > 0
    assert done.completed_at is not None
    assert done.error_message is None
    assert os.path.exists(done.backup_path)


@pytest.mark.asyncio
async def test_running_vm_can_still_be_backed_up(services):
    vm = await create_vm(services)
    await services.vms.start(vm.id)

    assert (await finished_backup(services, vm)).status == BackupStatus.COMPLETED


@pytest.mark.asyncio
async def test_compression_failure_is_recorded(services, host):
    vm = await create_vm(services)
    host.runner.failures["gzip"] = "gzip: No space left on device"

    failed = await finished_backup(services, vm)

    assert failed.status == BackupStatus.FAILED
    assert "No space left" in failed.error_message
    assert not os.path.exists(failed.backup_path)


@pytest.mark.asyncio
async def test_missing_disk_is_recorded_as_failure(services):
    vm = await create_vm(services)
    os.remove(vm.disk_path)

    failed = await finished_backup(services, vm)

    assert failed.status == BackupStatus.FAILED
    assert "does not exist" in failed.error_message


@pytest.mark.asyncio
async def test_list_backups_newest_first(services):
    vm = await create_vm(services)
    first = await finished_backup(services, vm)
    second = await finished_backup(services, vm)

    listed = await services.backups.list_backups(vm.id)

    assert [backup.id for backup in listed] == [second.id, first.id]


@pytest.mark.asyncio
async def test_restore_overwrites_disk(services):
    vm = await create_vm(services)
    backup = await finished_backup(services, vm)
    with open(vm.disk_path, "wb") as handle:
        handle.write(b"corrupted")

    restoring = await services.backups.restore_backup(backup.id)
    assert restoring.status == BackupStatus.RESTORING
    await services.jobs.wait_idle(timeout=5)

    assert (await services.backups.get_backup(backup.id)).status == BackupStatus.COMPLETED
    with open(vm.disk_path, "rb") as handle:
        assert handle.read().startswith(b"QFI\xfb blank")


@pytest.mark.asyncio
async def test_restore_rejected_while_vm_running(services, host):
    vm = await create_vm(services)
    backup = await finished_backup(services, vm)
    await services.vms.start(vm.id)

    with pytest.raises(VMRunningError):
        await services.backups.restore_backup(backup.id)

    assert host.runner.find("gunzip") == []
    assert (await services.backups.get_backup(backup.id)).status == BackupStatus.COMPLETED


@pytest.mark.asyncio
async def test_restore_of_busy_backup_is_rejected(services):
    vm = await create_vm(services)
    backup = await finished_backup(services, vm)
    async with services.session_factory() as session:
        await backup_repo.set_backup_status(session, backup.id, BackupStatus.CREATING)

    with pytest.raises(InvalidVMConfigError):
        await services.backups.restore_backup(backup.id)


@pytest.mark.asyncio
async def test_restore_of_detached_backup_is_rejected(services):
    vm = await create_vm(services)
    backup = await finished_backup(services, vm)
    await services.vms.delete_vm(vm.id)

    with pytest.raises(VMNotFoundError):
        await services.backups.restore_backup(backup.id)


@pytest.mark.asyncio
async def test_vm_started_before_restore_job_runs_fails_the_restore(services, host):
    vm = await create_vm(services)
    backup = await finished_backup(services, vm)

    await services.backups.restore_backup(backup.id)
    # The restore job has not started yet, so the free lock is taken without yielding to it.
    lock = services.locks.lock(vm.id)
    await lock.acquire()
    try:
        async with services.session_factory() as session:
            row = await vm_repo.get_vm(session, vm.id)
            await vm_repo.mark_running(session, row, pid=4242, started_at=None)
    finally:
        lock.release()
    await services.jobs.wait_idle(timeout=5)

    restored = await services.backups.get_backup(backup.id)
    assert restored.status == BackupStatus.FAILED
    assert "stop it first" in restored.error_message
    assert host.runner.find("gunzip") == []


@pytest.mark.asyncio
async def test_delete_backup_removes_file_and_record(services):
    vm = await create_vm(services)
    backup = await finished_backup(services, vm)

    await services.backups.delete_backup(backup.id)

    assert not os.path.exists(backup.backup_path)
    with pytest.raises(BackupNotFoundError):
        await services.backups.get_backup(backup.id)


@pytest.mark.asyncio
async def test_backup_of_unknown_vm(services):
    with pytest.raises(VMNotFoundError):
        await services.backups.create_backup(999)


@pytest.mark.asyncio
async def test_restore_of_failed_backup_is_rejected(services, host):
    vm = await create_vm(services)
    host.runner.failures["gzip"] = "gzip: No space left on device"
    failed = await finished_backup(services, vm)
    disk_before = os.path.getsize(vm.disk_path)

    with pytest.raises(InvalidVMConfigError):
        await services.backups.restore_backup(failed.id)

    assert host.runner.find("gunzip") == []
    assert os.path.getsize(vm.disk_path) == disk_before


@pytest.mark.asyncio
async def test_restore_with_missing_archive_is_rejected(services, host):
    vm = await create_vm(services)
    backup = await finished_backup(services, vm)
    os.remove(backup.backup_path)

    with pytest.raises(InvalidVMConfigError):
        await services.backups.restore_backup(backup.id)

    assert (await services.backups.get_backup(backup.id)).status == BackupStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_unpack_leaves_disk_untouched_and_can_be_retried(services, host):
    vm = await create_vm(services)
    backup = await finished_backup(services, vm)
    with open(vm.disk_path, "wb") as handle:
        handle.write(b"current disk")
    host.runner.failures["gunzip"] = "gunzip: unexpected end of file"

    await services.backups.restore_backup(backup.id)
    await services.jobs.wait_idle(timeout=5)

    failed = await services.backups.get_backup(backup.id)
    assert failed.status == BackupStatus.FAILED
    assert "unexpected end of file" in failed.error_message
    with open(vm.disk_path, "rb") as handle:
        assert handle.read() == b"current disk"
    assert not os.path.exists(vm.disk_path + ".part")

    del host.runner.failures["gunzip"]
    await services.backups.restore_backup(backup.id)
    await services.jobs.wait_idle(timeout=5)

    assert (await services.backups.get_backup(backup.id)).status == BackupStatus.COMPLETED
    with open(vm.disk_path, "rb") as handle:
        assert handle.read().startswith(b"QFI\xfb blank")


@pytest.mark.asyncio
async def test_shutdown_mid_backup_marks_it_failed(services, monkeypatch):
    vm = await create_vm(services)
    started = asyncio.Event()

    async def stalled_compress(source, destination):
        started.set()
        await asyncio.Event().wait()

    monkeypatch.setattr(services.images, "compress", stalled_compress)
    backup = await services.backups.create_backup(vm.id)
    await asyncio.wait_for(started.wait(), timeout=5)

    await services.shutdown()

    interrupted = await services.backups.get_backup(backup.id)
    assert interrupted.status == BackupStatus.FAILED
    assert interrupted.error_message == INTERRUPTED
    await services.backups.delete_backup(backup.id)


@pytest.mark.asyncio
async def test_leftover_busy_rows_are_failed_on_startup(services):
    vm = await create_vm(services)
    backup = await finished_backup(services, vm)
    async with services.session_factory() as session:
        await backup_repo.set_backup_status(session, backup.id, BackupStatus.RESTORING)
        snapshot = await snapshot_repo.create_snapshot_record(
            session, vm_id=vm.id, name="stuck", snapshot_type=SnapshotType.DISK
        )

    assert await services.recover_interrupted_jobs() == 2

    recovered = await services.backups.get_backup(backup.id)
    assert recovered.status == BackupStatus.FAILED
    assert recovered.error_message == INTERRUPTED
    listing = await services.snapshots.list_snapshots(vm.id)
    assert [row.status for row in listing["snapshots"] if row.id == snapshot.id] == [SnapshotStatus.FAILED]
    assert await services.recover_interrupted_jobs() == 0
