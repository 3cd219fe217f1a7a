"""Tests for vmpanel.db.repositories.vms (port and MAC claims)."""

import asyncio
import re

import pytest

from vmpanel.db.models import BackupStatus, NetworkMode, SnapshotType
from vmpanel.db.repositories import backups as backup_repo
from vmpanel.db.repositories import snapshots as snapshot_repo
from vmpanel.db.repositories import vms as vm_repo
from vmpanel.qemu.errors import InvalidVMConfigError, PortExhaustedError, VMExistsError

MAC_PATTERN = re.compile(r"^52:54:00(:[0-9a-f]{2}){3}$")


def vm_fields(name, **overrides):
    fields = {
        "name": name,
        "uuid": f"uuid-{name}",
        "qmp_socket_path": f"/run/qmp/{name}.sock",
        "disk_path": f"/vms/{name}.qcow2",
        "network_mode": NetworkMode.NAT,
        "network_bridge": "",
    }
    fields.update(overrides)
    return fields


async def insert(session, name, *, spice_range=(5900, 5909), vnc_range=(5950, 5959), **kwargs):
    return await vm_repo.insert_vm(
        session, vm_fields(name), spice_range=spice_range, vnc_range=vnc_range, **kwargs
    )


class MacSequence:
    def __init__(self, *macs):
        self.macs = list(macs)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.macs.pop(0)


def test_generated_mac_uses_qemu_prefix():
    for _ in range(50):
        assert MAC_PATTERN.match(vm_repo.generate_mac_address())


@pytest.mark.asyncio
async def test_ports_are_pairwise_distinct(services):
    async with services.session_factory() as session:
        vms = [await insert(session, f"vm{index}") for index in range(6)]

    spice_ports = [vm.spice_port for vm in vms]
    vnc_ports = [vm.vnc_port for vm in vms]
    assert spice_ports == list(range(5900, 5906))
    assert vnc_ports == list(range(5950, 5956))


@pytest.mark.asyncio
async def test_lowest_free_port_is_reused_after_delete(services):
    async with services.session_factory() as session:
        first = await insert(session, "first")
        await insert(session, "second")
        await vm_repo.delete_vm(session, first)

        third = await insert(session, "third")

    assert third.spice_port == 5900
    assert third.vnc_port == 5950


@pytest.mark.asyncio
async def test_exhausted_range_raises_instead_of_reusing_a_port(services):
    async with services.session_factory() as session:
        await insert(session, "only", spice_range=(5900, 5900), vnc_range=(5950, 5950))

        with pytest.raises(PortExhaustedError):
            await insert(session, "extra", spice_range=(5900, 5900), vnc_range=(5950, 5950))


@pytest.mark.asyncio
async def test_port_collision_is_retried_with_fresh_ports(services, monkeypatch):
    async with services.session_factory() as session:
        first = await insert(session, "first")
        claimed = (first.spice_port, first.vnc_port)
        real_find_free_ports = vm_repo.find_free_ports
        lookups = []

        async def stale_then_real(session, **ranges):
            # The first lookup answers as if "first" had not been committed yet.
            lookups.append(ranges)
            if len(lookups) == 1:
                return claimed
            return await real_find_free_ports(session, **ranges)

        monkeypatch.setattr(vm_repo, "find_free_ports", stale_then_real)
        second = await insert(session, "second")

    assert len(lookups) == 2
    assert (second.spice_port, second.vnc_port) == (5901, 5951)


@pytest.mark.asyncio
async def test_concurrent_inserts_claim_distinct_ports(services):
    async def insert_in_own_session(name):
        async with services.session_factory() as session:
            return await insert(session, name)

    vms = await asyncio.gather(*(insert_in_own_session(f"burst{index}") for index in range(5)))

    assert sorted(vm.spice_port for vm in vms) == list(range(5900, 5905))
    assert sorted(vm.vnc_port for vm in vms) == list(range(5950, 5955))
    assert len({vm.mac_address for vm in vms}) == 5


@pytest.mark.asyncio
async def test_concurrent_vm_creation_through_the_service(services):
    vms = await asyncio.gather(
        *(services.vms.create_vm({"name": f"web{index}", "disk_size_gb": 0}) for index in range(4))
    )

    assert len({vm.spice_port for vm in vms}) == 4
    assert len({vm.vnc_port for vm in vms}) == 4
    listed = await services.vms.list_vms()
    assert sorted(vm.name for vm in listed) == ["web0", "web1", "web2", "web3"]


@pytest.mark.asyncio
async def test_mac_collision_is_retried_with_a_fresh_address(services):
    async with services.session_factory() as session:
        await insert(session, "one", mac_factory=MacSequence("52:54:00:aa:bb:cc"))
        macs = MacSequence("52:54:00:aa:bb:cc", "52:54:00:aa:bb:cd")

        second = await insert(session, "two", mac_factory=macs)

    assert macs.calls == 2
    assert second.mac_address == "52:54:00:aa:bb:cd"


@pytest.mark.asyncio
async def test_same_mac_allowed_on_different_bridges(services):
    async with services.session_factory() as session:
        await vm_repo.insert_vm(
            session,
            vm_fields("on-br0", network_mode=NetworkMode.BRIDGE, network_bridge="br0", mac_address="52:54:00:01:02:03"),
            spice_range=(5900, 5909),
            vnc_range=(5950, 5959),
        )
        other = await vm_repo.insert_vm(
            session,
            vm_fields("on-br1", network_mode=NetworkMode.BRIDGE, network_bridge="br1", mac_address="52:54:00:01:02:03"),
            spice_range=(5900, 5909),
            vnc_range=(5950, 5959),
        )

    assert other.mac_address == "52:54:00:01:02:03"


@pytest.mark.asyncio
async def test_explicit_clash_is_a_config_error(services):
    async with services.session_factory() as session:
        first = await insert(session, "first")

        with pytest.raises(InvalidVMConfigError):
            await vm_repo.insert_vm(
                session,
                vm_fields(
                    "clash",
                    spice_port=first.spice_port,
                    vnc_port=first.vnc_port,
                    mac_address=first.mac_address,
                ),
                spice_range=(5900, 5909),
                vnc_range=(5950, 5959),
            )


@pytest.mark.asyncio
async def test_duplicate_name_is_rejected(services):
    async with services.session_factory() as session:
        await insert(session, "dup")

        with pytest.raises(VMExistsError):
            await insert(session, "dup")


@pytest.mark.asyncio
async def test_delete_keeps_backups_and_drops_snapshots(services):
    async with services.session_factory() as session:
        vm = await insert(session, "doomed")
        backup = await backup_repo.create_backup_record(
            session, vm_id=vm.id, vm_name=vm.name, backup_name="doomed_b", backup_path="/b/doomed.qcow2.gz"
        )
        await backup_repo.set_backup_status(session, backup.id, BackupStatus.COMPLETED, size=10)
        await snapshot_repo.create_snapshot_record(
            session, vm_id=vm.id, name="before", snapshot_type=SnapshotType.DISK
        )
        vm_id = vm.id

        await vm_repo.delete_vm(session, vm)

    async with services.session_factory() as session:
        orphan = await backup_repo.get_backup(session, backup.id)
        assert orphan is not None
        assert orphan.vm_id is None
        assert orphan.vm_name == "doomed"
        assert await snapshot_repo.list_snapshots_for_vm(session, vm_id) == []
