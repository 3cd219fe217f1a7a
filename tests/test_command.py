"""Tests for vmpanel.qemu.command (hypervisor argument synthesis)."""

import os

import pytest

from tests.conftest import make_settings
from vmpanel.db.models import DisplayType, FirmwareType, NetworkMode, VirtualMachine
from vmpanel.qemu.command import build_command, tap_name, vnc_display
from vmpanel.qemu.errors import InvalidVMConfigError
from vmpanel.qemu.firmware import prepare_firmware
from vmpanel.qemu.paths import pidfile_path, tpm_socket_path, uefi_vars_path

VM_UUID = "0b5d7f36-3f7e-4a58-9f0c-1c5a2f7d9e10"


def make_vm(**overrides):
    fields = {
        "id": 1,
        "name": "web01",
        "uuid": VM_UUID,
        "cpu_cores": 2,
        "cpu_type": "host",
        "cpu_pinning": "",
        "numa_topology": "",
        "ram_mb": 2048,
        "balloon_enabled": False,
        "hugepages_enabled": False,
        "disk_path": "/var/lib/vms/web01.qcow2",
        "disk_size_gb": 20,
        "disk_format": "qcow2",
        "cache_mode": "writeback",
        "discard_enabled": False,
        "physical_disk_device": "",
        "boot_order": "cd,hd",
        "iso_path": "",
        "firmware_type": FirmwareType.BIOS,
        "secure_boot": False,
        "tpm_enabled": False,
        "network_mode": NetworkMode.NAT,
        "network_bridge": "",
        "network_model": "virtio",
        "mac_address": "52:54:00:12:34:56",
        "display_type": DisplayType.SPICE,
        "spice_port": 5901,
        "vnc_port": 5952,
        "spice_password": "spicepass123",
        "vnc_password": "vncpass1",
        "qmp_socket_path": f"/run/qmp/{VM_UUID}.sock",
    }
    fields.update(overrides)
    return VirtualMachine(**fields)


def display_blocks(argv):
    return [flag for flag in argv if flag in ("-spice", "-vnc", "-nographic")]


def value_after(argv, flag):
    return [argv[index + 1] for index, token in enumerate(argv) if token == flag]


class TestBuildCommand:
    def test_same_configuration_gives_same_tokens(self, vm_settings):
        vm = make_vm(balloon_enabled=True, tpm_enabled=True, discard_enabled=True)

        assert build_command(vm, vm_settings) == build_command(vm, vm_settings)

    def test_core_tokens(self, vm_settings):
        argv = build_command(make_vm(), vm_settings)

        assert argv[0] == vm_settings.qemu_binary
        assert value_after(argv, "-uuid") == [VM_UUID]
        assert value_after(argv, "-name") == ["web01"]
        assert value_after(argv, "-smp") == ["cores=2"]
        assert value_after(argv, "-m") == ["2048"]
        assert value_after(argv, "-cpu") == ["host"]
        assert value_after(argv, "-boot") == ["order=cd,hd"]
        assert value_after(argv, "-pidfile") == [pidfile_path(vm_settings, VM_UUID)]
        assert argv[-1] == "-daemonize"

    def test_qmp_socket_is_server_non_blocking(self, vm_settings):
        argv = build_command(make_vm(), vm_settings)

        assert value_after(argv, "-qmp") == [f"unix:/run/qmp/{VM_UUID}.sock,server=on,wait=off"]

    def test_memory_options(self, vm_settings):
        argv = build_command(make_vm(balloon_enabled=True, hugepages_enabled=True), vm_settings)

        assert "virtio-balloon-pci,id=balloon0" in argv
        assert value_after(argv, "-mem-path") == [vm_settings.hugepages_path]
        assert "-mem-prealloc" in argv

    def test_numa_is_passed_through(self, vm_settings):
        argv = build_command(make_vm(numa_topology="node,nodeid=0,cpus=0-1"), vm_settings)

        assert value_after(argv, "-numa") == ["node,nodeid=0,cpus=0-1"]

    def test_disk_cdrom_and_passthrough(self, vm_settings):
        vm = make_vm(
            cache_mode="none",
            discard_enabled=True,
            physical_disk_device="/dev/sdb",
            iso_path="/isos/debian.iso",
        )
        drives = value_after(build_command(vm, vm_settings), "-drive")

        assert drives[0] == (
            "file=/var/lib/vms/web01.qcow2,if=virtio,node-name=drive0,format=qcow2,cache=none,discard=unmap"
        )
        assert drives[1] == "file=/dev/sdb,if=virtio,format=raw"
        assert value_after(build_command(vm, vm_settings), "-cdrom") == ["/isos/debian.iso"]

    def test_boot_order_is_not_validated(self, vm_settings):
        argv = build_command(make_vm(boot_order="zz,qq"), vm_settings)

        assert value_after(argv, "-boot") == ["order=zz,qq"]

    def test_tpm_uses_per_vm_socket(self, vm_settings):
        argv = build_command(make_vm(tpm_enabled=True), vm_settings)

        assert f"socket,id=chrtpm,path={tpm_socket_path(vm_settings, VM_UUID)}" in argv
        assert "tpm-tis,tpmdev=tpm0" in argv


class TestDisplay:
    def test_spice_with_password(self, vm_settings):
        argv = build_command(make_vm(display_type=DisplayType.SPICE), vm_settings)

        assert display_blocks(argv) == ["-spice"]
        assert value_after(argv, "-spice") == ["port=5901,addr=0.0.0.0,password=spicepass123"]
        assert value_after(argv, "-vga") == ["qxl"]
        assert "spicevmc,id=vdagent,name=vdagent" in argv

    def test_spice_without_password_disables_ticketing(self, vm_settings):
        argv = build_command(make_vm(spice_password=""), vm_settings)

        assert value_after(argv, "-spice") == ["port=5901,addr=0.0.0.0,disable-ticketing=on"]

    def test_vnc_display_number_derives_from_port(self, vm_settings):
        argv = build_command(make_vm(display_type=DisplayType.VNC), vm_settings)

        assert display_blocks(argv) == ["-vnc"]
        assert value_after(argv, "-vnc") == ["0.0.0.0:52,password=on"]

    def test_vnc_without_password(self, vm_settings):
        argv = build_command(make_vm(display_type=DisplayType.VNC, vnc_password=""), vm_settings)

        assert value_after(argv, "-vnc") == ["0.0.0.0:52"]

    def test_headless(self, vm_settings):
        argv = build_command(make_vm(display_type=DisplayType.NONE), vm_settings)

        assert display_blocks(argv) == ["-nographic"]

    def test_default_pairs_open_spice_and_vnc(self, vm_settings):
        argv = build_command(make_vm(display_type=DisplayType.DEFAULT), vm_settings)

        assert display_blocks(argv) == ["-spice", "-vnc"]
        assert value_after(argv, "-spice") == ["port=5901,addr=0.0.0.0,disable-ticketing=on"]
        assert value_after(argv, "-vnc") == ["0.0.0.0:52"]

    @pytest.mark.parametrize("display", list(DisplayType))
    def test_exactly_one_display_mode(self, vm_settings, display):
        blocks = display_blocks(build_command(make_vm(display_type=display), vm_settings))

        assert blocks in (["-spice"], ["-vnc"], ["-nographic"], ["-spice", "-vnc"])
        assert (blocks == ["-spice", "-vnc"]) == (display == DisplayType.DEFAULT)

    def test_vnc_display_never_negative(self):
        assert vnc_display(5950) == 50
        assert vnc_display(None) == 0
        assert vnc_display(80) == 0


class TestNetwork:
    def test_nat(self, vm_settings):
        argv = build_command(make_vm(network_mode=NetworkMode.NAT), vm_settings)

        assert value_after(argv, "-netdev") == ["user,id=net0"]
        assert "virtio-net-pci,netdev=net0,mac=52:54:00:12:34:56" in argv

    def test_user_mode_forwards_ssh(self, vm_settings):
        argv = build_command(make_vm(network_mode=NetworkMode.USER, network_model="e1000"), vm_settings)

        assert value_after(argv, "-netdev") == ["user,id=net0,hostfwd=tcp::2222-:22"]
        assert "e1000,netdev=net0,mac=52:54:00:12:34:56" in argv

    def test_bridge_uses_truncated_tap_name(self, vm_settings):
        vm = make_vm(name="a-very-long-vm-name", network_mode=NetworkMode.BRIDGE, network_bridge="br0")
        argv = build_command(vm, vm_settings)

        assert value_after(argv, "-netdev") == ["tap,id=net0,ifname=tap_a-very-lon,script=no,downscript=no"]
        assert tap_name("a-very-long-vm-name") == "tap_a-very-lon"

    def test_bridge_without_bridge_name_is_rejected(self, vm_settings):
        vm = make_vm(network_mode=NetworkMode.BRIDGE, network_bridge="")

        with pytest.raises(InvalidVMConfigError):
            build_command(vm, vm_settings)

    @pytest.mark.parametrize("mode", list(NetworkMode))
    def test_exactly_one_netdev(self, vm_settings, mode):
        vm = make_vm(network_mode=mode, network_bridge="br0")

        assert len(value_after(build_command(vm, vm_settings), "-netdev")) == 1


class TestFirmware:
    def _install_ovmf(self, settings, *, secure=False):
        os.makedirs(os.path.dirname(settings.ovmf_code), exist_ok=True)
        paths = [settings.ovmf_code, settings.ovmf_vars]
        if secure:
            paths += [settings.ovmf_secure_code, settings.ovmf_secure_vars]
        for path in paths:
            with open(path, "wb") as handle:
                handle.write(b"OVMF " + os.path.basename(path).encode())

    def test_bios_guest_needs_no_firmware(self, vm_settings):
        assert prepare_firmware(make_vm(), vm_settings) is None

    def test_uefi_without_images_falls_back_to_bios(self, vm_settings):
        vm = make_vm(firmware_type=FirmwareType.UEFI)

        firmware = prepare_firmware(vm, vm_settings)

        assert firmware is None
        assert not any(token.startswith("if=pflash") for token in build_command(vm, vm_settings, firmware))

    def test_uefi_copies_private_vars_store(self, vm_settings):
        self._install_ovmf(vm_settings)
        vm = make_vm(firmware_type=FirmwareType.UEFI)

        firmware = prepare_firmware(vm, vm_settings)
        argv = build_command(vm, vm_settings, firmware)

        vars_path = uefi_vars_path(vm_settings, "web01")
        assert firmware.vars == vars_path
        assert os.path.exists(vars_path)
        assert f"if=pflash,format=raw,readonly=on,file={vm_settings.ovmf_code}" in argv
        assert f"if=pflash,format=raw,file={vars_path}" in argv

    def test_vars_store_is_not_overwritten(self, vm_settings):
        self._install_ovmf(vm_settings)
        vm = make_vm(firmware_type=FirmwareType.UEFI)
        prepare_firmware(vm, vm_settings)
        vars_path = uefi_vars_path(vm_settings, "web01")
        with open(vars_path, "wb") as handle:
            handle.write(b"guest-written boot entries")

        prepare_firmware(vm, vm_settings)

        with open(vars_path, "rb") as handle:
            assert handle.read() == b"guest-written boot entries"

    def test_secure_boot_enables_smm(self, tmp_path):
        settings = make_settings(tmp_path)
        self._install_ovmf(settings, secure=True)
        vm = make_vm(firmware_type=FirmwareType.UEFI, secure_boot=True)

        argv = build_command(vm, settings, prepare_firmware(vm, settings))

        assert value_after(argv, "-machine") == ["type=q35,accel=kvm,smm=on"]
        assert f"if=pflash,format=raw,readonly=on,file={settings.ovmf_secure_code}" in argv
