"""Translate a VM record into a ``qemu-system`` argument vector.

Everything in here is a pure function of the VM configuration, the host
settings and the firmware images resolved beforehand by
:func:`vmpanel.qemu.firmware.prepare_firmware`: no files are touched and no
clock or random source is consulted, so the same inputs always give the same
tokens.
"""

from __future__ import annotations

from typing import Any, List, Optional

from ..core.config import VMSettings
from .errors import InvalidVMConfigError
from .firmware import FirmwareImages
from .paths import pidfile_path, tpm_socket_path

VNC_BASE_PORT = 5900
# Block node name of the primary disk; QMP snapshot jobs address it by this name.
DISK_NODE = "drive0"

_NIC_DEVICES = {
    "virtio": "virtio-net-pci",
    "e1000": "e1000",
    "e1000e": "e1000e",
    "rtl8139": "rtl8139",
}


def _value(vm: Any, field: str, default: Any = None) -> Any:
    value = getattr(vm, field, default)
    return default if value is None else value


def _text(vm: Any, field: str, default: str = "") -> str:
    value = getattr(vm, field, None)
    if hasattr(value, "value"):
        value = value.value
    return str(value) if value not in (None, "") else default


def tap_name(vm_name: str, length: int = 10) -> str:
    """Interface name of the tap device backing a bridged VM."""

    return f"tap_{vm_name[:length]}"


def vnc_display(port: Optional[int]) -> int:
    return max(0, (port or VNC_BASE_PORT) - VNC_BASE_PORT)


def _nic_device(vm: Any) -> List[str]:
    model = _text(vm, "network_model", "virtio")
    device = _NIC_DEVICES.get(model, model)
    return ["-device", f"{device},netdev=net0,mac={vm.mac_address}"]


def _network_args(vm: Any, settings: VMSettings) -> List[str]:
    mode = _text(vm, "network_mode", "nat")
    if mode == "nat":
        return ["-netdev", "user,id=net0", *_nic_device(vm)]
    if mode == "user":
        forward = f"user,id=net0,hostfwd=tcp::{settings.user_forward_port}-:22"
        return ["-netdev", forward, *_nic_device(vm)]
    if mode == "bridge":
        if not _text(vm, "network_bridge"):
            raise InvalidVMConfigError(f"VM '{vm.name}' uses bridge networking without a bridge name")
        tap = tap_name(vm.name, settings.tap_name_length)
        netdev = f"tap,id=net0,ifname={tap},script=no,downscript=no"
        return ["-netdev", netdev, *_nic_device(vm)]
    raise InvalidVMConfigError(f"Unsupported network mode '{mode}'")


def _spice_args(vm: Any, *, password: Optional[str]) -> List[str]:
    options = f"port={vm.spice_port},addr=0.0.0.0"
    options += f",password={password}" if password else ",disable-ticketing=on"
    return ["-spice", options, "-vga", "qxl"]


def _display_args(vm: Any) -> List[str]:
    display = _text(vm, "display_type", "default")
    if display == "spice":
        return [
            *_spice_args(vm, password=_text(vm, "spice_password") or None),
            "-device", "virtio-serial-pci",
            "-chardev", "spicevmc,id=vdagent,name=vdagent",
            "-device", "virtserialport,chardev=vdagent,name=com.redhat.spice.0",
        ]
    if display == "vnc":
        options = f"0.0.0.0:{vnc_display(vm.vnc_port)}"
        if _text(vm, "vnc_password"):
            options += ",password=on"
        return ["-vnc", options, "-vga", "std"]
    if display == "none":
        return ["-nographic"]
    if display == "default":
        # SPICE and VNC side by side, both without authentication.
        return [*_spice_args(vm, password=None), "-vnc", f"0.0.0.0:{vnc_display(vm.vnc_port)}"]
    raise InvalidVMConfigError(f"Unsupported display type '{display}'")


def build_command(
    vm: Any,
    settings: VMSettings,
    firmware: Optional[FirmwareImages] = None,
) -> List[str]:
    """Return the full ``qemu-system`` argument vector for ``vm``.

    ``firmware`` carries the OVMF images for UEFI guests; when it is ``None``
    the guest boots with the default BIOS even if UEFI was requested.
    """

    machine = "type=q35,accel=kvm"
    if firmware is not None and firmware.secure:
        machine += ",smm=on"

    args: List[str] = [
        settings.qemu_binary,
        "-enable-kvm",
        "-machine", machine,
        "-uuid", vm.uuid,
        "-name", vm.name,
        "-cpu", _text(vm, "cpu_type", "host"),
        "-smp", f"cores={_value(vm, 'cpu_cores', 1)}",
    ]
    if _text(vm, "numa_topology"):
        args += ["-numa", vm.numa_topology]

    args += ["-m", str(_value(vm, "ram_mb", 1024))]
    if _value(vm, "balloon_enabled", False):
        args += ["-device", "virtio-balloon-pci,id=balloon0"]
    if _value(vm, "hugepages_enabled", False):
        args += ["-mem-path", settings.hugepages_path, "-mem-prealloc"]

    if firmware is not None:
        if firmware.secure:
            args += ["-global", "driver=cfi.pflash01,property=secure,value=on"]
        args += [
            "-drive", f"if=pflash,format=raw,readonly=on,file={firmware.code}",
            "-drive", f"if=pflash,format=raw,file={firmware.vars}",
        ]

    if _value(vm, "tpm_enabled", False):
        args += [
            "-chardev", f"socket,id=chrtpm,path={tpm_socket_path(settings, vm.uuid)}",
            "-tpmdev", "emulator,id=tpm0,chardev=chrtpm",
            "-device", "tpm-tis,tpmdev=tpm0",
        ]

    if _text(vm, "disk_path"):
        drive = (
            f"file={vm.disk_path},if=virtio,node-name={DISK_NODE},"
            f"format={_text(vm, 'disk_format', 'qcow2')},cache={_text(vm, 'cache_mode', 'writeback')}"
        )
        if _value(vm, "discard_enabled", False):
            drive += ",discard=unmap"
        args += ["-drive", drive]
    if _text(vm, "physical_disk_device"):
        args += ["-drive", f"file={vm.physical_disk_device},if=virtio,format=raw"]
    if _text(vm, "iso_path"):
        args += ["-cdrom", vm.iso_path]
    args += ["-boot", f"order={_text(vm, 'boot_order', 'cd,hd')}"]

    args += _network_args(vm, settings)
    args += _display_args(vm)

    args += ["-qmp", f"unix:{vm.qmp_socket_path},server=on,wait=off"]
    args += ["-usb", "-device", "usb-tablet"]
    args += ["-pidfile", pidfile_path(settings, vm.uuid)]
    args.append("-daemonize")
    return args


__all__ = ["DISK_NODE", "VNC_BASE_PORT", "build_command", "tap_name", "vnc_display"]
