"""Built-in suggestions offered by the template and ISO pickers."""

from __future__ import annotations

from typing import Any, Dict, List

PREDEFINED_TEMPLATES: List[Dict[str, Any]] = [
    {
        "name": "Ubuntu Server 24.04",
        "description": "Ubuntu 24.04 LTS Server with minimal installation",
        "cpu_cores": 2,
        "ram_mb": 2048,
        "disk_size_gb": 20,
        "firmware_type": "bios",
        "os_type": "linux",
        "os_version": "ubuntu-24.04",
    },
    {
        "name": "Debian 12 Server",
        "description": "Debian 12 Bookworm Server",
        "cpu_cores": 2,
        "ram_mb": 2048,
        "disk_size_gb": 20,
        "firmware_type": "bios",
        "os_type": "linux",
        "os_version": "debian-12",
    },
    {
        "name": "Windows 11",
        "description": "Windows 11 Pro (requires UEFI and TPM)",
        "cpu_cores": 4,
        "ram_mb": 8192,
        "disk_size_gb": 64,
        "firmware_type": "uefi",
        "os_type": "windows",
        "os_version": "windows-11",
    },
    {
        "name": "Windows Server 2022",
        "description": "Windows Server 2022 Standard",
        "cpu_cores": 4,
        "ram_mb": 4096,
        "disk_size_gb": 40,
        "firmware_type": "uefi",
        "os_type": "windows",
        "os_version": "windows-server-2022",
    },
    {
        "name": "Alpine Linux",
        "description": "Lightweight Alpine Linux",
        "cpu_cores": 1,
        "ram_mb": 512,
        "disk_size_gb": 4,
        "firmware_type": "bios",
        "os_type": "linux",
        "os_version": "alpine",
    },
    {
        "name": "FreeBSD 14",
        "description": "FreeBSD 14.0-RELEASE",
        "cpu_cores": 2,
        "ram_mb": 2048,
        "disk_size_gb": 20,
        "firmware_type": "bios",
        "os_type": "freebsd",
        "os_version": "freebsd-14",
    },
]

PREDEFINED_ISOS: List[Dict[str, str]] = [
    {
        "name": "Ubuntu 24.04 LTS",
        "url": "https://releases.ubuntu.com/24.04/ubuntu-24.04-live-server-amd64.iso",
        "os_type": "linux",
        "os_version": "ubuntu-24.04",
    },
    {
        "name": "Ubuntu 22.04 LTS",
        "url": "https://releases.ubuntu.com/22.04/ubuntu-22.04.4-live-server-amd64.iso",
        "os_type": "linux",
        "os_version": "ubuntu-22.04",
    },
    {
        "name": "Debian 12",
        "url": "https://cdimage.debian.org/debian-cd/current/amd64/iso-cd/debian-12.5.0-amd64-netinst.iso",
        "os_type": "linux",
        "os_version": "debian-12",
    },
    {
        "name": "Fedora 40 Server",
        "url": "https://download.fedoraproject.org/pub/fedora/linux/releases/40/Server/x86_64/iso/"
        "Fedora-Server-netinst-x86_64-40-1.14.iso",
        "os_type": "linux",
        "os_version": "fedora-40",
    },
    {
        "name": "Rocky Linux 9",
        "url": "https://download.rockylinux.org/pub/rocky/9/isos/x86_64/Rocky-9.3-x86_64-minimal.iso",
        "os_type": "linux",
        "os_version": "rocky-9",
    },
    {
        "name": "Arch Linux",
        "url": "https://geo.mirror.pkgbuild.com/iso/latest/archlinux-x86_64.iso",
        "os_type": "linux",
        "os_version": "arch-rolling",
    },
]

__all__ = ["PREDEFINED_ISOS", "PREDEFINED_TEMPLATES"]
