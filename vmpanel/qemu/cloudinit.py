"""Cloud-init NoCloud seed rendering and ISO packaging."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from typing import List, Optional

from .shell import CommandRunner

logger = logging.getLogger(__name__)

DEFAULT_USERNAME = "user"


@dataclass(frozen=True)
class CloudInitDocuments:
    user_data: str
    meta_data: str
    network_config: str = ""


def _split_keys(ssh_keys: str) -> List[str]:
    return [key.strip() for key in (ssh_keys or "").splitlines() if key.strip()]


def default_user_data(
    *,
    hostname: str = "",
    username: str = "",
    password_hash: str = "",
    ssh_keys: str = "",
    has_password: bool = False,
) -> str:
    """Render the stock ``#cloud-config`` document.

    A ``users`` block is emitted only when a username, password or key was
    requested; ``has_password`` keeps that true even if hashing failed.
    """

    lines = ["#cloud-config"]
    if hostname:
        lines.append(f"hostname: {hostname}")

    keys = _split_keys(ssh_keys)
    if username or has_password or password_hash or keys:
        lines.append("users:")
        lines.append(f"  - name: {username or DEFAULT_USERNAME}")
        lines.append("    sudo: ALL=(ALL) NOPASSWD:ALL")
        lines.append("    shell: /bin/bash")
        if password_hash:
            lines.append(f"    passwd: {password_hash}")
        if keys:
            lines.append("    ssh_authorized_keys:")
            lines.extend(f"      - {key}" for key in keys)

    lines.append("package_update: true")
    lines.append("package_upgrade: true")
    return "\n".join(lines) + "\n"


def substitute_placeholders(
    template: str,
    *,
    hostname: str = "",
    username: str = "",
    password: str = "",
    ssh_keys: str = "",
) -> str:
    rendered = template
    for placeholder, value in (
        ("{{hostname}}", hostname),
        ("{{username}}", username),
        ("{{password}}", password),
        ("{{ssh_keys}}", ssh_keys),
    ):
        rendered = rendered.replace(placeholder, value or "")
    return rendered


def default_meta_data(vm_name: str, hostname: str = "") -> str:
    return f"instance-id: {vm_name}\nlocal-hostname: {hostname or vm_name}\n"


class CloudInitBuilder:
    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    async def hash_password(self, password: str) -> Optional[str]:
        """SHA-512 crypt hash via ``openssl passwd -6``; ``None`` if openssl is unusable."""

        result = await self._runner.run(
            ["openssl", "passwd", "-6", "-stdin"], input_data=password.encode("utf-8") + b"\n"
        )
        if not result.ok:
            logger.warning("Password hashing failed, omitting passwd from user-data: %s", result.detail)
            return None
        return result.stdout.strip() or None

    async def render(
        self,
        vm_name: str,
        *,
        hostname: str = "",
        username: str = "",
        password: str = "",
        ssh_keys: str = "",
        user_data_template: str = "",
        meta_data_template: str = "",
        network_config: str = "",
    ) -> CloudInitDocuments:
        if user_data_template:
            user_data = substitute_placeholders(
                user_data_template,
                hostname=hostname,
                username=username,
                password=password,
                ssh_keys=ssh_keys,
            )
        else:
            password_hash = await self.hash_password(password) if password else None
            user_data = default_user_data(
                hostname=hostname,
                username=username,
                password_hash=password_hash or "",
                ssh_keys=ssh_keys,
                has_password=bool(password),
            )
        meta_data = meta_data_template or default_meta_data(vm_name, hostname)
        return CloudInitDocuments(user_data=user_data, meta_data=meta_data, network_config=network_config)

    async def build_iso(self, iso_path: str, documents: CloudInitDocuments) -> Optional[str]:
        """Package ``documents`` as a ``cidata`` ISO; ``None`` if no tool produced one."""

        os.makedirs(os.path.dirname(iso_path) or ".", exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="cloud-init-") as workdir:
            user_data = os.path.join(workdir, "user-data")
            meta_data = os.path.join(workdir, "meta-data")
            network = os.path.join(workdir, "network-config")
            with open(user_data, "w") as handle:
                handle.write(documents.user_data)
            with open(meta_data, "w") as handle:
                handle.write(documents.meta_data)
            files = [user_data, meta_data]
            if documents.network_config:
                with open(network, "w") as handle:
                    handle.write(documents.network_config)
                files.append(network)

            result = await self._runner.run(
                ["genisoimage", "-output", iso_path, "-volid", "cidata", "-joliet", "-rock", *files]
            )
            if not result.ok:
                logger.warning("genisoimage failed (%s); trying cloud-localds", result.detail)
                fallback = ["cloud-localds"]
                if documents.network_config:
                    fallback.append(f"--network-config={network}")
                fallback += [iso_path, user_data, meta_data]
                result = await self._runner.run(fallback)
                if not result.ok:
                    logger.warning("cloud-localds failed: %s", result.detail)

        if not os.path.exists(iso_path):
            logger.warning("No cloud-init ISO produced at %s", iso_path)
            return None
        return iso_path


__all__ = [
    "CloudInitBuilder",
    "CloudInitDocuments",
    "DEFAULT_USERNAME",
    "default_meta_data",
    "default_user_data",
    "substitute_placeholders",
]
