"""Minimal asyncio client for the QEMU Machine Protocol (QMP).

QMP speaks newline-delimited JSON over a Unix socket. The server opens with a
greeting, refuses commands until ``qmp_capabilities`` has been acknowledged,
and may interleave asynchronous ``event`` messages with command replies.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from .command import DISK_NODE
from .errors import QMPError

logger = logging.getLogger(__name__)

SNAPSHOT_DEVICE = DISK_NODE

KEY_COMBOS: Dict[str, List[str]] = {
    "ctrl-alt-del": ["ctrl", "alt", "delete"],
    "ctrl-alt-backspace": ["ctrl", "alt", "backspace"],
    **{f"ctrl-alt-f{n}": ["ctrl", "alt", f"f{n}"] for n in range(1, 13)},
}


class QMPClient:
    """One QMP session; use as ``async with QMPClient(path) as qmp``."""

    def __init__(self, socket_path: str, *, read_limit: int = 2 ** 20) -> None:
        self.socket_path = socket_path
        self._read_limit = read_limit
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self.greeting: Dict[str, Any] = {}

    async def __aenter__(self) -> "QMPClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def connect(self) -> None:
        if not self.socket_path:
            raise QMPError("NotConfigured", "QMP socket path not configured")
        try:
            self._reader, self._writer = await asyncio.open_unix_connection(
                self.socket_path, limit=self._read_limit
            )
        except OSError as exc:
            raise QMPError("ConnectionFailed", f"{self.socket_path}: {exc}") from exc

        greeting = await self._read_message()
        if "QMP" not in greeting:
            await self.close()
            raise QMPError("ProtocolError", f"unexpected greeting {greeting!r}")
        self.greeting = greeting
        # Reply must be consumed before the real command is sent.
        await self.execute("qmp_capabilities")

    async def close(self) -> None:
        writer, self._writer, self._reader = self._writer, None, None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass

    async def _read_message(self) -> Dict[str, Any]:
        assert self._reader is not None
        while True:
            line = await self._reader.readline()
            if not line:
                raise QMPError("ConnectionClosed", "QMP socket closed before a reply arrived")
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except ValueError as exc:
                raise QMPError("ProtocolError", f"invalid JSON from QMP: {line[:200]!r}") from exc
            if not isinstance(message, dict):
                raise QMPError("ProtocolError", f"unexpected QMP message {message!r}")
            return message

    async def execute(self, command: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        if self._writer is None:
            raise QMPError("NotConnected", "QMP session is not open")
        payload: Dict[str, Any] = {"execute": command}
        if arguments:
            payload["arguments"] = arguments
        self._writer.write(json.dumps(payload).encode("utf-8") + b"\n")
        await self._writer.drain()

        while True:
            message = await self._read_message()
            if "event" in message:
                logger.debug("QMP event on %s: %s", self.socket_path, message.get("event"))
                continue
            if "error" in message:
                error = message.get("error") or {}
                raise QMPError(str(error.get("class", "GenericError")), str(error.get("desc", "")))
            if "return" in message:
                return message["return"]
            logger.debug("Ignoring unexpected QMP message: %s", message)

    async def wait_for_job(self, job_id: str, *, poll_interval: float = 0.2) -> None:
        """Block until ``job_id`` concludes, dismiss it and raise if it failed."""

        while True:
            jobs = await self.execute("query-jobs") or []
            job = next((entry for entry in jobs if entry.get("id") == job_id), None)
            if job is None:
                return
            if job.get("status") == "concluded":
                await self.execute("job-dismiss", {"id": job_id})
                if job.get("error"):
                    raise QMPError("JobFailed", f"{job_id}: {job['error']}")
                return
            await asyncio.sleep(poll_interval)


async def qmp_execute(socket_path: str, command: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
    """Open a session, run one command and close the socket again."""

    async with QMPClient(socket_path) as client:
        return await client.execute(command, arguments)


async def send_keys(socket_path: str, keys: Iterable[str]) -> None:
    await qmp_execute(
        socket_path,
        "send-key",
        {"keys": [{"type": "qcode", "data": key} for key in keys]},
    )


async def send_key_combo(socket_path: str, combo: str) -> None:
    keys = KEY_COMBOS.get(combo)
    if keys is None:
        raise ValueError(f"Unknown key combination '{combo}'")
    await send_keys(socket_path, keys)


async def set_display_password(socket_path: str, protocol: str, password: str) -> None:
    await qmp_execute(socket_path, "set_password", {"protocol": protocol, "password": password})


async def _run_snapshot_job(socket_path: str, command: str, job_id: str, arguments: Dict[str, Any]) -> None:
    async with QMPClient(socket_path) as client:
        await client.execute(command, {"job-id": job_id, **arguments})
        await client.wait_for_job(job_id)


async def snapshot_save(socket_path: str, tag: str) -> None:
    await _run_snapshot_job(
        socket_path,
        "snapshot-save",
        f"snap-{tag}",
        {"tag": tag, "vmstate": SNAPSHOT_DEVICE, "devices": [SNAPSHOT_DEVICE]},
    )


async def snapshot_load(socket_path: str, tag: str) -> None:
    await _run_snapshot_job(
        socket_path,
        "snapshot-load",
        f"load-{tag}",
        {"tag": tag, "vmstate": SNAPSHOT_DEVICE, "devices": [SNAPSHOT_DEVICE]},
    )


async def snapshot_delete(socket_path: str, tag: str) -> None:
    await _run_snapshot_job(
        socket_path,
        "snapshot-delete",
        f"del-{tag}",
        {"tag": tag, "devices": [SNAPSHOT_DEVICE]},
    )


class QMPCommands:
    """The QMP operations the panel issues, bundled so callers can swap in a fake."""

    async def send_key_combo(self, socket_path: str, combo: str) -> None:
        await send_key_combo(socket_path, combo)

    async def set_display_password(self, socket_path: str, protocol: str, password: str) -> None:
        await set_display_password(socket_path, protocol, password)

    async def snapshot_save(self, socket_path: str, tag: str) -> None:
        await snapshot_save(socket_path, tag)

    async def snapshot_load(self, socket_path: str, tag: str) -> None:
        await snapshot_load(socket_path, tag)

    async def snapshot_delete(self, socket_path: str, tag: str) -> None:
        await snapshot_delete(socket_path, tag)


__all__ = [
    "KEY_COMBOS",
    "QMPCommands",
    "SNAPSHOT_DEVICE",
    "QMPClient",
    "qmp_execute",
    "send_keys",
    "send_key_combo",
    "set_display_password",
    "snapshot_save",
    "snapshot_load",
    "snapshot_delete",
]
