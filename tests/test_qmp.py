"""Tests for vmpanel.qemu.qmp against a scripted QMP server."""

import asyncio
import json

import pytest

from vmpanel.qemu import qmp
from vmpanel.qemu.errors import QMPError

GREETING = {"QMP": {"version": {"qemu": {"major": 8, "minor": 2, "micro": 0}}, "capabilities": []}}


class FakeQMPServer:
    """Greets each client, records commands and answers through ``replies``.

    ``replies`` maps a command name to a list of messages sent back in order;
    commands without an entry get ``{"return": {}}``.
    """

    def __init__(self, path):
        self.path = path
        self.commands = []
        self.replies = {}
        self._server = None

    async def __aenter__(self):
        self._server = await asyncio.start_unix_server(self._handle, path=self.path)
        return self

    async def __aexit__(self, *exc_info):
        self._server.close()
        await self._server.wait_closed()

    async def _handle(self, reader, writer):
        self._send(writer, GREETING)
        while True:
            line = await reader.readline()
            if not line:
                break
            request = json.loads(line)
            self.commands.append(request)
            for message in self.replies.get(request["execute"], [{"return": {}}]):
                self._send(writer, message)
            await writer.drain()
        writer.close()

    @staticmethod
    def _send(writer, message):
        writer.write(json.dumps(message).encode() + b"\n")

    def names(self):
        return [command["execute"] for command in self.commands]


@pytest.fixture
def socket_path(tmp_path):
    return str(tmp_path / "q.sock")


@pytest.mark.asyncio
async def test_capabilities_negotiated_before_command(socket_path):
    async with FakeQMPServer(socket_path) as server:
        server.replies["query-status"] = [{"return": {"status": "running", "running": True}}]

        result = await qmp.qmp_execute(socket_path, "query-status")

    assert result == {"status": "running", "running": True}
    assert server.names() == ["qmp_capabilities", "query-status"]


@pytest.mark.asyncio
async def test_events_are_skipped(socket_path):
    async with FakeQMPServer(socket_path) as server:
        server.replies["query-status"] = [
            {"event": "RTC_CHANGE", "data": {"offset": 0}},
            {"return": {"status": "paused"}},
        ]

        assert await qmp.qmp_execute(socket_path, "query-status") == {"status": "paused"}


@pytest.mark.asyncio
async def test_error_reply_raises(socket_path):
    async with FakeQMPServer(socket_path) as server:
        server.replies["set_password"] = [
            {"error": {"class": "GenericError", "desc": "Could not set password"}}
        ]

        with pytest.raises(QMPError) as excinfo:
            await qmp.set_display_password(socket_path, "vnc", "secret")

    assert excinfo.value.error_class == "GenericError"
    assert server.commands[-1]["arguments"] == {"protocol": "vnc", "password": "secret"}


@pytest.mark.asyncio
async def test_key_combo_sends_qcodes(socket_path):
    async with FakeQMPServer(socket_path) as server:
        await qmp.send_key_combo(socket_path, "ctrl-alt-f2")

    keys = server.commands[-1]["arguments"]["keys"]
    assert keys == [
        {"type": "qcode", "data": "ctrl"},
        {"type": "qcode", "data": "alt"},
        {"type": "qcode", "data": "f2"},
    ]


@pytest.mark.asyncio
async def test_unknown_combo_is_rejected_before_connecting(socket_path):
    with pytest.raises(ValueError):
        await qmp.send_key_combo(socket_path, "ctrl-alt-f13")


@pytest.mark.asyncio
async def test_snapshot_save_waits_for_job_and_dismisses(socket_path):
    async with FakeQMPServer(socket_path) as server:
        server.replies["query-jobs"] = [
            {"return": [{"id": "snap-nightly", "type": "snapshot-save", "status": "concluded"}]}
        ]

        await qmp.snapshot_save(socket_path, "nightly")

    assert server.names() == ["qmp_capabilities", "snapshot-save", "query-jobs", "job-dismiss"]
    save = server.commands[1]["arguments"]
    assert save["job-id"] == "snap-nightly"
    assert save["tag"] == "nightly"
    assert save["vmstate"] == qmp.SNAPSHOT_DEVICE
    assert save["devices"] == [qmp.SNAPSHOT_DEVICE]
    assert server.commands[-1]["arguments"] == {"id": "snap-nightly"}


@pytest.mark.asyncio
async def test_failed_snapshot_job_raises(socket_path):
    async with FakeQMPServer(socket_path) as server:
        server.replies["query-jobs"] = [
            {"return": [{"id": "load-nightly", "status": "concluded", "error": "Snapshot not found"}]}
        ]

        with pytest.raises(QMPError) as excinfo:
            await qmp.snapshot_load(socket_path, "nightly")

    assert excinfo.value.error_class == "JobFailed"
    assert "job-dismiss" in server.names()


@pytest.mark.asyncio
async def test_missing_socket_is_connection_failure(socket_path):
    with pytest.raises(QMPError) as excinfo:
        await qmp.qmp_execute(socket_path, "query-status")

    assert excinfo.value.error_class == "ConnectionFailed"


@pytest.mark.asyncio
async def test_bad_greeting_is_protocol_error(socket_path):
    async def handle(reader, writer):
        writer.write(b'{"hello": "not qmp"}\n')
        await writer.drain()
        writer.close()

    server = await asyncio.start_unix_server(handle, path=socket_path)
    try:
        with pytest.raises(QMPError) as excinfo:
            await qmp.qmp_execute(socket_path, "query-status")
    finally:
        server.close()
        await server.wait_closed()

    assert excinfo.value.error_class == "ProtocolError"
