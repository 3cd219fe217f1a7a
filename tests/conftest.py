import asyncio
import os
import shutil
from dataclasses import dataclass
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from vmpanel.core.config import build_vm_settings
from vmpanel.db import build_async_engine, build_session_factory
from vmpanel.db import lifecycle as db_lifecycle
from vmpanel.db.config import DatabaseSettings
from vmpanel.deps import CurrentUser, get_current_user
from vmpanel.main import create_app
from vmpanel.qemu.launcher import LaunchResult
from vmpanel.qemu.qmp import QMPCommands
from vmpanel.qemu.shell import CommandResult, CommandRunner
from vmpanel.services.container import build_services

PROCESS_START_TIME = 1000.0


def sqlite_url(path):
    return f"sqlite+aiosqlite:///{path}"


class FakeRunner(CommandRunner):
    """Records every command and imitates the file side effects of the real tools.

    ``gzip``/``gunzip`` copy bytes unchanged and ``qemu-img`` writes small
    placeholder images, which is all the services look at afterwards.
    """

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.snapshot_output = ""

    def programs(self):
        return [os.path.basename(argv[0]) for argv in self.calls]

    def find(self, *prefix):
        return [argv for argv in self.calls if argv[: len(prefix)] == prefix]

    async def run(self, args, *, stdout_path=None, input_data=None):
        argv = tuple(str(arg) for arg in args)
        self.calls.append(argv)
        program = os.path.basename(argv[0])
        if program in self.failures:
            return CommandResult(argv, 1, "", self.failures[program])
        stdout = self._simulate(program, argv, stdout_path)
        return CommandResult(argv, 0, stdout, "")

    def _simulate(self, program, argv, stdout_path):
        if program == "qemu-img" and argv[1] == "create":
            if "-b" in argv:
                _write(argv[-1], b"QFI\xfb overlay of " + argv[argv.index("-b") + 1].encode())
            else:
                _write(argv[-2], b"QFI\xfb blank " + argv[-1].encode())
        elif program == "qemu-img" and argv[1] == "convert":
            shutil.copyfile(argv[-2], argv[-1])
        elif program == "qemu-img" and argv[1:3] == ("snapshot", "-l"):
            return self.snapshot_output
        elif program in ("gzip", "gunzip") and stdout_path:
            shutil.copyfile(argv[-1], stdout_path)
        elif program == "openssl":
            return "$6$salt$hashed\n"
        elif program == "genisoimage":
            _write(argv[argv.index("-output") + 1], b"cidata")
        return ""


def _write(path, data):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as handle:
        handle.write(data)


class FakeProbe:
    def __init__(self):
        self.alive = set()
        self.terminated = []

    def create_time(self, pid):
        return PROCESS_START_TIME if pid in self.alive else None

    def is_alive(self, pid, started_at=None):
        return bool(pid) and pid in self.alive

    async def terminate(self, pid, *, force=False, grace_seconds=2.0, started_at=None):
        self.terminated.append((pid, force))
        if pid not in self.alive:
            return False
        self.alive.discard(pid)
        return True


class FakeLauncher:
    def __init__(self, probe):
        self.probe = probe
        self.launches = []
        self.error = None
        self._next_pid = 4000

    async def launch(self, argv, *, name, log_path, pidfile=None):
        if self.error is not None:
            raise self.error
        self.launches.append(list(argv))
        self._next_pid += 1
        _write(log_path, f"{name}: qemu started\n".encode())
        self.probe.alive.add(self._next_pid)
        return LaunchResult(pid=self._next_pid, started_at=PROCESS_START_TIME)


@dataclass
class FakeHost:
    runner: FakeRunner
    probe: FakeProbe
    launcher: FakeLauncher
    qmp: AsyncMock

    def collaborators(self):
        return {"runner": self.runner, "probe": self.probe, "launcher": self.launcher, "qmp": self.qmp}


def make_settings(root, **overrides):
    values = {
        "vm_dir": str(root / "vms"),
        "iso_dir": str(root / "isos"),
        "log_dir": str(root / "logs"),
        "backup_dir": str(root / "backups"),
        "template_dir": str(root / "templates"),
        "qmp_dir": str(root / "qmp"),
        "run_dir": str(root / "run"),
        "ovmf_code": str(root / "ovmf" / "OVMF_CODE.fd"),
        "ovmf_vars": str(root / "ovmf" / "OVMF_VARS.fd"),
        "ovmf_secure_code": str(root / "ovmf" / "OVMF_CODE.secboot.fd"),
        "ovmf_secure_vars": str(root / "ovmf" / "OVMF_VARS.ms.fd"),
        "console_host": "127.0.0.1",
        "spice_port_range": (5900, 5909),
        "vnc_port_range": (5950, 5959),
        "stop_grace_seconds": 0,
        "restart_delay_seconds": 0,
        "pidfile_wait_seconds": 0.1,
    }
    values.update(overrides)
    return build_vm_settings(values)


@pytest.fixture
def vm_settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def host():
    probe = FakeProbe()
    return FakeHost(
        runner=FakeRunner(),
        probe=probe,
        launcher=FakeLauncher(probe),
        qmp=AsyncMock(spec=QMPCommands),
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    # File-backed so sessions running concurrently get their own connections.
    engine = build_async_engine(DatabaseSettings(database_url=sqlite_url(tmp_path / "panel.db")))
    await db_lifecycle.on_startup(engine, create_all=True)
    yield engine
    await db_lifecycle.on_shutdown(engine)


@pytest_asyncio.fixture
async def services(engine, vm_settings, host):
    services = build_services(vm_settings, build_session_factory(engine), **host.collaborators())
    yield services
    await services.shutdown()


@pytest.fixture
def make_client(tmp_path, host):
    """Build a ``TestClient`` over fresh services; keyword arguments override host settings."""

    engines = []

    def _make(user=CurrentUser(id=1, role="admin"), **settings_overrides):
        database = tmp_path / f"client-{len(engines)}.db"
        engine = build_async_engine(DatabaseSettings(database_url=sqlite_url(database)))
        asyncio.run(db_lifecycle.on_startup(engine, create_all=True))
        engines.append(engine)
        services = build_services(
            make_settings(tmp_path, **settings_overrides),
            build_session_factory(engine),
            **host.collaborators(),
        )
        app = create_app(services, session_secret="test-secret")
        if user is not None:
            app.dependency_overrides[get_current_user] = lambda: user
        return TestClient(app)

    yield _make
    for engine in engines:
        asyncio.run(db_lifecycle.on_shutdown(engine))


@pytest.fixture
def client(make_client):
    with make_client() as client:
        yield client
