"""The collaborator container shared by every request handler and background job."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import VMSettings, get_vm_settings
from ..core.console_sessions import ConsoleSessionManager
from ..db import get_async_session_factory
from ..db.repositories import backups as backup_repo
from ..db.repositories import isos as iso_repo
from ..db.repositories import snapshots as snapshot_repo
from ..qemu.cloudinit import CloudInitBuilder
from ..qemu.firmware import SwtpmManager
from ..qemu.images import ImageTool
from ..qemu.launcher import ProcessLauncher
from ..qemu.network import BandwidthThrottler, TapNetwork
from ..qemu.process import ProcessProbe
from ..qemu.qmp import QMPCommands
from ..qemu.shell import CommandRunner
from .backups import BackupManager
from .isos import DownloadProgressTracker, ISOLibrary
from .jobs import INTERRUPTED, JobRunner
from .lifecycle import VMLifecycle
from .locks import VMLockRegistry
from .snapshots import SnapshotManager
from .templates import TemplateManager

logger = logging.getLogger(__name__)


def default_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=300.0))


@dataclass
class PanelServices:
    """Owns every stateful collaborator; one instance lives on ``app.state``.

    Anything left as ``None`` is built from ``settings`` and ``runner`` so tests
    only need to pass the fakes they care about.
    """

    settings: VMSettings
    session_factory: async_sessionmaker[AsyncSession]
    runner: CommandRunner = field(default_factory=CommandRunner)
    probe: ProcessProbe = field(default_factory=ProcessProbe)
    launcher: Optional[ProcessLauncher] = None
    images: Optional[ImageTool] = None
    cloud_init: Optional[CloudInitBuilder] = None
    swtpm: Optional[SwtpmManager] = None
    tap_network: Optional[TapNetwork] = None
    throttler: Optional[BandwidthThrottler] = None
    qmp: QMPCommands = field(default_factory=QMPCommands)
    locks: VMLockRegistry = field(default_factory=VMLockRegistry)
    jobs: JobRunner = field(default_factory=JobRunner)
    console_sessions: ConsoleSessionManager = field(default_factory=ConsoleSessionManager)
    downloads: DownloadProgressTracker = field(default_factory=DownloadProgressTracker)
    http_client_factory: Callable[[], httpx.AsyncClient] = default_http_client

    vms: VMLifecycle = field(init=False)
    backups: BackupManager = field(init=False)
    snapshots: SnapshotManager = field(init=False)
    templates: TemplateManager = field(init=False)
    isos: ISOLibrary = field(init=False)

    def __post_init__(self) -> None:
        if self.launcher is None:
            self.launcher = ProcessLauncher(
                probe=self.probe, pidfile_wait_seconds=self.settings.pidfile_wait_seconds
            )
        if self.images is None:
            self.images = ImageTool(self.runner, self.settings.qemu_img_binary)
        if self.cloud_init is None:
            self.cloud_init = CloudInitBuilder(self.runner)
        if self.swtpm is None:
            self.swtpm = SwtpmManager(self.runner)
        if self.tap_network is None:
            self.tap_network = TapNetwork(self.runner, self.settings)
        if self.throttler is None:
            self.throttler = BandwidthThrottler(self.runner, self.settings)

        self.vms = VMLifecycle(self)
        self.backups = BackupManager(self)
        self.snapshots = SnapshotManager(self)
        self.templates = TemplateManager(self)
        self.isos = ISOLibrary(self)

    async def recover_interrupted_jobs(self) -> int:
        """Fail backup, snapshot and download rows left busy by a previous process.

        Their tasks died with that process, so nothing would ever finish them.
        """

        async with self.session_factory() as session:
            count = await backup_repo.fail_unfinished_backups(session, INTERRUPTED)
            count += await snapshot_repo.fail_unfinished_snapshots(session, INTERRUPTED)
            count += await iso_repo.fail_unfinished_downloads(session, INTERRUPTED)
        if count:
            logger.warning("Marked %d interrupted background job(s) as failed", count)
        return count

    async def shutdown(self) -> None:
        await self.jobs.shutdown()


def build_services(
    settings: Optional[VMSettings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    **collaborators,
) -> PanelServices:
    """Assemble :class:`PanelServices` from configuration plus any injected fakes."""

    services = PanelServices(
        settings=settings or get_vm_settings(),
        session_factory=session_factory or get_async_session_factory(),
        **collaborators,
    )
    logger.debug("Panel services ready (vm_dir=%s)", services.settings.vm_dir)
    return services


__all__ = ["PanelServices", "build_services", "default_http_client"]
