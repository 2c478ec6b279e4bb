"""Runtime helpers for wiring the download orchestrator."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import httpx

from nexusdrop import __version__
from nexusdrop.config import AppConfig
from nexusdrop.logging import get_logger
from nexusdrop.utils.time import now_ms

from .backends.base import SwarmError
from .backends.http import HttpBackend
from .backends.swarm import SwarmBackend, SwarmClient
from .models import StorageLayout
from .orchestrator import DownloadOrchestrator
from .registry import JobRegistry
from .resolver import MirrorResolver
from .retry import RetryTimers
from .sweeper import LifecycleSweeper

logger = get_logger(__name__)


@dataclass(slots=True)
class DownloadRuntime:
    """Container for the download core and its lifecycle hooks."""

    config: AppConfig
    layout: StorageLayout
    registry: JobRegistry
    resolver: MirrorResolver
    http_backend: HttpBackend
    swarm_backend: SwarmBackend
    orchestrator: DownloadOrchestrator
    sweeper: LifecycleSweeper
    client: httpx.AsyncClient
    swarm_client: SwarmClient | None = None
    start_sweeper: bool = True

    async def start(self) -> None:
        """Create storage roots, load the snapshot and start background work."""

        await asyncio.to_thread(self.layout.ensure_directories)
        await self.registry.load()
        await self.orchestrator.recover_pending()
        if self.start_sweeper:
            self.sweeper.start()
        logger.info(
            "Download runtime started",
            extra={
                "event": "runtime.started",
                "jobs": len(self.registry),
                "swarm_enabled": self.swarm_backend.enabled,
            },
        )

    async def stop(self) -> None:
        await self.sweeper.stop()
        await self.orchestrator.shutdown()
        await self.registry.save()
        await self.client.aclose()
        if self.swarm_client is not None:
            self.swarm_client.close()
        logger.info("Download runtime stopped", extra={"event": "runtime.stopped"})


def _build_swarm_client(config: AppConfig) -> SwarmClient | None:
    if not config.swarm.enabled:
        return None
    from .backends.libtorrent_client import LibtorrentSwarmClient

    try:
        return LibtorrentSwarmClient(config.swarm.listen_interfaces)
    except SwarmError as exc:
        logger.warning(
            "Peer transport unavailable",
            extra={"event": "runtime.swarm_unavailable", "error": str(exc)},
        )
        return None


def build_download_runtime(
    config: AppConfig,
    *,
    http_transport: httpx.AsyncBaseTransport | None = None,
    swarm_client: SwarmClient | None = None,
    clock: Callable[[], int] = now_ms,
    start_sweeper: bool = True,
) -> DownloadRuntime:
    """Initialise download components using the supplied configuration."""

    storage = config.storage
    layout = StorageLayout(
        http_dir=Path(storage.uploads_dir).expanduser(),
        swarm_dir=Path(storage.torrents_dir).expanduser(),
        http_prefix=storage.http_public_prefix,
        swarm_prefix=storage.swarm_public_prefix,
    )
    registry = JobRegistry(storage.snapshot_path)
    client = httpx.AsyncClient(
        transport=http_transport,
        timeout=config.fetch.timeout_seconds,
        headers={"User-Agent": f"NexusDrop/{__version__}"},
    )
    resolver = MirrorResolver(config.fetch, client)
    http_backend = HttpBackend(client, resolver, layout, config.fetch)
    if swarm_client is None:
        swarm_client = _build_swarm_client(config)
    swarm_backend = SwarmBackend(
        swarm_client, layout, poll_interval=config.swarm.poll_interval_seconds
    )
    orchestrator = DownloadOrchestrator(
        registry,
        http_backend=http_backend,
        swarm_backend=swarm_backend,
        resolver=resolver,
        layout=layout,
        policy=config.retry,
        timers=RetryTimers(),
        filename_prefix=config.filename_prefix,
        clock=clock,
    )
    sweeper = LifecycleSweeper(orchestrator, config.sweeper, clock=clock)
    return DownloadRuntime(
        config=config,
        layout=layout,
        registry=registry,
        resolver=resolver,
        http_backend=http_backend,
        swarm_backend=swarm_backend,
        orchestrator=orchestrator,
        sweeper=sweeper,
        client=client,
        swarm_client=swarm_client,
        start_sweeper=start_sweeper,
    )


__all__ = ["DownloadRuntime", "build_download_runtime"]
