"""Peer-swarm transport built on a pluggable swarm client."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
import shutil
from typing import Protocol

from nexusdrop.logging import get_logger

from ..models import Job, ProgressUpdate, StorageLayout, TransportTelemetry, percent_of
from ..move import AtomicFileMover
from .base import DuplicateActiveResourceError, ProgressCallback, SwarmError

logger = get_logger(__name__)


@dataclass(slots=True, frozen=True)
class SwarmFile:
    path: str
    size: int


@dataclass(slots=True, frozen=True)
class SwarmStatus:
    downloaded_bytes: int
    total_bytes: int | None
    download_rate: int
    upload_rate: int
    uploaded_bytes: int
    peers: int
    is_finished: bool
    error: str | None = None


@dataclass(slots=True, frozen=True)
class ResourceDescription:
    resource_uri: str
    resource_id: str
    name: str
    files: list[SwarmFile] = field(default_factory=list)


class SwarmClient(Protocol):
    """Minimal surface of a peer-swarm engine."""

    def add(self, uri: str, save_path: Path) -> str:
        """Start fetching ``uri`` into ``save_path`` and return a handle key."""

    def status(self, handle: str) -> SwarmStatus:
        ...

    def files(self, handle: str) -> list[SwarmFile]:
        """Return the resource's files with paths relative to ``save_path``."""

    def remove(self, handle: str) -> None:
        ...

    def describe(self, payload: bytes) -> ResourceDescription:
        """Parse a descriptor file and return its addressable identity."""

    def close(self) -> None:
        ...


def build_telemetry(status: SwarmStatus) -> TransportTelemetry:
    remaining: int | None = None
    if status.total_bytes is not None and status.download_rate > 0:
        left = max(0, status.total_bytes - status.downloaded_bytes)
        remaining = int(left * 1000 / status.download_rate)
    ratio = status.uploaded_bytes / status.downloaded_bytes if status.downloaded_bytes else 0.0
    return TransportTelemetry(
        peers=status.peers,
        ratio=round(ratio, 4),
        uploaded=status.uploaded_bytes,
        upload_speed=status.upload_rate,
        time_remaining_ms=remaining,
    )


class SwarmBackend:
    """Runs peer transport jobs, one active job per resource id."""

    def __init__(
        self,
        client: SwarmClient | None,
        layout: StorageLayout,
        *,
        poll_interval: float = 0.5,
        mover: AtomicFileMover | None = None,
    ) -> None:
        self._client = client
        self._layout = layout
        self._poll_interval = max(0.01, float(poll_interval))
        self._mover = mover or AtomicFileMover()
        self._active: dict[str, tuple[str, int]] = {}

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def holder_of(self, resource_id: str) -> str | None:
        holder = self._active.get(resource_id)
        return holder[0] if holder else None

    def claim(self, job: Job) -> None:
        resource_id = job.resource_id or job.source_url
        holder = self._active.get(resource_id)
        if holder is not None and holder[0] != job.id:
            raise DuplicateActiveResourceError(resource_id, holder=holder[0])
        self._active[resource_id] = (job.id, job.attempt)

    def release(self, job_id: str, attempt: int) -> None:
        for resource_id, holder in list(self._active.items()):
            if holder == (job_id, attempt):
                del self._active[resource_id]

    def resume_offset(self, job: Job) -> int:
        return 0

    async def start_download(self, job: Job, on_progress: ProgressCallback) -> None:
        attempt = job.attempt
        try:
            await self._run(job, on_progress)
        finally:
            self.release(job.id, attempt)

    async def _run(self, job: Job, on_progress: ProgressCallback) -> None:
        client = self._client
        if client is None:
            raise SwarmError("Peer transport is disabled", retryable=False)

        staging = self._layout.staging_dir_for(job.id)
        await asyncio.to_thread(staging.mkdir, parents=True, exist_ok=True)
        try:
            handle = client.add(job.source_url, staging)
        except SwarmError:
            raise
        except Exception as exc:
            raise SwarmError(f"Failed to add resource: {exc}") from exc

        logger.info(
            "Swarm resource added",
            extra={
                "event": "download.swarm.added",
                "job_id": job.id,
                "resource_id": job.resource_id,
            },
        )
        try:
            while True:
                status = client.status(handle)
                if status.error:
                    raise SwarmError(status.error)
                on_progress(
                    ProgressUpdate(
                        downloaded_bytes=status.downloaded_bytes,
                        progress_percent=(
                            100
                            if status.is_finished
                            else percent_of(status.downloaded_bytes, status.total_bytes)
                        ),
                        speed_bytes_per_sec=status.download_rate,
                        telemetry=build_telemetry(status),
                    )
                )
                if status.is_finished:
                    break
                await asyncio.sleep(self._poll_interval)
            files = client.files(handle)
        finally:
            self._remove_quietly(client, handle, job.id)

        await asyncio.to_thread(self._finalize, job, staging, files)

    def _remove_quietly(self, client: SwarmClient, handle: str, job_id: str) -> None:
        try:
            client.remove(handle)
        except Exception:
            logger.warning(
                "Failed to remove swarm resource",
                extra={"event": "download.swarm.remove_failed", "job_id": job_id},
                exc_info=True,
            )

    def _finalize(self, job: Job, staging: Path, files: list[SwarmFile]) -> None:
        """Keep the largest file as the job's artifact and discard the rest."""

        if not files:
            raise SwarmError("Resource contained no files")
        largest = max(files, key=lambda item: item.size)
        source = staging / largest.path
        destination = self._layout.path_for(job)
        try:
            self._mover.move(source, destination)
        except OSError as exc:
            raise SwarmError(f"Failed to store artifact: {exc}") from exc

        for item in files:
            if item is largest:
                continue
            sibling = staging / item.path
            try:
                sibling.unlink()
            except FileNotFoundError:
                continue
            except OSError:
                logger.warning(
                    "Failed to delete sibling file",
                    extra={
                        "event": "download.swarm.sibling_delete_failed",
                        "job_id": job.id,
                        "path": str(sibling),
                    },
                    exc_info=True,
                )
        shutil.rmtree(staging, ignore_errors=True)
        logger.info(
            "Swarm artifact stored",
            extra={
                "event": "download.swarm.finalized",
                "job_id": job.id,
                "artifact": destination.name,
                "size": largest.size,
                "discarded": len(files) - 1,
            },
        )

    def describe_resource(self, payload: bytes) -> ResourceDescription:
        if self._client is None:
            raise SwarmError("Peer transport is disabled", retryable=False)
        try:
            return self._client.describe(payload)
        except SwarmError:
            raise
        except Exception as exc:
            raise SwarmError(f"Invalid torrent file: {exc}", retryable=False) from exc


__all__ = [
    "ResourceDescription",
    "SwarmBackend",
    "SwarmClient",
    "SwarmFile",
    "SwarmStatus",
    "build_telemetry",
]
