from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path
import time
from typing import Any

import httpx

from nexusdrop.config import (
    AppConfig,
    FetchConfig,
    RetryPolicyConfig,
    StorageConfig,
    SwarmConfig,
    SweeperConfig,
)
from nexusdrop.downloads.backends.base import SwarmError
from nexusdrop.downloads.backends.swarm import ResourceDescription, SwarmFile, SwarmStatus
from nexusdrop.downloads.models import Job, JobState
from nexusdrop.downloads.registry import JobRegistry
from nexusdrop.downloads.runtime import DownloadRuntime, build_download_runtime

MAGNET = "magnet:?xt=urn:btih:ABCDEF0123456789ABCDEF0123456789ABCDEF01&dn=Big%20Buck%20Bunny"
OTHER_MAGNET = "magnet:?xt=urn:btih:0000000000000000000000000000000000000001&dn=other"


def make_config(tmp_path: Path, **retry: Any) -> AppConfig:
    return AppConfig(
        storage=StorageConfig(
            data_dir=str(tmp_path / "data"),
            uploads_dir=str(tmp_path / "uploads"),
            torrents_dir=str(tmp_path / "torrents"),
        ),
        fetch=FetchConfig(mirror_host="mirror.test", timeout_seconds=5.0),
        retry=replace(RetryPolicyConfig(retry_delay_ms=0), **retry),
        sweeper=SweeperConfig(),
        swarm=SwarmConfig(enabled=False, poll_interval_ms=100),
    )


class ManualClock:
    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, millis: int) -> None:
        self.now += millis


class FakeSwarmClient:
    """In-memory swarm whose resources finish when ``complete`` is set."""

    def __init__(self, files: dict[str, bytes] | None = None, *, complete: bool = False) -> None:
        self.files_by_path = files or {"movie/movie.mkv": b"m" * 64, "movie/readme.txt": b"r" * 8}
        self.complete = complete
        self.error: str | None = None
        self.added: list[str] = []
        self.removed: list[str] = []
        self._handles: dict[str, Path] = {}

    def add(self, uri: str, save_path: Path) -> str:
        key = f"h{len(self.added) + 1}"
        self.added.append(uri)
        for relative, content in self.files_by_path.items():
            target = save_path / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        self._handles[key] = save_path
        return key

    def status(self, handle: str) -> SwarmStatus:
        total = sum(len(content) for content in self.files_by_path.values())
        done = total if self.complete else total // 2
        return SwarmStatus(
            downloaded_bytes=done,
            total_bytes=total,
            download_rate=10,
            upload_rate=2,
            uploaded_bytes=done // 4,
            peers=3,
            is_finished=self.complete,
            error=self.error,
        )

    def files(self, handle: str) -> list[SwarmFile]:
        return [
            SwarmFile(path=relative, size=len(content))
            for relative, content in self.files_by_path.items()
        ]

    def remove(self, handle: str) -> None:
        self.removed.append(handle)
        self._handles.pop(handle, None)

    def describe(self, payload: bytes) -> ResourceDescription:
        if not payload.startswith(b"d"):
            raise SwarmError("Invalid torrent file: not bencoded", retryable=False)
        return ResourceDescription(
            resource_uri=MAGNET,
            resource_id="abcdef0123456789abcdef0123456789abcdef01",
            name="Big Buck Bunny",
            files=[SwarmFile(path="movie/movie.mkv", size=64)],
        )

    def close(self) -> None:
        self._handles.clear()


def make_job(job_id: str = "a" * 16, **overrides: Any) -> Job:
    fields: dict[str, Any] = {
        "id": job_id,
        "source_url": "https://example.com/file.zip",
        "filename": f"NexusDrop_ABCD-{job_id}.zip",
        "original_filename": "file.zip",
        "is_peer_transport": False,
        "owner_token": "f" * 32,
        "created_at": 1_700_000_000_000,
        "expires_at": 1_700_003_600_000,
    }
    fields.update(overrides)
    return Job(**fields)


async def wait_for(predicate, *, timeout: float = 3.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def wait_for_state(
    registry: JobRegistry, job_id: str, state: JobState, *, timeout: float = 3.0
) -> Job:
    def reached() -> bool:
        job = registry.get(job_id)
        return job is not None and job.state is state

    await wait_for(reached, timeout=timeout)
    job = registry.get(job_id)
    assert job is not None
    return job


def poll(client, path: str, predicate, *, timeout: float = 5.0) -> dict[str, Any]:
    deadline = time.monotonic() + timeout
    while True:
        payload = client.get(path).json()
        if predicate(payload):
            return payload
        if time.monotonic() > deadline:
            raise AssertionError(f"condition not reached; last payload: {payload}")
        time.sleep(0.02)


PAYLOAD = b"nexusdrop-payload-" * 64


def ok_handler(request: httpx.Request) -> httpx.Response:
    if request.method == "HEAD":
        return httpx.Response(200, headers={"content-type": "application/zip"})
    return httpx.Response(200, content=PAYLOAD)


def failing_handler(request: httpx.Request) -> httpx.Response:
    if request.method == "HEAD":
        return httpx.Response(200)
    return httpx.Response(500)


def build_runtime(
    tmp_path: Path,
    handler=ok_handler,
    *,
    swarm_client: FakeSwarmClient | None = None,
    clock: ManualClock | None = None,
    **retry: Any,
) -> DownloadRuntime:
    kwargs: dict[str, Any] = {"clock": clock} if clock is not None else {}
    runtime = build_download_runtime(
        make_config(tmp_path, **retry),
        http_transport=httpx.MockTransport(handler),
        swarm_client=swarm_client,
        start_sweeper=False,
        **kwargs,
    )
    runtime.layout.ensure_directories()
    return runtime
