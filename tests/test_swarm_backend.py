from pathlib import Path

import pytest

from nexusdrop.downloads.backends.base import DuplicateActiveResourceError, SwarmError
from nexusdrop.downloads.backends.swarm import SwarmBackend, SwarmStatus, build_telemetry
from nexusdrop.downloads.models import ProgressUpdate, StorageLayout
from tests.helpers import MAGNET, FakeSwarmClient, make_job


def _layout(tmp_path: Path) -> StorageLayout:
    return StorageLayout(http_dir=tmp_path / "uploads", swarm_dir=tmp_path / "torrents")


def _swarm_job(job_id: str = "b" * 16):
    job = make_job(
        job_id,
        source_url=MAGNET,
        filename=f"NexusDrop_WXYZ-{job_id}.mkv",
        is_peer_transport=True,
        resource_id="abcdef0123456789abcdef0123456789abcdef01",
    )
    job.begin_attempt(now=1)
    return job


@pytest.mark.asyncio
async def test_completion_keeps_largest_file_and_discards_siblings(tmp_path: Path) -> None:
    client = FakeSwarmClient(complete=True)
    layout = _layout(tmp_path)
    backend = SwarmBackend(client, layout, poll_interval=0.01)
    job = _swarm_job()
    backend.claim(job)
    updates: list[ProgressUpdate] = []

    await backend.start_download(job, updates.append)

    artifact = layout.path_for(job)
    assert artifact.read_bytes() == b"m" * 64
    assert not layout.staging_dir_for(job.id).exists()
    assert client.removed == ["h1"]
    assert backend.holder_of(job.resource_id) is None
    assert updates[-1].progress_percent == 100
    assert updates[-1].telemetry is not None
    assert updates[-1].telemetry.peers == 3


@pytest.mark.asyncio
async def test_second_job_for_active_resource_is_rejected(tmp_path: Path) -> None:
    backend = SwarmBackend(FakeSwarmClient(), _layout(tmp_path))
    first = _swarm_job("c" * 16)
    second = _swarm_job("d" * 16)

    backend.claim(first)
    with pytest.raises(DuplicateActiveResourceError) as excinfo:
        backend.claim(second)

    assert excinfo.value.retryable is False
    assert excinfo.value.holder == first.id
    # A fresh attempt of the holder replaces its own claim.
    first.mark_failed("stuck")
    first.begin_attempt(now=2)
    backend.claim(first)
    backend.release(first.id, first.attempt - 1)
    assert backend.holder_of(first.resource_id) == first.id
    backend.release(first.id, first.attempt)
    assert backend.holder_of(first.resource_id) is None


@pytest.mark.asyncio
async def test_swarm_error_rejects_and_deregisters(tmp_path: Path) -> None:
    client = FakeSwarmClient()
    client.error = "tracker unreachable"
    backend = SwarmBackend(client, _layout(tmp_path), poll_interval=0.01)
    job = _swarm_job()
    backend.claim(job)

    with pytest.raises(SwarmError, match="tracker unreachable"):
        await backend.start_download(job, lambda update: None)

    assert client.removed == ["h1"]
    assert backend.holder_of(job.resource_id) is None


@pytest.mark.asyncio
async def test_disabled_swarm_fails_the_fetch(tmp_path: Path) -> None:
    backend = SwarmBackend(None, _layout(tmp_path))

    assert backend.enabled is False
    with pytest.raises(SwarmError) as excinfo:
        await backend.start_download(_swarm_job(), lambda update: None)
    assert excinfo.value.retryable is False


def test_describe_resource_wraps_client_errors(tmp_path: Path) -> None:
    backend = SwarmBackend(FakeSwarmClient(), _layout(tmp_path))

    description = backend.describe_resource(b"d8:announce0:e")
    assert description.resource_uri == MAGNET

    with pytest.raises(SwarmError) as excinfo:
        backend.describe_resource(b"garbage")
    assert excinfo.value.retryable is False


def test_build_telemetry_estimates_time_remaining() -> None:
    status = SwarmStatus(
        downloaded_bytes=400,
        total_bytes=1000,
        download_rate=200,
        upload_rate=50,
        uploaded_bytes=100,
        peers=7,
        is_finished=False,
    )

    telemetry = build_telemetry(status)

    assert telemetry.time_remaining_ms == 3000
    assert telemetry.ratio == 0.25
    assert telemetry.upload_speed == 50
    assert build_telemetry(
        SwarmStatus(0, None, 0, 0, 0, 0, False)
    ).time_remaining_ms is None
