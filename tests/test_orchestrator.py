from __future__ import annotations

import asyncio
import json
import re

import httpx
import pytest

from nexusdrop.downloads.models import InvalidTransitionError, JobState
from nexusdrop.downloads.orchestrator import STUCK_MESSAGE
from tests.helpers import (
    MAGNET,
    PAYLOAD,
    FakeSwarmClient,
    ManualClock,
    build_runtime,
    failing_handler,
    make_job,
    wait_for,
    wait_for_state,
)


@pytest.mark.asyncio
async def test_http_download_completes_through_mirror(tmp_path) -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "HEAD":
            return httpx.Response(200, headers={"content-type": "application/zip"})
        return httpx.Response(200, content=PAYLOAD)

    runtime = build_runtime(tmp_path, handler)
    job = await runtime.orchestrator.create_download(
        "https://example.com/file.zip", ttl_hours=1
    )
    assert job.state is JobState.DOWNLOADING

    done = await wait_for_state(runtime.registry, job.id, JobState.COMPLETED)
    assert done.progress_percent == 100
    assert done.downloaded_bytes == len(PAYLOAD)
    assert done.completed_at is not None
    assert done.error is None
    assert done.effective_url == "https://mirror.test/example.com/file.zip"
    assert re.fullmatch(r"NexusDrop_[A-Z0-9]{4}-file\.zip", done.filename)
    assert done.download_url == f"/downloads/{done.filename}"
    assert done.expires_at == done.created_at + 3_600_000
    assert (tmp_path / "uploads" / done.filename).read_bytes() == PAYLOAD
    assert {str(request.url) for request in requests} == {
        "https://mirror.test/example.com/file.zip"
    }
    await runtime.stop()


@pytest.mark.asyncio
async def test_create_rejects_empty_url_and_bad_ttl(tmp_path) -> None:
    runtime = build_runtime(tmp_path)

    with pytest.raises(ValueError):
        await runtime.orchestrator.create_download("   ", ttl_hours=1)
    with pytest.raises(ValueError):
        await runtime.orchestrator.create_download("https://example.com/a", ttl_hours=0)

    assert len(runtime.registry) == 0
    await runtime.stop()


@pytest.mark.asyncio
async def test_failures_retry_until_budget_is_spent(tmp_path) -> None:
    gets: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            gets.append(request)
        return failing_handler(request)

    runtime = build_runtime(tmp_path, handler, max_retries=3)
    orchestrator = runtime.orchestrator
    job = await orchestrator.create_download("https://example.com/file.zip", ttl_hours=1)

    await wait_for(
        lambda: job.state is JobState.ERROR
        and job.retry_count == 3
        and job.id not in orchestrator.timers
        and not orchestrator.is_fetching(job.id)
    )
    await asyncio.sleep(0.05)

    assert job.state is JobState.ERROR
    assert job.retry_count == 3
    assert job.error == "Server responded with HTTP 500"
    assert len(gets) == 3

    retried = await orchestrator.retry_download(job.id)
    assert retried is job
    assert job.state is JobState.DOWNLOADING
    assert job.retry_count == 0

    await wait_for(lambda: job.retry_count == 3 and job.id not in orchestrator.timers)
    await runtime.stop()


@pytest.mark.asyncio
async def test_manual_retry_requires_error_state(tmp_path) -> None:
    runtime = build_runtime(tmp_path)
    orchestrator = runtime.orchestrator
    job = await orchestrator.create_download("https://example.com/file.zip", ttl_hours=1)
    await wait_for_state(runtime.registry, job.id, JobState.COMPLETED)

    with pytest.raises(InvalidTransitionError):
        await orchestrator.retry_download(job.id)
    with pytest.raises(LookupError):
        await orchestrator.retry_download("missing")

    assert job.state is JobState.COMPLETED
    await runtime.stop()


@pytest.mark.asyncio
async def test_duplicate_magnet_fails_without_retry(tmp_path) -> None:
    swarm = FakeSwarmClient()
    runtime = build_runtime(tmp_path, swarm_client=swarm)
    orchestrator = runtime.orchestrator

    first = await orchestrator.create_download(MAGNET, ttl_hours=1)
    second = await orchestrator.create_download(MAGNET, ttl_hours=1)

    assert first.is_peer_transport and second.is_peer_transport
    assert first.resource_id == second.resource_id
    assert first.state is JobState.DOWNLOADING
    assert second.state is JobState.ERROR
    assert second.error == "A torrent with the same id is already being downloaded"
    assert second.retry_count == 0
    assert second.id not in orchestrator.timers
    assert not orchestrator.is_fetching(second.id)

    await wait_for(lambda: first.transport_telemetry is not None)
    assert first.progress_percent == 50
    assert first.transport_telemetry.peers == 3

    swarm.complete = True
    done = await wait_for_state(runtime.registry, first.id, JobState.COMPLETED)
    assert (tmp_path / "torrents" / done.filename).read_bytes() == b"m" * 64
    assert done.download_url == f"/torrents/{done.filename}"
    assert not runtime.layout.staging_dir_for(first.id).exists()
    assert swarm.removed == ["h1"]
    assert second.state is JobState.ERROR

    retried = await orchestrator.retry_download(second.id)
    assert retried.state is JobState.DOWNLOADING
    await wait_for_state(runtime.registry, second.id, JobState.COMPLETED)
    await runtime.stop()


@pytest.mark.asyncio
async def test_stuck_download_restarts_then_gives_up(tmp_path) -> None:
    clock = ManualClock()
    swarm = FakeSwarmClient()
    runtime = build_runtime(tmp_path, swarm_client=swarm, clock=clock, max_retries=2)
    orchestrator = runtime.orchestrator

    job = await orchestrator.create_download(MAGNET, ttl_hours=1)
    await wait_for(lambda: swarm.added)
    first_attempt = job.attempt

    assert await orchestrator.handle_stuck(job.id) is False

    clock.advance(60_001)
    assert await orchestrator.handle_stuck(job.id) is True
    assert job.state is JobState.DOWNLOADING
    assert job.retry_count == 1
    assert job.attempt > first_attempt
    assert job.started_at == clock.now
    assert orchestrator.is_fetching(job.id)

    clock.advance(60_001)
    assert await orchestrator.handle_stuck(job.id) is True
    assert job.state is JobState.ERROR
    assert job.error == STUCK_MESSAGE
    assert job.retry_count == 2
    assert not orchestrator.is_fetching(job.id)
    assert runtime.swarm_backend.holder_of(job.resource_id) is None
    await runtime.stop()


@pytest.mark.asyncio
async def test_late_result_of_stuck_attempt_is_discarded(tmp_path) -> None:
    clock = ManualClock()
    gate = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "HEAD":
            return httpx.Response(200)
        await gate.wait()
        return httpx.Response(200, content=PAYLOAD)

    runtime = build_runtime(tmp_path, handler, clock=clock, max_retries=1)
    orchestrator = runtime.orchestrator
    job = await orchestrator.create_download("https://example.com/file.bin", ttl_hours=1)
    await asyncio.sleep(0.02)

    clock.advance(60_001)
    assert await orchestrator.handle_stuck(job.id) is True
    gate.set()
    await asyncio.sleep(0.05)

    assert job.state is JobState.ERROR
    assert job.error == STUCK_MESSAGE
    assert job.progress_percent == 0
    await runtime.stop()


@pytest.mark.asyncio
async def test_remove_job_cancels_pending_retry(tmp_path) -> None:
    runtime = build_runtime(tmp_path, failing_handler, retry_delay_ms=60_000)
    orchestrator = runtime.orchestrator
    job = await orchestrator.create_download("https://example.com/file.zip", ttl_hours=1)

    await wait_for(lambda: job.retry_count == 1)
    assert job.id in orchestrator.timers

    removed = await orchestrator.remove_job(job.id, reason="test")
    assert removed is job
    assert job.id not in orchestrator.timers
    assert job.id not in runtime.registry

    assert await orchestrator.remove_job(job.id, reason="test") is None
    assert await orchestrator.start_download(job.id) is False
    assert await orchestrator.handle_stuck(job.id) is False
    await runtime.stop()


@pytest.mark.asyncio
async def test_remove_job_deletes_artifact(tmp_path) -> None:
    runtime = build_runtime(tmp_path)
    job = await runtime.orchestrator.create_download(
        "https://example.com/file.zip", ttl_hours=1
    )
    await wait_for_state(runtime.registry, job.id, JobState.COMPLETED)
    artifact = runtime.layout.path_for(job)
    assert artifact.exists()

    await runtime.orchestrator.remove_job(job.id, reason="owner_delete")

    assert not artifact.exists()
    await runtime.stop()


@pytest.mark.asyncio
async def test_recover_pending_starts_loaded_jobs(tmp_path) -> None:
    runtime = build_runtime(tmp_path)
    job = make_job(effective_url="https://mirror.test/example.com/file.zip")
    runtime.registry.insert(job)
    runtime.registry.insert(make_job("b" * 16, state=JobState.ERROR, error="boom"))

    assert await runtime.orchestrator.recover_pending() == 1

    done = await wait_for_state(runtime.registry, job.id, JobState.COMPLETED)
    assert (tmp_path / "uploads" / done.filename).read_bytes() == PAYLOAD
    assert runtime.registry.get("b" * 16).state is JobState.ERROR
    await runtime.stop()


@pytest.mark.asyncio
async def test_runtime_start_resumes_snapshot_and_stop_persists(tmp_path) -> None:
    runtime = build_runtime(tmp_path)
    job = make_job(effective_url="https://mirror.test/example.com/file.zip")
    snapshot = runtime.registry.snapshot_path
    snapshot.parent.mkdir(parents=True, exist_ok=True)
    snapshot.write_text(json.dumps({job.id: job.to_dict(include_owner_token=True)}))

    await runtime.start()
    await wait_for_state(runtime.registry, job.id, JobState.COMPLETED)
    await runtime.stop()

    saved = json.loads(snapshot.read_text())
    assert saved[job.id]["state"] == "completed"
    assert saved[job.id]["ownerToken"] == job.owner_token


@pytest.mark.asyncio
async def test_disabled_swarm_fails_without_spending_retries(tmp_path) -> None:
    runtime = build_runtime(tmp_path)
    orchestrator = runtime.orchestrator

    job = await orchestrator.create_download(MAGNET, ttl_hours=1)
    await wait_for(lambda: job.state is JobState.ERROR and not orchestrator.is_fetching(job.id))
    await asyncio.sleep(0.05)

    assert job.error == "Peer transport is disabled"
    assert job.retry_count == 0
    assert job.id not in orchestrator.timers
    await runtime.stop()


@pytest.mark.asyncio
async def test_create_rejects_non_finite_ttl(tmp_path) -> None:
    runtime = build_runtime(tmp_path)

    for hours in (float("inf"), float("nan")):
        with pytest.raises(ValueError):
            await runtime.orchestrator.create_download(
                "https://example.com/file.zip", ttl_hours=hours
            )

    assert len(runtime.registry) == 0
    await runtime.stop()


@pytest.mark.asyncio
async def test_malformed_url_fails_once_with_url_filename(tmp_path) -> None:
    runtime = build_runtime(tmp_path)
    orchestrator = runtime.orchestrator

    job = await orchestrator.create_download("https://[::1/file.zip", ttl_hours=1)
    await wait_for(lambda: job.state is JobState.ERROR and not orchestrator.is_fetching(job.id))

    assert job.original_filename == "file.zip"
    assert job.filename.endswith("-file.zip")
    assert job.retry_count == 0
    assert job.id not in orchestrator.timers
    await runtime.stop()
