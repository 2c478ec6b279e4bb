from __future__ import annotations

import json
import os
import time

import pytest

from nexusdrop.downloads.models import JobState
from nexusdrop.downloads.orchestrator import STUCK_MESSAGE
from tests.helpers import (
    MAGNET,
    FakeSwarmClient,
    ManualClock,
    build_runtime,
    make_job,
    wait_for,
)


def _completed(job_id: str, *, now: int, **overrides):
    job = make_job(job_id, **overrides)
    job.begin_attempt(now=now)
    job.mark_completed(now=now)
    return job


@pytest.mark.asyncio
async def test_sweep_expired_removes_jobs_and_files(tmp_path) -> None:
    clock = ManualClock()
    runtime = build_runtime(tmp_path, clock=clock)
    expired = _completed("a" * 16, now=clock.now, expires_at=clock.now - 1)
    failed = make_job("b" * 16, expires_at=clock.now - 1, state=JobState.ERROR, error="x")
    fresh = make_job("c" * 16, expires_at=clock.now + 10_000, state=JobState.ERROR)
    artifact = runtime.layout.path_for(expired)
    artifact.write_bytes(b"payload")
    for job in (expired, failed, fresh):
        runtime.registry.insert(job)

    removed = await runtime.sweeper.sweep_expired()

    assert removed == 2
    assert not artifact.exists()
    assert runtime.registry.ids() == [fresh.id]
    snapshot = json.loads(runtime.registry.snapshot_path.read_text())
    assert list(snapshot) == [fresh.id]
    await runtime.stop()


@pytest.mark.asyncio
async def test_sweep_expired_isolates_failures(tmp_path, monkeypatch) -> None:
    clock = ManualClock()
    runtime = build_runtime(tmp_path, clock=clock)
    broken = make_job("a" * 16, expires_at=clock.now - 1, state=JobState.ERROR)
    healthy = make_job("b" * 16, expires_at=clock.now - 1, state=JobState.ERROR)
    runtime.registry.insert(broken)
    runtime.registry.insert(healthy)

    original = runtime.orchestrator.remove_job

    async def flaky_remove(job_id: str, *, reason: str):
        if job_id == broken.id:
            raise OSError("disk unavailable")
        return await original(job_id, reason=reason)

    monkeypatch.setattr(runtime.orchestrator, "remove_job", flaky_remove)

    assert await runtime.sweeper.sweep_expired() == 1
    assert broken.id in runtime.registry
    assert healthy.id not in runtime.registry
    await runtime.stop()


@pytest.mark.asyncio
async def test_sweep_stuck_fails_only_timed_out_jobs(tmp_path) -> None:
    clock = ManualClock()
    swarm = FakeSwarmClient()
    runtime = build_runtime(tmp_path, swarm_client=swarm, clock=clock, max_retries=1)
    orchestrator = runtime.orchestrator

    stale = await orchestrator.create_download(MAGNET, ttl_hours=1)
    await wait_for(lambda: swarm.added)
    clock.advance(60_001)
    recent = make_job("d" * 16, state=JobState.ERROR, error="boom")
    runtime.registry.insert(recent)

    assert await runtime.sweeper.sweep_stuck() == 1
    assert stale.state is JobState.ERROR
    assert stale.error == STUCK_MESSAGE
    assert recent.error == "boom"
    assert await runtime.sweeper.sweep_stuck() == 0
    await runtime.stop()


@pytest.mark.asyncio
async def test_reconcile_orphans(tmp_path) -> None:
    clock = ManualClock(int(time.time() * 1000))
    runtime = build_runtime(tmp_path, clock=clock)
    layout = runtime.layout
    old = time.time() - 3600

    kept = _completed("a" * 16, now=clock.now, expires_at=clock.now + 60_000)
    layout.path_for(kept).write_bytes(b"kept")
    os.utime(layout.path_for(kept), (old, old))
    missing = _completed("b" * 16, now=clock.now, expires_at=clock.now + 60_000)
    in_flight = make_job(
        "c" * 16,
        is_peer_transport=True,
        source_url=MAGNET,
        filename="NexusDrop_ABCD-movie.mkv",
        expires_at=clock.now + 60_000,
    )
    for job in (kept, missing, in_flight):
        runtime.registry.insert(job)

    stray = layout.http_dir / "stray.bin"
    stray.write_bytes(b"stray")
    os.utime(stray, (old, old))
    young = layout.swarm_dir / "young.bin"
    young.write_bytes(b"young")
    hidden = layout.http_dir / ".keep"
    hidden.write_bytes(b"")
    os.utime(hidden, (old, old))
    layout.staging_dir_for(in_flight.id).mkdir(parents=True)
    abandoned = layout.staging_dir_for("e" * 16)
    (abandoned / "part").mkdir(parents=True)

    report = await runtime.sweeper.reconcile_orphans()

    assert report.missing_artifacts == 1
    assert report.orphan_files == 1
    assert report.orphan_staging_dirs == 1
    assert missing.id not in runtime.registry
    assert kept.id in runtime.registry
    assert layout.path_for(kept).exists()
    assert not stray.exists()
    assert young.exists()
    assert hidden.exists()
    assert layout.staging_dir_for(in_flight.id).exists()
    assert not abandoned.exists()
    saved = json.loads(runtime.registry.snapshot_path.read_text())
    assert set(saved) == {kept.id, in_flight.id}
    await runtime.stop()


@pytest.mark.asyncio
async def test_started_sweeper_runs_expiry_immediately(tmp_path) -> None:
    clock = ManualClock()
    runtime = build_runtime(tmp_path, clock=clock)
    job = make_job(expires_at=clock.now - 1, state=JobState.ERROR)
    runtime.registry.insert(job)

    runtime.sweeper.start()
    assert runtime.sweeper.running
    await wait_for(lambda: job.id not in runtime.registry)
    await runtime.sweeper.stop()

    assert not runtime.sweeper.running
    await runtime.stop()
