import asyncio

import pytest

from nexusdrop.downloads.retry import RetryTimers


@pytest.mark.asyncio
async def test_timer_fires_once() -> None:
    timers = RetryTimers()
    fired: list[str] = []

    async def callback(job_id: str) -> None:
        fired.append(job_id)

    timers.schedule("job", 0.01, callback)
    assert "job" in timers
    await asyncio.sleep(0.05)

    assert fired == ["job"]
    assert "job" not in timers


@pytest.mark.asyncio
async def test_cancelled_timer_never_fires() -> None:
    timers = RetryTimers()
    fired: list[str] = []

    async def callback(job_id: str) -> None:
        fired.append(job_id)

    timers.schedule("a", 0.02, callback)
    timers.schedule("b", 0.02, callback)
    assert timers.cancel("a") is True
    assert timers.cancel("a") is False
    await asyncio.sleep(0.06)

    assert fired == ["b"]


@pytest.mark.asyncio
async def test_rescheduling_replaces_pending_timer() -> None:
    timers = RetryTimers()
    fired: list[float] = []
    loop = asyncio.get_running_loop()
    start = loop.time()

    async def callback(job_id: str) -> None:
        fired.append(loop.time() - start)

    timers.schedule("job", 0.01, callback)
    timers.schedule("job", 0.05, callback)
    await asyncio.sleep(0.1)

    assert len(fired) == 1
    assert fired[0] >= 0.05
    assert len(timers) == 0


@pytest.mark.asyncio
async def test_callback_failure_is_contained() -> None:
    timers = RetryTimers()

    async def callback(job_id: str) -> None:
        raise RuntimeError("boom")

    timers.schedule("job", 0, callback)
    await asyncio.sleep(0.02)

    assert timers.cancel_all() == 0
