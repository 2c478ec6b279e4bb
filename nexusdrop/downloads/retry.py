"""Cancellable delayed retries keyed by job id."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from nexusdrop.logging import get_logger

logger = get_logger(__name__)

RetryCallback = Callable[[str], Awaitable[object]]


class RetryTimers:
    """Holds at most one pending retry per job."""

    def __init__(self) -> None:
        self._timers: dict[str, asyncio.Task[None]] = {}

    def __contains__(self, job_id: object) -> bool:
        task = self._timers.get(job_id)  # type: ignore[arg-type]
        return bool(task and not task.done())

    def __len__(self) -> int:
        return sum(1 for task in self._timers.values() if not task.done())

    def schedule(self, job_id: str, delay: float, callback: RetryCallback) -> None:
        """Run ``callback(job_id)`` after ``delay`` seconds, replacing any pending timer."""

        self.cancel(job_id)
        task = asyncio.create_task(
            self._fire(job_id, max(0.0, delay), callback), name=f"retry:{job_id}"
        )
        self._timers[job_id] = task

    def cancel(self, job_id: str) -> bool:
        task = self._timers.pop(job_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cancel_all(self) -> int:
        cancelled = 0
        for job_id in list(self._timers):
            if self.cancel(job_id):
                cancelled += 1
        return cancelled

    async def _fire(self, job_id: str, delay: float, callback: RetryCallback) -> None:
        await asyncio.sleep(delay)
        if self._timers.get(job_id) is asyncio.current_task():
            del self._timers[job_id]
        try:
            await callback(job_id)
        except Exception:
            logger.exception(
                "Scheduled retry failed",
                extra={"event": "download.retry_failed", "job_id": job_id},
            )


__all__ = ["RetryCallback", "RetryTimers"]
