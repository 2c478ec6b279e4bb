"""Background task that invokes a coroutine on a fixed cadence."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import contextlib

from nexusdrop.logging import get_logger

logger = get_logger(__name__)


class PeriodicTask:
    """Run ``action`` every ``interval`` seconds until stopped.

    A failing tick is logged and the loop carries on with the next one. With
    ``run_immediately`` the first tick fires as soon as the task starts.
    """

    def __init__(
        self,
        name: str,
        action: Callable[[], Awaitable[object]],
        *,
        interval: float,
        run_immediately: bool = False,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._name = name
        self._action = action
        self._interval = float(interval)
        self._run_immediately = run_immediately
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def is_running(self) -> bool:
        task = self._task
        return bool(task and not task.done())

    def start(self) -> bool:
        if self.is_running:
            return False
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=self._name)
        logger.debug(
            "Periodic task started",
            extra={"event": "periodic.started", "task": self._name, "interval": self._interval},
        )
        return True

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        self._stopping.set()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._task = None

    async def run_once(self) -> None:
        try:
            await self._action()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Periodic task tick failed",
                extra={"event": "periodic.tick_failed", "task": self._name},
            )

    async def _run(self) -> None:
        if self._run_immediately:
            await self.run_once()
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                await self.run_once()


__all__ = ["PeriodicTask"]
