"""Download orchestrator driving the job state machine across both transports."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from functools import partial
import math
import shutil

from nexusdrop.config import RetryPolicyConfig
from nexusdrop.logging import get_logger
from nexusdrop.utils.time import now_ms

from .backends.base import DownloadBackend, FetchError
from .backends.http import HttpBackend
from .backends.swarm import SwarmBackend
from .models import InvalidTransitionError, Job, JobState, ProgressUpdate, StorageLayout
from .naming import compose_filename, new_job_id, new_owner_token
from .registry import JobRegistry
from .resolver import MirrorResolver, is_magnet, parse_magnet
from .retry import RetryTimers

logger = get_logger(__name__)

STUCK_MESSAGE = "Download timed out"
_DRAIN_TIMEOUT = 5.0


class DownloadOrchestrator:
    """Creates jobs, runs backend fetches and applies the retry policy.

    Every read-modify-write of a job happens under the registry's per-job
    lock. Each fetch attempt carries a generation number so results from a
    cancelled or superseded attempt are discarded instead of applied.
    """

    def __init__(
        self,
        registry: JobRegistry,
        *,
        http_backend: HttpBackend,
        swarm_backend: SwarmBackend,
        resolver: MirrorResolver,
        layout: StorageLayout,
        policy: RetryPolicyConfig,
        timers: RetryTimers | None = None,
        filename_prefix: str = "NexusDrop",
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._registry = registry
        self._http = http_backend
        self._swarm = swarm_backend
        self._resolver = resolver
        self._layout = layout
        self._policy = policy
        self._timers = timers or RetryTimers()
        self._prefix = filename_prefix
        self._clock = clock
        self._active: dict[str, asyncio.Task[None]] = {}

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    @property
    def layout(self) -> StorageLayout:
        return self._layout

    @property
    def policy(self) -> RetryPolicyConfig:
        return self._policy

    @property
    def timers(self) -> RetryTimers:
        return self._timers

    def is_fetching(self, job_id: str) -> bool:
        task = self._active.get(job_id)
        return bool(task and not task.done())

    def backend_for(self, job: Job) -> DownloadBackend:
        return self._swarm if job.is_peer_transport else self._http

    async def create_download(self, source_url: str, *, ttl_hours: float) -> Job:
        """Register a PENDING job for ``source_url`` and start fetching it."""

        url = (source_url or "").strip()
        if not url:
            raise ValueError("URL is required")
        if not (math.isfinite(ttl_hours) and ttl_hours > 0):
            raise ValueError("hours must be a positive finite number")

        created_at = self._clock()
        job_id = new_job_id()
        while job_id in self._registry:
            job_id = new_job_id()

        peer = is_magnet(url)
        effective_url: str | None = None
        resource_id: str | None = None
        if peer:
            resource_id, original = parse_magnet(url)
        else:
            effective_url = self._resolver.resolve_fetch_url(url)
            info = await self._resolver.detect_filename(effective_url)
            original = info.filename

        filename = compose_filename(original, prefix=self._prefix, is_taken=self._filename_taken)
        job = Job(
            id=job_id,
            source_url=url,
            filename=filename,
            original_filename=original,
            is_peer_transport=peer,
            owner_token=new_owner_token(),
            created_at=created_at,
            expires_at=created_at + int(ttl_hours * 3_600_000),
            effective_url=effective_url,
            resource_id=resource_id,
            download_url=self._layout.public_url(filename, is_peer_transport=peer),
        )
        self._registry.insert(job)
        logger.info(
            "Download created",
            extra={
                "event": "download.created",
                "job_id": job.id,
                "transport": "swarm" if peer else "http",
                "download_filename": filename,
                "expires_at": job.expires_at,
            },
        )
        await self.start_download(job.id)
        return job

    def _filename_taken(self, name: str) -> bool:
        if name in self._registry.filenames():
            return True
        layout = self._layout
        return (layout.http_dir / name).exists() or (layout.swarm_dir / name).exists()

    async def start_download(self, job_id: str, *, manual: bool = False) -> bool:
        """Move a job into DOWNLOADING and spawn its fetch.

        Automatic callers get ``False`` back when the job vanished or is not
        startable. A manual retry resets ``retry_count`` and raises
        :class:`InvalidTransitionError` unless the job is in ERROR.
        """

        async with self._registry.lock_for(job_id):
            job = self._registry.get(job_id)
            if job is None:
                if manual:
                    raise LookupError(job_id)
                return False
            if manual:
                if job.state is not JobState.ERROR:
                    raise InvalidTransitionError(job.id, job.state, JobState.DOWNLOADING)
                job.retry_count = 0
            elif job.state not in (JobState.PENDING, JobState.ERROR):
                logger.debug(
                    "Start skipped; job not startable",
                    extra={"event": "download.start_skipped", "job_id": job_id},
                )
                return False

            self._timers.cancel(job_id)
            backend = self.backend_for(job)
            attempt = job.begin_attempt(
                now=self._clock(), resumed_bytes=backend.resume_offset(job)
            )
            try:
                backend.claim(job)
            except FetchError as exc:
                job.mark_failed(str(exc))
                logger.warning(
                    "Download rejected",
                    extra={
                        "event": "download.rejected",
                        "job_id": job_id,
                        "resource_id": job.resource_id,
                        "error": str(exc),
                    },
                )
                return False

            task = asyncio.create_task(
                self._run_attempt(job, attempt, backend), name=f"download:{job_id}"
            )
            self._active[job_id] = task
            task.add_done_callback(partial(self._attempt_done, job_id, attempt, backend))

        logger.info(
            "Download started",
            extra={
                "event": "download.started",
                "job_id": job_id,
                "attempt": attempt,
                "retry_count": job.retry_count,
                "manual": manual,
            },
        )
        return True

    async def retry_download(self, job_id: str) -> Job:
        await self.start_download(job_id, manual=True)
        job = self._registry.get(job_id)
        if job is None:
            raise LookupError(job_id)
        return job

    async def _run_attempt(self, job: Job, attempt: int, backend: DownloadBackend) -> None:
        job_id = job.id

        def on_progress(update: ProgressUpdate) -> None:
            current = self._registry.get(job_id)
            if current is None or current.attempt != attempt:
                return
            current.apply_progress(update)

        try:
            await backend.start_download(job, on_progress)
        except asyncio.CancelledError:
            raise
        except FetchError as exc:
            await self._record_failure(job_id, attempt, str(exc), retryable=exc.retryable)
        except Exception as exc:
            logger.exception(
                "Backend raised unexpectedly",
                extra={"event": "download.backend_crashed", "job_id": job_id},
            )
            await self._record_failure(
                job_id, attempt, str(exc) or exc.__class__.__name__, retryable=True
            )
        else:
            await self._record_success(job_id, attempt)

    def _attempt_done(
        self,
        job_id: str,
        attempt: int,
        backend: DownloadBackend,
        task: asyncio.Task[None],
    ) -> None:
        backend.release(job_id, attempt)
        if self._active.get(job_id) is task:
            del self._active[job_id]

    def _current_job(self, job_id: str, attempt: int) -> Job | None:
        job = self._registry.get(job_id)
        if job is None or job.attempt != attempt or job.state is not JobState.DOWNLOADING:
            return None
        return job

    async def _record_success(self, job_id: str, attempt: int) -> None:
        async with self._registry.lock_for(job_id):
            job = self._current_job(job_id, attempt)
            if job is None:
                return
            job.mark_completed(now=self._clock())
        logger.info(
            "Download completed",
            extra={
                "event": "download.completed",
                "job_id": job_id,
                "bytes": job.downloaded_bytes,
                "retry_count": job.retry_count,
            },
        )

    async def _record_failure(
        self, job_id: str, attempt: int, message: str, *, retryable: bool
    ) -> None:
        async with self._registry.lock_for(job_id):
            job = self._current_job(job_id, attempt)
            if job is None:
                return
            job.mark_failed(message)
            if retryable:
                job.retry_count += 1
            will_retry = retryable and job.retry_count < self._policy.max_retries
            if will_retry:
                self._timers.schedule(
                    job_id, self._policy.retry_delay_seconds, self._retry_after_failure
                )
        logger.warning(
            "Download failed",
            extra={
                "event": "download.failed",
                "job_id": job_id,
                "error": message,
                "retry_count": job.retry_count,
                "will_retry": will_retry,
            },
        )

    async def _retry_after_failure(self, job_id: str) -> None:
        await self.start_download(job_id)

    async def handle_stuck(self, job_id: str, *, now: int | None = None) -> bool:
        """Fail a DOWNLOADING job that outlived the stuck timeout, restarting it if allowed."""

        current = self._clock() if now is None else now
        async with self._registry.lock_for(job_id):
            job = self._registry.get(job_id)
            if job is None or job.state is not JobState.DOWNLOADING:
                return False
            started = job.started_at if job.started_at is not None else job.created_at
            if current - started <= self._policy.stuck_timeout_ms:
                return False
            # Invalidate the running attempt before cancelling it.
            job.attempt += 1
            task = self._active.pop(job_id, None)
            if task is not None:
                task.cancel()
            job.mark_failed(STUCK_MESSAGE)
            job.retry_count += 1
            restart = job.retry_count < self._policy.max_retries

        logger.warning(
            "Download stuck",
            extra={
                "event": "download.stuck",
                "job_id": job_id,
                "retry_count": job.retry_count,
                "will_retry": restart,
            },
        )
        await _drain(task)
        if restart:
            await self.start_download(job_id)
        return True

    async def remove_job(self, job_id: str, *, reason: str) -> Job | None:
        """Drop a job from the registry and delete its artifact; ``None`` if unknown."""

        async with self._registry.lock_for(job_id):
            job = self._registry.remove(job_id)
            if job is None:
                return None
            self._timers.cancel(job_id)
            task = self._active.pop(job_id, None)
            if task is not None:
                task.cancel()

        await _drain(task)
        await asyncio.to_thread(self._delete_artifacts, job)
        logger.info(
            "Download removed",
            extra={"event": "download.removed", "job_id": job_id, "reason": reason},
        )
        return job

    def _delete_artifacts(self, job: Job) -> None:
        path = self._layout.path_for(job)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning(
                "Failed to delete artifact; registry entry removed anyway",
                extra={
                    "event": "download.artifact_delete_failed",
                    "job_id": job.id,
                    "path": str(path),
                },
                exc_info=True,
            )
        if job.is_peer_transport:
            staging = self._layout.staging_dir_for(job.id)
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

    async def recover_pending(self) -> int:
        """Start every job that a loaded snapshot left in PENDING."""

        started = 0
        for job in self._registry.values():
            if job.state is JobState.PENDING and await self.start_download(job.id):
                started += 1
        if started:
            logger.info(
                "Pending downloads resumed",
                extra={"event": "download.recovered", "jobs": started},
            )
        return started

    async def shutdown(self) -> None:
        self._timers.cancel_all()
        tasks = list(self._active.values())
        self._active.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


async def _drain(task: asyncio.Task[None] | None) -> None:
    if task is None or task.done():
        return
    await asyncio.wait({task}, timeout=_DRAIN_TIMEOUT)


__all__ = ["DownloadOrchestrator", "STUCK_MESSAGE"]
