"""In-memory job registry with JSON snapshot persistence."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
import json
import os
from pathlib import Path
from typing import Any

from nexusdrop.logging import get_logger

from .models import Job

logger = get_logger(__name__)


class JobRegistry:
    """Single source of truth for every known job.

    Mutations happen in memory; :meth:`save` overwrites the snapshot file
    wholesale. Callers that read-modify-write a job must hold
    :meth:`lock_for` for its id.
    """

    def __init__(self, snapshot_path: Path) -> None:
        self._path = snapshot_path
        self._jobs: dict[str, Job] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._save_lock = asyncio.Lock()

    @property
    def snapshot_path(self) -> Path:
        return self._path

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def __iter__(self) -> Iterator[Job]:
        return iter(list(self._jobs.values()))

    def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def values(self) -> list[Job]:
        return list(self._jobs.values())

    def ids(self) -> list[str]:
        return list(self._jobs)

    def insert(self, job: Job) -> None:
        if job.id in self._jobs:
            raise KeyError(f"job {job.id} already registered")
        self._jobs[job.id] = job

    def remove(self, job_id: str) -> Job | None:
        # Waiters still holding the old lock find the job gone and back off.
        self._locks.pop(job_id, None)
        return self._jobs.pop(job_id, None)

    def lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock
        return lock

    def filenames(self) -> set[str]:
        return {job.filename for job in self._jobs.values()}

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {
            job_id: job.to_dict(include_owner_token=True) for job_id, job in self._jobs.items()
        }

    async def load(self) -> int:
        """Replace the registry contents with the snapshot file, if any."""

        try:
            payload = await asyncio.to_thread(self._read_json, self._path)
        except FileNotFoundError:
            return 0
        except (OSError, ValueError):
            logger.warning(
                "Job snapshot unreadable; starting empty",
                extra={"event": "registry.load_failed", "path": str(self._path)},
                exc_info=True,
            )
            return 0
        if not isinstance(payload, dict):
            logger.warning(
                "Job snapshot has unexpected shape; starting empty",
                extra={"event": "registry.load_failed", "path": str(self._path)},
            )
            return 0

        jobs: dict[str, Job] = {}
        for job_id, record in payload.items():
            if not isinstance(record, dict):
                continue
            try:
                job = Job.from_dict({**record, "id": record.get("id", job_id)})
            except (KeyError, TypeError, ValueError):
                logger.warning(
                    "Skipping malformed job record",
                    extra={"event": "registry.record_skipped", "job_id": str(job_id)},
                )
                continue
            jobs[job.id] = job
        self._jobs = jobs
        logger.info(
            "Job snapshot loaded",
            extra={"event": "registry.loaded", "jobs": len(jobs), "path": str(self._path)},
        )
        return len(jobs)

    async def save(self) -> None:
        payload = self.snapshot()
        async with self._save_lock:
            await asyncio.to_thread(self._write_json, self._path, payload)
        logger.debug(
            "Job snapshot written",
            extra={"event": "registry.saved", "jobs": len(payload)},
        )

    @staticmethod
    def _read_json(path: Path) -> Any:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    @staticmethod
    def _write_json(path: Path, payload: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        tmp.replace(path)


__all__ = ["JobRegistry"]
