"""Uniform transport contract shared by the HTTP and swarm backends."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from ..models import Job, ProgressUpdate

ProgressCallback = Callable[[ProgressUpdate], None]


class DownloadBackend(Protocol):
    """A transport that writes one job's artifact to disk."""

    def claim(self, job: Job) -> None:
        """Reserve transport resources for the job's current attempt.

        Runs synchronously before the fetch task is spawned and raises
        :class:`DuplicateActiveResourceError` when another job holds them.
        """

    def release(self, job_id: str, attempt: int) -> None:
        """Drop a claim made by ``claim`` unless a newer attempt replaced it."""

    def resume_offset(self, job: Job) -> int:
        """Return the number of artifact bytes already on disk."""

    async def start_download(self, job: Job, on_progress: ProgressCallback) -> None:
        """Fetch the artifact, reporting progress, and return once it is complete."""


class FetchError(RuntimeError):
    """Base error raised when a backend fetch failed."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class TransientFetchError(FetchError):
    """Network or stream failure that is expected to clear up on retry."""


class DuplicateActiveResourceError(FetchError):
    """Raised when another job is already fetching the same swarm resource."""

    def __init__(self, resource_id: str, *, holder: str | None = None) -> None:
        super().__init__(
            "A torrent with the same id is already being downloaded", retryable=False
        )
        self.resource_id = resource_id
        self.holder = holder


class SwarmError(FetchError):
    """Raised when the swarm client reported an error for a resource."""


__all__ = [
    "DownloadBackend",
    "DuplicateActiveResourceError",
    "FetchError",
    "ProgressCallback",
    "SwarmError",
    "TransientFetchError",
]
