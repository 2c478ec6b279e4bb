"""Data models and lifecycle rules for download jobs."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class JobState(str, Enum):
    """Lifecycle states for a download job."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    ERROR = "error"


_ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.DOWNLOADING}),
    JobState.DOWNLOADING: frozenset({JobState.COMPLETED, JobState.ERROR}),
    JobState.ERROR: frozenset({JobState.DOWNLOADING}),
    JobState.COMPLETED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised when a job is asked to move along an edge the state machine lacks."""

    def __init__(self, job_id: str, current: JobState, target: JobState) -> None:
        super().__init__(f"job {job_id}: {current.value} -> {target.value} is not allowed")
        self.job_id = job_id
        self.current = current
        self.target = target


def can_transition(current: JobState, target: JobState) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


@dataclass(slots=True)
class TransportTelemetry:
    """Swarm statistics reported alongside progress for peer transport jobs."""

    peers: int = 0
    ratio: float = 0.0
    uploaded: int = 0
    upload_speed: int = 0
    time_remaining_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "peers": self.peers,
            "ratio": self.ratio,
            "uploaded": self.uploaded,
            "uploadSpeed": self.upload_speed,
            "timeRemaining": self.time_remaining_ms,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> TransportTelemetry:
        remaining = payload.get("timeRemaining")
        return cls(
            peers=int(payload.get("peers") or 0),
            ratio=float(payload.get("ratio") or 0.0),
            uploaded=int(payload.get("uploaded") or 0),
            upload_speed=int(payload.get("uploadSpeed") or 0),
            time_remaining_ms=int(remaining) if remaining is not None else None,
        )


@dataclass(slots=True, frozen=True)
class ProgressUpdate:
    """A progress sample emitted by a backend while a fetch is running."""

    downloaded_bytes: int
    progress_percent: int
    speed_bytes_per_sec: int
    telemetry: TransportTelemetry | None = None


def percent_of(done: int, total: int | None) -> int:
    if not total or total <= 0:
        return 0
    return max(0, min(100, round(done * 100 / total)))


@dataclass(slots=True)
class Job:
    """One requested file acquisition and its mutable lifecycle state."""

    id: str
    source_url: str
    filename: str
    original_filename: str
    is_peer_transport: bool
    owner_token: str
    created_at: int
    expires_at: int
    effective_url: str | None = None
    resource_id: str | None = None
    download_url: str | None = None
    state: JobState = JobState.PENDING
    progress_percent: int = 0
    downloaded_bytes: int = 0
    speed_bytes_per_sec: int = 0
    transport_telemetry: TransportTelemetry | None = None
    started_at: int | None = None
    completed_at: int | None = None
    error: str | None = None
    retry_count: int = 0
    # Bumped on every fetch attempt; results from older attempts are discarded.
    attempt: int = field(default=0, compare=False)

    def transition(self, target: JobState) -> None:
        if not can_transition(self.state, target):
            raise InvalidTransitionError(self.id, self.state, target)
        self.state = target

    def begin_attempt(self, *, now: int, resumed_bytes: int = 0) -> int:
        """Enter DOWNLOADING for a fresh attempt and return its generation."""

        self.transition(JobState.DOWNLOADING)
        self.attempt += 1
        self.started_at = now
        self.completed_at = None
        self.downloaded_bytes = max(0, int(resumed_bytes))
        self.progress_percent = 0
        self.speed_bytes_per_sec = 0
        self.transport_telemetry = None
        return self.attempt

    def apply_progress(self, update: ProgressUpdate) -> None:
        if self.state is not JobState.DOWNLOADING:
            return
        self.downloaded_bytes = max(0, int(update.downloaded_bytes))
        percent = max(0, min(100, int(update.progress_percent)))
        self.progress_percent = max(self.progress_percent, percent)
        self.speed_bytes_per_sec = max(0, int(update.speed_bytes_per_sec))
        if update.telemetry is not None:
            self.transport_telemetry = update.telemetry

    def mark_completed(self, *, now: int) -> None:
        self.transition(JobState.COMPLETED)
        self.completed_at = now
        self.error = None
        self.progress_percent = 100
        self.speed_bytes_per_sec = 0

    def mark_failed(self, message: str) -> None:
        self.transition(JobState.ERROR)
        self.error = message or "Download failed"
        self.speed_bytes_per_sec = 0

    def is_expired(self, now: int) -> bool:
        return self.expires_at <= now

    def to_dict(self, *, include_owner_token: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "sourceUrl": self.source_url,
            "effectiveUrl": self.effective_url,
            "filename": self.filename,
            "originalFilename": self.original_filename,
            "isPeerTransport": self.is_peer_transport,
            "resourceId": self.resource_id,
            "downloadUrl": self.download_url,
            "state": self.state.value,
            "progressPercent": self.progress_percent,
            "downloadedBytes": self.downloaded_bytes,
            "speedBytesPerSec": self.speed_bytes_per_sec,
            "transportTelemetry": (
                self.transport_telemetry.to_dict() if self.transport_telemetry else None
            ),
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "expiresAt": self.expires_at,
            "error": self.error,
            "retryCount": self.retry_count,
        }
        if include_owner_token:
            payload["ownerToken"] = self.owner_token
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Job:
        telemetry_raw = payload.get("transportTelemetry")
        telemetry = (
            TransportTelemetry.from_dict(telemetry_raw)
            if isinstance(telemetry_raw, Mapping)
            else None
        )
        return cls(
            id=str(payload["id"]),
            source_url=str(payload["sourceUrl"]),
            filename=str(payload["filename"]),
            original_filename=str(payload.get("originalFilename") or payload["filename"]),
            is_peer_transport=bool(payload.get("isPeerTransport", False)),
            owner_token=str(payload["ownerToken"]),
            created_at=int(payload["createdAt"]),
            expires_at=int(payload["expiresAt"]),
            effective_url=_optional_str(payload.get("effectiveUrl")),
            resource_id=_optional_str(payload.get("resourceId")),
            download_url=_optional_str(payload.get("downloadUrl")),
            state=JobState(str(payload.get("state", JobState.PENDING.value))),
            progress_percent=int(payload.get("progressPercent") or 0),
            downloaded_bytes=int(payload.get("downloadedBytes") or 0),
            speed_bytes_per_sec=int(payload.get("speedBytesPerSec") or 0),
            transport_telemetry=telemetry,
            started_at=_optional_int(payload.get("startedAt")),
            completed_at=_optional_int(payload.get("completedAt")),
            error=_optional_str(payload.get("error")),
            retry_count=int(payload.get("retryCount") or 0),
        )


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(value)


@dataclass(slots=True, frozen=True)
class StorageLayout:
    """Maps jobs onto one of the two artifact roots and their public prefixes."""

    http_dir: Path
    swarm_dir: Path
    http_prefix: str = "/downloads/"
    swarm_prefix: str = "/torrents/"

    STAGING_DIRNAME = ".partial"

    def root_for(self, is_peer_transport: bool) -> Path:
        return self.swarm_dir if is_peer_transport else self.http_dir

    def path_for(self, job: Job) -> Path:
        return self.root_for(job.is_peer_transport) / job.filename

    def public_url(self, filename: str, *, is_peer_transport: bool) -> str:
        prefix = self.swarm_prefix if is_peer_transport else self.http_prefix
        return prefix + filename

    def staging_root(self) -> Path:
        return self.swarm_dir / self.STAGING_DIRNAME

    def staging_dir_for(self, job_id: str) -> Path:
        return self.staging_root() / job_id

    def ensure_directories(self) -> None:
        self.http_dir.mkdir(parents=True, exist_ok=True)
        self.swarm_dir.mkdir(parents=True, exist_ok=True)


__all__ = [
    "InvalidTransitionError",
    "Job",
    "JobState",
    "ProgressUpdate",
    "StorageLayout",
    "TransportTelemetry",
    "can_transition",
    "percent_of",
]
