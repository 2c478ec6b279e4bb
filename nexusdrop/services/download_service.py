"""Service layer translating API calls into orchestrator operations."""

from __future__ import annotations

import hmac
import math
from pathlib import PurePath
from typing import Any

from nexusdrop.downloads.backends.base import SwarmError
from nexusdrop.downloads.backends.swarm import ResourceDescription, SwarmBackend
from nexusdrop.downloads.models import InvalidTransitionError, Job, JobState
from nexusdrop.downloads.orchestrator import DownloadOrchestrator
from nexusdrop.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationAppError,
)
from nexusdrop.logging import get_logger

logger = get_logger(__name__)

NOT_FOUND_MESSAGE = "Download not found"
DESCRIPTOR_SUFFIX = ".torrent"
MAX_DESCRIPTOR_BYTES = 10 * 1024 * 1024


class DownloadService:
    """Validates requests, enforces owner tokens and maps core errors onto API errors."""

    def __init__(
        self,
        orchestrator: DownloadOrchestrator,
        swarm_backend: SwarmBackend,
        *,
        default_ttl_hours: float,
    ) -> None:
        self._orchestrator = orchestrator
        self._swarm = swarm_backend
        self._default_ttl_hours = default_ttl_hours

    async def create(self, url: str | None, hours: float | None) -> Job:
        source = (url or "").strip()
        if not source:
            raise ValidationAppError("URL is required")
        ttl = self._default_ttl_hours if hours is None else float(hours)
        if not (math.isfinite(ttl) and ttl > 0):
            raise ValidationAppError(
                "hours must be a positive number", meta={"field": "hours"}
            )
        return await self._orchestrator.create_download(source, ttl_hours=ttl)

    def list_public(self) -> dict[str, dict[str, Any]]:
        return {job.id: job.to_dict() for job in self._orchestrator.registry.values()}

    def get_public(self, job_id: str) -> dict[str, Any]:
        return self._require(job_id).to_dict()

    async def delete(self, job_id: str, owner_id: str | None) -> None:
        self._authorize(self._require(job_id), owner_id)
        removed = await self._orchestrator.remove_job(job_id, reason="owner_delete")
        if removed is None:
            raise NotFoundError(NOT_FOUND_MESSAGE)

    async def retry(self, job_id: str, owner_id: str | None) -> Job:
        job = self._require(job_id)
        self._authorize(job, owner_id)
        if job.state is not JobState.ERROR:
            raise ConflictError(
                "Only failed downloads can be retried",
                meta={"state": job.state.value},
            )
        try:
            return await self._orchestrator.retry_download(job_id)
        except LookupError as exc:
            raise NotFoundError(NOT_FOUND_MESSAGE) from exc
        except InvalidTransitionError as exc:
            raise ConflictError(
                "Only failed downloads can be retried",
                meta={"state": exc.current.value},
            ) from exc

    def describe_upload(self, filename: str | None, payload: bytes) -> ResourceDescription:
        name = PurePath(filename or "").name
        if not name.lower().endswith(DESCRIPTOR_SUFFIX):
            raise ValidationAppError("Only .torrent files are allowed")
        if not payload:
            raise ValidationAppError("Uploaded file is empty")
        if len(payload) > MAX_DESCRIPTOR_BYTES:
            raise ValidationAppError("Uploaded file is too large")
        try:
            description = self._swarm.describe_resource(payload)
        except SwarmError as exc:
            raise ValidationAppError(str(exc)) from exc
        logger.info(
            "Descriptor converted",
            extra={
                "event": "upload.described",
                "resource_id": description.resource_id,
                "files": len(description.files),
            },
        )
        return description

    def _require(self, job_id: str) -> Job:
        job = self._orchestrator.registry.get(job_id)
        if job is None:
            raise NotFoundError(NOT_FOUND_MESSAGE)
        return job

    @staticmethod
    def _authorize(job: Job, owner_id: str | None) -> None:
        if not owner_id or not hmac.compare_digest(
            owner_id.encode("utf-8"), job.owner_token.encode("utf-8")
        ):
            raise ForbiddenError()


__all__ = ["DownloadService"]
