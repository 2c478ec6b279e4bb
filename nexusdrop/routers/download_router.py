"""Download management endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends

from nexusdrop.dependencies import get_download_service
from nexusdrop.logging import get_logger
from nexusdrop.logging_events import log_event
from nexusdrop.schemas import (
    CreateDownloadRequest,
    CreateDownloadResponse,
    JobRecord,
    MessageResponse,
    OwnerRequest,
    RetryResponse,
)
from nexusdrop.services.download_service import DownloadService

router = APIRouter(prefix="/api", tags=["Download"])
logger = get_logger("downloads.router")


@router.post("/download", response_model=CreateDownloadResponse)
async def create_download(
    payload: CreateDownloadRequest | None = Body(default=None),
    service: DownloadService = Depends(get_download_service),
) -> CreateDownloadResponse:
    """Register a download and start fetching it in the background."""

    if payload is None:
        payload = CreateDownloadRequest()
    log_event(
        logger,
        "api.download.create",
        component="router.download",
        status="requested",
        entity_id=None,
        hours=payload.hours,
    )
    job = await service.create(payload.url, payload.hours)
    return CreateDownloadResponse(id=job.id, owner_id=job.owner_token, expires_at=job.expires_at)


@router.get("/downloads", response_model=dict[str, JobRecord])
def list_downloads(
    service: DownloadService = Depends(get_download_service),
) -> dict[str, JobRecord]:
    """Return every known job keyed by id."""

    return {
        job_id: JobRecord.model_validate(record)
        for job_id, record in service.list_public().items()
    }


@router.get("/downloads/{download_id}", response_model=JobRecord)
def get_download(
    download_id: str,
    service: DownloadService = Depends(get_download_service),
) -> JobRecord:
    log_event(
        logger,
        "api.download.detail",
        component="router.download",
        status="requested",
        entity_id=download_id,
    )
    return JobRecord.model_validate(service.get_public(download_id))


@router.delete("/downloads/{download_id}", response_model=MessageResponse)
async def delete_download(
    download_id: str,
    payload: OwnerRequest | None = Body(default=None),
    service: DownloadService = Depends(get_download_service),
) -> MessageResponse:
    """Delete a job and its artifact; requires the owner token."""

    log_event(
        logger,
        "api.download.delete",
        component="router.download",
        status="requested",
        entity_id=download_id,
    )
    await service.delete(download_id, payload.owner_id if payload else None)
    return MessageResponse(message="Download deleted successfully")


@router.post("/download/{download_id}/retry", response_model=RetryResponse)
async def retry_download(
    download_id: str,
    payload: OwnerRequest | None = Body(default=None),
    service: DownloadService = Depends(get_download_service),
) -> RetryResponse:
    """Restart a failed job with a fresh retry budget."""

    log_event(
        logger,
        "api.download.retry",
        component="router.download",
        status="requested",
        entity_id=download_id,
    )
    job = await service.retry(download_id, payload.owner_id if payload else None)
    return RetryResponse(message="Download retry initiated", expires_at=job.expires_at)


__all__ = ["router"]
