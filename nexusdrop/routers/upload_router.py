"""Descriptor upload endpoint converting .torrent files into magnet URIs."""

from __future__ import annotations

from fastapi import APIRouter, Depends, File, UploadFile

from nexusdrop.dependencies import get_download_service
from nexusdrop.logging import get_logger
from nexusdrop.logging_events import log_event
from nexusdrop.schemas import ResourceFileRecord, UploadResourceResponse
from nexusdrop.services.download_service import DownloadService

router = APIRouter(prefix="/api", tags=["Upload"])
logger = get_logger("uploads.router")


@router.post("/upload/resource", response_model=UploadResourceResponse)
async def upload_resource(
    file: UploadFile = File(...),
    service: DownloadService = Depends(get_download_service),
) -> UploadResourceResponse:
    log_event(
        logger,
        "api.upload.resource",
        component="router.upload",
        status="requested",
        entity_id=None,
        upload_name=file.filename,
    )
    payload = await file.read()
    description = service.describe_upload(file.filename, payload)
    return UploadResourceResponse(
        resource_uri=description.resource_uri,
        resource_id=description.resource_id,
        name=description.name,
        files=[ResourceFileRecord(name=item.path, size=item.size) for item in description.files],
    )


__all__ = ["router"]
