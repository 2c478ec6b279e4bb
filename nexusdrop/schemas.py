"""Pydantic schemas for request and response bodies."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateDownloadRequest(CamelModel):
    url: str | None = None
    hours: float | None = Field(default=None, description="Time to live in hours.")


class OwnerRequest(CamelModel):
    owner_id: str | None = None


class CreateDownloadResponse(CamelModel):
    id: str
    owner_id: str
    expires_at: int


class MessageResponse(CamelModel):
    message: str


class RetryResponse(CamelModel):
    message: str
    expires_at: int


class TransportTelemetryRecord(CamelModel):
    peers: int = 0
    ratio: float = 0.0
    uploaded: int = 0
    upload_speed: int = 0
    time_remaining: int | None = None


class JobRecord(CamelModel):
    """Public view of a job; the owner token is never part of it."""

    id: str
    source_url: str
    effective_url: str | None = None
    filename: str
    original_filename: str
    is_peer_transport: bool
    resource_id: str | None = None
    download_url: str | None = None
    state: Literal["pending", "downloading", "completed", "error"]
    progress_percent: int
    downloaded_bytes: int
    speed_bytes_per_sec: int
    transport_telemetry: TransportTelemetryRecord | None = None
    created_at: int
    started_at: int | None = None
    completed_at: int | None = None
    expires_at: int
    error: str | None = None
    retry_count: int


class ResourceFileRecord(CamelModel):
    name: str
    size: int


class UploadResourceResponse(CamelModel):
    resource_uri: str
    resource_id: str
    name: str
    files: list[ResourceFileRecord] = Field(default_factory=list)


__all__ = [
    "CreateDownloadRequest",
    "CreateDownloadResponse",
    "JobRecord",
    "MessageResponse",
    "OwnerRequest",
    "ResourceFileRecord",
    "RetryResponse",
    "TransportTelemetryRecord",
    "UploadResourceResponse",
]
