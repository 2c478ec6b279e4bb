"""FastAPI dependency providers."""

from __future__ import annotations

from fastapi import Request

from nexusdrop.downloads.runtime import DownloadRuntime
from nexusdrop.errors import InternalServerError
from nexusdrop.services.download_service import DownloadService


def get_runtime(request: Request) -> DownloadRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if not isinstance(runtime, DownloadRuntime):
        raise InternalServerError("Download runtime is not initialised.")
    return runtime


def get_download_service(request: Request) -> DownloadService:
    service = getattr(request.app.state, "download_service", None)
    if isinstance(service, DownloadService):
        return service
    runtime = get_runtime(request)
    service = DownloadService(
        runtime.orchestrator,
        runtime.swarm_backend,
        default_ttl_hours=runtime.config.default_ttl_hours,
    )
    request.app.state.download_service = service
    return service


__all__ = ["get_download_service", "get_runtime"]
