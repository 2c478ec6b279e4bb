"""Entry point for the NexusDrop FastAPI application."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import PurePath

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException
from starlette.responses import Response
from starlette.types import Scope

from nexusdrop import __version__
from nexusdrop.config import AppConfig, load_config
from nexusdrop.downloads.runtime import DownloadRuntime, build_download_runtime
from nexusdrop.logging import get_logger
from nexusdrop.middleware import install_middleware
from nexusdrop.routers import download_router, upload_router

logger = get_logger(__name__)
_LIVE_HEALTH_PATH = "/live"


class ArtifactFiles(StaticFiles):
    """Static artifact mount that hides dot-prefixed entries such as the staging tree."""

    async def get_response(self, path: str, scope: Scope) -> Response:
        if any(part.startswith(".") for part in PurePath(path).parts):
            raise HTTPException(status_code=404)
        return await super().get_response(path, scope)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    runtime: DownloadRuntime = app.state.runtime
    await runtime.start()
    logger.info("NexusDrop application started", extra={"event": "app.started"})
    try:
        yield
    finally:
        await runtime.stop()
        logger.info("NexusDrop application stopped", extra={"event": "app.stopped"})


def _mount_storage(app: FastAPI, runtime: DownloadRuntime) -> None:
    layout = runtime.layout
    mounts = (
        (layout.http_prefix, layout.http_dir, "http-artifacts"),
        (layout.swarm_prefix, layout.swarm_dir, "swarm-artifacts"),
    )
    for prefix, directory, name in mounts:
        app.mount(
            prefix.rstrip("/"),
            ArtifactFiles(directory=directory, check_dir=False),
            name=name,
        )


def create_app(
    config: AppConfig | None = None,
    *,
    runtime: DownloadRuntime | None = None,
) -> FastAPI:
    """Build the application; tests inject a runtime with fake transports."""

    if runtime is None:
        runtime = build_download_runtime(config or load_config())
    app = FastAPI(title="NexusDrop", version=__version__, lifespan=lifespan)
    app.state.config = runtime.config
    app.state.runtime = runtime

    install_middleware(app)
    app.include_router(download_router)
    app.include_router(upload_router)

    @app.get(_LIVE_HEALTH_PATH, tags=["System"])
    async def live() -> dict[str, str]:
        return {"status": "ok"}

    _mount_storage(app, runtime)
    return app


__all__ = ["create_app", "lifespan"]
