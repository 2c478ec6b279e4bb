"""Application middleware registration helpers."""

from __future__ import annotations

from fastapi import FastAPI

from .errors import setup_exception_handlers
from .request_id import RequestIDMiddleware


def install_middleware(app: FastAPI, *, request_id_header: str = "X-Request-ID") -> None:
    """Install the middleware stack and exception handlers on *app*."""

    app.add_middleware(RequestIDMiddleware, header_name=request_id_header)
    setup_exception_handlers(app)


__all__ = ["install_middleware"]
