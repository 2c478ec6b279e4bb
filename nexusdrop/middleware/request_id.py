"""Middleware for generating and propagating request identifiers."""

from __future__ import annotations

from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

_MAX_INCOMING_LENGTH = 128


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request identifier to ``request.state`` and the response."""

    def __init__(self, app: ASGIApp, *, header_name: str = "X-Request-ID") -> None:
        super().__init__(app)
        self._header_name = header_name

    async def dispatch(  # type: ignore[override]
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        incoming = request.headers.get(self._header_name, "").strip()
        if len(incoming) > _MAX_INCOMING_LENGTH:
            incoming = ""
        request_id = incoming or uuid4().hex
        request.state.request_id = request_id

        response = await call_next(request)
        if self._header_name not in response.headers:
            response.headers[self._header_name] = request_id
        return response


__all__ = ["RequestIDMiddleware"]
