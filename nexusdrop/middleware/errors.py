"""Global exception handling for the public API."""

from __future__ import annotations

from typing import Any, Mapping

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from nexusdrop.errors import AppError, ErrorCode, InternalServerError, to_response
from nexusdrop.logging import get_logger

_logger = get_logger(__name__)

_UNPROCESSABLE = 422


def _format_validation_field(raw_loc: list[Any]) -> str:
    location: list[str] = [str(part) for part in raw_loc]
    if location and location[0] in {"body", "query", "path", "header", "cookie"}:
        location = location[1:]
    return ".".join(location) if location else ""


def _extract_detail_message(detail: Any, default: str) -> str:
    if isinstance(detail, str) and detail.strip():
        return detail
    if isinstance(detail, Mapping):
        for key in ("message", "detail", "error"):
            candidate = detail.get(key)
            if isinstance(candidate, str) and candidate.strip():
                return candidate
    return default


def _code_for_status(status_code: int) -> tuple[ErrorCode, str]:
    if status_code == status.HTTP_404_NOT_FOUND:
        return ErrorCode.NOT_FOUND, "Resource not found."
    if status_code == status.HTTP_403_FORBIDDEN:
        return ErrorCode.FORBIDDEN, "Forbidden."
    if status_code == status.HTTP_409_CONFLICT:
        return ErrorCode.CONFLICT, "Request conflicts with the current state."
    if status_code >= 500:
        return ErrorCode.INTERNAL_ERROR, "An unexpected error occurred."
    return ErrorCode.VALIDATION_ERROR, "Request could not be completed."


async def _handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields: list[dict[str, str]] = []
    for error in exc.errors():
        raw_loc = error.get("loc", [])
        components = list(raw_loc) if isinstance(raw_loc, (list, tuple)) else [raw_loc]
        location = _format_validation_field(components)
        message = error.get("msg", "Invalid input.")
        fields.append({"name": location or "?", "message": str(message)})
    meta = {"fields": fields} if fields else None
    return to_response(
        message="Request validation failed.",
        code=ErrorCode.VALIDATION_ERROR,
        status_code=_UNPROCESSABLE,
        request_path=request.url.path,
        method=request.method,
        meta=meta,
    )


async def _handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    status_code = exc.status_code or status.HTTP_500_INTERNAL_SERVER_ERROR
    code, default_message = _code_for_status(status_code)
    return to_response(
        message=_extract_detail_message(exc.detail, default_message),
        code=code,
        status_code=status_code,
        request_path=request.url.path,
        method=request.method,
        headers=dict(exc.headers or {}) or None,
    )


async def _handle_app_error(request: Request, exc: AppError) -> JSONResponse:
    return exc.as_response(request_path=request.url.path, method=request.method)


async def _handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    _logger.exception("Unhandled application error", exc_info=exc)
    error = InternalServerError()
    return error.as_response(request_path=request.url.path, method=request.method)


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the canonical exception handlers for the API."""

    app.add_exception_handler(RequestValidationError, _handle_request_validation)
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)
    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(Exception, _handle_unexpected_error)


__all__ = ["setup_exception_handlers"]
