"""Unified error handling utilities for the NexusDrop API."""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from enum import Enum
import logging
from typing import Any
from uuid import uuid4

from fastapi import status
from fastapi.responses import JSONResponse

from nexusdrop.config import get_env
from nexusdrop.logging import get_logger


class ErrorCode(str, Enum):
    """Application level error codes exposed via the public API."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


_logger = get_logger(__name__)


def _debug_details_enabled() -> bool:
    raw = get_env("ERRORS_DEBUG_DETAILS")
    if raw is None:
        return False
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class AppError(Exception):
    """Base exception for API errors rendered with the standard envelope."""

    __slots__ = ("message", "code", "http_status", "meta", "headers")

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        meta: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status
        self.meta = meta
        self.headers = headers

    def as_response(self, *, request_path: str, method: str) -> JSONResponse:
        """Serialise the exception into the canonical error envelope."""

        return to_response(
            message=self.message,
            code=self.code,
            status_code=self.http_status,
            request_path=request_path,
            method=method,
            meta=self.meta,
            headers=self.headers,
        )


class ValidationAppError(AppError):
    """Error raised when a client submitted invalid input."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code=ErrorCode.VALIDATION_ERROR,
            http_status=status_code,
            meta=meta,
        )


class ForbiddenError(AppError):
    """Error raised when the caller does not hold the job's owner token."""

    def __init__(self, message: str = "Not authorized to modify this download.") -> None:
        super().__init__(
            message=message,
            code=ErrorCode.FORBIDDEN,
            http_status=status.HTTP_403_FORBIDDEN,
        )


class NotFoundError(AppError):
    """Error raised when a resource could not be located."""

    def __init__(self, message: str = "Resource not found.") -> None:
        super().__init__(
            message=message,
            code=ErrorCode.NOT_FOUND,
            http_status=status.HTTP_404_NOT_FOUND,
        )


class ConflictError(AppError):
    """Error raised when the resource is not in a state that allows the operation."""

    def __init__(
        self,
        message: str,
        *,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message=message,
            code=ErrorCode.CONFLICT,
            http_status=status.HTTP_409_CONFLICT,
            meta=meta,
        )


class InternalServerError(AppError):
    """Error raised when the application encountered an unexpected failure."""

    def __init__(self, message: str = "An unexpected error occurred.") -> None:
        super().__init__(
            message=message,
            code=ErrorCode.INTERNAL_ERROR,
            http_status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


def _log_level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code in {status.HTTP_403_FORBIDDEN, status.HTTP_409_CONFLICT}:
        return logging.WARNING
    return logging.INFO


def to_response(
    *,
    message: str,
    code: ErrorCode,
    status_code: int,
    request_path: str,
    method: str,
    meta: Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    """Create an error response with the standard envelope."""

    debug_id = uuid4().hex
    safe_meta = dict(meta) if meta is not None else None
    if _debug_details_enabled():
        if safe_meta is None:
            safe_meta = {}
        safe_meta.setdefault("debug_id", debug_id)

    payload: MutableMapping[str, Any] = {
        "ok": False,
        "error": {"code": code.value, "message": message},
    }
    if safe_meta:
        payload["error"]["meta"] = safe_meta

    response = JSONResponse(status_code=status_code, content=payload)
    response.headers["X-Debug-Id"] = debug_id
    if headers:
        for name, value in headers.items():
            response.headers[name] = value

    _logger.log(
        _log_level_for_status(status_code),
        "API request failed",
        extra={
            "event": "api.error",
            "code": code.value,
            "status": status_code,
            "path": request_path,
            "method": method,
            "debug_id": debug_id,
        },
    )
    return response


__all__ = [
    "AppError",
    "ConflictError",
    "ErrorCode",
    "ForbiddenError",
    "InternalServerError",
    "NotFoundError",
    "ValidationAppError",
    "to_response",
]
