"""Mirror rewriting, filename detection and magnet parsing."""

from __future__ import annotations

from dataclasses import dataclass
import mimetypes
import posixpath
import re
from urllib.parse import parse_qs, unquote, urlsplit

import httpx

from nexusdrop.config import FetchConfig
from nexusdrop.logging import get_logger

from .naming import DEFAULT_ORIGINAL_NAME

logger = get_logger(__name__)

MAGNET_PREFIX = "magnet:"

_MIME_EXTENSIONS: dict[str, str] = {
    "application/pdf": ".pdf",
    "application/zip": ".zip",
    "application/x-rar-compressed": ".rar",
    "application/vnd.rar": ".rar",
    "application/x-7z-compressed": ".7z",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "audio/mpeg": ".mp3",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "text/plain": ".txt",
}

_DISPOSITION_EXTENDED = re.compile(r"filename\*\s*=\s*([^']*)'[^']*'([^;]+)", re.IGNORECASE)
_DISPOSITION_QUOTED = re.compile(r'filename\s*=\s*"((?:[^"\\]|\\.)*)"', re.IGNORECASE)
_DISPOSITION_PLAIN = re.compile(r"filename\s*=\s*([^;\s]+)", re.IGNORECASE)
_HAS_EXTENSION = re.compile(r"\.[A-Za-z0-9]{1,10}$")


@dataclass(slots=True, frozen=True)
class FileInfo:
    filename: str
    content_type: str | None = None
    content_length: int | None = None


def is_magnet(url: str) -> bool:
    return url.strip().lower().startswith(MAGNET_PREFIX)


def parse_magnet(uri: str) -> tuple[str, str]:
    """Return ``(resource_id, display_name)`` for a magnet URI.

    The resource id is the lower-cased BitTorrent info-hash when present and
    the full URI otherwise, so two spellings of one magnet still collide.
    """

    _, _, query = uri.partition("?")
    params = parse_qs(query, keep_blank_values=False)
    resource_id = uri.strip()
    for topic in params.get("xt", []):
        if topic.lower().startswith("urn:btih:"):
            resource_id = topic[len("urn:btih:"):].strip().lower()
            break
    names = [name.strip() for name in params.get("dn", []) if name.strip()]
    return resource_id, names[0] if names else DEFAULT_ORIGINAL_NAME


def extension_for(content_type: str | None) -> str | None:
    if not content_type:
        return None
    mime = content_type.split(";", 1)[0].strip().lower()
    if not mime:
        return None
    return _MIME_EXTENSIONS.get(mime) or mimetypes.guess_extension(mime)


def filename_from_disposition(header: str | None) -> str | None:
    if not header:
        return None
    match = _DISPOSITION_EXTENDED.search(header)
    if match:
        encoding = match.group(1).strip() or "utf-8"
        try:
            value = unquote(match.group(2).strip().strip('"'), encoding=encoding)
        except LookupError:
            value = unquote(match.group(2).strip().strip('"'))
        if value:
            return value
    match = _DISPOSITION_QUOTED.search(header)
    if match and match.group(1):
        return match.group(1).replace('\\"', '"')
    match = _DISPOSITION_PLAIN.search(header)
    if match and match.group(1):
        return match.group(1).strip("'\"")
    return None


def filename_from_url(url: str) -> str | None:
    try:
        path = urlsplit(url).path
    except ValueError:
        path = url.split("?", 1)[0].split("#", 1)[0]
        if "//" in path:
            path = path.split("//", 1)[1].partition("/")[2]
    name = unquote(posixpath.basename(path.rstrip("/") if path != "/" else ""))
    return name or None


class MirrorResolver:
    """Rewrites source URLs onto the download mirror and probes file metadata."""

    def __init__(self, config: FetchConfig, client: httpx.AsyncClient) -> None:
        self._config = config
        self._client = client

    @property
    def mirror_host(self) -> str:
        return self._config.mirror_host

    def resolve_fetch_url(self, source_url: str) -> str:
        """Return ``scheme://mirror/<host><path><query>`` or ``source_url`` unchanged."""

        mirror = self._config.mirror_host
        if not mirror or mirror in source_url:
            return source_url
        try:
            parts = urlsplit(source_url)
            host = parts.hostname
            port = parts.port
        except ValueError:
            return source_url
        if parts.scheme not in {"http", "https"} or not host:
            return source_url
        authority = f"{host}:{port}" if port else host
        path = parts.path or "/"
        query = f"?{parts.query}" if parts.query else ""
        return f"{self._config.mirror_scheme}://{mirror}/{authority}{path}{query}"

    async def detect_filename(self, url: str) -> FileInfo:
        """Probe ``url`` with HEAD and derive a filename; never raises."""

        fallback = filename_from_url(url) or DEFAULT_ORIGINAL_NAME
        try:
            response = await self._client.head(
                url, follow_redirects=True, timeout=self._config.timeout_seconds
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.info(
                "Metadata probe failed",
                extra={"event": "resolver.probe_failed", "url": url, "error": str(exc)},
            )
            return FileInfo(filename=fallback)

        if response.is_error:
            logger.info(
                "Metadata probe rejected",
                extra={
                    "event": "resolver.probe_failed",
                    "url": url,
                    "status": response.status_code,
                },
            )
            return FileInfo(filename=fallback)

        content_type = response.headers.get("content-type")
        content_length = _parse_length(response.headers.get("content-length"))
        filename = filename_from_disposition(response.headers.get("content-disposition"))
        if not filename:
            filename = fallback
        if not _HAS_EXTENSION.search(filename):
            extension = extension_for(content_type)
            if extension:
                filename += extension
        return FileInfo(
            filename=filename, content_type=content_type, content_length=content_length
        )


def _parse_length(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        length = int(value)
    except ValueError:
        return None
    return length if length >= 0 else None


__all__ = [
    "FileInfo",
    "MAGNET_PREFIX",
    "MirrorResolver",
    "extension_for",
    "filename_from_disposition",
    "filename_from_url",
    "is_magnet",
    "parse_magnet",
]
