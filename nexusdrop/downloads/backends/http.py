"""Direct HTTP transport with range-based resume."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
import re
from typing import BinaryIO

import httpx

from nexusdrop.config import FetchConfig
from nexusdrop.logging import get_logger
from nexusdrop.utils.time import monotonic_ms

from ..models import Job, ProgressUpdate, StorageLayout, percent_of
from ..resolver import MirrorResolver
from .base import FetchError, ProgressCallback, TransientFetchError

logger = get_logger(__name__)

_CONTENT_RANGE_TOTAL = re.compile(r"bytes\s+\d+-\d+/(\d+)", re.IGNORECASE)


class HttpBackend:
    """Streams a mirror-resolved URL into the HTTP storage root."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        resolver: MirrorResolver,
        layout: StorageLayout,
        config: FetchConfig,
        *,
        clock: Callable[[], int] = monotonic_ms,
    ) -> None:
        self._client = client
        self._resolver = resolver
        self._layout = layout
        self._config = config
        self._clock = clock

    def claim(self, job: Job) -> None:
        return None

    def release(self, job_id: str, attempt: int) -> None:
        return None

    def resume_offset(self, job: Job) -> int:
        return _file_size(self._layout.path_for(job))

    async def start_download(self, job: Job, on_progress: ProgressCallback) -> None:
        url = job.effective_url or self._resolver.resolve_fetch_url(job.source_url)
        path = self._layout.path_for(job)
        offset = await asyncio.to_thread(_file_size, path)
        headers = {"Range": f"bytes={offset}-"} if offset else {}

        try:
            async with self._client.stream(
                "GET",
                url,
                headers=headers,
                follow_redirects=True,
                timeout=self._config.timeout_seconds,
            ) as response:
                if offset and response.status_code == 416:
                    logger.info(
                        "Artifact already complete on disk",
                        extra={"event": "download.http.range_complete", "job_id": job.id},
                    )
                    on_progress(ProgressUpdate(offset, 100, 0))
                    return
                if not response.is_success:
                    raise FetchError(f"Server responded with HTTP {response.status_code}")

                resumed = offset if offset and response.status_code == 206 else 0
                if offset and not resumed:
                    logger.info(
                        "Server ignored range request; restarting from zero",
                        extra={"event": "download.http.range_ignored", "job_id": job.id},
                    )
                total = _expected_total(response, resumed)
                await self._stream_to_file(
                    response,
                    path,
                    resumed=resumed,
                    total=total,
                    on_progress=on_progress,
                )
        except httpx.InvalidURL as exc:
            raise FetchError(f"Invalid download URL: {exc}", retryable=False) from exc
        except httpx.HTTPError as exc:
            raise TransientFetchError(str(exc) or exc.__class__.__name__) from exc

    async def _stream_to_file(
        self,
        response: httpx.Response,
        path: Path,
        *,
        resumed: int,
        total: int | None,
        on_progress: ProgressCallback,
    ) -> None:
        interval = max(1000, self._config.progress_interval_ms)
        downloaded = resumed
        window_start = self._clock()
        window_bytes = 0
        mode = "ab" if resumed else "wb"

        path.parent.mkdir(parents=True, exist_ok=True)
        handle: BinaryIO = await asyncio.to_thread(path.open, mode)
        try:
            async for chunk in response.aiter_bytes(self._config.chunk_bytes):
                if not chunk:
                    continue
                await asyncio.to_thread(handle.write, chunk)
                downloaded += len(chunk)
                window_bytes += len(chunk)
                now = self._clock()
                elapsed = now - window_start
                if elapsed >= interval:
                    speed = int(window_bytes * 1000 / elapsed)
                    on_progress(ProgressUpdate(downloaded, percent_of(downloaded, total), speed))
                    window_start = now
                    window_bytes = 0
            await asyncio.to_thread(handle.flush)
        finally:
            await asyncio.to_thread(handle.close)

        if total is not None and downloaded < total:
            raise TransientFetchError(
                f"Stream ended after {downloaded} of {total} bytes"
            )
        final_percent = percent_of(downloaded, total) if total else 100
        on_progress(ProgressUpdate(downloaded, final_percent, 0))


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


def _expected_total(response: httpx.Response, resumed: int) -> int | None:
    content_range = response.headers.get("content-range")
    if content_range:
        match = _CONTENT_RANGE_TOTAL.search(content_range)
        if match:
            return int(match.group(1))
    length = response.headers.get("content-length")
    if length is None:
        return None
    try:
        return resumed + int(length)
    except ValueError:
        return None


__all__ = ["HttpBackend"]
