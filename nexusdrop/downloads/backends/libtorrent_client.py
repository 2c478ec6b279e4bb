"""Swarm client backed by a libtorrent session."""

from __future__ import annotations

import itertools
from pathlib import Path
from typing import Any

from nexusdrop.logging import get_logger

from .base import SwarmError
from .swarm import ResourceDescription, SwarmFile, SwarmStatus

logger = get_logger(__name__)


def _import_libtorrent() -> Any:
    try:
        import libtorrent as lt
    except ImportError as exc:
        raise SwarmError(
            "libtorrent is not installed; install nexusdrop[torrent]", retryable=False
        ) from exc
    return lt


class LibtorrentSwarmClient:
    """Thin synchronous wrapper over ``libtorrent.session``.

    Handles are keyed by an opaque string so callers never touch libtorrent
    objects directly.
    """

    def __init__(self, listen_interfaces: str = "0.0.0.0:6881") -> None:
        self._lt = _import_libtorrent()
        self._session = self._lt.session({"listen_interfaces": listen_interfaces})
        self._handles: dict[str, Any] = {}
        self._keys = itertools.count(1)
        logger.info(
            "Swarm session started",
            extra={"event": "swarm.session_started", "listen": listen_interfaces},
        )

    def add(self, uri: str, save_path: Path) -> str:
        lt = self._lt
        if not uri.lower().startswith("magnet:"):
            raise SwarmError("Only magnet URIs can be added to the swarm", retryable=False)
        try:
            params = lt.parse_magnet_uri(uri)
            params.save_path = str(save_path)
            handle = self._session.add_torrent(params)
        except RuntimeError as exc:
            raise SwarmError(str(exc)) from exc
        key = f"h{next(self._keys)}"
        self._handles[key] = handle
        return key

    def status(self, handle: str) -> SwarmStatus:
        status = self._handle(handle).status()
        error: str | None = None
        errc = getattr(status, "errc", None)
        if errc is not None and errc.value() != 0:
            error = errc.message()
        return SwarmStatus(
            downloaded_bytes=int(status.total_wanted_done),
            total_bytes=int(status.total_wanted) if status.has_metadata else None,
            download_rate=int(status.download_rate),
            upload_rate=int(status.upload_rate),
            uploaded_bytes=int(status.all_time_upload),
            peers=int(status.num_peers),
            is_finished=bool(status.has_metadata and (status.is_finished or status.is_seeding)),
            error=error,
        )

    def files(self, handle: str) -> list[SwarmFile]:
        info = self._handle(handle).torrent_file()
        if info is None:
            return []
        storage = info.files()
        return [
            SwarmFile(path=storage.file_path(index), size=int(storage.file_size(index)))
            for index in range(storage.num_files())
        ]

    def remove(self, handle: str) -> None:
        torrent = self._handles.pop(handle, None)
        if torrent is not None:
            self._session.remove_torrent(torrent)

    def describe(self, payload: bytes) -> ResourceDescription:
        lt = self._lt
        try:
            info = lt.torrent_info(lt.bdecode(payload))
        except (RuntimeError, TypeError, ValueError) as exc:
            raise SwarmError(f"Invalid torrent file: {exc}", retryable=False) from exc
        storage = info.files()
        return ResourceDescription(
            resource_uri=lt.make_magnet_uri(info),
            resource_id=str(info.info_hash()).lower(),
            name=info.name(),
            files=[
                SwarmFile(path=storage.file_path(index), size=int(storage.file_size(index)))
                for index in range(storage.num_files())
            ],
        )

    def close(self) -> None:
        for key in list(self._handles):
            self.remove(key)
        self._session.pause()

    def _handle(self, handle: str) -> Any:
        try:
            return self._handles[handle]
        except KeyError as exc:
            raise SwarmError(f"Unknown swarm handle {handle}") from exc


__all__ = ["LibtorrentSwarmClient"]
