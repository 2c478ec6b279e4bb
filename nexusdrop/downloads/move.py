"""Move finished swarm artifacts into their storage root."""

from __future__ import annotations

import errno
import os
from pathlib import Path
import shutil

from nexusdrop.logging import get_logger

logger = get_logger(__name__)


class AtomicFileMover:
    """Rename a file into place, copying when source and target sit on different devices."""

    def move(self, source: Path, destination: Path) -> Path:
        if not source.exists():
            raise FileNotFoundError(source)

        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            return source.replace(destination)
        except OSError as exc:
            if exc.errno != errno.EXDEV:
                raise
        logger.info(
            "Cross-device move; copying artifact",
            extra={
                "event": "download.move.copy_fallback",
                "source": str(source),
                "destination": str(destination),
            },
        )
        self._copy_across_devices(source, destination)
        return destination

    def _copy_across_devices(self, source: Path, destination: Path) -> None:
        staging = destination.with_name(destination.name + ".tmpcopy")
        shutil.copy2(source, staging)
        with staging.open("rb") as handle:
            os.fsync(handle.fileno())
        staging.replace(destination)
        try:
            source.unlink()
        except FileNotFoundError:
            pass


__all__ = ["AtomicFileMover"]
