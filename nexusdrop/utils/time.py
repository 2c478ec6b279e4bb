"""Clock helpers; all persisted timestamps are epoch milliseconds."""

from __future__ import annotations

import time as _time

__all__ = ["now_ms", "monotonic_ms"]


def now_ms() -> int:
    """Return the current UNIX timestamp in milliseconds."""

    return int(_time.time() * 1000)


def monotonic_ms() -> int:
    """Return a monotonic timestamp in milliseconds."""

    return _time.monotonic_ns() // 1_000_000
