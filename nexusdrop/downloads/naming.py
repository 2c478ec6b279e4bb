"""Identifiers and on-disk filenames for download jobs."""

from __future__ import annotations

from collections.abc import Callable
import re
import secrets
import string

_TAG_ALPHABET = string.ascii_uppercase + string.digits
_TAG_LENGTH = 4
_MAX_NAME_LENGTH = 200
_MAX_TAG_ATTEMPTS = 32
_UNSAFE_CHARS = re.compile(r'[\x00-\x1f\x7f<>:"/\\|?*]')

DEFAULT_ORIGINAL_NAME = "download"


def new_job_id() -> str:
    return secrets.token_hex(8)


def new_owner_token() -> str:
    return secrets.token_hex(16)


def random_tag(length: int = _TAG_LENGTH) -> str:
    return "".join(secrets.choice(_TAG_ALPHABET) for _ in range(length))


def sanitize_filename(name: str | None) -> str:
    """Reduce ``name`` to a single safe path component."""

    if not name:
        return DEFAULT_ORIGINAL_NAME
    base = re.split(r"[\\/]", name.strip())[-1]
    cleaned = _UNSAFE_CHARS.sub("_", base).strip().lstrip(".")
    if not cleaned:
        return DEFAULT_ORIGINAL_NAME
    if len(cleaned) > _MAX_NAME_LENGTH:
        stem, dot, ext = cleaned.rpartition(".")
        if dot and 0 < len(ext) <= 10:
            cleaned = stem[: _MAX_NAME_LENGTH - len(ext) - 1] + "." + ext
        else:
            cleaned = cleaned[:_MAX_NAME_LENGTH]
    return cleaned


def compose_filename(
    original: str | None,
    *,
    prefix: str,
    is_taken: Callable[[str], bool] | None = None,
) -> str:
    """Return ``<prefix>_<TAG>-<original>`` with a tag that avoids ``is_taken`` names."""

    safe = sanitize_filename(original)
    candidate = f"{prefix}_{random_tag()}-{safe}"
    if is_taken is None:
        return candidate
    for _ in range(_MAX_TAG_ATTEMPTS):
        if not is_taken(candidate):
            return candidate
        candidate = f"{prefix}_{random_tag()}-{safe}"
    # Fall back to a longer tag once the short space looks crowded.
    return f"{prefix}_{random_tag(_TAG_LENGTH * 2)}-{safe}"


__all__ = [
    "DEFAULT_ORIGINAL_NAME",
    "compose_filename",
    "new_job_id",
    "new_owner_token",
    "random_tag",
    "sanitize_filename",
]
