"""Application configuration utilities for NexusDrop.

Values resolve with the precedence process environment > ``.env`` file >
defaults. Every section is an immutable dataclass built by ``from_env`` so
tests can construct configurations directly without touching the environment.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any

DEFAULT_DATA_DIR = "./data"
DEFAULT_UPLOADS_DIR = "./uploads"
DEFAULT_TORRENTS_DIR = "./torrents"
DEFAULT_HTTP_PUBLIC_PREFIX = "/downloads/"
DEFAULT_SWARM_PUBLIC_PREFIX = "/torrents/"
SNAPSHOT_FILENAME = "downloads.json"

DEFAULT_MIRROR_HOST = "get.0ms.dev"
DEFAULT_MIRROR_SCHEME = "https"
DEFAULT_FETCH_TIMEOUT_SEC = 30.0
DEFAULT_FETCH_CHUNK_BYTES = 64 * 1024
DEFAULT_PROGRESS_INTERVAL_MS = 1000

DEFAULT_MAX_RETRIES = 7
DEFAULT_RETRY_DELAY_MS = 1000
DEFAULT_STUCK_TIMEOUT_MS = 60_000

DEFAULT_STUCK_SCAN_INTERVAL_SEC = 60.0
DEFAULT_EXPIRY_SCAN_INTERVAL_SEC = 24 * 60 * 60.0
DEFAULT_SNAPSHOT_INTERVAL_SEC = 5.0
DEFAULT_ORPHAN_GRACE_SEC = 300.0

DEFAULT_TTL_HOURS = 72.0
DEFAULT_FILENAME_PREFIX = "NexusDrop"

DEFAULT_SWARM_LISTEN_INTERFACES = "0.0.0.0:6881"
DEFAULT_SWARM_POLL_INTERVAL_MS = 500

_RUNTIME_ENV_CACHE: dict[str, str] | None = None


def _load_env_file(path: Path) -> dict[str, str]:
    try:
        contents = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    env_values: dict[str, str] = {}
    for line in contents.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if not sep:
            continue
        env_values[key.strip()] = value.strip().strip('"').strip("'")
    return env_values


def load_runtime_env(
    *,
    env_file: str | os.PathLike[str] | None = None,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Load runtime environment values applying .env before explicit environment."""

    env: dict[str, str] = {}
    source = dict(base_env if base_env is not None else os.environ)

    path = Path(env_file) if env_file is not None else Path(".env")
    if path.exists() and path.is_file():
        env.update(_load_env_file(path))

    env.update({key: str(value) for key, value in source.items() if value is not None})
    return env


def get_runtime_env() -> Mapping[str, str]:
    """Return the cached runtime environment mapping."""

    global _RUNTIME_ENV_CACHE
    if _RUNTIME_ENV_CACHE is None:
        _RUNTIME_ENV_CACHE = load_runtime_env()
    return _RUNTIME_ENV_CACHE


def override_runtime_env(runtime_env: Mapping[str, str] | None) -> None:
    """Override the cached runtime environment (primarily for testing)."""

    global _RUNTIME_ENV_CACHE
    if runtime_env is None:
        _RUNTIME_ENV_CACHE = None
    else:
        _RUNTIME_ENV_CACHE = dict(runtime_env)


def get_env(name: str, default: str | None = None) -> str | None:
    """Return an environment variable honoring ENV > .env > defaults."""

    return get_runtime_env().get(name, default)


def _as_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    text = str(value).strip().lower()
    if not text:
        return default
    return text in {"1", "true", "yes", "on"}


def _coerce_int(value: Any, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _bounded_int(
    value: Any,
    *,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    resolved = _coerce_int(value, default=default)
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


def _bounded_float(
    value: Any,
    *,
    default: float,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    try:
        resolved = float(value)
    except (TypeError, ValueError):
        resolved = default
    if resolved != resolved:  # NaN
        resolved = default
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


def _text(env: Mapping[str, Any], key: str, default: str) -> str:
    value = env.get(key)
    if value is None:
        return default
    return str(value).strip()


def _public_prefix(value: str) -> str:
    prefix = "/" + value.strip().strip("/")
    return prefix.rstrip("/") + "/"


@dataclass(slots=True, frozen=True)
class StorageConfig:
    data_dir: str
    uploads_dir: str
    torrents_dir: str
    http_public_prefix: str = DEFAULT_HTTP_PUBLIC_PREFIX
    swarm_public_prefix: str = DEFAULT_SWARM_PUBLIC_PREFIX

    @property
    def snapshot_path(self) -> Path:
        return Path(self.data_dir).expanduser() / SNAPSHOT_FILENAME

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> StorageConfig:
        return cls(
            data_dir=_text(env, "NEXUSDROP_DATA_DIR", DEFAULT_DATA_DIR) or DEFAULT_DATA_DIR,
            uploads_dir=_text(env, "UPLOADS_DIR", DEFAULT_UPLOADS_DIR) or DEFAULT_UPLOADS_DIR,
            torrents_dir=_text(env, "TORRENTS_DIR", DEFAULT_TORRENTS_DIR)
            or DEFAULT_TORRENTS_DIR,
            http_public_prefix=_public_prefix(
                _text(env, "HTTP_PUBLIC_PREFIX", DEFAULT_HTTP_PUBLIC_PREFIX)
                or DEFAULT_HTTP_PUBLIC_PREFIX
            ),
            swarm_public_prefix=_public_prefix(
                _text(env, "SWARM_PUBLIC_PREFIX", DEFAULT_SWARM_PUBLIC_PREFIX)
                or DEFAULT_SWARM_PUBLIC_PREFIX
            ),
        )


@dataclass(slots=True, frozen=True)
class FetchConfig:
    mirror_host: str = DEFAULT_MIRROR_HOST
    mirror_scheme: str = DEFAULT_MIRROR_SCHEME
    timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SEC
    chunk_bytes: int = DEFAULT_FETCH_CHUNK_BYTES
    progress_interval_ms: int = DEFAULT_PROGRESS_INTERVAL_MS

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> FetchConfig:
        scheme = _text(env, "MIRROR_SCHEME", DEFAULT_MIRROR_SCHEME).lower()
        if scheme not in {"http", "https"}:
            scheme = DEFAULT_MIRROR_SCHEME
        return cls(
            mirror_host=_text(env, "MIRROR_HOST", DEFAULT_MIRROR_HOST),
            mirror_scheme=scheme,
            timeout_seconds=_bounded_float(
                env.get("FETCH_TIMEOUT_SEC"), default=DEFAULT_FETCH_TIMEOUT_SEC, minimum=1.0
            ),
            chunk_bytes=_bounded_int(
                env.get("FETCH_CHUNK_BYTES"),
                default=DEFAULT_FETCH_CHUNK_BYTES,
                minimum=1024,
            ),
            progress_interval_ms=_bounded_int(
                env.get("PROGRESS_INTERVAL_MS"),
                default=DEFAULT_PROGRESS_INTERVAL_MS,
                minimum=1000,
            ),
        )


@dataclass(slots=True, frozen=True)
class RetryPolicyConfig:
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS
    stuck_timeout_ms: int = DEFAULT_STUCK_TIMEOUT_MS

    @property
    def retry_delay_seconds(self) -> float:
        return self.retry_delay_ms / 1000.0

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> RetryPolicyConfig:
        return cls(
            max_retries=_bounded_int(
                env.get("MAX_RETRIES"), default=DEFAULT_MAX_RETRIES, minimum=0
            ),
            retry_delay_ms=_bounded_int(
                env.get("RETRY_DELAY_MS"), default=DEFAULT_RETRY_DELAY_MS, minimum=0
            ),
            stuck_timeout_ms=_bounded_int(
                env.get("STUCK_TIMEOUT_MS"), default=DEFAULT_STUCK_TIMEOUT_MS, minimum=1000
            ),
        )


@dataclass(slots=True, frozen=True)
class SweeperConfig:
    stuck_scan_interval_seconds: float = DEFAULT_STUCK_SCAN_INTERVAL_SEC
    expiry_scan_interval_seconds: float = DEFAULT_EXPIRY_SCAN_INTERVAL_SEC
    snapshot_interval_seconds: float = DEFAULT_SNAPSHOT_INTERVAL_SEC
    orphan_grace_seconds: float = DEFAULT_ORPHAN_GRACE_SEC

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> SweeperConfig:
        return cls(
            stuck_scan_interval_seconds=_bounded_float(
                env.get("STUCK_SCAN_INTERVAL_SEC"),
                default=DEFAULT_STUCK_SCAN_INTERVAL_SEC,
                minimum=1.0,
            ),
            expiry_scan_interval_seconds=_bounded_float(
                env.get("EXPIRY_SCAN_INTERVAL_SEC"),
                default=DEFAULT_EXPIRY_SCAN_INTERVAL_SEC,
                minimum=1.0,
            ),
            snapshot_interval_seconds=_bounded_float(
                env.get("SNAPSHOT_INTERVAL_SEC"),
                default=DEFAULT_SNAPSHOT_INTERVAL_SEC,
                minimum=0.5,
            ),
            orphan_grace_seconds=_bounded_float(
                env.get("ORPHAN_GRACE_SEC"), default=DEFAULT_ORPHAN_GRACE_SEC, minimum=0.0
            ),
        )


@dataclass(slots=True, frozen=True)
class SwarmConfig:
    enabled: bool = True
    listen_interfaces: str = DEFAULT_SWARM_LISTEN_INTERFACES
    poll_interval_ms: int = DEFAULT_SWARM_POLL_INTERVAL_MS

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> SwarmConfig:
        return cls(
            enabled=_as_bool(env.get("SWARM_ENABLED"), default=True),
            listen_interfaces=_text(
                env, "SWARM_LISTEN_INTERFACES", DEFAULT_SWARM_LISTEN_INTERFACES
            )
            or DEFAULT_SWARM_LISTEN_INTERFACES,
            poll_interval_ms=_bounded_int(
                env.get("SWARM_POLL_INTERVAL_MS"),
                default=DEFAULT_SWARM_POLL_INTERVAL_MS,
                minimum=100,
            ),
        )


@dataclass(slots=True, frozen=True)
class AppConfig:
    storage: StorageConfig
    fetch: FetchConfig
    retry: RetryPolicyConfig
    sweeper: SweeperConfig
    swarm: SwarmConfig
    default_ttl_hours: float = DEFAULT_TTL_HOURS
    filename_prefix: str = DEFAULT_FILENAME_PREFIX
    log_level: str = "INFO"
    log_file: str | None = None


def load_config(runtime_env: Mapping[str, Any] | None = None) -> AppConfig:
    """Build the application configuration from the runtime environment."""

    env = runtime_env if runtime_env is not None else get_runtime_env()
    log_file = _text(env, "LOG_FILE", "") or None
    return AppConfig(
        storage=StorageConfig.from_env(env),
        fetch=FetchConfig.from_env(env),
        retry=RetryPolicyConfig.from_env(env),
        sweeper=SweeperConfig.from_env(env),
        swarm=SwarmConfig.from_env(env),
        default_ttl_hours=_bounded_float(
            env.get("DEFAULT_TTL_HOURS"), default=DEFAULT_TTL_HOURS, minimum=0.01
        ),
        filename_prefix=_text(env, "FILENAME_PREFIX", DEFAULT_FILENAME_PREFIX)
        or DEFAULT_FILENAME_PREFIX,
        log_level=_text(env, "LOG_LEVEL", "INFO").upper() or "INFO",
        log_file=log_file,
    )


__all__ = [
    "AppConfig",
    "FetchConfig",
    "RetryPolicyConfig",
    "StorageConfig",
    "SwarmConfig",
    "SweeperConfig",
    "get_env",
    "get_runtime_env",
    "load_config",
    "load_runtime_env",
    "override_runtime_env",
]
