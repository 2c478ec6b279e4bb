"""Transport backends for download jobs."""

from .base import (
    DownloadBackend,
    DuplicateActiveResourceError,
    FetchError,
    ProgressCallback,
    SwarmError,
    TransientFetchError,
)
from .http import HttpBackend
from .swarm import (
    ResourceDescription,
    SwarmBackend,
    SwarmClient,
    SwarmFile,
    SwarmStatus,
)

__all__ = [
    "DownloadBackend",
    "DuplicateActiveResourceError",
    "FetchError",
    "HttpBackend",
    "ProgressCallback",
    "ResourceDescription",
    "SwarmBackend",
    "SwarmClient",
    "SwarmError",
    "SwarmFile",
    "SwarmStatus",
    "TransientFetchError",
]
