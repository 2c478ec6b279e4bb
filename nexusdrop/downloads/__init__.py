"""Download orchestration core: jobs, transports, retries and sweeps."""

from .models import InvalidTransitionError, Job, JobState, ProgressUpdate, StorageLayout
from .orchestrator import DownloadOrchestrator
from .registry import JobRegistry
from .runtime import DownloadRuntime, build_download_runtime
from .sweeper import LifecycleSweeper

__all__ = [
    "DownloadOrchestrator",
    "DownloadRuntime",
    "InvalidTransitionError",
    "Job",
    "JobRegistry",
    "JobState",
    "LifecycleSweeper",
    "ProgressUpdate",
    "StorageLayout",
    "build_download_runtime",
]
