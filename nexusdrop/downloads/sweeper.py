"""Periodic lifecycle sweeps: stuck detection, expiry and orphan reconciliation."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
import shutil

from nexusdrop.config import SweeperConfig
from nexusdrop.logging import get_logger
from nexusdrop.utils.periodic import PeriodicTask
from nexusdrop.utils.time import now_ms

from .models import JobState
from .orchestrator import DownloadOrchestrator

logger = get_logger(__name__)


@dataclass(slots=True)
class ReconcileReport:
    missing_artifacts: int = 0
    orphan_files: int = 0
    orphan_staging_dirs: int = 0


class LifecycleSweeper:
    """Scans the registry on fixed intervals, isolating failures per job."""

    def __init__(
        self,
        orchestrator: DownloadOrchestrator,
        config: SweeperConfig,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._orchestrator = orchestrator
        self._registry = orchestrator.registry
        self._layout = orchestrator.layout
        self._config = config
        self._clock = clock
        self._tasks = [
            PeriodicTask(
                "sweeper.stuck",
                self.sweep_stuck,
                interval=config.stuck_scan_interval_seconds,
                run_immediately=True,
            ),
            PeriodicTask(
                "sweeper.expiry",
                self.run_expiry_cycle,
                interval=config.expiry_scan_interval_seconds,
                run_immediately=True,
            ),
            PeriodicTask(
                "sweeper.snapshot",
                self._registry.save,
                interval=config.snapshot_interval_seconds,
            ),
        ]

    @property
    def running(self) -> bool:
        return any(task.is_running for task in self._tasks)

    def start(self) -> None:
        for task in self._tasks:
            task.start()
        logger.info(
            "Lifecycle sweeper started",
            extra={
                "event": "sweeper.started",
                "stuck_interval": self._config.stuck_scan_interval_seconds,
                "expiry_interval": self._config.expiry_scan_interval_seconds,
                "snapshot_interval": self._config.snapshot_interval_seconds,
            },
        )

    async def stop(self) -> None:
        for task in self._tasks:
            await task.stop()
        logger.info("Lifecycle sweeper stopped", extra={"event": "sweeper.stopped"})

    async def sweep_stuck(self, now: int | None = None) -> int:
        current = self._clock() if now is None else now
        handled = 0
        for job in self._registry.values():
            if job.state is not JobState.DOWNLOADING:
                continue
            try:
                if await self._orchestrator.handle_stuck(job.id, now=current):
                    handled += 1
            except Exception:
                logger.exception(
                    "Stuck check failed",
                    extra={"event": "sweeper.stuck_failed", "job_id": job.id},
                )
        return handled

    async def sweep_expired(self, now: int | None = None) -> int:
        current = self._clock() if now is None else now
        removed = 0
        for job in self._registry.values():
            if not job.is_expired(current):
                continue
            try:
                if await self._orchestrator.remove_job(job.id, reason="expired"):
                    removed += 1
            except Exception:
                logger.exception(
                    "Expiry removal failed",
                    extra={"event": "sweeper.expiry_failed", "job_id": job.id},
                )
        if removed:
            await self._registry.save()
            logger.info(
                "Expired downloads removed",
                extra={"event": "sweeper.expired", "removed": removed},
            )
        return removed

    async def reconcile_orphans(self, now: int | None = None) -> ReconcileReport:
        """Make the registry and both storage roots agree on which artifacts exist."""

        current = self._clock() if now is None else now
        report = ReconcileReport()

        for job in self._registry.values():
            if job.state is not JobState.COMPLETED:
                continue
            exists = await asyncio.to_thread(self._layout.path_for(job).exists)
            if exists:
                continue
            try:
                if await self._orchestrator.remove_job(job.id, reason="artifact_missing"):
                    report.missing_artifacts += 1
            except Exception:
                logger.exception(
                    "Reconcile removal failed",
                    extra={"event": "sweeper.reconcile_failed", "job_id": job.id},
                )

        cutoff = current / 1000.0 - self._config.orphan_grace_seconds
        known_ids = set(self._registry.ids())
        referenced: dict[Path, set[str]] = {
            self._layout.http_dir: set(),
            self._layout.swarm_dir: set(),
        }
        for job in self._registry.values():
            referenced[self._layout.root_for(job.is_peer_transport)].add(job.filename)

        for root, names in referenced.items():
            report.orphan_files += await asyncio.to_thread(
                self._reclaim_files, root, names, cutoff
            )
        report.orphan_staging_dirs = await asyncio.to_thread(
            self._reclaim_staging, self._layout.staging_root(), known_ids
        )

        if report.missing_artifacts:
            await self._registry.save()
        if report.missing_artifacts or report.orphan_files or report.orphan_staging_dirs:
            logger.info(
                "Storage reconciled",
                extra={
                    "event": "sweeper.reconciled",
                    "missing_artifacts": report.missing_artifacts,
                    "orphan_files": report.orphan_files,
                    "orphan_staging_dirs": report.orphan_staging_dirs,
                },
            )
        return report

    async def run_expiry_cycle(self) -> None:
        await self.sweep_expired()
        await self.reconcile_orphans()

    def _reclaim_files(self, root: Path, referenced: set[str], cutoff: float) -> int:
        try:
            entries = list(root.iterdir())
        except FileNotFoundError:
            return 0
        reclaimed = 0
        for entry in entries:
            if entry.name in referenced or entry.name.startswith("."):
                continue
            try:
                if not entry.is_file() or entry.stat().st_mtime > cutoff:
                    continue
                entry.unlink()
            except FileNotFoundError:
                continue
            except OSError:
                logger.warning(
                    "Failed to delete orphan file",
                    extra={"event": "sweeper.orphan_delete_failed", "path": str(entry)},
                    exc_info=True,
                )
                continue
            reclaimed += 1
        return reclaimed

    def _reclaim_staging(self, staging_root: Path, known_ids: set[str]) -> int:
        try:
            entries = list(staging_root.iterdir())
        except FileNotFoundError:
            return 0
        reclaimed = 0
        for entry in entries:
            if entry.name in known_ids or not entry.is_dir():
                continue
            shutil.rmtree(entry, ignore_errors=True)
            reclaimed += 1
        return reclaimed


__all__ = ["LifecycleSweeper", "ReconcileReport"]
