"""Parallel backups across several drives.

With ``--noscan`` each ``makemkvcon`` targets its own ``disc:N`` and writes
to its own scratch folder, so drives can be backed up concurrently. The
manager keeps one runner per drive and refuses to start a second job for a
drive or scratch path that is already busy.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

from discvault.config import SettingsCache
from discvault.error_handling import (
    BackupAlreadyRunningError,
    BackupCancelledError,
    BackupError,
)
from discvault.notify.ntfy import NtfyNotifier

from .job import BackupJob, BackupObserver, BackupOptions, BackupResult, BackupRunner
from .paths import format_size

logger = logging.getLogger(__name__)


@dataclass
class RunningBackup:
    """Registry entry for an in-flight backup."""

    drive_id: str
    job: BackupJob
    runner: BackupRunner
    task: asyncio.Task | None = None
    started_at: float = field(default_factory=time.monotonic)

    @property
    def disc_name(self) -> str:
        return self.job.disc_name

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at


class BackupManager:
    """Starts, tracks and cancels backups keyed by drive id."""

    def __init__(
        self,
        settings: SettingsCache,
        notifier: NtfyNotifier | None = None,
    ):
        self.settings = settings
        self.notifier = notifier
        self._running: dict[str, RunningBackup] = {}

    @property
    def running_count(self) -> int:
        return len(self._running)

    def is_running(self, drive_id: str) -> bool:
        return drive_id in self._running

    def get_running(self, drive_id: str) -> RunningBackup | None:
        return self._running.get(drive_id)

    def list_running(self) -> list[RunningBackup]:
        return list(self._running.values())

    def start_backup(
        self,
        drive_id: str,
        source_index: int,
        disc_name: str,
        disc_size: int,
        *,
        options: BackupOptions | None = None,
        observer: BackupObserver | None = None,
    ) -> RunningBackup:
        """Start a backup in the background. Must be called from the event loop.

        Raises BackupAlreadyRunningError if the drive or scratch path is busy.
        """
        if drive_id in self._running:
            logger.warning(f"Backup already running for drive {drive_id}")
            msg = f"Backup already running for drive {drive_id}"
            raise BackupAlreadyRunningError(msg)

        config = self.settings.get()
        runner = BackupRunner(config, observer)
        job = runner.prepare(disc_name, source_index, disc_size, options)

        for entry in self._running.values():
            if entry.job.scratch_path == job.scratch_path:
                msg = (
                    f"Drive {entry.drive_id} is already backing up "
                    f"{job.disc_name} to {job.scratch_path}"
                )
                raise BackupAlreadyRunningError(msg)

        logger.info(
            f"Starting parallel backup for {job.disc_name} ({job.source}) "
            f"on drive {drive_id}, {len(self._running)} already running",
        )

        entry = RunningBackup(drive_id=drive_id, job=job, runner=runner)
        self._running[drive_id] = entry
        entry.task = asyncio.get_running_loop().create_task(
            self._run(entry),
            name=f"backup-{drive_id}",
        )
        entry.task.add_done_callback(self._task_done)
        return entry

    def cancel_backup(self, drive_id: str) -> bool:
        """Cancel the backup running on a drive."""
        entry = self._running.get(drive_id)
        if entry is None:
            return False
        logger.info(f"Cancelling backup for drive {drive_id} ({entry.disc_name})")
        return entry.runner.cancel()

    def cancel_all(self) -> None:
        for drive_id in list(self._running):
            self.cancel_backup(drive_id)

    async def wait(self, drive_id: str) -> BackupResult:
        """Wait for a drive's backup and return its result or raise its error."""
        entry = self._running.get(drive_id)
        if entry is None or entry.task is None:
            msg = f"No backup running for drive {drive_id}"
            raise KeyError(msg)
        return await entry.task

    async def wait_all(self) -> None:
        tasks = [e.task for e in self._running.values() if e.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, entry: RunningBackup) -> BackupResult:
        job = entry.job
        await self._notify("notify_backup_started", job.disc_name, job.source)
        try:
            result = await entry.runner.run(job)
        except BackupCancelledError:
            await self._notify("notify_backup_cancelled", job.disc_name)
            raise
        except BackupError as e:
            logger.error(f"Backup failed for {job.disc_name}: {e.message}")
            await self._notify("notify_backup_failed", job.disc_name, e.message)
            raise
        finally:
            if self._running.get(entry.drive_id) is entry:
                del self._running[entry.drive_id]

        logger.info(
            f"Backup completed for {job.disc_name}: "
            f"{format_size(result.final_size)} at {result.final_path}",
        )
        if not result.already_existed:
            await self._notify(
                "notify_backup_completed",
                job.disc_name,
                format_size(result.final_size),
                partial=result.partial_success,
                files_failed=result.files_failed,
            )
        return result

    async def _notify(self, method: str, *args, **kwargs) -> None:
        if self.notifier is None:
            return
        await asyncio.to_thread(getattr(self.notifier, method), *args, **kwargs)

    @staticmethod
    def _task_done(task: asyncio.Task) -> None:
        # Mark the outcome as retrieved; callers that care use wait()
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not isinstance(error, BackupError):
            logger.error(f"Backup task {task.get_name()} crashed: {error}")
