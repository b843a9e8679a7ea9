"""Inspection of existing backups and leftover scratch data."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .paths import count_files, detect_format_family, format_size, measure_path_size

logger = logging.getLogger(__name__)

COMPLETE_THRESHOLD = 95.0  # percent of disc size
NOISE_FLOOR_BYTES = 10 * 1024 * 1024
UNKNOWN_SIZE_FLOOR_BYTES = 100 * 1024 * 1024


class BackupStatus(Enum):
    """What the filesystem holds for a disc."""

    NONE = "none"
    COMPLETE = "complete"
    INCOMPLETE_BACKUP = "incomplete_backup"
    INCOMPLETE_TEMP = "incomplete_temp"


@dataclass
class StatusReport:
    """Result of probing the backup and temp folders for one disc."""

    status: BackupStatus
    disc_size: int = 0
    backup_size: int = 0
    temp_size: int = 0
    backup_ratio: float = 0.0
    temp_ratio: float = 0.0
    path: Path | None = None
    files: int = 0
    is_single_file: bool = False
    format_family: str | None = None
    stale_backup: bool = False  # tiny leftover in the backup folder, safe to delete


def is_backup_complete(
    backup_size: int,
    disc_size: int,
    threshold: float = COMPLETE_THRESHOLD,
    *,
    unknown_size_floor: int = UNKNOWN_SIZE_FLOOR_BYTES,
) -> bool:
    """True iff the backup is at least ``threshold`` percent of the disc.

    Without a disc size a backup counts as complete once it exceeds
    ``unknown_size_floor``.
    """
    if disc_size <= 0:
        return backup_size > unknown_size_floor
    # Integer-side comparison avoids float rounding at the boundary
    return backup_size * 100 >= threshold * disc_size


def size_ratio(size: int, disc_size: int) -> float:
    return (size / disc_size) * 100 if disc_size > 0 else 0.0


class BackupStatusProbe:
    """Decides whether a disc needs backing up before (or after) a run."""

    def __init__(
        self,
        temp_dir: Path,
        backup_dir: Path,
        *,
        complete_threshold: float = COMPLETE_THRESHOLD,
        noise_floor: int = NOISE_FLOOR_BYTES,
        unknown_size_floor: int = UNKNOWN_SIZE_FLOOR_BYTES,
        on_log: Callable[[str], None] | None = None,
    ):
        self.temp_dir = temp_dir
        self.backup_dir = backup_dir
        self.complete_threshold = complete_threshold
        self.noise_floor = noise_floor
        self.unknown_size_floor = unknown_size_floor
        self.on_log = on_log

    def _log(self, line: str) -> None:
        logger.info(line)
        if self.on_log:
            self.on_log(line)

    def _is_complete(self, size: int, disc_size: int) -> bool:
        return is_backup_complete(
            size,
            disc_size,
            self.complete_threshold,
            unknown_size_floor=self.unknown_size_floor,
        )

    def probe(self, disc_name: str, disc_size: int) -> StatusReport:
        """Inspect the backup folder, then the temp folder, for a disc."""
        backup_path = self.backup_dir / disc_name
        temp_path = self.temp_dir / disc_name
        report = StatusReport(status=BackupStatus.NONE, disc_size=max(disc_size, 0))

        if backup_path.exists():
            finished = self._probe_backup(backup_path, report)
            if finished:
                return report

        if temp_path.exists():
            self._probe_temp(temp_path, report)

        return report

    def _probe_backup(self, backup_path: Path, report: StatusReport) -> bool:
        size = measure_path_size(backup_path)
        files = count_files(backup_path)
        report.backup_size = size
        report.backup_ratio = size_ratio(size, report.disc_size)
        report.is_single_file = backup_path.is_file()
        report.format_family = detect_format_family(backup_path)

        if report.is_single_file:
            kind = "disc image"
        else:
            kind = {"dvd": "VIDEO_TS", "bluray": "BDMV"}.get(
                report.format_family or "",
                "folder",
            )
        self._log(
            f"Backup {kind}: {format_size(size)} "
            f"({report.backup_ratio:.1f}% of disc), {files} files",
        )

        if self._is_complete(size, report.disc_size):
            self._log(f"Found complete backup: {files} files, {format_size(size)}")
            report.status = BackupStatus.COMPLETE
            report.path = backup_path
            report.files = files
            return True

        if files > 0 and size > self.noise_floor:
            self._log(f"Found INCOMPLETE backup ({report.backup_ratio:.1f}% of disc)")
            report.status = BackupStatus.INCOMPLETE_BACKUP
            report.path = backup_path
            report.files = files
            return True

        self._log(
            f"Backup is empty/tiny ({files} files, {format_size(size)}) - will be cleaned up",
        )
        report.stale_backup = True
        return False

    def _probe_temp(self, temp_path: Path, report: StatusReport) -> None:
        size = measure_path_size(temp_path)
        files = count_files(temp_path)
        report.temp_size = size
        report.temp_ratio = size_ratio(size, report.disc_size)
        self._log(
            f"Temp folder: {format_size(size)} ({report.temp_ratio:.1f}% of disc)",
        )

        if files == 0 or size < self.noise_floor:
            self._log("Temp folder is empty/tiny, will be cleaned up")
            report.status = BackupStatus.NONE
            return

        self._log(f"Found incomplete temp: {files} files, {format_size(size)}")
        report.status = BackupStatus.INCOMPLETE_TEMP
        report.path = temp_path
        report.files = files
