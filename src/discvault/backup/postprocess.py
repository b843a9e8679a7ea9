"""Moves a finished scratch backup to its final location."""

import logging
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from discvault.config import DiscVaultConfig
from discvault.error_handling import ProcessingError

from .paths import count_files, delete_path, format_size, measure_path_size
from .progress import CHECKPOINT_RELOCATED

logger = logging.getLogger(__name__)

SEVEN_ZIP_ALTERNATIVES = ("7z", "7zz", "7za")


@dataclass(frozen=True)
class FinalizeResult:
    """Where the backup ended up and how big it is."""

    final_path: Path
    final_size: int
    files: int
    is_single_file: bool


class PostProcessor:
    """Turns raw MakeMKV output into the final backup folder.

    DVDs come out of ``makemkvcon backup`` as a single disc image, which is
    unpacked with 7-Zip so the backup is file-level like Blu-ray folders.
    Folder backups are copied as-is.
    """

    def __init__(self, seven_zip: str = "7z", *, extract_timeout: int = 7200):
        self.seven_zip = seven_zip
        self.extract_timeout = extract_timeout

    @classmethod
    def from_config(cls, config: DiscVaultConfig) -> "PostProcessor":
        return cls(config.seven_zip, extract_timeout=config.extract_timeout)

    def find_seven_zip(self) -> str:
        """Locate a 7-Zip executable, preferring the configured one."""
        for candidate in (self.seven_zip, *SEVEN_ZIP_ALTERNATIVES):
            found = shutil.which(candidate)
            if found:
                return found
        msg = "7-Zip not found - cannot extract disc image files"
        raise ProcessingError(
            msg,
            solution="Install 7-Zip (sudo apt install 7zip) or set seven_zip in the config",
        )

    def finalize(
        self,
        scratch_path: Path,
        final_path: Path,
        *,
        on_checkpoint: Callable[[float], None] | None = None,
        on_log: Callable[[str], None] | None = None,
    ) -> FinalizeResult:
        """Relocate the scratch backup. Blocking; run it off the event loop.

        On failure the partial final path is removed, the scratch is kept
        and ProcessingError is raised.
        """

        def log(line: str) -> None:
            logger.info(line)
            if on_log:
                on_log(line)

        is_single_file = scratch_path.is_file()

        try:
            final_path.parent.mkdir(parents=True, exist_ok=True)

            if is_single_file:
                log("DVD detected - extracting all files for file-level backup...")
                self.extract_image(scratch_path, final_path, on_log=on_log)
            else:
                log("Moving to backup folder...")
                shutil.copytree(scratch_path, final_path, dirs_exist_ok=True)
        except ProcessingError:
            self._discard_partial(final_path)
            raise
        except OSError as e:
            self._discard_partial(final_path)
            raise ProcessingError(str(e), original_error=e) from e

        if on_checkpoint:
            on_checkpoint(CHECKPOINT_RELOCATED)

        log("Cleaning up disc image..." if is_single_file else "Cleaning up temp folder...")
        if not delete_path(scratch_path):
            logger.warning(f"Could not remove scratch data at {scratch_path}")

        final_size = measure_path_size(final_path)
        files = count_files(final_path)
        log(f"Saved to: {final_path}")
        log(
            f"Final size: {format_size(final_size)} "
            f"({'VIDEO_TS' if is_single_file else 'BDMV'} folder)",
        )

        return FinalizeResult(
            final_path=final_path,
            final_size=final_size,
            files=files,
            is_single_file=is_single_file,
        )

    def extract_image(
        self,
        image_path: Path,
        destination: Path,
        *,
        on_log: Callable[[str], None] | None = None,
    ) -> None:
        """Unpack a disc image with ``7z x <image> -o<dest> -y``."""
        seven_zip = self.find_seven_zip()
        cmd = [seven_zip, "x", str(image_path), f"-o{destination}", "-y"]
        logger.info(f"Running: {' '.join(cmd)}")
        if on_log:
            on_log(f"Running: 7z {' '.join(cmd[1:])}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.extract_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            msg = f"7-Zip extraction timed out after {self.extract_timeout}s"
            raise ProcessingError(msg, original_error=e) from e

        for line in result.stdout.splitlines():
            if line.strip():
                logger.debug(f"7z: {line.strip()}")

        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            msg = f"7-Zip extraction failed with code {result.returncode}"
            if detail:
                msg += f": {detail}"
            raise ProcessingError(msg)

        if not destination.exists():
            msg = f"Extraction finished but {destination} was not created"
            raise ProcessingError(msg)

    def _discard_partial(self, final_path: Path) -> None:
        if final_path.exists():
            logger.warning(f"Removing partially written backup at {final_path}")
            delete_path(final_path)
