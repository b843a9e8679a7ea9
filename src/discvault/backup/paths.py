"""Filesystem helpers shared by the backup engine."""

import logging
import os
import re
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

# Top-level marker directories for multi-file disc formats
FORMAT_MARKERS = {
    "VIDEO_TS": "dvd",
    "BDMV": "bluray",
}


def sanitize_disc_name(name: str | None) -> str:
    """Make a disc name safe for use as a folder name."""
    return re.sub(r"[^a-zA-Z0-9_-]", "_", name or "Unknown")


def format_size(size_bytes: int) -> str:
    """Format a byte count as a human readable string."""
    if not size_bytes or size_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size_bytes)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


def measure_path_size(path: Path) -> int:
    """Return the on-disk size of a file or directory tree.

    Missing paths and unreadable entries count as zero so this can be
    polled while another process is still writing the tree.
    """
    try:
        if path.is_file():
            return path.stat().st_size
        if not path.is_dir():
            return 0
    except OSError:
        return 0

    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += (Path(root) / name).stat().st_size
            except OSError:
                continue
    return total


def count_files(path: Path) -> int:
    """Count regular files under a path (a single file counts as one)."""
    if path.is_file():
        return 1
    if not path.is_dir():
        return 0
    return sum(len(files) for _root, _dirs, files in os.walk(path))


def detect_format_family(path: Path) -> str | None:
    """Return the disc format family for a backup directory, if recognized."""
    if not path.is_dir():
        return None
    for marker, family in FORMAT_MARKERS.items():
        if (path / marker).is_dir():
            return family
    return None


def delete_path(path: Path) -> bool:
    """Delete a file or directory tree. Returns True if nothing remains."""
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()
        logger.debug(f"Deleted: {path}")
    except OSError as e:
        logger.error(f"Failed to delete {path}: {e}")
    return not path.exists()
