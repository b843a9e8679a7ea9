"""Shared test configuration and fixtures."""

import logging
import os
import stat
import sys
import textwrap
from pathlib import Path

import pytest

from discvault.backup.job import BackupObserver
from discvault.cli import cleanup_logging
from discvault.config import DiscVaultConfig


@pytest.fixture(scope="function", autouse=True)
def cleanup_logging_handlers():
    """Automatically cleanup logging handlers after each test to prevent ResourceWarnings."""
    yield
    cleanup_logging()


@pytest.fixture(scope="function", autouse=True)
def reset_logging():
    """Reset logging configuration after each test."""
    yield
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.setLevel(logging.WARNING)


@pytest.fixture
def vault_config(tmp_path):
    """Configuration rooted in a temporary directory with fast timers."""
    return DiscVaultConfig(
        base_dir=tmp_path / "vault",
        log_dir=tmp_path / "logs",
        progress_poll_interval=0.01,
        progress_fallback_delay=0.05,
    )


@pytest.fixture
def fake_makemkvcon(tmp_path):
    """Factory writing an executable stand-in for makemkvcon.

    The body is Python source; ``dest`` holds the scratch path (last argument)
    and ``emit(line)`` prints a flushed robot-mode line.
    """

    def _make(body: str, name: str = "makemkvcon") -> Path:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(exist_ok=True)

        script = bin_dir / f"{name}.py"
        script.write_text(
            "import os, sys, time\n"
            "dest = sys.argv[-1]\n"
            "def emit(line):\n"
            "    print(line, flush=True)\n"
            + textwrap.dedent(body),
        )

        wrapper = bin_dir / name
        wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n')
        wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return wrapper

    return _make


def write_file(path: Path, size: int) -> Path:
    """Create a sparse file of the given apparent size."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.truncate(size)
    return path


@pytest.fixture
def make_file():
    return write_file


class RecordingObserver(BackupObserver):
    """Observer that keeps every event it receives."""

    def __init__(self):
        self.snapshots = []
        self.lines = []
        self.states = []
        self.completed = []
        self.failed = []

    def on_progress(self, snapshot):
        self.snapshots.append(snapshot)

    def on_log(self, line):
        self.lines.append(line)

    def on_state(self, state):
        self.states.append(state)

    def on_complete(self, result):
        self.completed.append(result)

    def on_failed(self, error):
        self.failed.append(error)

    @property
    def percents(self):
        return [s.percent for s in self.snapshots]

    @property
    def terminal_events(self):
        return len(self.completed) + len(self.failed)


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def chdir_tmp(tmp_path):
    """Run a test from inside the temporary directory."""
    previous = Path.cwd()
    os.chdir(tmp_path)
    yield tmp_path
    os.chdir(previous)
