"""Tests for the multi-drive backup manager."""

import asyncio
from unittest.mock import Mock

import pytest

from discvault.backup.manager import BackupManager
from discvault.config import SettingsCache
from discvault.error_handling import (
    BackupAlreadyRunningError,
    BackupCancelledError,
    BackupFailedError,
)
from discvault.notify.ntfy import NtfyNotifier

SLOW_BACKUP = """
os.makedirs(dest)
with open(os.path.join(dest, "00001.m2ts"), "wb") as f:
    f.write(b"\\0" * 1024)
emit('PRGT:5018,0,"Copying disc contents"')
time.sleep(30)
"""

QUICK_BACKUP = """
os.makedirs(dest)
with open(os.path.join(dest, "00001.m2ts"), "wb") as f:
    f.write(b"\\0" * 1024)
"""


@pytest.fixture
def notifier():
    return Mock(spec=NtfyNotifier)


@pytest.fixture
def manager_factory(vault_config, notifier):
    def _make(tool) -> BackupManager:
        config = vault_config.model_copy(update={"makemkv_con": str(tool)})
        return BackupManager(SettingsCache(lambda: config), notifier)

    return _make


class TestBackupManager:
    """Test the running-backup registry."""

    @pytest.mark.asyncio
    async def test_runs_and_deregisters(self, manager_factory, fake_makemkvcon, notifier):
        manager = manager_factory(fake_makemkvcon(QUICK_BACKUP))

        entry = manager.start_backup("sr0", 0, "MOVIE", 1024)
        assert manager.is_running("sr0")
        assert manager.get_running("sr0") is entry

        result = await manager.wait("sr0")

        assert result.final_size == 1024
        assert not manager.is_running("sr0")
        assert manager.running_count == 0
        notifier.notify_backup_started.assert_called_once_with("MOVIE", "disc:0")
        notifier.notify_backup_completed.assert_called_once_with(
            "MOVIE",
            "1 KB",
            partial=False,
            files_failed=0,
        )

    @pytest.mark.asyncio
    async def test_refuses_second_job_on_same_drive(self, manager_factory, fake_makemkvcon):
        manager = manager_factory(fake_makemkvcon(SLOW_BACKUP))
        manager.start_backup("sr0", 0, "MOVIE", 1024)

        with pytest.raises(BackupAlreadyRunningError):
            manager.start_backup("sr0", 0, "OTHER", 1024)

        manager.cancel_all()
        await manager.wait_all()

    @pytest.mark.asyncio
    async def test_refuses_same_scratch_path(self, manager_factory, fake_makemkvcon):
        manager = manager_factory(fake_makemkvcon(SLOW_BACKUP))
        manager.start_backup("sr0", 0, "MOVIE", 1024)

        with pytest.raises(BackupAlreadyRunningError, match="already backing up"):
            manager.start_backup("sr1", 1, "MOVIE", 1024)

        manager.cancel_all()
        await manager.wait_all()

    @pytest.mark.asyncio
    async def test_parallel_drives(self, manager_factory, fake_makemkvcon):
        manager = manager_factory(fake_makemkvcon(QUICK_BACKUP))

        first = manager.start_backup("sr0", 0, "MOVIE_A", 1024)
        second = manager.start_backup("sr1", 1, "MOVIE_B", 1024)
        assert manager.running_count == 2

        results = await asyncio.gather(first.task, second.task)

        assert {r.final_path.name for r in results} == {"MOVIE_A", "MOVIE_B"}
        assert manager.list_running() == []

    @pytest.mark.asyncio
    async def test_cancel_backup(self, manager_factory, fake_makemkvcon, notifier):
        manager = manager_factory(fake_makemkvcon(SLOW_BACKUP))
        entry = manager.start_backup("sr0", 0, "MOVIE", 1024)

        for _ in range(500):
            if entry.runner.supervisor and entry.runner.supervisor.running:
                break
            await asyncio.sleep(0.01)

        assert manager.cancel_backup("sr0") is True
        with pytest.raises(BackupCancelledError):
            await asyncio.wait_for(entry.task, timeout=15)

        assert not manager.is_running("sr0")
        assert not entry.job.scratch_path.exists()
        notifier.notify_backup_cancelled.assert_called_once_with("MOVIE")

    @pytest.mark.asyncio
    async def test_cancel_unknown_drive(self, manager_factory, tmp_path):
        manager = manager_factory(tmp_path / "unused")

        assert manager.cancel_backup("sr9") is False

    @pytest.mark.asyncio
    async def test_failure_notifies(self, manager_factory, fake_makemkvcon, notifier):
        manager = manager_factory(fake_makemkvcon("sys.exit(2)\n"))
        entry = manager.start_backup("sr0", 0, "MOVIE", 1024)

        with pytest.raises(BackupFailedError):
            await entry.task

        notifier.notify_backup_failed.assert_called_once()
        assert notifier.notify_backup_failed.call_args[0][0] == "MOVIE"
        assert not manager.is_running("sr0")

    @pytest.mark.asyncio
    async def test_wait_unknown_drive(self, manager_factory, tmp_path):
        manager = manager_factory(tmp_path / "unused")

        with pytest.raises(KeyError):
            await manager.wait("sr0")
