"""Tests for the error hierarchy and user-facing reporting."""

import logging
from unittest.mock import patch

import pytest

from discvault.backup.classifier import parse_error_message
from discvault.error_handling import (
    BackupAlreadyRunningError,
    BackupCancelledError,
    BackupError,
    BackupFailedError,
    ConfigurationError,
    DependencyError,
    DiscVaultError,
    ErrorCategory,
    ProcessingError,
    ToolError,
    check_dependencies,
    graceful_exit,
    handle_error,
)


class TestDiscVaultError:
    """Test the base DiscVaultError class."""

    def test_basic_error_creation(self):
        """Test creating a basic DiscVaultError."""
        error = DiscVaultError(
            "Test error message",
            ErrorCategory.CONFIGURATION,
            solution="Fix your config",
        )

        assert error.message == "Test error message"
        assert error.category == ErrorCategory.CONFIGURATION
        assert error.solution == "Fix your config"
        assert error.recoverable is True
        assert error.log_level == logging.ERROR

    def test_error_display(self, capsys):
        """Test error display to user."""
        error = DiscVaultError(
            "Configuration is invalid",
            ErrorCategory.CONFIGURATION,
            solution="Check your config file",
            details="complete_threshold must be between 0 and 100",
        )

        error.display_to_user()
        captured = capsys.readouterr()

        assert "Configuration Error" in captured.out
        assert "Configuration is invalid" in captured.out
        assert "Check your config file" in captured.out
        assert "complete_threshold" in captured.out

    def test_non_recoverable_error(self, capsys):
        error = DiscVaultError("Fatal system error", ErrorCategory.SYSTEM, recoverable=False)

        error.display_to_user()

        assert "requires intervention" in capsys.readouterr().out


class TestBackupErrors:
    """Test the backup failure types."""

    def test_hierarchy(self):
        assert issubclass(BackupFailedError, BackupError)
        assert issubclass(BackupCancelledError, BackupError)
        assert issubclass(ProcessingError, BackupError)
        assert issubclass(BackupError, DiscVaultError)

    def test_backup_failed_carries_records(self):
        record = parse_error_message("Failed to open disc: permission denied")

        error = BackupFailedError("boom", exit_code=1, error_records=[record])

        assert error.exit_code == 1
        assert error.error_records == [record]
        assert error.category is ErrorCategory.MEDIA

    def test_cancelled_defaults(self):
        error = BackupCancelledError()

        assert error.message == "Backup cancelled by user"
        assert error.category is ErrorCategory.CANCELLED
        assert error.log_level == logging.INFO

    def test_processing_error_prefix(self):
        error = ProcessingError("disk full")

        assert str(error) == "Backup processing failed: disk full"
        assert "temp folder" in error.solution

    def test_tool_error_default_solution(self):
        error = ToolError("makemkvcon crashed")

        assert error.category is ErrorCategory.EXTERNAL_TOOL
        assert error.solution

    def test_already_running(self):
        error = BackupAlreadyRunningError("drive busy")

        assert error.category is ErrorCategory.SYSTEM

    def test_configuration_error_points_at_file(self, tmp_path):
        error = ConfigurationError("bad", config_path=tmp_path / "config.toml")

        assert str(tmp_path / "config.toml") in error.solution


class TestHandleError:
    """Test conversion of generic exceptions."""

    def test_passes_through_discvault_errors(self, capsys):
        handle_error(ToolError("tool broke"))

        assert "tool broke" in capsys.readouterr().out

    def test_file_errors_are_filesystem(self, capsys):
        handle_error(FileNotFoundError("missing.iso"))

        assert "Filesystem Error" in capsys.readouterr().out

    def test_other_errors_are_system(self, capsys):
        handle_error(RuntimeError("weird"))

        assert "System Error" in capsys.readouterr().out


class TestCheckDependencies:
    """Test external tool detection."""

    @patch("discvault.error_handling.shutil.which", return_value="/usr/bin/tool")
    def test_all_present(self, mock_which):
        assert check_dependencies() == []

    @patch("discvault.error_handling.shutil.which", return_value=None)
    def test_all_missing(self, mock_which):
        errors = check_dependencies("makemkvcon", "7z")

        assert len(errors) == 2
        assert all(isinstance(e, DependencyError) for e in errors)
        assert "MakeMKV" in errors[0].message
        assert "7-Zip" in errors[1].message

    def test_graceful_exit(self):
        with pytest.raises(SystemExit) as exc_info:
            graceful_exit(2)

        assert exc_info.value.code == 2
