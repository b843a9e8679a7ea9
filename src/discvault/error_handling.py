"""Error hierarchy and user-facing error reporting."""

import logging
import shutil
import sys
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console

if TYPE_CHECKING:
    from discvault.backup.classifier import ErrorRecord

logger = logging.getLogger(__name__)
console = Console()


class ErrorCategory(Enum):
    """Categories of errors for better user experience."""

    CONFIGURATION = "configuration"
    DEPENDENCY = "dependency"
    FILESYSTEM = "filesystem"
    MEDIA = "media"
    EXTERNAL_TOOL = "external_tool"
    PROCESSING = "processing"
    CANCELLED = "cancelled"
    SYSTEM = "system"


class DiscVaultError(Exception):
    """Base exception for DiscVault with enhanced user experience."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        *,
        solution: str | None = None,
        details: str | None = None,
        recoverable: bool = True,
        log_level: int = logging.ERROR,
        original_error: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.solution = solution
        self.details = details
        self.recoverable = recoverable
        self.log_level = log_level
        self.original_error = original_error

    def display_to_user(self) -> None:
        """Display error to user with helpful context."""
        category_styles = {
            ErrorCategory.CONFIGURATION: ("⚙️", "yellow"),
            ErrorCategory.DEPENDENCY: ("📦", "red"),
            ErrorCategory.FILESYSTEM: ("📁", "red"),
            ErrorCategory.MEDIA: ("💿", "blue"),
            ErrorCategory.EXTERNAL_TOOL: ("🔧", "red"),
            ErrorCategory.PROCESSING: ("🗜️", "red"),
            ErrorCategory.CANCELLED: ("⏹️", "yellow"),
            ErrorCategory.SYSTEM: ("💻", "red"),
        }

        emoji, color = category_styles.get(self.category, ("❌", "red"))

        console.print(
            f"\n{emoji} [{color} bold]{self.category.value.replace('_', ' ').title()} Error[/{color} bold]",
        )
        console.print(f"[{color}]{self.message}[/{color}]")

        if self.details:
            console.print(f"\n[dim]Details:[/dim] {self.details}")

        if self.solution:
            console.print(f"\n[green]💡 Solution:[/green] {self.solution}")

        if self.recoverable:
            console.print(
                "\n[dim]This error may be temporary. You can try again.[/dim]",
            )
        else:
            console.print(
                "\n[dim]This error requires intervention before continuing.[/dim]",
            )

        if self.original_error:
            logger.log(
                self.log_level,
                "%s: %s",
                self.category.value,
                self.message,
                exc_info=self.original_error,
            )
        else:
            logger.log(self.log_level, "%s: %s", self.category.value, self.message)


class ConfigurationError(DiscVaultError):
    """Configuration-related errors."""

    def __init__(self, message: str, *, config_path: Path | None = None, **kwargs):
        solution = kwargs.pop("solution", None)
        if not solution and config_path:
            solution = f"Check your configuration file at {config_path}"
        super().__init__(
            message,
            ErrorCategory.CONFIGURATION,
            solution=solution,
            **kwargs,
        )


class DependencyError(DiscVaultError):
    """Missing or broken dependency errors."""

    def __init__(
        self,
        dependency: str,
        *,
        install_command: str | None = None,
        **kwargs,
    ):
        message = f"Required dependency '{dependency}' is not available"
        solution = kwargs.pop("solution", None)
        if not solution and install_command:
            solution = f"Install with: {install_command}"
        super().__init__(
            message,
            ErrorCategory.DEPENDENCY,
            solution=solution,
            recoverable=False,
            **kwargs,
        )


class ToolError(DiscVaultError):
    """An external tool could not be run or misbehaved."""

    def __init__(self, message: str, **kwargs):
        solution = kwargs.pop(
            "solution",
            "Check the tool is properly installed and the configured path is correct",
        )
        super().__init__(
            message,
            ErrorCategory.EXTERNAL_TOOL,
            solution=solution,
            **kwargs,
        )


class BackupError(DiscVaultError):
    """Base class for terminal backup job failures."""


class BackupFailedError(BackupError):
    """The disc could not be read: fatal message, bad exit code or spawn failure."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        error_records: "list[ErrorRecord] | None" = None,
        **kwargs,
    ):
        solution = kwargs.pop(
            "solution",
            "Clean the disc, check free space and permissions, then try again",
        )
        super().__init__(message, ErrorCategory.MEDIA, solution=solution, **kwargs)
        self.exit_code = exit_code
        self.error_records = list(error_records or [])


class BackupCancelledError(BackupError):
    """The backup was cancelled and its scratch data removed."""

    def __init__(self, message: str = "Backup cancelled by user", **kwargs):
        super().__init__(
            message,
            ErrorCategory.CANCELLED,
            log_level=kwargs.pop("log_level", logging.INFO),
            **kwargs,
        )


class ProcessingError(BackupError):
    """The disc was read but finalizing the backup failed."""

    def __init__(self, message: str, **kwargs):
        solution = kwargs.pop(
            "solution",
            "The raw backup was kept in the temp folder. Check free space and 7-Zip, then retry",
        )
        super().__init__(
            f"Backup processing failed: {message}",
            ErrorCategory.PROCESSING,
            solution=solution,
            **kwargs,
        )


class BackupAlreadyRunningError(DiscVaultError):
    """A backup is already running for the drive or scratch path."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            ErrorCategory.SYSTEM,
            solution=kwargs.pop("solution", "Wait for the running backup or cancel it"),
            **kwargs,
        )


def handle_error(
    error: Exception,
    *,
    category: ErrorCategory | None = None,
    **kwargs,
) -> None:
    """Convert generic exceptions to DiscVaultError and display to user."""
    if isinstance(error, DiscVaultError):
        error.display_to_user()
        return

    if category is None:
        if isinstance(error, FileNotFoundError | PermissionError):
            category = ErrorCategory.FILESYSTEM
        else:
            category = ErrorCategory.SYSTEM

    wrapped = DiscVaultError(
        message=str(error) or "An unexpected error occurred",
        category=category,
        original_error=error,
        **kwargs,
    )
    wrapped.display_to_user()


def check_dependencies(
    makemkv_con: str = "makemkvcon",
    seven_zip: str = "7z",
) -> list[DependencyError]:
    """Check for missing external tools and return list of errors."""
    errors = []

    if not shutil.which(makemkv_con):
        errors.append(
            DependencyError(
                "MakeMKV",
                solution="Install MakeMKV from https://makemkv.com/ or your package manager",
                details=f"'{makemkv_con}' is required for disc backups",
            ),
        )

    if not shutil.which(seven_zip):
        errors.append(
            DependencyError(
                "7-Zip",
                install_command="sudo apt install 7zip",
                details=f"'{seven_zip}' is required to extract DVD disc images",
            ),
        )

    return errors


def graceful_exit(exit_code: int = 1) -> None:
    """Exit gracefully with helpful message."""
    if exit_code == 0:
        console.print("\n[green]✨ DiscVault completed successfully[/green]")
    else:
        console.print("\n[red]DiscVault encountered errors and had to stop[/red]")
        console.print("[dim]Check the logs above for details on what went wrong[/dim]")

    sys.exit(exit_code)
