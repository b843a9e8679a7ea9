"""Command-line interface for DiscVault."""

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from .backup.job import (
    BackupObserver,
    BackupOptions,
    BackupResult,
    BackupRunner,
    JobState,
)
from .backup.paths import format_size, sanitize_disc_name
from .backup.profiles import PERFORMANCE_PRESETS, resolve_profile
from .backup.progress import ProgressSnapshot
from .backup.status import BackupStatus, BackupStatusProbe
from .config import (
    DiscVaultConfig,
    ExtractionMode,
    create_sample_config,
    load_config,
)
from .error_handling import (
    BackupCancelledError,
    BackupError,
    ConfigurationError,
    DiscVaultError,
    check_dependencies,
    graceful_exit,
    handle_error,
)
from .notify.ntfy import NtfyNotifier

console = Console()
logger = logging.getLogger(__name__)

EXIT_CANCELLED = 130
DISC_TYPES = ("dvd", "bluray", "4k-bluray")


def setup_logging(
    *,
    verbose: bool = False,
    config: DiscVaultConfig | None = None,
) -> None:
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO

    # Clean up existing handlers first to prevent resource leaks
    cleanup_logging()

    show_path = level == logging.DEBUG
    handlers: list[logging.Handler] = [
        RichHandler(console=console, rich_tracebacks=True, show_path=show_path),
    ]

    if config and config.log_dir:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(config.log_dir / "discvault.log")
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            ),
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True,
    )


def cleanup_logging() -> None:
    """Clean up logging handlers to prevent ResourceWarnings."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        if isinstance(handler, logging.FileHandler):
            handler.close()
            root_logger.removeHandler(handler)


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Configuration file path",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx: click.Context, config: Path | None, verbose: bool) -> None:
    """DiscVault - Full disc backups with MakeMKV."""
    try:
        ctx.ensure_object(dict)
        loaded_config = load_config(config)
        ctx.obj["config"] = loaded_config
        ctx.obj["config_path"] = config
        ctx.obj["verbose"] = verbose

        setup_logging(verbose=verbose, config=loaded_config)
    except (OSError, ValueError, RuntimeError) as e:
        config_error = ConfigurationError(
            f"Failed to load configuration: {e}",
            config_path=config,
            solution="Run 'discvault config validate' to check your configuration file",
        )
        console.print(f"[red]Configuration Error:[/red] {config_error}")
        sys.exit(1)


class ConsoleObserver(BackupObserver):
    """Renders job events on a rich progress bar."""

    def __init__(self, progress: Progress, task_id: TaskID):
        self.progress = progress
        self.task_id = task_id

    def on_progress(self, snapshot: ProgressSnapshot) -> None:
        self.progress.update(self.task_id, completed=snapshot.percent)

    def on_log(self, line: str) -> None:
        if line.startswith(("ERROR", "STDERR")):
            self.progress.console.print(f"[red]{line}[/red]")
        elif line.startswith("WARNING"):
            self.progress.console.print(f"[yellow]{line}[/yellow]")
        else:
            self.progress.console.print(f"[dim]{line}[/dim]")

    def on_state(self, state: JobState) -> None:
        self.progress.update(
            self.task_id,
            description=state.value.replace("_", " ").title(),
        )


async def run_backup(
    config: DiscVaultConfig,
    disc_name: str,
    source_index: int,
    disc_size: int,
    options: BackupOptions,
    observer: BackupObserver | None = None,
) -> BackupResult:
    """Run one backup; SIGINT cancels it cleanly."""
    runner = BackupRunner(config, observer)
    notifier = NtfyNotifier(config) if config.ntfy_topic else None
    loop = asyncio.get_running_loop()

    try:
        loop.add_signal_handler(signal.SIGINT, runner.cancel)
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers not supported, Ctrl+C will not cancel cleanly")

    job = runner.prepare(disc_name, source_index, disc_size, options)
    try:
        if notifier:
            await asyncio.to_thread(notifier.notify_backup_started, job.disc_name, job.source)
        result = await runner.run(job)
    except BackupCancelledError:
        if notifier:
            await asyncio.to_thread(notifier.notify_backup_cancelled, job.disc_name)
        raise
    except BackupError as e:
        if notifier:
            await asyncio.to_thread(notifier.notify_backup_failed, job.disc_name, e.message)
        raise
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        if notifier:
            notifier.close()

    if notifier and not result.already_existed:
        await asyncio.to_thread(
            notifier.notify_backup_completed,
            job.disc_name,
            format_size(result.final_size),
            partial=result.partial_success,
            files_failed=result.files_failed,
        )
    return result


@cli.command()
@click.argument("disc_name")
@click.option("--index", "-i", type=int, default=0, help="MakeMKV disc index (disc:N)")
@click.option("--size", "-s", type=int, default=0, help="Disc size in bytes (0 = unknown)")
@click.option(
    "--mode",
    type=click.Choice([m.value for m in ExtractionMode]),
    help="Extraction mode (defaults to the configured mode)",
)
@click.option("--disc-type", type=click.Choice(DISC_TYPES), help="Disc type for profile selection")
@click.option("--preset", help="Performance preset to use for this backup")
@click.option("--min-length", type=int, help="Minimum title length in minutes (smart mode)")
@click.pass_context
def backup(
    ctx: click.Context,
    disc_name: str,
    index: int,
    size: int,
    mode: str | None,
    disc_type: str | None,
    preset: str | None,
    min_length: int | None,
) -> None:
    """Back up a disc with makemkvcon."""
    config: DiscVaultConfig = ctx.obj["config"]

    for error in check_dependencies(config.makemkv_con, config.seven_zip):
        if "MakeMKV" in error.message:
            error.display_to_user()
            sys.exit(1)
        console.print(f"[yellow]⚠ {error.message}: {error.details}[/yellow]")

    if preset:
        performance = config.performance.model_copy(
            update={"preset": preset, "disc_type_profiles": {}},
        )
        config = config.model_copy(update={"performance": performance})

    options = BackupOptions(
        mode=ExtractionMode(mode) if mode else None,
        disc_type=disc_type,
        min_title_minutes=min_length,
    )

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task_id = progress.add_task("Starting", total=100)
        observer = ConsoleObserver(progress, task_id)
        try:
            result = asyncio.run(
                run_backup(config, disc_name, index, size, options, observer),
            )
        except BackupCancelledError:
            progress.stop()
            console.print("[yellow]Backup cancelled, temp files removed[/yellow]")
            sys.exit(EXIT_CANCELLED)
        except DiscVaultError as e:
            progress.stop()
            handle_error(e)
            graceful_exit(1)

    if result.already_existed:
        console.print(f"[green]Backup already exists:[/green] {result.final_path}")
        return

    console.print(
        f"[green]Backup saved to {result.final_path}[/green] "
        f"({format_size(result.final_size)})",
    )
    if result.partial_success:
        console.print(
            f"[yellow]{result.files_failed} file error(s), "
            f"{result.percent_recovered:.1f}% of files recovered[/yellow]",
        )


@cli.command()
@click.argument("disc_name")
@click.option("--size", "-s", type=int, default=0, help="Disc size in bytes (0 = unknown)")
@click.pass_context
def status(ctx: click.Context, disc_name: str, size: int) -> None:
    """Show the backup status of a disc."""
    config: DiscVaultConfig = ctx.obj["config"]
    probe = BackupStatusProbe(
        config.temp_dir,
        config.backup_dir,
        complete_threshold=config.complete_threshold,
        noise_floor=config.noise_floor_bytes,
    )
    report = probe.probe(sanitize_disc_name(disc_name), size)

    colors = {
        BackupStatus.COMPLETE: "green",
        BackupStatus.INCOMPLETE_BACKUP: "yellow",
        BackupStatus.INCOMPLETE_TEMP: "yellow",
        BackupStatus.NONE: "white",
    }
    color = colors[report.status]

    table = Table()
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("Status", f"[{color}]{report.status.value.replace('_', ' ')}[/{color}]")
    table.add_row("Path", str(report.path) if report.path else "-")
    table.add_row("Disc size", format_size(report.disc_size) if report.disc_size else "unknown")
    table.add_row(
        "Backup size",
        f"{format_size(report.backup_size)} ({report.backup_ratio:.1f}%)",
    )
    table.add_row("Temp size", f"{format_size(report.temp_size)} ({report.temp_ratio:.1f}%)")
    table.add_row("Files", str(report.files))
    table.add_row("Format", report.format_family or ("disc image" if report.is_single_file else "-"))
    console.print(table)


@cli.command()
@click.pass_context
def profiles(ctx: click.Context) -> None:
    """List performance presets and the profile used for each disc type."""
    config: DiscVaultConfig = ctx.obj["config"]

    table = Table(title="Performance Presets")
    table.add_column("Preset")
    table.add_column("Cache (MB)", justify="right")
    table.add_column("Buffers (MB)", justify="right")
    table.add_column("Timeout (ms)", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Description")

    for key, profile in PERFORMANCE_PRESETS.items():
        marker = " *" if key == config.performance.preset else ""
        table.add_row(
            f"{key}{marker}",
            str(profile.cache),
            f"{profile.minbuf}-{profile.maxbuf}",
            str(profile.timeout),
            str(profile.max_retries),
            profile.description,
        )
    console.print(table)

    for disc_type in DISC_TYPES:
        resolved = resolve_profile(config.performance, disc_type=disc_type)
        console.print(f"{disc_type}: [bold]{resolved.name}[/bold] (cache {resolved.cache} MB)")


@cli.group("config")
@click.pass_context
def config_cmd(ctx: click.Context) -> None:
    """Configuration management commands."""


@config_cmd.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show current configuration."""
    config: DiscVaultConfig = ctx.obj["config"]

    table = Table()
    table.add_column("Setting")
    table.add_column("Value")

    table.add_row("Base Directory", str(config.base_dir))
    table.add_row("Temp Directory", str(config.temp_dir))
    table.add_row("Backup Directory", str(config.backup_dir))
    table.add_row("Log Directory", str(config.log_dir))
    table.add_row("MakeMKV", config.makemkv_con)
    table.add_row("7-Zip", config.seven_zip)
    table.add_row("Extraction Mode", config.extraction_mode.value)
    table.add_row("Performance Preset", config.performance.preset)
    table.add_row("Complete Threshold", f"{config.complete_threshold}%")
    table.add_row("Ntfy Topic", config.ntfy_topic or "Not configured")

    console.print(table)


@config_cmd.command("validate")
@click.pass_context
def config_validate(ctx: click.Context) -> None:
    """Validate current configuration."""
    config: DiscVaultConfig = ctx.obj["config"]

    console.print("[bold]Configuration Validation[/bold]")

    errors = []

    for name, path in [
        ("Temp", config.temp_dir),
        ("Backup", config.backup_dir),
        ("Log", config.log_dir),
    ]:
        try:
            path.mkdir(parents=True, exist_ok=True)
            console.print(f"[green]✓[/green] {name} directory: {path}")
        except OSError as e:
            console.print(f"[red]✗[/red] {name} directory: {e}")
            errors.append(f"{name} directory: {e}")

    preset = config.performance.preset
    if preset == "custom" or preset in PERFORMANCE_PRESETS:
        console.print(f"[green]✓[/green] Performance preset: {preset}")
    else:
        console.print(f"[red]✗[/red] Unknown performance preset: {preset}")
        errors.append(f"Unknown performance preset: {preset}")

    for dependency in check_dependencies(config.makemkv_con, config.seven_zip):
        console.print(f"[yellow]⚠[/yellow] {dependency.message}")

    if errors:
        console.print(f"\n[red]Found {len(errors)} configuration errors[/red]")
        sys.exit(1)
    else:
        console.print("\n[green]Configuration is valid[/green]")


@config_cmd.command("init")
@click.option(
    "--path",
    "-p",
    type=click.Path(path_type=Path),
    default=Path.home() / ".config" / "discvault" / "config.toml",
    help="Path for the configuration file",
)
def config_init(path: Path) -> None:
    """Create a sample configuration file."""
    try:
        create_sample_config(path)
        console.print(f"[green]Created sample configuration at {path}[/green]")
        console.print("Please edit the configuration file with your settings.")
    except OSError as e:
        console.print(f"[red]Error creating configuration: {e}[/red]")
        sys.exit(1)


@cli.command("test-notify")
@click.pass_context
def test_notify(ctx: click.Context) -> None:
    """Send a test notification."""
    config: DiscVaultConfig = ctx.obj["config"]
    notifier = NtfyNotifier(config)

    if notifier.test_notification():
        console.print("[green]Test notification sent successfully[/green]")
    else:
        console.print("[red]Failed to send test notification[/red]")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
