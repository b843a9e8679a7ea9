"""Backup job orchestration.

A ``BackupRunner`` drives one disc backup end to end:

1. probe the final and scratch folders, short-circuiting on a complete backup
2. clear leftovers and spawn ``makemkvcon backup``
3. feed its output through the parser, phase tracker, estimator and classifier
4. on exit, finalize the backup or clean up and report the failure

Every job ends in exactly one terminal observer event, ``on_complete`` or
``on_failed``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from discvault.config import DiscVaultConfig, ExtractionMode
from discvault.error_handling import (
    BackupCancelledError,
    BackupError,
    BackupFailedError,
    ProcessingError,
    ToolError,
)

from .classifier import ErrorRecord, Severity, classify_message
from .paths import (
    count_files,
    delete_path,
    format_size,
    measure_path_size,
    sanitize_disc_name,
)
from .phase import PhaseTracker
from .postprocess import PostProcessor
from .profiles import (
    PERFORMANCE_PRESETS,
    PerformanceProfile,
    build_backup_flags,
    resolve_profile,
)
from .progress import (
    CHECKPOINT_COMPLETE,
    CHECKPOINT_FINALIZING,
    ProgressEstimator,
    ProgressSnapshot,
    SizePoller,
)
from .protocol import (
    Message,
    ProgressItem,
    ProgressTitle,
    ProgressValue,
    parse_line,
)
from .status import BackupStatus, BackupStatusProbe
from .supervisor import ProcessOutcome, ProcessSupervisor

logger = logging.getLogger(__name__)

SIZE_WARNING_RATIO = 90.0  # percent of disc size


class JobState(Enum):
    """Lifecycle of a backup job."""

    PENDING = "pending"
    PROBING = "probing"
    SPAWNING = "spawning"
    SCANNING = "scanning"
    COPYING = "copying"
    FINALIZING = "finalizing"
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {JobState.SUCCESS, JobState.PARTIAL_SUCCESS, JobState.FAILED, JobState.CANCELLED},
)

ALLOWED_TRANSITIONS = {
    JobState.PENDING: {JobState.PROBING, JobState.FAILED, JobState.CANCELLED},
    JobState.PROBING: {
        JobState.SPAWNING,
        JobState.SUCCESS,
        JobState.FAILED,
        JobState.CANCELLED,
    },
    JobState.SPAWNING: {JobState.SCANNING, JobState.FAILED, JobState.CANCELLED},
    JobState.SCANNING: {
        JobState.COPYING,
        JobState.FINALIZING,
        JobState.FAILED,
        JobState.CANCELLED,
    },
    JobState.COPYING: {JobState.FINALIZING, JobState.FAILED, JobState.CANCELLED},
    JobState.FINALIZING: {
        JobState.SUCCESS,
        JobState.PARTIAL_SUCCESS,
        JobState.FAILED,
    },
}


class JobStateError(RuntimeError):
    """An illegal job state transition was attempted."""


@dataclass
class BackupOptions:
    """Per-job settings that override the configuration."""

    mode: ExtractionMode | None = None
    disc_type: str | None = None
    overrides: dict[str, Any] = field(default_factory=dict)
    min_title_minutes: int | None = None


@dataclass(frozen=True)
class BackupJob:
    """Everything needed to back up one disc."""

    disc_name: str
    source_index: int
    expected_size: int
    scratch_path: Path
    final_path: Path
    mode: ExtractionMode = ExtractionMode.FULL
    profile: PerformanceProfile = field(
        default_factory=lambda: PERFORMANCE_PRESETS["balanced"],
    )
    disc_type: str | None = None
    min_title_minutes: int = 10

    @property
    def source(self) -> str:
        return f"disc:{self.source_index}"

    def build_arguments(self) -> list[str]:
        """Arguments for ``makemkvcon``, without the executable."""
        args = ["backup", *build_backup_flags(self.profile)]
        if self.mode == ExtractionMode.SMART:
            args.append(f"--minlength={self.min_title_minutes * 60}")
        args.extend([self.source, str(self.scratch_path)])
        return args


@dataclass(frozen=True)
class BackupResult:
    """Outcome of a successful (possibly partial) backup."""

    final_path: Path
    final_size: int
    is_single_file: bool
    partial_success: bool = False
    error_records: tuple[ErrorRecord, ...] = ()
    files_succeeded: int = 0
    files_failed: int = 0
    already_existed: bool = False

    @property
    def percent_recovered(self) -> float:
        total = self.files_succeeded + self.files_failed
        if total == 0:
            return 100.0
        return self.files_succeeded / total * 100


class BackupObserver:
    """Receives job events. Override the ones you care about."""

    def on_progress(self, snapshot: ProgressSnapshot) -> None:
        pass

    def on_log(self, line: str) -> None:
        pass

    def on_state(self, state: JobState) -> None:
        pass

    def on_complete(self, result: BackupResult) -> None:
        pass

    def on_failed(self, error: BackupError) -> None:
        pass


class BackupRunner:
    """Runs a single backup job on the current event loop."""

    def __init__(
        self,
        config: DiscVaultConfig,
        observer: BackupObserver | None = None,
        *,
        post_processor: PostProcessor | None = None,
    ):
        self.config = config
        self.observer = observer or BackupObserver()
        self.post_processor = post_processor or PostProcessor.from_config(config)

        self.state = JobState.PENDING
        self.job: BackupJob | None = None
        self.phase = PhaseTracker()
        self.estimator: ProgressEstimator | None = None
        self.poller: SizePoller | None = None
        self.supervisor: ProcessSupervisor | None = None

        self.error_records: list[ErrorRecord] = []
        self.failure_messages: list[str] = []
        self.fatal_record: ErrorRecord | None = None
        self.cancel_requested = False
        self._terminal_sent = False

    def prepare(
        self,
        disc_name: str,
        source_index: int,
        disc_size: int,
        options: BackupOptions | None = None,
    ) -> BackupJob:
        """Resolve paths and profile for a disc."""
        options = options or BackupOptions()
        name = sanitize_disc_name(disc_name)
        profile = resolve_profile(
            self.config.performance,
            disc_type=options.disc_type,
            overrides=options.overrides,
        )
        min_minutes = (
            options.min_title_minutes
            if options.min_title_minutes is not None
            else self.config.min_title_length
        )
        return BackupJob(
            disc_name=name,
            source_index=source_index,
            expected_size=max(disc_size or 0, 0),
            scratch_path=self.config.temp_dir / name,
            final_path=self.config.backup_dir / name,
            mode=options.mode or self.config.extraction_mode,
            profile=profile,
            disc_type=options.disc_type,
            min_title_minutes=min_minutes,
        )

    async def backup(
        self,
        disc_name: str,
        source_index: int,
        disc_size: int,
        options: BackupOptions | None = None,
    ) -> BackupResult:
        """Prepare and run a backup in one call."""
        return await self.run(self.prepare(disc_name, source_index, disc_size, options))

    async def run(self, job: BackupJob) -> BackupResult:
        """Run the job to completion.

        Returns the result on success. Raises BackupCancelledError,
        BackupFailedError or ProcessingError otherwise, after the observer
        has been told.
        """
        if self.state is not JobState.PENDING:
            msg = f"Runner already used (state {self.state.value})"
            raise JobStateError(msg)

        self.job = job
        self.estimator = ProgressEstimator(
            job.expected_size,
            trust_native=self.config.trust_native_progress,
        )
        logger.info(
            f"Backing up {job.disc_name} from {job.source} "
            f"(profile {job.profile.name}, {job.mode.value} mode, "
            f"disc size {format_size(job.expected_size)})",
        )

        try:
            self._transition(JobState.PROBING)
            existing = await self._probe_existing(job)
            if existing is not None:
                return existing

            if self.cancel_requested:
                raise await self._cancelled(job)

            await self._prepare_scratch(job)
            outcome = await self._run_process(job)
            await self._stop_polling()
            return await self._handle_exit(job, outcome)

        except BackupError as e:
            self._finish_failure(e)
            raise
        except asyncio.CancelledError:
            self._abort_on_task_cancel(job)
            raise
        finally:
            await self._stop_polling()

    def cancel(self) -> bool:
        """Request cancellation. Returns False if the job can no longer be cancelled."""
        if self.state.is_terminal:
            return False
        if self.state is JobState.FINALIZING:
            self._log("Backup is finalizing and can no longer be cancelled")
            return False

        logger.info("Cancellation requested")
        self.cancel_requested = True
        if self.poller:
            self.poller.stop()
        if self.supervisor:
            self.supervisor.cancel()
        return True

    async def _probe_existing(self, job: BackupJob) -> BackupResult | None:
        probe = BackupStatusProbe(
            job.scratch_path.parent,
            job.final_path.parent,
            complete_threshold=self.config.complete_threshold,
            noise_floor=self.config.noise_floor_bytes,
            on_log=self._log,
        )
        report = await asyncio.to_thread(probe.probe, job.disc_name, job.expected_size)

        if report.status is BackupStatus.COMPLETE:
            self._log(f"Backup already exists: {job.final_path}")
            self._publish(self.estimator.checkpoint(CHECKPOINT_COMPLETE))
            result = BackupResult(
                final_path=job.final_path,
                final_size=report.backup_size,
                is_single_file=report.is_single_file,
                files_succeeded=report.files,
                already_existed=True,
            )
            self._transition(JobState.SUCCESS)
            self._finish_success(result)
            return result

        if report.status is BackupStatus.INCOMPLETE_BACKUP or report.stale_backup:
            self._log(f"Deleting incomplete backup at {job.final_path}")
            removed = await asyncio.to_thread(delete_path, job.final_path)
            if not removed:
                msg = f"Could not remove incomplete backup at {job.final_path}"
                raise BackupFailedError(msg)

        if report.status is BackupStatus.INCOMPLETE_TEMP:
            self._log(
                f"Discarding incomplete temp data ({format_size(report.temp_size)}), "
                "restarting backup",
            )
        return None

    async def _prepare_scratch(self, job: BackupJob) -> None:
        if job.scratch_path.exists() or job.scratch_path.is_symlink():
            self._log(f"Deleting existing temp folder: {job.scratch_path}")
            removed = await asyncio.to_thread(delete_path, job.scratch_path)
            if not removed:
                msg = f"Could not delete existing temp folder {job.scratch_path}"
                raise BackupFailedError(
                    msg,
                    solution="Remove the folder manually and check its permissions",
                )

        # makemkvcon refuses an existing destination, so only the parent is created
        try:
            job.scratch_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            msg = f"Could not create temp folder {job.scratch_path.parent}: {e}"
            raise BackupFailedError(msg, original_error=e) from e

    async def _run_process(self, job: BackupJob) -> ProcessOutcome:
        self._transition(JobState.SPAWNING)
        self.poller = SizePoller(
            job.scratch_path,
            self.estimator,
            self._publish,
            interval=self.config.progress_poll_interval,
            grace_period=self.config.progress_fallback_delay,
        )
        self.supervisor = ProcessSupervisor(
            self.config.makemkv_con,
            job.build_arguments(),
            on_stdout_line=self._handle_stdout,
            on_stderr_line=self._handle_stderr,
            on_started=self._on_started,
        )
        self.supervisor.attach(self.poller)
        if self.cancel_requested:
            self.supervisor.cancel()

        self._publish(self.estimator.snapshot())

        try:
            return await self.supervisor.run()
        except ToolError as e:
            self._log(f"ERROR: {e.message}")
            await asyncio.to_thread(delete_path, job.scratch_path)
            msg = f"Failed to start MakeMKV: {e.message}"
            raise BackupFailedError(
                msg,
                solution=f"Check that '{self.config.makemkv_con}' is installed and on PATH",
                original_error=e,
            ) from e

    def _on_started(self, pid: int) -> None:
        logger.debug(f"makemkvcon started with pid {pid}")
        self._transition(JobState.SCANNING)
        if not self.cancel_requested:
            self.poller.arm_fallback()

    def _handle_stdout(self, line: str) -> None:
        logger.debug(f"makemkvcon: {line}")
        event = parse_line(line)
        if event is None:
            return

        if isinstance(event, ProgressTitle) and event.text:
            self._log(f"Task: {event.text}")

        if self.phase.observe(event):
            self._enter_copy_phase(event.text)
            return

        if isinstance(event, ProgressValue):
            if self.phase.accepts(event):
                self.estimator.record_native(event)
        elif isinstance(event, ProgressItem):
            if event.text:
                logger.debug(f"Processing: {event.text}")
        elif isinstance(event, Message):
            self._handle_message(event)

    def _enter_copy_phase(self, title: str) -> None:
        self._log(f"Phase: {title}")
        self._transition(JobState.COPYING)
        self.estimator.enter_copy_phase()
        self.poller.start("copy phase")

    def _handle_message(self, message: Message) -> None:
        classification = classify_message(message)
        severity = classification.severity

        if severity is Severity.RECOVERABLE:
            record = classification.record
            self.error_records.append(record)
            logger.warning(
                f"Recoverable error encountered: {record.file or 'unknown file'} "
                f"[{message.code}] {message.text}",
            )
            self._emit("on_log", f"ERROR: {message.text}")
            self._emit("on_log", f"WARNING (recoverable): {message.text}")
        elif severity is Severity.FATAL:
            logger.error(f"Fatal error encountered: [{message.code}] {message.text}")
            self._emit("on_log", f"ERROR: {message.text}")
            self.failure_messages.append(message.text)
            if self.fatal_record is None:
                self.fatal_record = classification.record
                if self.supervisor:
                    self.supervisor.terminate()
        elif severity is Severity.WARNING:
            logger.warning(f"[{message.code}] {message.text}")
            self._emit("on_log", f"WARNING: {message.text}")
        else:
            logger.info(f"[{message.code}] {message.text}")
            self._emit("on_log", message.text)

    def _handle_stderr(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        logger.error(f"makemkvcon stderr: {line}")
        self._emit("on_log", f"STDERR: {line}")
        self.failure_messages.append(f"STDERR: {line}")

    async def _handle_exit(self, job: BackupJob, outcome: ProcessOutcome) -> BackupResult:
        if self.cancel_requested or (outcome.signalled and self.fatal_record is None):
            raise await self._cancelled(job, outcome)

        if self.fatal_record is not None or outcome.return_code != 0:
            raise await self._failed(job, outcome)

        return await self._finalize(job)

    async def _cancelled(
        self,
        job: BackupJob,
        outcome: ProcessOutcome | None = None,
    ) -> BackupCancelledError:
        if outcome and outcome.signalled:
            self._log(f"Backup cancelled (signal: {outcome.signal})")
        else:
            self._log("Backup cancelled")
        await asyncio.to_thread(delete_path, job.scratch_path)
        self._transition(JobState.CANCELLED)
        return BackupCancelledError()

    async def _failed(self, job: BackupJob, outcome: ProcessOutcome) -> BackupFailedError:
        logger.error(
            f"Backup failed for {job.disc_name} (exit code {outcome.return_code}, "
            f"{len(self.failure_messages)} error messages)",
        )
        self._log("Backup failed, cleaning up temp folder...")
        await asyncio.to_thread(delete_path, job.scratch_path)

        if self.failure_messages:
            message = ". ".join(self.failure_messages)
        else:
            message = (
                f"Backup failed with exit code {outcome.return_code}. "
                "Check system logs for details."
            )
        self._emit("on_log", f"ERROR: {message}")
        self._transition(JobState.FAILED)
        records = list(self.error_records)
        if self.fatal_record is not None:
            records.append(self.fatal_record)
        return BackupFailedError(
            message,
            exit_code=outcome.return_code,
            error_records=records,
        )

    async def _finalize(self, job: BackupJob) -> BackupResult:
        self._transition(JobState.FINALIZING)
        partial = bool(self.error_records)
        scratch_size = await asyncio.to_thread(measure_path_size, job.scratch_path)
        scratch_files = await asyncio.to_thread(count_files, job.scratch_path)
        self._log_rip_summary(job, partial, scratch_size, scratch_files)

        self._checkpoint(CHECKPOINT_FINALIZING)
        loop = asyncio.get_running_loop()

        def on_checkpoint(percent: float) -> None:
            loop.call_soon_threadsafe(self._checkpoint, percent)

        def on_log(line: str) -> None:
            loop.call_soon_threadsafe(self._emit, "on_log", line)

        try:
            finalized = await asyncio.to_thread(
                self.post_processor.finalize,
                job.scratch_path,
                job.final_path,
                on_checkpoint=on_checkpoint,
                on_log=on_log,
            )
        except ProcessingError as e:
            self._emit("on_log", f"ERROR: Failed to process backup: {e.message}")
            self._transition(JobState.FAILED)
            raise

        self._checkpoint(CHECKPOINT_COMPLETE)

        if partial:
            self._log("Backup completed with recoverable errors - review metadata")
        else:
            self._log("Backup completed successfully!")

        result = BackupResult(
            final_path=finalized.final_path,
            final_size=finalized.final_size,
            is_single_file=finalized.is_single_file,
            partial_success=partial,
            error_records=tuple(self.error_records),
            files_succeeded=finalized.files,
            files_failed=len(self.error_records),
        )
        self._transition(JobState.PARTIAL_SUCCESS if partial else JobState.SUCCESS)
        self._finish_success(result)
        return result

    def _log_rip_summary(
        self,
        job: BackupJob,
        partial: bool,
        size: int,
        files: int,
    ) -> None:
        ratio = size / job.expected_size * 100 if job.expected_size > 0 else 100.0

        if partial:
            failed = len(self.error_records)
            total = files + failed
            recovered = files / total * 100 if total else 100.0
            self._log(f"Backup completed with {failed} file error(s)")
            self._log(f"Recovery status: {format_size(size)} ({ratio:.1f}% of disc)")
            self._log(f"Files recovered: {files} of {total} ({recovered:.1f}%)")
            return

        self._log(f"Rip complete! Size: {format_size(size)} ({ratio:.1f}% of disc)")
        if job.expected_size > 0 and ratio < SIZE_WARNING_RATIO:
            logger.warning(f"Backup of {job.disc_name} is only {ratio:.1f}% of disc size")
            self._emit("on_log", f"WARNING: Backup is only {ratio:.1f}% of disc size")

    async def _stop_polling(self) -> None:
        if self.poller is not None:
            await self.poller.aclose()

    def _abort_on_task_cancel(self, job: BackupJob) -> None:
        """The surrounding task was cancelled; kill the child and drop scratch."""
        logger.warning(f"Backup task for {job.disc_name} was cancelled")
        if self.poller:
            self.poller.stop()
        if self.supervisor:
            self.supervisor.cancel()
        delete_path(job.scratch_path)
        if not self.state.is_terminal:
            self.state = JobState.CANCELLED
            self._emit("on_state", self.state)
        self._finish_failure(BackupCancelledError())

    def _transition(self, new_state: JobState) -> None:
        if new_state not in ALLOWED_TRANSITIONS.get(self.state, set()):
            msg = f"Invalid job transition {self.state.value} -> {new_state.value}"
            raise JobStateError(msg)
        logger.debug(f"Job state: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self._emit("on_state", new_state)

    def _publish(self, snapshot: ProgressSnapshot) -> None:
        self._emit("on_progress", snapshot)

    def _checkpoint(self, percent: float) -> None:
        self._publish(self.estimator.checkpoint(percent))

    def _log(self, line: str) -> None:
        logger.info(line)
        self._emit("on_log", line)

    def _emit(self, name: str, *args: Any) -> None:
        try:
            getattr(self.observer, name)(*args)
        except Exception as e:
            logger.warning(f"Observer {name} raised: {e}")

    def _finish_success(self, result: BackupResult) -> None:
        if self._terminal_sent:
            return
        self._terminal_sent = True
        self._emit("on_complete", result)

    def _finish_failure(self, error: BackupError) -> None:
        if self._terminal_sent:
            return
        self._terminal_sent = True
        if not self.state.is_terminal:
            self._transition(JobState.FAILED)
        self._emit("on_failed", error)
