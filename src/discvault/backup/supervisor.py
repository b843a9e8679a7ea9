"""Lifecycle of a single ``makemkvcon`` child process."""

import asyncio
import logging
import signal
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from discvault.error_handling import ToolError

logger = logging.getLogger(__name__)

KILL_GRACE_PERIOD = 10.0  # seconds between SIGTERM and SIGKILL


class Stoppable(Protocol):
    def stop(self) -> None: ...


@dataclass(frozen=True)
class ProcessOutcome:
    """How the child process ended."""

    return_code: int | None
    signal: int | None = None
    cancel_requested: bool = False
    terminated: bool = False  # stopped by us after a fatal message

    @property
    def signalled(self) -> bool:
        return self.signal is not None

    @property
    def spawned(self) -> bool:
        return self.return_code is not None


class ProcessSupervisor:
    """Spawns a tool, streams its output and owns its termination.

    stdout and stderr are read concurrently, line by line, and handed to the
    callbacks on the event loop. ``cancel()`` and ``terminate()`` both send
    SIGTERM; the former marks the run as cancelled by the user. Anything
    registered with ``attach()`` is stopped on either.
    """

    def __init__(
        self,
        executable: str,
        args: list[str],
        *,
        on_stdout_line: Callable[[str], None] | None = None,
        on_stderr_line: Callable[[str], None] | None = None,
        on_started: Callable[[int], None] | None = None,
        kill_grace_period: float = KILL_GRACE_PERIOD,
    ):
        self.executable = executable
        self.args = args
        self.on_stdout_line = on_stdout_line
        self.on_stderr_line = on_stderr_line
        self.on_started = on_started
        self.kill_grace_period = kill_grace_period
        self.process: asyncio.subprocess.Process | None = None
        self.cancel_requested = False
        self.terminated = False
        self._attached: list[Stoppable] = []
        self._kill_handle: asyncio.TimerHandle | None = None

    @property
    def command(self) -> list[str]:
        return [self.executable, *self.args]

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def attach(self, resource: Stoppable) -> None:
        """Register a timer-like resource torn down with the process."""
        self._attached.append(resource)

    async def run(self) -> ProcessOutcome:
        """Spawn the process and wait for it and its output streams to end.

        Raises ToolError when the executable cannot be started.
        """
        if self.cancel_requested:
            logger.info(f"Cancelled before {self.executable} was started")
            return ProcessOutcome(return_code=None, cancel_requested=True)

        logger.info(f"Running: {' '.join(self.command)}")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self._stop_attached()
            msg = f"Failed to start {self.executable}: {e}"
            raise ToolError(msg, original_error=e) from e

        # cancel() may have arrived while the spawn was in flight
        if self.cancel_requested:
            self._send_sigterm()

        if self.on_started:
            self.on_started(self.process.pid)

        try:
            await asyncio.gather(
                self._pump(self.process.stdout, self.on_stdout_line),
                self._pump(self.process.stderr, self.on_stderr_line),
            )
            return_code = await self.process.wait()
        except asyncio.CancelledError:
            self._send_sigterm()
            raise
        finally:
            self._stop_attached()
            if self._kill_handle is not None:
                self._kill_handle.cancel()
                self._kill_handle = None

        exit_signal = -return_code if return_code < 0 else None
        logger.info(
            f"{self.executable} exited with code {return_code}"
            + (f" (signal {signal.Signals(exit_signal).name})" if exit_signal else ""),
        )
        return ProcessOutcome(
            return_code=return_code,
            signal=exit_signal,
            cancel_requested=self.cancel_requested,
            terminated=self.terminated,
        )

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        callback: Callable[[str], None] | None,
    ) -> None:
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if callback is None:
                continue
            try:
                callback(line)
            except Exception as e:
                logger.warning(f"Output handler failed on line {line!r}: {e}")

    def cancel(self) -> None:
        """User cancellation. Honoured even before the process is spawned."""
        self.cancel_requested = True
        self._stop_attached()
        self._send_sigterm()

    def terminate(self) -> None:
        """Stop the process after an unrecoverable error."""
        self.terminated = True
        self._stop_attached()
        self._send_sigterm()

    def _send_sigterm(self) -> None:
        if not self.running:
            return
        logger.info(f"Sending SIGTERM to {self.executable} (pid {self.process.pid})")
        try:
            self.process.terminate()
        except ProcessLookupError:
            return
        if self._kill_handle is None:
            loop = asyncio.get_running_loop()
            self._kill_handle = loop.call_later(self.kill_grace_period, self._kill)

    def _kill(self) -> None:
        self._kill_handle = None
        if self.running:
            logger.warning(
                f"{self.executable} ignored SIGTERM for {self.kill_grace_period:.0f}s, killing",
            )
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

    def _stop_attached(self) -> None:
        for resource in self._attached:
            resource.stop()
