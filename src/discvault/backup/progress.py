"""Progress estimation for backup jobs.

MakeMKV's own PRGV values stop moving once ``backup`` starts copying, so the
primary estimate comes from polling the size of the scratch directory. The
native ratio is still recorded and can be folded in through
``trust_native``.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .paths import format_size, measure_path_size
from .protocol import ProgressValue

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5  # seconds
FALLBACK_GRACE_PERIOD = 5.0  # seconds

# Copy phase maps onto 0-95%, capped at 94% until post-processing reports in
COPY_SCALE = 95.0
COPY_CEILING = 94.0

CHECKPOINT_FINALIZING = 96.0
CHECKPOINT_RELOCATED = 99.0
CHECKPOINT_COMPLETE = 100.0


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time progress of a backup job."""

    percent: float
    bytes_observed: int
    bytes_expected: int


class ProgressEstimator:
    """Fuses native and size-based progress into one monotonic percentage."""

    def __init__(self, expected_bytes: int, *, trust_native: bool = False):
        self.expected_bytes = max(expected_bytes, 0)
        self.trust_native = trust_native
        self.percent = 0.0
        self.bytes_observed = 0
        self.native_ratio: float | None = None

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            percent=self.percent,
            bytes_observed=self.bytes_observed,
            bytes_expected=self.expected_bytes,
        )

    def enter_copy_phase(self) -> None:
        """Discard everything gathered while MakeMKV was scanning.

        The published percentage keeps its floor so callers never see it go
        backwards.
        """
        self.native_ratio = None
        self.bytes_observed = 0
        logger.info(
            f"Copy phase started, resetting progress baseline "
            f"(disc size {format_size(self.expected_bytes)})",
        )

    def record_native(self, event: ProgressValue) -> None:
        """Record a copy-phase PRGV value."""
        self.native_ratio = event.ratio

    def size_candidate(self, observed_bytes: int) -> float:
        if self.expected_bytes <= 0:
            return 0.0
        return min(observed_bytes / self.expected_bytes * COPY_SCALE, COPY_CEILING)

    def _reconcile(self, size_candidate: float) -> float:
        if not self.trust_native or self.native_ratio is None:
            return size_candidate
        native_candidate = min(self.native_ratio * COPY_SCALE, COPY_CEILING)
        return max(size_candidate, native_candidate)

    def apply_poll(self, observed_bytes: int) -> ProgressSnapshot:
        """Apply a scratch size sample and return the resulting snapshot."""
        self.bytes_observed = observed_bytes
        candidate = self._reconcile(self.size_candidate(observed_bytes))
        self.percent = max(self.percent, candidate)
        return self.snapshot()

    def checkpoint(self, percent: float) -> ProgressSnapshot:
        """Report a fixed post-processing checkpoint."""
        self.percent = max(self.percent, min(percent, CHECKPOINT_COMPLETE))
        if percent >= CHECKPOINT_COMPLETE:
            self.bytes_observed = max(self.bytes_observed, self.expected_bytes)
        return self.snapshot()


class SizePoller:
    """Timers that drive size-based progress for one job.

    A one-shot fallback timer starts polling if no copy phase signal arrives
    within the grace period. Whichever trigger fires first wins and the
    other is cancelled. ``stop()`` tears down both and is safe to call
    repeatedly.
    """

    def __init__(
        self,
        path: Path,
        estimator: ProgressEstimator,
        on_snapshot: Callable[[ProgressSnapshot], None],
        *,
        interval: float = POLL_INTERVAL,
        grace_period: float = FALLBACK_GRACE_PERIOD,
        measure: Callable[[Path], int] = measure_path_size,
    ):
        self.path = path
        self.estimator = estimator
        self.on_snapshot = on_snapshot
        self.interval = interval
        self.grace_period = grace_period
        self.measure = measure
        self.trigger: str | None = None
        self._fallback: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None

    @property
    def is_polling(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def fallback_armed(self) -> bool:
        return self._fallback is not None

    def arm_fallback(self) -> None:
        """Schedule the fallback start. Must be called from the event loop."""
        if self._fallback is not None or self._task is not None:
            return
        loop = asyncio.get_running_loop()
        self._fallback = loop.call_later(self.grace_period, self._fallback_fired)

    def _fallback_fired(self) -> None:
        self._fallback = None
        if self._task is None:
            logger.warning(
                f"No copy phase signal after {self.grace_period:.0f}s, "
                f"starting fallback polling for {self.path.name}",
            )
            self.start("fallback")

    def start(self, trigger: str) -> bool:
        """Start polling. Returns False if already started or nothing to measure."""
        if self._task is not None:
            return False
        if self.estimator.expected_bytes <= 0:
            logger.debug("Disc size unknown, size polling disabled")
            return False

        self._cancel_fallback()
        self.trigger = trigger
        self._task = asyncio.get_running_loop().create_task(self._poll_loop())
        logger.info(f"Started size-based polling for {self.path.name} via {trigger}")
        return True

    async def _poll_loop(self) -> None:
        while True:
            try:
                observed = await asyncio.to_thread(self.measure, self.path)
            except OSError as e:
                logger.warning(f"Polling error: {e}")
            else:
                snapshot = self.estimator.apply_poll(observed)
                self.on_snapshot(snapshot)
            await asyncio.sleep(self.interval)

    def _cancel_fallback(self) -> None:
        if self._fallback is not None:
            self._fallback.cancel()
            self._fallback = None

    def stop(self) -> None:
        self._cancel_fallback()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def aclose(self) -> None:
        """Stop and wait for the polling task to finish unwinding."""
        self.stop()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
