"""Detection of MakeMKV's scan and copy phases."""

import logging
import time
from enum import Enum

from .protocol import ProgressTitle, ProgressValue, ProtocolEvent

logger = logging.getLogger(__name__)

COPY_PHASE_KEYWORD = "copying"


class Phase(Enum):
    """Coarse stage of the MakeMKV backup workflow."""

    SCANNING = "scanning"
    COPYING = "copying"


class PhaseTracker:
    """Tracks when MakeMKV moves from disc scanning to real data copying.

    During scanning MakeMKV reports a fast progress ramp that says nothing
    about the backup itself. Only progress after a task title containing
    "copying" reflects data being written.
    """

    def __init__(self) -> None:
        self.phase = Phase.SCANNING
        self.copy_started_at: float | None = None
        self.discarded_progress_events = 0

    @property
    def in_copy_phase(self) -> bool:
        return self.phase is Phase.COPYING

    def observe(self, event: ProtocolEvent) -> bool:
        """Feed an event. Returns True only on the scanning -> copying transition."""
        if self.in_copy_phase or not isinstance(event, ProgressTitle):
            return False

        if COPY_PHASE_KEYWORD in event.text.lower():
            self.phase = Phase.COPYING
            self.copy_started_at = time.monotonic()
            logger.info(f"Entering copy phase: {event.text}")
            return True
        return False

    def accepts(self, event: ProgressValue) -> bool:
        """Whether a progress value should reach the estimator."""
        if self.in_copy_phase:
            return True
        self.discarded_progress_events += 1
        logger.debug(
            f"Ignoring scan phase progress: {event.total}/{event.maximum}",
        )
        return False
