"""Tests for scan/copy phase detection."""

from discvault.backup.phase import Phase, PhaseTracker
from discvault.backup.protocol import Message, ProgressTitle, ProgressValue


class TestPhaseTracker:
    """Test the one-way scanning -> copying transition."""

    def test_starts_scanning(self):
        tracker = PhaseTracker()

        assert tracker.phase is Phase.SCANNING
        assert not tracker.in_copy_phase
        assert tracker.copy_started_at is None

    def test_copying_title_enters_copy_phase(self):
        tracker = PhaseTracker()

        assert tracker.observe(ProgressTitle(5018, 0, "Copying disc")) is True
        assert tracker.in_copy_phase
        assert tracker.copy_started_at is not None

    def test_keyword_is_case_insensitive(self):
        tracker = PhaseTracker()

        assert tracker.observe(ProgressTitle(1, 0, "COPYING FILES")) is True

    def test_transition_fires_once(self):
        tracker = PhaseTracker()
        tracker.observe(ProgressTitle(1, 0, "Copying"))

        assert tracker.observe(ProgressTitle(1, 0, "Copying again")) is False
        assert tracker.in_copy_phase

    def test_other_events_do_not_transition(self):
        tracker = PhaseTracker()

        assert tracker.observe(ProgressTitle(1, 0, "Scanning CD-ROM devices")) is False
        assert tracker.observe(Message(1005, 0, "Copying is mentioned here")) is False
        assert tracker.observe(ProgressValue(1, 2, 3)) is False
        assert tracker.phase is Phase.SCANNING

    def test_scan_phase_progress_discarded(self):
        tracker = PhaseTracker()

        assert tracker.accepts(ProgressValue(0, 65000, 65536)) is False
        assert tracker.discarded_progress_events == 1

    def test_copy_phase_progress_accepted(self):
        tracker = PhaseTracker()
        tracker.observe(ProgressTitle(1, 0, "Copying"))

        assert tracker.accepts(ProgressValue(0, 100, 65536)) is True
        assert tracker.discarded_progress_events == 0
