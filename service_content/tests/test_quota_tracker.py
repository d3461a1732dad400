"""
Unit tests for the quota tracker.
"""

import pytest

from service_content.app.ratelimit.quota_tracker import InterfaceKind, QuotaTracker
from shared.test_helpers import ManualClock


class TestQuotaTracker:
    """Test cases for QuotaTracker."""

    @pytest.fixture
    def clock(self):
        return ManualClock(start=1000.0)

    @pytest.fixture
    def tracker(self, clock):
        return QuotaTracker(rest_floor=10, batched_floor=50, clock=clock)

    def test_unknown_budget_is_admitted(self, tracker):
        assert tracker.admit(InterfaceKind.REST).allowed is True
        assert tracker.admit(InterfaceKind.BATCHED).allowed is True

    def test_denies_at_floor_before_reset(self, tracker):
        tracker.record(InterfaceKind.REST, remaining=10, reset_at=1600.0, limit=5000)

        admission = tracker.admit(InterfaceKind.REST)

        assert not admission
        assert admission.retry_after == 600.0
        assert "floor" in admission.reason

    def test_admits_above_floor(self, tracker):
        tracker.record(InterfaceKind.REST, remaining=11, reset_at=1600.0)
        assert tracker.admit(InterfaceKind.REST)

    def test_admits_after_reset_passes(self, tracker, clock):
        tracker.record(InterfaceKind.REST, remaining=0, reset_at=1600.0)
        assert not tracker.admit(InterfaceKind.REST)

        clock.advance(600)
        assert tracker.admit(InterfaceKind.REST)

    def test_interfaces_are_independent(self, tracker):
        tracker.record(InterfaceKind.REST, remaining=0, reset_at=1600.0)
        assert not tracker.admit(InterfaceKind.REST)
        assert tracker.admit(InterfaceKind.BATCHED)

    def test_consume_never_goes_negative(self, tracker):
        tracker.record(InterfaceKind.REST, remaining=1, reset_at=1600.0)
        tracker.consume(InterfaceKind.REST)
        tracker.consume(InterfaceKind.REST)

        assert tracker.status(InterfaceKind.REST).remaining == 0

    def test_consume_without_known_budget_is_noop(self, tracker):
        tracker.consume(InterfaceKind.BATCHED)
        assert tracker.status(InterfaceKind.BATCHED).remaining is None

    def test_out_of_order_reports_are_ignored(self, tracker):
        tracker.record(InterfaceKind.REST, remaining=100, reset_at=1600.0)

        # A slower response from earlier in the same window
        assert tracker.record(InterfaceKind.REST, remaining=150, reset_at=1600.0) is False
        # A response from the previous window
        assert tracker.record(InterfaceKind.REST, remaining=4000, reset_at=1000.0) is False

        assert tracker.status(InterfaceKind.REST).remaining == 100

    def test_new_window_replaces_state(self, tracker):
        tracker.record(InterfaceKind.REST, remaining=3, reset_at=1600.0)
        assert tracker.record(InterfaceKind.REST, remaining=4999, reset_at=5200.0, used=1) is True

        state = tracker.status(InterfaceKind.REST)
        assert state.remaining == 4999
        assert state.reset_at == 5200.0
        assert state.used == 1

    def test_negative_remaining_is_clamped(self, tracker):
        tracker.record(InterfaceKind.BATCHED, remaining=-5, reset_at=1600.0)
        assert tracker.status(InterfaceKind.BATCHED).remaining == 0

    def test_record_exhausted(self, tracker):
        tracker.record(InterfaceKind.REST, remaining=4000, reset_at=1600.0)
        tracker.record_exhausted(InterfaceKind.REST, reset_at=1900.0)

        state = tracker.status(InterfaceKind.REST)
        assert state.remaining == 0
        assert state.reset_at == 1900.0
        assert not tracker.admit(InterfaceKind.REST)

    def test_snapshot_shape(self, tracker):
        tracker.record(InterfaceKind.BATCHED, remaining=4000, reset_at=1600.0, limit=5000, used=1000)

        snapshot = tracker.snapshot()

        assert set(snapshot) == {"rest", "batched"}
        assert snapshot["batched"]["interface_kind"] == "batched"
        assert snapshot["batched"]["limit"] == 5000
        assert snapshot["rest"]["remaining"] is None

    def test_status_is_a_copy(self, tracker):
        tracker.record(InterfaceKind.REST, remaining=50, reset_at=1600.0)
        status = tracker.status(InterfaceKind.REST)
        status.remaining = 0

        assert tracker.status(InterfaceKind.REST).remaining == 50
