"""
Unit Tests for the Reservation Engine

Tests cover:
1. Booking flow and its preconditions
2. Member cancellation and the deadline rule
3. Admin session cancellation
4. Roster capacity under concurrent bookings
"""

import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from ledger.models import TransactionType
from reservations.errors import FailureReason, NotFoundError
from reservations.models import BookingStatus


class TestBookSession:
    """Tests for the booking flow."""

    def test_book_session_success(self, service, make_player, make_session):
        """Test booking spends credits, fills the roster and records an active booking."""
        make_player("user-001", credits=10)
        session = make_session(cost=3)
        history_before = service.get_credit_history("user-001")

        result = service.book_session(session.id, "user-001")

        assert result.success
        assert service.get_member("user-001").credits == 7

        # Exactly one new spent transaction
        history = service.get_credit_history("user-001")
        assert len(history) == len(history_before) + 1
        assert history[0].type == TransactionType.SPENT
        assert history[0].amount == -3
        assert history[0].balance_after == 7
        assert history[0].session_id == session.id

        assert [m.id for m in service.get_session_participants(session.id)] == ["user-001"]
        assert result.booking.status == BookingStatus.ACTIVE

    def test_insufficient_credits(self, service, make_player, make_session):
        """Test booking without enough credits fails with no mutation."""
        make_player("user-001", credits=2)
        session = make_session(cost=3)

        result = service.book_session(session.id, "user-001")

        assert not result.success
        assert result.reason == FailureReason.INSUFFICIENT_CREDITS
        assert service.get_member("user-001").credits == 2
        assert service.get_session_participants(session.id) == []
        assert service.get_member_bookings("user-001") == []

    def test_duplicate_booking_rejected(self, service, make_player, make_session):
        """Test a member cannot hold two active bookings for one session."""
        make_player("user-001", credits=10)
        session = make_session(cost=3)
        service.book_session(session.id, "user-001")

        result = service.book_session(session.id, "user-001")

        assert result.reason == FailureReason.ALREADY_BOOKED
        assert service.get_member("user-001").credits == 7

    def test_full_session_rejected(self, service, make_player, make_session):
        """Test booking a full session fails."""
        make_player("user-001")
        make_player("user-002")
        session = make_session(capacity=1)
        service.book_session(session.id, "user-001")

        result = service.book_session(session.id, "user-002")

        assert result.reason == FailureReason.SESSION_FULL
        assert service.get_member("user-002").credits == 10

    def test_started_session_rejected(self, service, clock, make_player, make_session):
        """Test a session that has already started cannot be booked."""
        make_player("user-001")
        session = make_session(start=clock.now + timedelta(hours=1))
        clock.advance(hours=2)

        result = service.book_session(session.id, "user-001")

        assert result.reason == FailureReason.SESSION_STARTED

    def test_unknown_ids_raise(self, service, make_player, make_session):
        """Test unknown member or session ids raise NotFoundError."""
        make_player("user-001")
        session = make_session()

        with pytest.raises(NotFoundError):
            service.book_session("session-missing", "user-001")
        with pytest.raises(NotFoundError):
            service.book_session(session.id, "ghost")

    def test_rebook_creates_new_booking(self, service, make_player, make_session):
        """Test rebooking after a cancellation creates a fresh booking record."""
        make_player("user-001")
        session = make_session(cost=3)
        first = service.book_session(session.id, "user-001").booking
        service.cancel_booking(session.id, "user-001")

        second = service.book_session(session.id, "user-001").booking

        assert second.id != first.id
        bookings = {b.id: b.status for b in service.get_member_bookings("user-001")}
        assert bookings == {first.id: BookingStatus.CANCELLED, second.id: BookingStatus.ACTIVE}


class TestCancelBooking:
    """Tests for member cancellation."""

    def test_cancel_before_deadline_refunds(self, service, make_player, make_session):
        """Test cancelling in time refunds the cost and frees the seat."""
        make_player("user-001", credits=10)
        session = make_session(cost=3)
        service.book_session(session.id, "user-001")

        result = service.cancel_booking(session.id, "user-001")

        assert result.success
        assert result.booking.status == BookingStatus.CANCELLED
        assert service.get_member("user-001").credits == 10
        latest = service.get_credit_history("user-001")[0]
        assert latest.type == TransactionType.REFUND
        assert latest.amount == 3
        assert latest.balance_after == 10
        assert service.get_session_participants(session.id) == []

    def test_cancel_after_deadline_fails(self, service, clock, make_player, make_session):
        """Test cancelling inside the deadline leaves balance and roster unchanged."""
        make_player("user-001", credits=10)
        session = make_session(start=clock.now + timedelta(hours=30), cost=3)
        service.book_session(session.id, "user-001")
        clock.advance(hours=7)

        result = service.cancel_booking(session.id, "user-001")

        assert not result.success
        assert result.reason == FailureReason.CANCELLATION_DEADLINE_PASSED
        assert service.get_member("user-001").credits == 7
        assert [m.id for m in service.get_session_participants(session.id)] == ["user-001"]
        assert not service.can_cancel_booking(session.id)

    def test_custom_deadline(self, service, clock, make_player, make_session):
        """Test the session's own deadline replaces the 24 hour default."""
        make_player("user-001")
        session = make_session(start=clock.now + timedelta(hours=10), deadline=2)
        service.book_session(session.id, "user-001")

        assert service.can_cancel_booking(session.id)
        assert service.cancel_booking(session.id, "user-001").success

    def test_deadline_boundary_is_inclusive(self, service, clock, make_player, make_session):
        """Test cancelling exactly at the deadline is still allowed."""
        make_player("user-001")
        session = make_session(start=clock.now + timedelta(hours=24))
        service.book_session(session.id, "user-001")

        assert service.cancel_booking(session.id, "user-001").success

    def test_double_cancel_does_not_refund_twice(self, service, make_player, make_session):
        """Test a redelivered cancellation is a no-op failure."""
        make_player("user-001", credits=10)
        session = make_session(cost=3)
        service.book_session(session.id, "user-001")
        service.cancel_booking(session.id, "user-001")

        result = service.cancel_booking(session.id, "user-001")

        assert result.reason == FailureReason.NO_ACTIVE_BOOKING
        assert service.get_member("user-001").credits == 10
        refunds = [t for t in service.get_credit_history("user-001") if t.type == TransactionType.REFUND]
        assert len(refunds) == 1


class TestCancelSession:
    """Tests for admin session cancellation."""

    def test_cancel_session_refunds_everyone(self, service, clock, make_player, make_session):
        """Test all participants are refunded even inside their deadline, then the session is removed."""
        make_player("user-001", credits=10)
        make_player("user-002", credits=5)
        session = make_session(start=clock.now + timedelta(hours=3), cost=2)
        service.book_session(session.id, "user-001")
        service.book_session(session.id, "user-002")

        result = service.cancel_session(session.id)

        assert result.success
        assert len(result.refunds) == 2
        assert service.get_member("user-001").credits == 10
        assert service.get_member("user-002").credits == 5
        for member_id in ("user-001", "user-002"):
            assert all(b.status == BookingStatus.CANCELLED for b in service.get_member_bookings(member_id))
            assert service.get_credit_history(member_id)[0].type == TransactionType.REFUND
        with pytest.raises(NotFoundError):
            service.get_session(session.id)

    def test_cancel_empty_session(self, service, make_session):
        """Test a session with no participants is simply removed."""
        session = make_session()

        result = service.cancel_session(session.id)

        assert result.refunds == []
        assert session.id not in [s.id for s in service.list_sessions(include_past=True)]

    def test_cancel_missing_session(self, service):
        """Test cancelling an unknown session raises NotFoundError."""
        with pytest.raises(NotFoundError):
            service.cancel_session("session-missing")


class TestRosterInvariants:
    """Tests for capacity and ledger invariants across many operations."""

    def test_concurrent_bookings_respect_capacity(self, service, make_player, make_session):
        """Test parallel bookings never overfill the roster."""
        member_ids = [f"user-{i:03d}" for i in range(20)]
        for member_id in member_ids:
            make_player(member_id, credits=5)
        session = make_session(capacity=4, cost=1)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda m: service.book_session(session.id, m), member_ids))

        assert sum(r.success for r in results) == 4
        assert len(service.get_session_participants(session.id)) == 4
        booked = {m.id for m in service.get_session_participants(session.id)}
        for member_id in member_ids:
            expected = 4 if member_id in booked else 5
            assert service.get_member(member_id).credits == expected

    def test_ledger_sum_matches_balance(self, service, clock, make_player, make_session):
        """Test the ledger sum equals the balance change over a mixed sequence."""
        make_player("user-001", credits=0)
        service.add_credits("user-001", 8, "Season top-up")
        first = make_session(cost=3)
        second = make_session(cost=2, start=clock.now + timedelta(days=5))
        service.book_session(first.id, "user-001")
        service.book_session(second.id, "user-001")
        service.cancel_booking(first.id, "user-001")
        service.cancel_session(second.id)
        service.add_credits("user-001", -100, "Manual correction", confirm_capped=True)

        history = service.get_credit_history("user-001")

        assert sum(t.amount for t in history) == service.get_member("user-001").credits - 0
        assert service.get_member("user-001").credits == 0
