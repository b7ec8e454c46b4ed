import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import uuid4

from ledger.models import TransactionType, CreditTransaction, CreditHistoryResponse
from ledger.service import Ledger, utc_now

from .config import Settings
from .errors import FailureReason, NotFoundError, PolicyViolation, ValidationError
from .models import (
    Booking,
    BookingResponse,
    BookingStatus,
    ChangeEvent,
    CreateMemberRequest,
    CreditAdjustmentResponse,
    DeleteMembersResponse,
    Member,
    MemberRole,
    MemberStatus,
    RecurringSessionRequest,
    RecurringSessionsResponse,
    Session,
    SessionCancellationResponse,
    SessionTemplate,
    UpdateMemberRequest,
)
from .notifications import ChangeNotifier
from .recurrence import build_sessions, new_parent_id
from .roster import Roster
from .storage import InMemoryStorage, JsonFileStore

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_ID = "admin-001"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _session_label(session: dict) -> str:
    return f"{session['venue']} on {session['start_time'].strftime('%A, %B %d, %Y at %H:%M')}"


class ReservationService:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        notifier: Optional[ChangeNotifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
        settings: Optional[Settings] = None,
        seed: Optional[bool] = None,
    ):
        self.settings = settings or Settings()
        self.storage = storage or InMemoryStorage()
        self.notifier = notifier or ChangeNotifier()
        self.clock = clock or utc_now
        self.storage.on_commit(self._publish)

        if self.storage.backend is not None:
            self.reconcile_balances()

        should_seed = self.settings.seed_on_startup if seed is None else seed
        if should_seed and self.storage.is_empty():
            self.seed_defaults()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReservationService":
        backend = JsonFileStore(settings.data_dir) if settings.data_dir else None
        return cls(storage=InMemoryStorage(backend), settings=settings)

    # Members

    def add_member(self, request: CreateMemberRequest) -> Member:
        if not request.id.strip():
            raise ValidationError("Member id is required")
        self._validate_division(request.division)

        with self.storage.transaction("add_member") as work:
            if request.id in work.members:
                raise ValidationError(f"Member {request.id} already exists")
            is_admin = request.member_role == MemberRole.ADMIN
            member = Member(
                **request.model_dump(),
                member_status=MemberStatus.APPROVED if is_admin else MemberStatus.APPLIED,
                credits=0,
                created_at=self.clock(),
            )
            work.members[member.id] = member.model_dump()

        return member

    def update_member(self, member_id: str, request: UpdateMemberRequest) -> Member:
        updates = request.model_dump(exclude_none=True)
        if "division" in updates:
            self._validate_division(updates["division"])

        with self.storage.transaction("update_member") as work:
            row = self._member_row(work, member_id)
            row.update(updates)
            member = Member(**row)

        return member

    def get_member(self, member_id: str) -> Member:
        with self.storage.snapshot() as store:
            return Member(**self._member_row(store, member_id))

    def list_members(self, status: Optional[MemberStatus] = None) -> list[Member]:
        with self.storage.snapshot() as store:
            members = [Member(**row) for row in store.members.values()]
        if status:
            members = [m for m in members if m.member_status == status]
        members.sort(key=lambda m: m.created_at)
        return members

    # Sessions

    def add_session(self, template: SessionTemplate) -> Session:
        template = self._validate_template(template)
        now = self.clock()

        with self.storage.transaction("add_session") as work:
            session = Session(
                id=f"session-{uuid4().hex}",
                **template.model_dump(exclude={"divisions"}),
                divisions=sorted(set(template.divisions)),
                participants=[],
                created_at=now,
            )
            work.sessions[session.id] = session.model_dump()

        logger.info("Created session %s at %s", session.id, session.venue)
        return session

    def add_recurring_sessions(self, request: RecurringSessionRequest) -> RecurringSessionsResponse:
        template = self._validate_template(request.template)
        weekdays = set(request.recurring_days)
        if not weekdays:
            raise ValidationError("At least one weekday must be selected")
        if any(day < 0 or day > 6 for day in weekdays):
            raise ValidationError("Weekdays must be between 0 (Sunday) and 6 (Saturday)")

        now = self.clock()
        parent_id = new_parent_id()
        sessions = build_sessions(template, weekdays, request.recurring_end_date, now, parent_id)
        if not sessions:
            return RecurringSessionsResponse(
                success=False,
                reason=FailureReason.NO_SESSIONS_GENERATED,
                message="No future sessions were created. Check the dates and selected days.",
            )

        with self.storage.transaction("add_recurring_sessions") as work:
            for session in sessions:
                work.sessions[session.id] = session.model_dump()

        logger.info("Created %d recurring sessions under %s", len(sessions), parent_id)
        return RecurringSessionsResponse(
            success=True,
            message=f"Created {len(sessions)} recurring sessions successfully",
            parent_session_id=parent_id,
            sessions=sessions,
        )

    def get_session(self, session_id: str) -> Session:
        with self.storage.snapshot() as store:
            return Session(**self._session_row(store, session_id))

    def list_sessions(self, member_id: Optional[str] = None, include_past: bool = False) -> list[Session]:
        now = self.clock()
        with self.storage.snapshot() as store:
            member = Member(**self._member_row(store, member_id)) if member_id else None
            sessions = [Session(**row) for row in store.sessions.values()]

        if not include_past:
            sessions = [s for s in sessions if s.start_time > now]
        if member is not None and not member.is_admin:
            sessions = [s for s in sessions if member.division in s.divisions]
        sessions.sort(key=lambda s: s.start_time)
        return sessions

    def get_session_participants(self, session_id: str) -> list[Member]:
        with self.storage.snapshot() as store:
            participant_ids = Roster(store).members(session_id)
            return [Member(**store.members[pid]) for pid in participant_ids if pid in store.members]

    # Bookings

    def book_session(self, session_id: str, member_id: str) -> BookingResponse:
        now = self.clock()
        try:
            with self.storage.transaction("book_session") as work:
                member = self._member_row(work, member_id)
                session = self._session_row(work, session_id)
                roster = Roster(work)

                if session["start_time"] <= now:
                    raise PolicyViolation(FailureReason.SESSION_STARTED, "Session has already started")
                if self._active_booking(work, member_id, session_id) or roster.contains(session_id, member_id):
                    raise PolicyViolation(FailureReason.ALREADY_BOOKED, "Member already booked this session")
                if member["credits"] < session["credit_cost"]:
                    raise PolicyViolation(
                        FailureReason.INSUFFICIENT_CREDITS,
                        f"Insufficient credits: {member['credits']} available, {session['credit_cost']} required",
                    )
                if not roster.add(session_id, member_id):
                    raise PolicyViolation(FailureReason.SESSION_FULL, "Session is full")

                transaction = Ledger(work, self.clock).append(
                    member_id,
                    TransactionType.SPENT,
                    -session["credit_cost"],
                    f"Booked session at {session['venue']}",
                    session_id,
                )
                booking = Booking(
                    id=f"booking-{uuid4().hex}",
                    member_id=member_id,
                    session_id=session_id,
                    booked_at=now,
                )
                work.bookings[booking.id] = booking.model_dump()
        except PolicyViolation as e:
            logger.info("Booking of %s by %s rejected: %s", session_id, member_id, e.reason.value)
            return BookingResponse(success=False, reason=e.reason, message=str(e))

        return BookingResponse(
            success=True,
            message="Session booked successfully",
            booking=booking,
            transaction=transaction,
        )

    def can_cancel_booking(self, session_id: str) -> bool:
        with self.storage.snapshot() as store:
            session = self._session_row(store, session_id)
            return self._within_cancellation_window(session, self.clock())

    def cancel_booking(self, session_id: str, member_id: str) -> BookingResponse:
        now = self.clock()
        try:
            with self.storage.transaction("cancel_booking") as work:
                self._member_row(work, member_id)
                session = self._session_row(work, session_id)

                booking = self._active_booking(work, member_id, session_id)
                if booking is None:
                    raise PolicyViolation(FailureReason.NO_ACTIVE_BOOKING, "No active booking for this session")
                if not self._within_cancellation_window(session, now):
                    raise PolicyViolation(
                        FailureReason.CANCELLATION_DEADLINE_PASSED,
                        "Cancellation deadline has passed for this session",
                    )

                transaction = self._refund(
                    work, booking, session, f"Cancelled booking: {_session_label(session)}", now
                )
        except PolicyViolation as e:
            logger.info("Cancellation of %s by %s rejected: %s", session_id, member_id, e.reason.value)
            return BookingResponse(success=False, reason=e.reason, message=str(e))

        return BookingResponse(
            success=True,
            message="Booking cancelled and credits refunded",
            booking=Booking(**work.bookings[booking["id"]]),
            transaction=transaction,
        )

    def cancel_session(self, session_id: str) -> SessionCancellationResponse:
        now = self.clock()
        with self.storage.transaction("cancel_session") as work:
            session = self._session_row(work, session_id)
            description = f"Session cancelled: {_session_label(session)}"

            refunds = []
            cancelled = []
            for booking in self._active_bookings_for_session(work, session_id):
                if booking["member_id"] not in work.members:
                    logger.warning("Booking %s references missing member %s", booking["id"], booking["member_id"])
                    self._mark_cancelled(booking, now)
                else:
                    refunds.append(self._refund(work, booking, session, description, now))
                cancelled.append(booking["id"])

            # Refunds above are committed ahead of the session removal (see COMMIT_ORDER).
            del work.sessions[session_id]

        logger.info("Cancelled session %s with %d refunds", session_id, len(refunds))
        return SessionCancellationResponse(
            success=True,
            message=f"Session cancelled; {len(refunds)} participants refunded {session['credit_cost']} credits each",
            session_id=session_id,
            cancelled_booking_ids=cancelled,
            refunds=refunds,
        )

    def get_member_bookings(self, member_id: str, active_only: bool = False) -> list[Booking]:
        with self.storage.snapshot() as store:
            self._member_row(store, member_id)
            bookings = [Booking(**row) for row in store.bookings.values() if row["member_id"] == member_id]
        if active_only:
            bookings = [b for b in bookings if b.status == BookingStatus.ACTIVE]
        bookings.sort(key=lambda b: b.booked_at, reverse=True)
        return bookings

    # Credits

    def add_credits(
        self,
        member_id: str,
        amount: int,
        comment: str,
        confirm_capped: bool = False,
    ) -> CreditAdjustmentResponse:
        comment = (comment or "").strip()
        if len(comment) < self.settings.min_adjustment_comment_length:
            raise ValidationError(
                f"Comment must be at least {self.settings.min_adjustment_comment_length} characters"
            )
        if amount == 0:
            raise ValidationError("Adjustment amount must not be zero")

        max_deduction = None
        try:
            with self.storage.transaction("add_credits") as work:
                balance = self._member_row(work, member_id)["credits"]
                applied = amount
                if amount < 0 and balance + amount < 0:
                    max_deduction = balance
                    if balance == 0:
                        raise PolicyViolation(FailureReason.NOTHING_TO_DEDUCT, "Member has no credits to deduct")
                    if not confirm_capped:
                        raise PolicyViolation(
                            FailureReason.CONFIRMATION_REQUIRED,
                            f"Member only has {balance} credits; confirm deducting {balance} instead of {-amount}",
                        )
                    applied = -balance

                entry_type = TransactionType.EARNED if applied > 0 else TransactionType.SPENT
                transaction = Ledger(work, self.clock).append(member_id, entry_type, applied, comment)
        except PolicyViolation as e:
            logger.info("Credit adjustment for %s rejected: %s", member_id, e.reason.value)
            return CreditAdjustmentResponse(
                success=False,
                reason=e.reason,
                message=str(e),
                requested_amount=amount,
                max_deduction=max_deduction,
            )

        logger.info("Adjusted credits for %s by %d (requested %d)", member_id, transaction.amount, amount)
        return CreditAdjustmentResponse(
            success=True,
            message="Credits adjusted successfully",
            requested_amount=amount,
            applied_amount=transaction.amount,
            max_deduction=max_deduction,
            transaction=transaction,
        )

    def get_credit_history(self, member_id: str) -> list[CreditTransaction]:
        with self.storage.snapshot() as store:
            entries = Ledger(store, self.clock).history(member_id)
            if not entries and member_id not in store.members:
                raise NotFoundError(f"Member {member_id} not found")
            return entries

    def get_credit_history_page(self, member_id: str, limit: int = 50, offset: int = 0) -> CreditHistoryResponse:
        with self.storage.snapshot() as store:
            history = Ledger(store, self.clock).get_history(member_id, limit, offset)
            if not history.total_count and member_id not in store.members:
                raise NotFoundError(f"Member {member_id} not found")
            return history

    # Deletion

    def delete_members(self, member_ids: list[str]) -> DeleteMembersResponse:
        requested = list(dict.fromkeys(member_ids))
        if not requested:
            raise ValidationError("No member ids given")

        now = self.clock()
        try:
            with self.storage.transaction("delete_members") as work:
                eligible, admins, unknown = [], [], []
                for member_id in requested:
                    row = work.members.get(member_id)
                    if row is None:
                        unknown.append(member_id)
                    elif row["member_role"] == MemberRole.ADMIN:
                        admins.append(member_id)
                    else:
                        eligible.append(member_id)

                if admins:
                    logger.warning("Refusing to delete admin members %s", admins)
                if not eligible:
                    if admins:
                        raise PolicyViolation(FailureReason.PROTECTED_ADMIN, "Admin members cannot be deleted")
                    raise PolicyViolation(FailureReason.NO_ELIGIBLE_MEMBERS, "No deletable members in request")

                refunds = []
                for member_id in eligible:
                    refunds.extend(self._unwind_member(work, member_id, now))
                    del work.members[member_id]
        except PolicyViolation as e:
            return DeleteMembersResponse(
                success=False,
                reason=e.reason,
                message=str(e),
                skipped_admin_ids=admins,
                unknown_ids=unknown,
            )

        logger.info("Deleted members %s with %d refunds", eligible, len(refunds))
        return DeleteMembersResponse(
            success=True,
            message=f"Deleted {len(eligible)} member(s)",
            deleted_member_ids=eligible,
            skipped_admin_ids=admins,
            unknown_ids=unknown,
            refunds=refunds,
        )

    def _unwind_member(self, work, member_id: str, now: datetime) -> list[CreditTransaction]:
        refunds = []
        bookings = [
            row for row in work.bookings.values()
            if row["member_id"] == member_id and row["status"] == BookingStatus.ACTIVE
        ]
        for booking in sorted(bookings, key=lambda b: b["booked_at"]):
            session = work.sessions.get(booking["session_id"])
            if session is None:
                logger.warning("Booking %s references missing session %s", booking["id"], booking["session_id"])
                self._mark_cancelled(booking, now)
                continue
            refunds.append(self._refund(
                work, booking, session, f"Account deletion refund: {_session_label(session)}", now
            ))

        # Stray roster entries without a booking.
        for session in work.sessions.values():
            if member_id in session["participants"]:
                Roster(work).remove(session["id"], member_id)
        return refunds

    # Maintenance

    def reconcile_balances(self) -> dict[str, int]:
        """Re-derive member balances from the transaction log; returns the corrected ones."""
        corrected = {}
        with self.storage.transaction("reconcile_balances") as work:
            ledger = Ledger(work, self.clock)
            for member_id, row in work.members.items():
                replayed = ledger.replay_balance(member_id)
                if replayed is not None and replayed != row["credits"]:
                    logger.warning(
                        "Balance of %s was %d, log says %d; restoring from log",
                        member_id, row["credits"], replayed,
                    )
                    row["credits"] = replayed
                    corrected[member_id] = replayed

        return corrected

    def seed_defaults(self) -> None:
        now = self.clock()
        tomorrow = (now + timedelta(days=1)).replace(hour=18, minute=0, second=0, microsecond=0)
        day_after = (now + timedelta(days=2)).replace(hour=19, minute=0, second=0, microsecond=0)

        with self.storage.transaction("seed_defaults") as work:
            admin = Member(
                id=DEFAULT_ADMIN_ID,
                email="admin@example.com",
                username="admin",
                first_name="Admin",
                last_name="User",
                division=1,
                member_status=MemberStatus.APPROVED,
                member_role=MemberRole.ADMIN,
                credits=0,
                created_at=now,
            )
            work.members[admin.id] = admin.model_dump()
            Ledger(work, self.clock).append(DEFAULT_ADMIN_ID, TransactionType.EARNED, 1000, "Opening balance")

            for session in (
                Session(
                    id="session-001", venue="Court A - Main Hall", divisions=[3, 4, 5],
                    start_time=tomorrow, end_time=tomorrow + timedelta(hours=2),
                    credit_cost=2, max_participants=8, created_by=DEFAULT_ADMIN_ID, created_at=now,
                ),
                Session(
                    id="session-002", venue="Court B - Sports Center", divisions=[5, 6],
                    start_time=day_after, end_time=day_after + timedelta(minutes=90),
                    credit_cost=1, max_participants=6, created_by=DEFAULT_ADMIN_ID, created_at=now,
                ),
            ):
                work.sessions[session.id] = session.model_dump()

        logger.info("Seeded empty store with default admin and sample sessions")

    # Helpers

    def _publish(self, action: str, changes: dict[str, list[str]], sequence: int) -> None:
        # Runs under the storage lock, so events arrive in commit order.
        self.notifier.publish(ChangeEvent(
            action=action, changes=changes, sequence=sequence, occurred_at=self.clock()
        ))

    def _member_row(self, store, member_id: str) -> dict:
        row = store.members.get(member_id)
        if row is None:
            raise NotFoundError(f"Member {member_id} not found")
        return row

    def _session_row(self, store, session_id: str) -> dict:
        row = store.sessions.get(session_id)
        if row is None:
            raise NotFoundError(f"Session {session_id} not found")
        return row

    def _active_booking(self, store, member_id: str, session_id: str) -> Optional[dict]:
        for row in store.bookings.values():
            if (
                row["member_id"] == member_id
                and row["session_id"] == session_id
                and row["status"] == BookingStatus.ACTIVE
            ):
                return row
        return None

    def _active_bookings_for_session(self, store, session_id: str) -> list[dict]:
        rows = [
            row for row in store.bookings.values()
            if row["session_id"] == session_id and row["status"] == BookingStatus.ACTIVE
        ]
        return sorted(rows, key=lambda r: r["booked_at"])

    def _within_cancellation_window(self, session: dict, now: datetime) -> bool:
        hours = Session(**session).deadline_hours(self.settings.default_cancellation_deadline_hours)
        return now + timedelta(hours=hours) <= session["start_time"]

    def _refund(self, work, booking: dict, session: dict, description: str, now: datetime) -> CreditTransaction:
        Roster(work).remove(session["id"], booking["member_id"])
        transaction = Ledger(work, self.clock).append(
            booking["member_id"],
            TransactionType.REFUND,
            session["credit_cost"],
            description,
            session["id"],
        )
        self._mark_cancelled(booking, now)
        return transaction

    @staticmethod
    def _mark_cancelled(booking: dict, now: datetime) -> None:
        booking["status"] = BookingStatus.CANCELLED
        booking["cancelled_at"] = now

    def _validate_division(self, division: int) -> None:
        if division < 1 or division > self.settings.max_division:
            raise ValidationError(f"Division must be between 1 and {self.settings.max_division}")

    def _validate_template(self, template: SessionTemplate) -> SessionTemplate:
        if not template.venue.strip():
            raise ValidationError("Venue is required")
        if not template.divisions:
            raise ValidationError("At least one division must be selected")
        for division in template.divisions:
            self._validate_division(division)
        if template.credit_cost <= 0:
            raise ValidationError("Credit cost must be positive")
        if template.max_participants <= 0:
            raise ValidationError("Max participants must be positive")
        if template.cancellation_deadline_hours is not None and template.cancellation_deadline_hours < 0:
            raise ValidationError("Cancellation deadline cannot be negative")
        if not template.created_by.strip():
            raise ValidationError("Creator id is required")

        template = template.model_copy(update={
            "start_time": _as_utc(template.start_time),
            "end_time": _as_utc(template.end_time),
        })
        if template.end_time <= template.start_time:
            raise ValidationError("Session must end after it starts")
        return template
