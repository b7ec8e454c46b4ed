"""
Session Reservation Engine

Provides credit-based booking of group sessions on top of the credit ledger:
- Roster capacity enforcement
- Book / cancel state machine with cancellation deadlines
- Admin session cancellation and credit adjustment
- Recurring session generation
- Cascading member deletion with refunds
"""

from .errors import (
    FailureReason,
    ReservationServiceError,
    ValidationError,
    NotFoundError,
    PolicyViolation,
)
from .models import (
    Member,
    MemberRole,
    MemberStatus,
    Session,
    SessionTemplate,
    Booking,
    BookingStatus,
    ChangeEvent,
)
from .notifications import ChangeNotifier
from .service import ReservationService
from .storage import InMemoryStorage, JsonFileStore

__all__ = [
    "FailureReason",
    "ReservationServiceError",
    "ValidationError",
    "NotFoundError",
    "PolicyViolation",
    "Member",
    "MemberRole",
    "MemberStatus",
    "Session",
    "SessionTemplate",
    "Booking",
    "BookingStatus",
    "ChangeEvent",
    "ChangeNotifier",
    "ReservationService",
    "InMemoryStorage",
    "JsonFileStore",
]
