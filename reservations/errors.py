from enum import Enum


class FailureReason(str, Enum):
    SESSION_STARTED = "SESSION_STARTED"
    ALREADY_BOOKED = "ALREADY_BOOKED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    SESSION_FULL = "SESSION_FULL"
    NO_ACTIVE_BOOKING = "NO_ACTIVE_BOOKING"
    CANCELLATION_DEADLINE_PASSED = "CANCELLATION_DEADLINE_PASSED"
    CONFIRMATION_REQUIRED = "CONFIRMATION_REQUIRED"
    NOTHING_TO_DEDUCT = "NOTHING_TO_DEDUCT"
    PROTECTED_ADMIN = "PROTECTED_ADMIN"
    NO_ELIGIBLE_MEMBERS = "NO_ELIGIBLE_MEMBERS"
    NO_SESSIONS_GENERATED = "NO_SESSIONS_GENERATED"


class ReservationServiceError(Exception):
    pass


class ValidationError(ReservationServiceError):
    pass


class NotFoundError(ReservationServiceError):
    pass


class PolicyViolation(ReservationServiceError):
    def __init__(self, reason: FailureReason, message: str):
        super().__init__(message)
        self.reason = reason
