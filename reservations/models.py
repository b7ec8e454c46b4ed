from datetime import date, datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict

from ledger.models import CreditTransaction
from .errors import FailureReason


class MemberRole(str, Enum):
    PLAYER = "player"
    ADMIN = "admin"


class MemberStatus(str, Enum):
    APPLIED = "applied"
    APPROVED = "approved"
    REJECTED = "rejected"


class BookingStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class Member(BaseModel):
    id: str
    email: str = ""
    username: str = ""
    first_name: str = ""
    last_name: str = ""
    division: int
    member_status: MemberStatus = MemberStatus.APPLIED
    member_role: MemberRole = MemberRole.PLAYER
    credits: int = 0
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_admin(self) -> bool:
        return self.member_role == MemberRole.ADMIN


class Session(BaseModel):
    id: str
    venue: str
    divisions: list[int]
    start_time: datetime
    end_time: datetime
    credit_cost: int
    max_participants: int
    participants: list[str] = Field(default_factory=list)
    created_by: str
    created_at: datetime
    parent_session_id: Optional[str] = None
    sequence: Optional[int] = None
    cancellation_deadline_hours: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def spots_left(self) -> int:
        return self.max_participants - len(self.participants)

    def deadline_hours(self, default: int = 24) -> int:
        if self.cancellation_deadline_hours is None:
            return default
        return self.cancellation_deadline_hours


class Booking(BaseModel):
    id: str
    member_id: str
    session_id: str
    status: BookingStatus = BookingStatus.ACTIVE
    booked_at: datetime
    cancelled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CreateMemberRequest(BaseModel):
    id: str = Field(..., description="Identifier issued by the identity provider")
    email: str = ""
    username: str = ""
    first_name: str = ""
    last_name: str = ""
    division: int
    member_role: MemberRole = MemberRole.PLAYER


class UpdateMemberRequest(BaseModel):
    member_status: Optional[MemberStatus] = None
    division: Optional[int] = None
    email: Optional[str] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class SessionTemplate(BaseModel):
    venue: str
    divisions: list[int]
    start_time: datetime
    end_time: datetime
    credit_cost: int
    max_participants: int
    created_by: str
    cancellation_deadline_hours: Optional[int] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "venue": "Court A - Main Hall",
            "divisions": [3, 4, 5],
            "start_time": "2026-11-02T18:00:00+00:00",
            "end_time": "2026-11-02T20:00:00+00:00",
            "credit_cost": 2,
            "max_participants": 8,
            "created_by": "admin-001",
            "cancellation_deadline_hours": 24
        }
    })


class RecurringSessionRequest(BaseModel):
    template: SessionTemplate
    recurring_days: list[int] = Field(..., description="0 = Sunday ... 6 = Saturday")
    recurring_end_date: date


class BookSessionRequest(BaseModel):
    member_id: str


class AddCreditsRequest(BaseModel):
    amount: int
    comment: str = Field(..., description="Audit comment, at least 5 characters")
    confirm_capped: bool = False


class DeleteMembersRequest(BaseModel):
    member_ids: list[str]


class OperationResult(BaseModel):
    success: bool
    reason: Optional[FailureReason] = None
    message: str


class BookingResponse(OperationResult):
    booking: Optional[Booking] = None
    transaction: Optional[CreditTransaction] = None


class CreditAdjustmentResponse(OperationResult):
    requested_amount: int
    applied_amount: int = 0
    max_deduction: Optional[int] = None
    transaction: Optional[CreditTransaction] = None


class SessionCancellationResponse(OperationResult):
    session_id: str
    cancelled_booking_ids: list[str] = Field(default_factory=list)
    refunds: list[CreditTransaction] = Field(default_factory=list)


class DeleteMembersResponse(OperationResult):
    deleted_member_ids: list[str] = Field(default_factory=list)
    skipped_admin_ids: list[str] = Field(default_factory=list)
    unknown_ids: list[str] = Field(default_factory=list)
    refunds: list[CreditTransaction] = Field(default_factory=list)


class RecurringSessionsResponse(OperationResult):
    parent_session_id: Optional[str] = None
    sessions: list[Session] = Field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.sessions)


class ChangeEvent(BaseModel):
    action: str
    changes: dict[str, list[str]]
    sequence: int
    occurred_at: datetime
