from typing import Optional
from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ledger.models import CreditHistoryResponse
from .config import Settings, configure_logging
from .errors import NotFoundError, ValidationError
from .models import (
    AddCreditsRequest, BookSessionRequest, Booking, BookingResponse, CreateMemberRequest,
    CreditAdjustmentResponse, DeleteMembersRequest, DeleteMembersResponse, Member,
    MemberStatus, OperationResult, RecurringSessionRequest, RecurringSessionsResponse,
    Session, SessionCancellationResponse, SessionTemplate, UpdateMemberRequest,
)
from .service import ReservationService

settings = Settings.from_env()
configure_logging(settings)

app = FastAPI(
    title="Session Credit Ledger API",
    description="Credit-based session reservations with an immutable credit ledger",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

reservation_service = ReservationService.from_settings(settings)


def _conflict_unless_ok(result: OperationResult) -> None:
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"reason": result.reason.value if result.reason else None, "message": result.message},
        )


@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_handler(request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "session-credit-ledger"}


@app.post("/members", response_model=Member, status_code=status.HTTP_201_CREATED, tags=["Members"])
def create_member(request: CreateMemberRequest) -> Member:
    return reservation_service.add_member(request)


@app.get("/members", response_model=list[Member], tags=["Members"])
def list_members(member_status: Optional[MemberStatus] = None) -> list[Member]:
    return reservation_service.list_members(member_status)


@app.get("/members/{member_id}", response_model=Member, tags=["Members"])
def get_member(member_id: str) -> Member:
    return reservation_service.get_member(member_id)


@app.patch("/members/{member_id}", response_model=Member, tags=["Members"])
def update_member(member_id: str, request: UpdateMemberRequest) -> Member:
    return reservation_service.update_member(member_id, request)


@app.post("/members/delete", response_model=DeleteMembersResponse, tags=["Members"])
def delete_members(request: DeleteMembersRequest) -> DeleteMembersResponse:
    result = reservation_service.delete_members(request.member_ids)
    _conflict_unless_ok(result)
    return result


@app.post("/members/{member_id}/credits", response_model=CreditAdjustmentResponse, tags=["Credits"])
def add_credits(member_id: str, request: AddCreditsRequest) -> CreditAdjustmentResponse:
    result = reservation_service.add_credits(member_id, request.amount, request.comment, request.confirm_capped)
    _conflict_unless_ok(result)
    return result


@app.get("/members/{member_id}/credits", response_model=CreditHistoryResponse, tags=["Credits"])
def get_credit_history(member_id: str, limit: int = 50, offset: int = 0) -> CreditHistoryResponse:
    return reservation_service.get_credit_history_page(member_id, limit, offset)


@app.get("/members/{member_id}/bookings", response_model=list[Booking], tags=["Bookings"])
def get_member_bookings(member_id: str, active_only: bool = False) -> list[Booking]:
    return reservation_service.get_member_bookings(member_id, active_only)


@app.get("/sessions", response_model=list[Session], tags=["Sessions"])
def list_sessions(member_id: Optional[str] = None, include_past: bool = False) -> list[Session]:
    return reservation_service.list_sessions(member_id, include_past)


@app.post("/sessions", response_model=Session, status_code=status.HTTP_201_CREATED, tags=["Sessions"])
def create_session(template: SessionTemplate) -> Session:
    return reservation_service.add_session(template)


@app.post(
    "/sessions/recurring",
    response_model=RecurringSessionsResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Sessions"],
)
def create_recurring_sessions(request: RecurringSessionRequest) -> RecurringSessionsResponse:
    result = reservation_service.add_recurring_sessions(request)
    _conflict_unless_ok(result)
    return result


@app.get("/sessions/{session_id}", response_model=Session, tags=["Sessions"])
def get_session(session_id: str) -> Session:
    return reservation_service.get_session(session_id)


@app.delete("/sessions/{session_id}", response_model=SessionCancellationResponse, tags=["Sessions"])
def cancel_session(session_id: str) -> SessionCancellationResponse:
    return reservation_service.cancel_session(session_id)


@app.get("/sessions/{session_id}/participants", response_model=list[Member], tags=["Sessions"])
def get_session_participants(session_id: str) -> list[Member]:
    return reservation_service.get_session_participants(session_id)


@app.get("/sessions/{session_id}/cancellable", tags=["Bookings"])
def can_cancel_booking(session_id: str):
    return {"session_id": session_id, "cancellable": reservation_service.can_cancel_booking(session_id)}


@app.post(
    "/sessions/{session_id}/bookings",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Bookings"],
)
def book_session(session_id: str, request: BookSessionRequest) -> BookingResponse:
    result = reservation_service.book_session(session_id, request.member_id)
    _conflict_unless_ok(result)
    return result


@app.delete("/sessions/{session_id}/bookings/{member_id}", response_model=BookingResponse, tags=["Bookings"])
def cancel_booking(session_id: str, member_id: str) -> BookingResponse:
    result = reservation_service.cancel_booking(session_id, member_id)
    _conflict_unless_ok(result)
    return result


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
