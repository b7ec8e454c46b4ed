from datetime import datetime, timedelta, timezone

import pytest

from reservations.models import CreateMemberRequest, MemberRole, SessionTemplate
from reservations.service import ReservationService


# Monday morning
NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
ADMIN_ID = "admin-001"


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def service(clock):
    svc = ReservationService(clock=clock, seed=False)
    svc.add_member(CreateMemberRequest(id=ADMIN_ID, division=1, member_role=MemberRole.ADMIN))
    return svc


@pytest.fixture
def make_player(service):
    def factory(member_id: str, credits: int = 10, division: int = 3):
        service.add_member(CreateMemberRequest(id=member_id, division=division))
        if credits:
            service.add_credits(member_id, credits, "Initial top-up")
        return service.get_member(member_id)

    return factory


def build_template(
    start: datetime = NOW + timedelta(days=3),
    duration: timedelta = timedelta(hours=2),
    cost: int = 3,
    capacity: int = 8,
    divisions=(3, 4),
    deadline=None,
) -> SessionTemplate:
    return SessionTemplate(
        venue="Court A - Main Hall",
        divisions=list(divisions),
        start_time=start,
        end_time=start + duration,
        credit_cost=cost,
        max_participants=capacity,
        created_by=ADMIN_ID,
        cancellation_deadline_hours=deadline,
    )


@pytest.fixture
def make_template():
    return build_template


@pytest.fixture
def make_session(service):
    def factory(**kwargs):
        return service.add_session(build_template(**kwargs))

    return factory
