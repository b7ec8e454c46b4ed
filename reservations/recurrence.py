"""Expansion of a session template into dated instances."""

from datetime import date, datetime, timedelta
from typing import Iterator
from uuid import uuid4

from .models import Session, SessionTemplate


def sunday_weekday(day: date) -> int:
    """Weekday number with 0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def iter_days(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def occurrences(
    template: SessionTemplate,
    weekdays: set[int],
    end_date: date,
    now: datetime,
) -> list[tuple[datetime, datetime]]:
    """
    Candidate (start, end) pairs for every selected weekday from the template's
    start date through end_date inclusive. The template's time of day and
    duration are reused; candidates that do not start strictly after `now`
    are dropped.
    """
    duration = template.end_time - template.start_time
    start_of_day = template.start_time.timetz()

    result = []
    for day in iter_days(template.start_time.date(), end_date):
        if sunday_weekday(day) not in weekdays:
            continue
        start = datetime.combine(day, start_of_day)
        if start <= now:
            continue
        result.append((start, start + duration))
    return result


def new_parent_id() -> str:
    return f"recurring-{uuid4().hex[:12]}"


def build_sessions(
    template: SessionTemplate,
    weekdays: set[int],
    end_date: date,
    now: datetime,
    parent_id: str,
) -> list[Session]:
    sessions = []
    for sequence, (start, end) in enumerate(occurrences(template, weekdays, end_date, now)):
        sessions.append(Session(
            id=f"{parent_id}-{sequence}",
            venue=template.venue,
            divisions=sorted(set(template.divisions)),
            start_time=start,
            end_time=end,
            credit_cost=template.credit_cost,
            max_participants=template.max_participants,
            participants=[],
            created_by=template.created_by,
            created_at=now,
            parent_session_id=parent_id,
            sequence=sequence,
            cancellation_deadline_hours=template.cancellation_deadline_hours,
        ))
    return sessions
