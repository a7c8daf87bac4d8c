"""Quest availability and submission period rules.

Every caller that needs to know whether a quest may be attacked on a date,
or which period a submission belongs to, goes through this module so that
ingestion and locking checks agree on the same boundary dates.

Weeks run Monday to Sunday; weekly quests open on the final two days
(Saturday and Sunday). Monthly quests open on the last three calendar days.
"""

from __future__ import annotations

import calendar
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import Availability, Quest, Recurrence, SidequestEvent

SATURDAY = 5
SUNDAY = 6


def last_day_of_month(on: date) -> date:
    return on.replace(day=calendar.monthrange(on.year, on.month)[1])


def week_bounds(on: date) -> Tuple[date, date]:
    """Monday and Sunday of the week containing ``on``."""

    monday = on - timedelta(days=on.weekday())
    return monday, monday + timedelta(days=6)


def month_bounds(on: date) -> Tuple[date, date]:
    return on.replace(day=1), last_day_of_month(on)


def is_end_of_week(on: date) -> bool:
    return on.weekday() in (SATURDAY, SUNDAY)


def is_end_of_month(on: date) -> bool:
    return (last_day_of_month(on) - on).days <= 2


def next_weekend_date(on: date) -> date:
    """Next Saturday strictly after ``on``.

    A weekday yields the coming Saturday. On a Saturday or Sunday the answer is
    the following weekend's Saturday, which is when a weekly quest locked by
    this weekend's submission opens again.
    """

    days_until = (SATURDAY - on.weekday()) % 7
    if days_until == 0:
        days_until = 7
    return on + timedelta(days=days_until)


def next_month_end_date(on: date) -> date:
    """Third-to-last day of the month following ``on``."""

    first_next = last_day_of_month(on) + timedelta(days=1)
    return last_day_of_month(first_next) - timedelta(days=2)


def is_available(
    recurrence: Recurrence | str | None,
    on: date,
    event: Optional[SidequestEvent] = None,
) -> Availability:
    """Decide whether a quest of ``recurrence`` may accept a submission on ``on``."""

    kind = recurrence if isinstance(recurrence, Recurrence) else None
    if kind is None:
        raw = (recurrence or "").lower()
        if raw not in {item.value for item in Recurrence}:
            return Availability(True, "Unknown frequency - defaulting to daily availability")
        kind = Recurrence(raw)

    if kind is Recurrence.DAILY:
        return Availability(True, "Daily quest - always available")

    if kind is Recurrence.WEEKLY:
        if is_end_of_week(on):
            return Availability(True, "Weekly quest - available on weekends", next_weekend_date(on))
        return Availability(
            False,
            "Weekly quest - only available Saturday-Sunday",
            next_weekend_date(on),
        )

    if kind is Recurrence.MONTHLY:
        days_from_end = (last_day_of_month(on) - on).days
        if days_from_end <= 2:
            return Availability(
                True,
                "Monthly quest - available during last 3 days of month",
                next_month_end_date(on),
            )
        opens_on = last_day_of_month(on) - timedelta(days=2)
        return Availability(
            False,
            f"Monthly quest - available in {days_from_end - 2} days (last 3 days of month)",
            opens_on,
        )

    if event is None:
        return Availability(False, "Sidequest availability determined by battle events")
    if event.is_open(on):
        return Availability(True, f"Sidequest '{event.name}' open until {event.expires_on.isoformat()}")
    if on < event.valid_from:
        return Availability(False, f"Sidequest '{event.name}' opens on {event.valid_from.isoformat()}", event.valid_from)
    return Availability(False, "Sidequest not available or expired")


def period_bounds(
    recurrence: Recurrence,
    on: date,
    event: Optional[SidequestEvent] = None,
) -> Tuple[date, date]:
    """Inclusive date span within which a quest may be submitted once."""

    if recurrence is Recurrence.WEEKLY:
        return week_bounds(on)
    if recurrence is Recurrence.MONTHLY:
        return month_bounds(on)
    if recurrence is Recurrence.SIDEQUEST and event is not None:
        return event.valid_from, event.expires_on
    return on, on


def period_key(recurrence: Recurrence, on: date, event: Optional[SidequestEvent] = None) -> str:
    """Stable identifier of the submission period, used for store-side uniqueness."""

    if recurrence is Recurrence.SIDEQUEST and event is not None:
        return f"sidequest:{event.id}"
    start, _ = period_bounds(recurrence, on, event)
    if recurrence is Recurrence.MONTHLY:
        return f"monthly:{start.strftime('%Y-%m')}"
    if recurrence is Recurrence.WEEKLY:
        return f"weekly:{start.isoformat()}"
    return f"daily:{start.isoformat()}"


def next_period_start(
    recurrence: Recurrence,
    on: date,
    event: Optional[SidequestEvent] = None,
) -> Optional[date]:
    """First date of the following period, or None when it cannot be known."""

    if recurrence is Recurrence.SIDEQUEST:
        return None
    _, end = period_bounds(recurrence, on, event)
    return end + timedelta(days=1)


def annotate_quests(
    quests: Iterable[Quest],
    on: date,
    events: Optional[Dict[int, SidequestEvent]] = None,
) -> List[Dict[str, Any]]:
    """Tag each quest with its availability for UI display."""

    events = events or {}
    annotated: List[Dict[str, Any]] = []
    for quest in quests:
        event = events.get(quest.event_id) if quest.event_id is not None else None
        availability = is_available(quest.recurrence, on, event)
        annotated.append(
            {
                "quest_id": quest.id,
                "name": quest.name,
                "recurrence": quest.recurrence.value,
                "available": availability.available,
                "reason": availability.reason,
                "next_available": availability.next_available.isoformat()
                if availability.next_available
                else None,
            }
        )
    return annotated


__all__ = [
    "annotate_quests",
    "is_available",
    "is_end_of_month",
    "is_end_of_week",
    "last_day_of_month",
    "month_bounds",
    "next_month_end_date",
    "next_period_start",
    "next_weekend_date",
    "period_bounds",
    "period_key",
    "week_bounds",
]
