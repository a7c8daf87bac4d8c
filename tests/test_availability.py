"""Tests for quest availability and submission periods."""
from datetime import date

import pytest

from winter_arc.availability import (
    annotate_quests,
    is_available,
    is_end_of_month,
    is_end_of_week,
    next_period_start,
    next_weekend_date,
    period_bounds,
    period_key,
)
from winter_arc.models import Quest, Recurrence, SidequestEvent


FRIDAY = date(2024, 11, 1)
SATURDAY = date(2024, 11, 2)
SUNDAY = date(2024, 11, 3)
MONDAY = date(2024, 11, 4)


def test_daily_quests_always_available():
    for day in range(1, 31):
        assert is_available(Recurrence.DAILY, date(2024, 11, day)).available


def test_weekly_quest_friday_vs_saturday():
    friday = is_available(Recurrence.WEEKLY, FRIDAY)
    saturday = is_available(Recurrence.WEEKLY, SATURDAY)
    sunday = is_available(Recurrence.WEEKLY, SUNDAY)

    assert not friday.available
    assert friday.next_available == SATURDAY
    assert saturday.available
    assert sunday.available
    assert sunday.next_available == date(2024, 11, 9)


def test_monthly_quest_window_is_last_three_days():
    # November 2024 has 30 days.
    assert not is_available(Recurrence.MONTHLY, date(2024, 11, 27)).available
    assert is_available(Recurrence.MONTHLY, date(2024, 11, 28)).available
    assert is_available(Recurrence.MONTHLY, date(2024, 11, 29)).available
    assert is_available(Recurrence.MONTHLY, date(2024, 11, 30)).available


def test_monthly_next_available_is_third_to_last_day_of_next_month():
    result = is_available(Recurrence.MONTHLY, date(2024, 11, 29))
    assert result.next_available == date(2024, 12, 29)

    closed = is_available(Recurrence.MONTHLY, date(2024, 11, 10))
    assert closed.next_available == date(2024, 11, 28)
    assert "18 days" in closed.reason


def test_unknown_recurrence_defaults_to_daily():
    result = is_available("fortnightly", FRIDAY)
    assert result.available
    assert "defaulting to daily" in result.reason


def test_sidequest_requires_open_event():
    event = SidequestEvent(
        id=7,
        instance_id=1,
        name="Ice Bath Challenge",
        difficulty="heavy",
        quest_type="defense",
        valid_from=SATURDAY,
        expires_on=SATURDAY,
    )
    assert not is_available(Recurrence.SIDEQUEST, SATURDAY).available
    assert is_available(Recurrence.SIDEQUEST, SATURDAY, event).available
    early = is_available(Recurrence.SIDEQUEST, FRIDAY, event)
    assert not early.available
    assert early.next_available == SATURDAY
    assert not is_available(Recurrence.SIDEQUEST, SUNDAY, event).available


def test_availability_is_pure():
    first = [is_available(kind, SATURDAY) for kind in Recurrence]
    second = [is_available(kind, SATURDAY) for kind in Recurrence]
    assert first == second


@pytest.mark.parametrize(
    "on, expected",
    [
        (FRIDAY, SATURDAY),
        (MONDAY, date(2024, 11, 9)),
        (SATURDAY, date(2024, 11, 9)),
        (SUNDAY, date(2024, 11, 9)),
    ],
)
def test_next_weekend_date_skips_current_weekend(on, expected):
    assert next_weekend_date(on) == expected


def test_end_of_period_helpers():
    assert is_end_of_week(SATURDAY)
    assert is_end_of_week(SUNDAY)
    assert not is_end_of_week(FRIDAY)
    assert is_end_of_month(date(2024, 2, 27))  # leap year, 29 days
    assert not is_end_of_month(date(2024, 2, 26))


@pytest.mark.parametrize(
    "recurrence, on, expected",
    [
        (Recurrence.DAILY, FRIDAY, (FRIDAY, FRIDAY)),
        (Recurrence.WEEKLY, SUNDAY, (date(2024, 10, 28), SUNDAY)),
        (Recurrence.WEEKLY, MONDAY, (MONDAY, date(2024, 11, 10))),
        (Recurrence.MONTHLY, date(2024, 11, 29), (date(2024, 11, 1), date(2024, 11, 30))),
    ],
)
def test_period_bounds(recurrence, on, expected):
    assert period_bounds(recurrence, on) == expected


def test_period_keys_and_next_start():
    assert period_key(Recurrence.DAILY, FRIDAY) == "daily:2024-11-01"
    assert period_key(Recurrence.WEEKLY, SATURDAY) == period_key(Recurrence.WEEKLY, SUNDAY)
    assert period_key(Recurrence.WEEKLY, SUNDAY) != period_key(Recurrence.WEEKLY, MONDAY)
    assert period_key(Recurrence.MONTHLY, date(2024, 11, 28)) == "monthly:2024-11"

    assert next_period_start(Recurrence.DAILY, FRIDAY) == SATURDAY
    assert next_period_start(Recurrence.WEEKLY, SATURDAY) == MONDAY
    assert next_period_start(Recurrence.MONTHLY, date(2024, 11, 29)) == date(2024, 12, 1)
    assert next_period_start(Recurrence.SIDEQUEST, FRIDAY) is None


def test_annotate_quests_reports_each_quest():
    quests = [
        Quest(id=1, owner_id="alice", name="Run", recurrence=Recurrence.DAILY),
        Quest(id=2, owner_id="alice", name="Long Run", recurrence=Recurrence.WEEKLY),
    ]
    annotated = annotate_quests(quests, FRIDAY)

    assert [item["available"] for item in annotated] == [True, False]
    assert annotated[1]["next_available"] == "2024-11-02"
    assert annotated[0]["next_available"] is None
