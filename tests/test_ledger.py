"""Tests for submission intake and period locking."""
from datetime import date, datetime, timedelta, timezone

import pytest

from winter_arc.ledger import SubmissionLedger, UnknownInstanceError
from winter_arc.models import NarrativeRecord, Recurrence, SubmissionRequest


def test_accepted_submissions_share_a_sequence_number(arena):
    ledger = SubmissionLedger(arena.state)
    run = arena.quest("alice", "Run")
    read = arena.quest("alice", "Read")
    day = date(2024, 11, 4)

    receipt = ledger.submit(arena.instance.id, "alice", day, [
        SubmissionRequest(run.id, True),
        SubmissionRequest(read.id, False, 12.5),
    ])

    assert [item.quest_id for item in receipt.accepted] == [run.id, read.id]
    assert {item.sequence for item in receipt.accepted} == {1}
    assert all(item.settled_at is None for item in receipt.accepted)
    assert receipt.rejected == []


def test_daily_quest_rejected_twice_on_same_day(arena):
    ledger = SubmissionLedger(arena.state)
    run = arena.quest("alice", "Run")
    day = date(2024, 11, 4)

    ledger.submit(arena.instance.id, "alice", day, [SubmissionRequest(run.id, True)])
    second = ledger.submit(arena.instance.id, "alice", day, [SubmissionRequest(run.id, True)])
    next_day = ledger.submit(arena.instance.id, "alice", day + timedelta(days=1), [SubmissionRequest(run.id, True)])

    assert second.accepted == []
    assert second.rejected[0].reason == "Quest already submitted today"
    assert second.rejected[0].next_available == day + timedelta(days=1)
    assert len(next_day.accepted) == 1


def test_sequence_increments_per_day(arena):
    ledger = SubmissionLedger(arena.state)
    run = arena.quest("alice", "Run")
    read = arena.quest("alice", "Read")
    day = date(2024, 11, 4)

    first = ledger.submit(arena.instance.id, "alice", day, [SubmissionRequest(run.id, True)])
    second = ledger.submit(arena.instance.id, "alice", day, [SubmissionRequest(read.id, True)])

    assert first.accepted[0].sequence == 1
    assert second.accepted[0].sequence == 2


def test_weekly_quest_once_per_week(arena):
    ledger = SubmissionLedger(arena.state)
    long_run = arena.quest("alice", "Long Run", recurrence=Recurrence.WEEKLY)
    friday, saturday, sunday = date(2024, 11, 8), date(2024, 11, 9), date(2024, 11, 10)

    too_early = ledger.submit(arena.instance.id, "alice", friday, [SubmissionRequest(long_run.id, True)])
    accepted = ledger.submit(arena.instance.id, "alice", saturday, [SubmissionRequest(long_run.id, True)])
    locked = ledger.submit(arena.instance.id, "alice", sunday, [SubmissionRequest(long_run.id, True)])
    next_week = ledger.submit(arena.instance.id, "alice", date(2024, 11, 16), [SubmissionRequest(long_run.id, True)])

    assert too_early.rejected[0].next_available == saturday
    assert len(accepted.accepted) == 1
    assert locked.rejected[0].reason == "Weekly quest already completed this week"
    assert locked.rejected[0].next_available == date(2024, 11, 11)
    assert len(next_week.accepted) == 1


def test_monthly_quest_once_per_month(arena):
    ledger = SubmissionLedger(arena.state)
    budget = arena.quest("alice", "Budget Review", recurrence=Recurrence.MONTHLY)

    fourth_to_last = ledger.submit(arena.instance.id, "alice", date(2024, 11, 27), [SubmissionRequest(budget.id, True)])
    third_to_last = ledger.submit(arena.instance.id, "alice", date(2024, 11, 28), [SubmissionRequest(budget.id, True)])
    second_to_last = ledger.submit(arena.instance.id, "alice", date(2024, 11, 29), [SubmissionRequest(budget.id, True)])

    assert fourth_to_last.accepted == []
    assert len(third_to_last.accepted) == 1
    assert second_to_last.rejected[0].reason == "Monthly quest already completed this month"
    assert second_to_last.rejected[0].next_available == date(2024, 12, 1)


def test_sidequest_once_per_event(arena):
    ledger = SubmissionLedger(arena.state)
    saturday = date(2024, 11, 9)
    event = arena.state.add_sidequest_event(
        arena.instance.id,
        {"name": "Ice Bath Challenge", "difficulty": "heavy", "quest_type": "defense"},
        saturday,
        saturday + timedelta(days=1),
    )
    bath = arena.quest("alice", "Ice Bath Challenge", recurrence=Recurrence.SIDEQUEST, event_id=event.id)

    before = ledger.submit(arena.instance.id, "alice", saturday - timedelta(days=1), [SubmissionRequest(bath.id, True)])
    first = ledger.submit(arena.instance.id, "alice", saturday, [SubmissionRequest(bath.id, True)])
    again = ledger.submit(arena.instance.id, "alice", saturday + timedelta(days=1), [SubmissionRequest(bath.id, True)])
    after = ledger.submit(arena.instance.id, "alice", saturday + timedelta(days=2), [SubmissionRequest(bath.id, True)])

    assert before.rejected[0].next_available == saturday
    assert len(first.accepted) == 1
    assert again.rejected[0].reason == "Sidequest already completed"
    assert "expired" in after.rejected[0].reason


def test_rejects_foreign_unknown_and_duplicate_quests(arena):
    ledger = SubmissionLedger(arena.state)
    bobs = arena.quest("bob", "Bob's Run")
    mine = arena.quest("alice", "Run")
    day = date(2024, 11, 4)

    receipt = ledger.submit(arena.instance.id, "alice", day, [
        SubmissionRequest(bobs.id, True),
        SubmissionRequest(9999, True),
        SubmissionRequest(mine.id, True),
        SubmissionRequest(mine.id, False),
    ])

    assert [item.quest_id for item in receipt.accepted] == [mine.id]
    reasons = [item.reason for item in receipt.rejected]
    assert reasons == ["Quest not found", "Quest not found", "Quest listed twice in one submission"]


def test_non_participant_and_completed_instance_rejected(arena):
    ledger = SubmissionLedger(arena.state)
    run = arena.quest("alice", "Run")
    day = date(2024, 11, 4)

    outsider = ledger.submit(arena.instance.id, "mallory", day, [SubmissionRequest(run.id, True)])
    assert outsider.rejected[0].reason == "Not a participant in this battle"

    arena.state.mark_instance_completed(arena.instance.id, datetime(2024, 11, 3, tzinfo=timezone.utc))
    ended = ledger.submit(arena.instance.id, "alice", day, [SubmissionRequest(run.id, True)])
    assert ended.rejected[0].reason == "Battle has already ended"


def test_settled_days_are_closed(arena):
    """Once a day is narrated or behind the settlement watermark it takes no more rows."""
    ledger = SubmissionLedger(arena.state)
    run = arena.quest("alice", "Run")
    monday, tuesday = date(2024, 11, 4), date(2024, 11, 5)
    arena.state.add_narrative(
        NarrativeRecord(arena.instance.id, tuesday, "Day 5 of the Winter Arc.", "template", datetime.now(timezone.utc))
    )

    narrated = ledger.submit(arena.instance.id, "alice", tuesday, [SubmissionRequest(run.id, True)])
    assert narrated.accepted == []
    assert [item.reason for item in narrated.rejected] == ["Day already settled"]

    arena.state.set_last_settled(arena.instance.id, monday)
    earlier = ledger.submit(arena.instance.id, "alice", monday - timedelta(days=1), [SubmissionRequest(run.id, True)])
    assert earlier.rejected[0].reason == "Day already settled"

    open_day = ledger.submit(arena.instance.id, "alice", tuesday + timedelta(days=1), [SubmissionRequest(run.id, True)])
    assert len(open_day.accepted) == 1


def test_unknown_instance_raises(state):
    with pytest.raises(UnknownInstanceError):
        SubmissionLedger(state).submit(42, "alice", date(2024, 11, 4), [])


def test_locked_quests_lists_submitted_periods(arena):
    ledger = SubmissionLedger(arena.state)
    run = arena.quest("alice", "Run")
    arena.quest("alice", "Read")
    saturday = date(2024, 11, 9)
    long_run = arena.quest("alice", "Long Run", recurrence=Recurrence.WEEKLY)

    ledger.submit(arena.instance.id, "alice", saturday, [
        SubmissionRequest(run.id, True),
        SubmissionRequest(long_run.id, True),
    ])

    locked = {item["name"]: item for item in ledger.locked_quests(arena.instance.id, "alice", saturday + timedelta(days=1))}
    assert set(locked) == {"Long Run"}
    assert locked["Long Run"]["unlocks_on"] == "2024-11-11"
