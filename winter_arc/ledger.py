"""Submission intake: validates quests against availability and period locks."""
from __future__ import annotations

import logging
from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple

from .availability import is_available, next_period_start, period_key
from .models import (
    InstanceStatus,
    Quest,
    Recurrence,
    Rejection,
    SidequestEvent,
    SubmissionReceipt,
    SubmissionRequest,
)
from .state import ArenaState

logger = logging.getLogger(__name__)


class UnknownInstanceError(ValueError):
    """Raised when a combat instance id does not exist."""


class SubmissionLedger:
    """Records raw quest completions; never scores them."""

    def __init__(self, state: ArenaState) -> None:
        self.state = state

    def _event_for(self, quest: Quest) -> Optional[SidequestEvent]:
        if quest.recurrence is not Recurrence.SIDEQUEST or quest.event_id is None:
            return None
        return self.state.get_sidequest_event(quest.event_id)

    def submit(
        self,
        instance_id: int,
        user_id: str,
        on: date,
        requests: Sequence[SubmissionRequest],
    ) -> SubmissionReceipt:
        instance = self.state.get_instance(instance_id)
        if instance is None:
            raise UnknownInstanceError(f"Combat instance {instance_id} does not exist")

        receipt = SubmissionReceipt(instance_id=instance_id, user_id=user_id, submitted_on=on)
        if user_id not in instance.participants:
            receipt.rejected = [
                Rejection(request.quest_id, "Not a participant in this battle") for request in requests
            ]
            return receipt
        if instance.status is not InstanceStatus.ACTIVE:
            receipt.rejected = [
                Rejection(request.quest_id, "Battle has already ended") for request in requests
            ]
            return receipt
        if _day_closed(instance.last_settled_date, on) or self.state.get_narrative(instance_id, on) is not None:
            receipt.rejected = [Rejection(request.quest_id, "Day already settled") for request in requests]
            return receipt

        entries: List[Tuple[int, bool, Optional[float], str]] = []
        names: Dict[int, str] = {}
        seen = set()
        for request in requests:
            quest = self.state.get_quest(request.quest_id)
            if quest is None or quest.owner_id != user_id or not quest.is_active:
                receipt.rejected.append(Rejection(request.quest_id, "Quest not found"))
                continue
            if request.quest_id in seen:
                receipt.rejected.append(
                    Rejection(request.quest_id, "Quest listed twice in one submission", quest_name=quest.name)
                )
                continue
            seen.add(request.quest_id)

            event = self._event_for(quest)
            availability = is_available(quest.recurrence, on, event)
            if not availability.available:
                receipt.rejected.append(
                    Rejection(request.quest_id, availability.reason, availability.next_available, quest.name)
                )
                continue

            key = period_key(quest.recurrence, on, event)
            if self.state.find_period_submission(instance_id, user_id, quest.id, key) is not None:
                receipt.rejected.append(
                    Rejection(
                        request.quest_id,
                        _locked_reason(quest.recurrence),
                        next_period_start(quest.recurrence, on, event),
                        quest.name,
                    )
                )
                continue
            entries.append((quest.id, request.completed, request.value, key))
            names[quest.id] = quest.name

        recorded = self.state.record_submissions(instance_id, user_id, on, entries)
        recorded_ids = {item.quest_id for item in recorded}
        for quest_id, _, _, _ in entries:
            if quest_id not in recorded_ids:
                # Lost a race with a concurrent submission for the same period.
                receipt.rejected.append(Rejection(quest_id, "Already submitted for this period", quest_name=names[quest_id]))
        receipt.accepted = recorded
        logger.info(
            "User %s submitted %d quests to instance %s for %s (%d rejected)",
            user_id,
            len(recorded),
            instance_id,
            on,
            len(receipt.rejected),
        )
        return receipt

    def locked_quests(self, instance_id: int, user_id: str, on: date) -> List[Dict[str, object]]:
        """Quests the user has already submitted for the period containing ``on``."""

        locked: List[Dict[str, object]] = []
        for quest in self.state.list_quests(user_id):
            event = self._event_for(quest)
            if quest.recurrence is Recurrence.SIDEQUEST and event is None:
                continue
            key = period_key(quest.recurrence, on, event)
            existing = self.state.find_period_submission(instance_id, user_id, quest.id, key)
            if existing is None:
                continue
            next_start = next_period_start(quest.recurrence, on, event)
            locked.append(
                {
                    "quest_id": quest.id,
                    "name": quest.name,
                    "recurrence": quest.recurrence.value,
                    "submitted_on": existing.submitted_on.isoformat(),
                    "unlocks_on": next_start.isoformat() if next_start else None,
                }
            )
        return locked


def _day_closed(last_settled: Optional[date], on: date) -> bool:
    return last_settled is not None and on <= last_settled


def _locked_reason(recurrence: Recurrence) -> str:
    if recurrence is Recurrence.WEEKLY:
        return "Weekly quest already completed this week"
    if recurrence is Recurrence.MONTHLY:
        return "Monthly quest already completed this month"
    if recurrence is Recurrence.SIDEQUEST:
        return "Sidequest already completed"
    return "Quest already submitted today"


__all__ = ["SubmissionLedger", "UnknownInstanceError"]
