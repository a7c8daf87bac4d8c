"""High-level arena service wiring the ledger, settlement and periodic resolvers."""
from __future__ import annotations

import logging
import os
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo

from .availability import annotate_quests
from .config import Settings, get_settings
from .ledger import SubmissionLedger, UnknownInstanceError
from .llm_client import LLMClient
from .models import CombatInstance, Quest, Recurrence, SettlementReport, SubmissionRequest, User
from .modifiers import ModifierResolver
from .narrative import LLMNarrator, RewardGenerator, TemplateNarrator
from .periodic import MonthlyBossResolver, SidequestScheduler, WeeklyTournamentResolver
from .scoring import LLMQuestScorer, ScoreCache, ScoringEngine
from .settlement import SettlementEngine
from .state import ArenaState
from .telemetry import TelemetryCollector, get_telemetry, track_duration

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("winter_arc.db")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ArenaService:
    """Coordinates between state, scoring and narrative generators."""

    def __init__(
        self,
        db_path: Path,
        settings: Settings | None = None,
        llm_client: LLMClient | None = None,
        telemetry: TelemetryCollector | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.state = ArenaState(
            db_path,
            starting_hp=self.settings.starting_hp,
            max_hp=self.settings.max_hp,
            xp_per_level=self.settings.xp_per_level,
        )
        self.telemetry = telemetry or get_telemetry()
        self._clock = clock
        if llm_client is not None and llm_client.telemetry is None:
            llm_client.telemetry = self.telemetry
        self.ledger = SubmissionLedger(self.state)
        self.resolver = ModifierResolver(self.settings)
        self.scoring = ScoringEngine(
            scorer=LLMQuestScorer(llm_client, self.settings) if llm_client is not None else None,
            cache=ScoreCache(self.state),
            resolver=self.resolver,
            settings=self.settings,
            telemetry=self.telemetry,
        )
        narrator = LLMNarrator(llm_client) if llm_client is not None else TemplateNarrator()
        rewards = RewardGenerator(llm_client)
        self.tournaments = WeeklyTournamentResolver(self.state, rewards, self.telemetry)
        self.boss = MonthlyBossResolver(
            self.state, rewards, self.settings, self.telemetry, clock=clock
        )
        self.engine = SettlementEngine(
            self.state,
            self.scoring,
            resolver=self.resolver,
            narrator=narrator,
            tournaments=self.tournaments,
            boss=self.boss,
            sidequests=SidequestScheduler(self.state, self.settings),
            settings=self.settings,
            telemetry=self.telemetry,
            clock=clock,
        )

    @classmethod
    def from_env(cls, settings: Settings | None = None) -> "ArenaService":
        """Build a service from ``WINTER_ARC_DB_PATH`` and the ``LLM_*`` variables."""

        db_path = Path(os.getenv("WINTER_ARC_DB_PATH", str(DEFAULT_DB_PATH)))
        return cls(db_path, settings=settings, llm_client=LLMClient())

    def today(self) -> date:
        """Current calendar date in the arena's configured timezone."""

        return self._clock().astimezone(ZoneInfo(self.settings.schedule_timezone)).date()

    # Setup ---------------------------------------------------------------
    def register_user(self, user_id: str, name: str) -> User:
        user = User(id=user_id, name=name)
        self.state.upsert_user(user)
        return user

    def add_quest(self, quest: Quest) -> Quest:
        return self.state.add_quest(quest)

    def start_battle(self, player1_id: str, player2_id: str, started_on: Optional[date] = None) -> CombatInstance:
        instance = self.state.create_instance(player1_id, player2_id, started_on or self.today())
        logger.info("Battle %s started between %s and %s", instance.id, player1_id, player2_id)
        return instance

    # Submissions ---------------------------------------------------------
    def submit_quests(
        self,
        instance_id: int,
        user_id: str,
        requests: Sequence[SubmissionRequest],
        on: Optional[date] = None,
    ) -> Dict[str, Any]:
        on = on or self.today()
        with track_duration("submit_quests", telemetry=self.telemetry):
            receipt = self.ledger.submit(instance_id, user_id, on, requests)
        self.telemetry.track_submission(user_id, len(receipt.accepted), len(receipt.rejected))
        combatant = self.state.get_combatant(instance_id, user_id)
        today_rows = self.state.submissions_for(instance_id, on, user_id=user_id)
        return {
            "accepted": [
                {
                    "submission_id": item.id,
                    "quest_id": item.quest_id,
                    "completed": item.completed,
                    "sequence": item.sequence,
                    "period_key": item.period_key,
                }
                for item in receipt.accepted
            ],
            "rejected": [
                {
                    "quest_id": item.quest_id,
                    "quest_name": item.quest_name,
                    "reason": item.reason,
                    "next_available": item.next_available.isoformat() if item.next_available else None,
                }
                for item in receipt.rejected
            ],
            "current_stats": combatant.snapshot() if combatant else None,
            "daily_progress": {
                "date": on.isoformat(),
                "submitted": len(today_rows),
                "completed": sum(1 for item in today_rows if item.completed),
                "pending_settlement": sum(1 for item in today_rows if not item.is_settled),
            },
        }

    def availability(self, user_id: str, on: Optional[date] = None) -> List[Dict[str, Any]]:
        on = on or self.today()
        quests = self.state.list_quests(user_id)
        events = {}
        for quest in quests:
            if quest.recurrence is Recurrence.SIDEQUEST and quest.event_id is not None:
                event = self.state.get_sidequest_event(quest.event_id)
                if event is not None:
                    events[event.id] = event
        return annotate_quests(quests, on, events)

    def locked_quests(self, instance_id: int, user_id: str, on: Optional[date] = None) -> List[Dict[str, object]]:
        return self.ledger.locked_quests(instance_id, user_id, on or self.today())

    # Settlement ----------------------------------------------------------
    def settle(self, on: Optional[date] = None) -> SettlementReport:
        """Run settlement for ``on``; defaults to yesterday in the arena timezone."""

        if on is None:
            on = self.today() - timedelta(days=1)
        return self.engine.run(on)

    def processing_status(self, instance_id: int, on: Optional[date] = None) -> Dict[str, Any]:
        on = on or self.today()
        instance = self.state.get_instance(instance_id)
        if instance is None:
            raise UnknownInstanceError(f"Combat instance {instance_id} does not exist")
        counts = self.state.settlement_counts(instance_id, on)
        narrative = self.state.get_narrative(instance_id, on)
        return {
            "instance_id": instance_id,
            "date": on.isoformat(),
            "status": instance.status.value,
            "total_submissions": counts["total"],
            "settled_submissions": counts["settled"],
            "pending_submissions": counts["pending"],
            "first_submission_at": counts["first_submission"],
            "last_settled_at": counts["last_settled"],
            "per_user": counts["per_user"],
            "narrative_created": narrative is not None,
            "narrative": narrative.text if narrative else None,
            "fully_processed": counts["total"] > 0 and counts["pending"] == 0 and narrative is not None,
        }

    # Periodic ------------------------------------------------------------
    def boss_status(self, on: Optional[date] = None) -> Dict[str, Any]:
        return self.boss.status(on or self.today())

    def boss_history(self, limit: int = 12) -> List[Dict[str, Any]]:
        return self.boss.history(limit)

    def tournament_history(self, instance_id: int) -> List[Dict[str, Any]]:
        return [
            {
                "week_start": result.week_start.isoformat(),
                "week_end": result.week_end.isoformat(),
                "winner_id": result.winner_id,
                "loser_id": result.loser_id,
                "winner_reward": result.winner_reward,
                "loser_penalty": result.loser_penalty,
            }
            for result in self.state.list_tournaments(instance_id)
        ]

    # Administration ------------------------------------------------------
    def reset_instance(self, instance_id: int, started_on: Optional[date] = None) -> Dict[str, int]:
        if self.state.get_instance(instance_id) is None:
            raise UnknownInstanceError(f"Combat instance {instance_id} does not exist")
        deleted = self.state.reset_instance(instance_id, started_on or self.today())
        logger.warning("Instance %s reset by administrator: %s", instance_id, deleted)
        self.telemetry.track_system_event("instance_reset", source=str(instance_id))
        return deleted


__all__ = ["ArenaService"]
