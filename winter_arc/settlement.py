"""Daily batch settlement of pending quest submissions."""
from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from .config import Settings, get_settings
from .models import (
    CombatantState,
    CombatInstance,
    NarrativeRecord,
    QualityTier,
    ScoringOutcome,
    SettlementReport,
    Submission,
)
from .ledger import UnknownInstanceError
from .modifiers import ModifierResolver
from .narrative import TemplateNarrator, build_day_summary
from .periodic import MonthlyBossResolver, SidequestScheduler, WeeklyTournamentResolver
from .scoring import ScoringEngine
from .state import ArenaState
from .telemetry import TelemetryCollector

logger = logging.getLogger(__name__)

RUN_LOCK_NAME = "daily_settlement"


class SettlementAbortedError(RuntimeError):
    """Raised when a run cannot start because the store is unreachable."""


class SettlementInProgressError(RuntimeError):
    """Raised when another settlement run holds the run lock."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class InstanceResult:
    instance_id: int
    submissions_settled: int = 0
    narrative_created: bool = False
    completed: bool = False
    damage: Dict[str, int] = field(default_factory=dict)


@dataclass
class _UserTally:
    outcomes: List[Tuple[int, ScoringOutcome]] = field(default_factory=list)
    base_damage: int = 0
    base_xp: int = 0
    completed: int = 0
    new_effects: List[str] = field(default_factory=list)


class SettlementEngine:
    """Scores, applies and narrates one day's submissions, instance by instance."""

    def __init__(
        self,
        state: ArenaState,
        scoring: ScoringEngine,
        resolver: Optional[ModifierResolver] = None,
        narrator=None,
        tournaments: Optional[WeeklyTournamentResolver] = None,
        boss: Optional[MonthlyBossResolver] = None,
        sidequests: Optional[SidequestScheduler] = None,
        settings: Optional[Settings] = None,
        telemetry: Optional[TelemetryCollector] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.state = state
        self.settings = settings or get_settings()
        self.scoring = scoring
        self.resolver = resolver or scoring.resolver
        self.template = TemplateNarrator()
        self.narrator = narrator or self.template
        self.tournaments = tournaments
        self.boss = boss
        self.sidequests = sidequests
        self.telemetry = telemetry
        self._clock = clock

    # Run orchestration ----------------------------------------------------
    def run(self, on: Optional[date] = None, *, owner: Optional[str] = None) -> SettlementReport:
        """Settle every instance with activity on ``on`` (default: yesterday, UTC)."""

        on = on or (self._clock().date() - timedelta(days=1))
        try:
            self.state.ping()
        except sqlite3.Error as exc:
            raise SettlementAbortedError(f"State store unavailable: {exc}") from exc

        owner = owner or f"settlement-{uuid.uuid4().hex[:8]}"
        stale_after = timedelta(minutes=self.settings.lock_stale_minutes)
        if not self.state.acquire_lock(RUN_LOCK_NAME, owner, self._clock(), stale_after):
            logger.warning("Settlement for %s skipped: another run holds the lock", on)
            if self.telemetry is not None:
                self.telemetry.track_system_event("settlement_lock_busy", source=owner)
            raise SettlementInProgressError("A settlement run is already in progress")

        report = SettlementReport(settled_on=on)
        started = time.perf_counter()
        try:
            self._run_locked(on, report)
        finally:
            self.state.release_lock(RUN_LOCK_NAME, owner)

        logger.info(
            "Settlement for %s: %d instances, %d submissions, %d narratives, %d failures",
            on,
            report.instances_processed,
            report.submissions_settled,
            report.narratives_created,
            len(report.failed_instances),
        )
        if self.telemetry is not None:
            duration_ms = (time.perf_counter() - started) * 1000
            self.telemetry.track_performance("settlement_run", duration_ms, {"date": on.isoformat()})
            self.telemetry.track_settlement(on.isoformat(), report.to_dict(), duration_ms)
            self.telemetry.flush()
        return report

    def _run_locked(self, on: date, report: SettlementReport) -> None:
        report.effects_pruned = self._prune_all(on)
        for instance_id in self.state.instances_with_activity(on):
            try:
                result = self.settle_instance(instance_id, on)
            except Exception as exc:
                logger.exception("Settlement failed for instance %s on %s", instance_id, on)
                report.failed_instances[instance_id] = str(exc)
                if self.telemetry is not None:
                    self.telemetry.track_error(
                        type(exc).__name__,
                        operation="settle_instance",
                        instance_id=instance_id,
                        error_details=str(exc),
                    )
                continue
            report.instances_processed += 1
            report.submissions_settled += result.submissions_settled
            report.narratives_created += int(result.narrative_created)
            if result.completed:
                report.instances_completed.append(instance_id)

        if self.tournaments is not None:
            try:
                report.tournaments = self.tournaments.resolve(on)
            except Exception as exc:
                logger.exception("Weekly tournament resolution failed for %s", on)
                report.periodic_errors.append(f"tournament: {exc}")
        if self.boss is not None:
            try:
                report.boss = self.boss.refresh(on)
            except Exception as exc:
                logger.exception("Monthly boss refresh failed for %s", on)
                report.periodic_errors.append(f"boss: {exc}")
        if self.sidequests is not None:
            try:
                report.sidequests_created = len(self.sidequests.maybe_spawn(on))
            except Exception as exc:
                logger.exception("Sidequest scheduling failed for %s", on)
                report.periodic_errors.append(f"sidequests: {exc}")

    def _prune_all(self, on: date) -> int:
        removed_total = 0
        for combatant in self.state.list_combatants():
            kept, removed = self.resolver.prune_expired(combatant.status_effects, on)
            if removed:
                self.state.save_effects(combatant.instance_id, combatant.user_id, kept)
                removed_total += removed
        if removed_total:
            logger.info("Pruned %d expired status effects", removed_total)
        return removed_total

    # Per-instance settlement ---------------------------------------------
    def settle_instance(self, instance_id: int, on: date) -> InstanceResult:
        instance = self.state.get_instance(instance_id)
        if instance is None:
            raise UnknownInstanceError(f"Combat instance {instance_id} does not exist")

        before = self._combatants(instance, on)
        result = InstanceResult(instance_id=instance_id)
        pending = self.state.submissions_for(instance_id, on, pending_only=True)
        by_user: Dict[str, List[Submission]] = {}
        for submission in pending:
            by_user.setdefault(submission.user_id, []).append(submission)

        settled_at = self._clock()
        for user_id in instance.participants:
            submissions = by_user.get(user_id)
            if not submissions:
                continue
            opponent_id = instance.opponent_of(user_id)
            dealt = self._settle_user(
                instance, user_id, before[user_id], before[opponent_id], submissions, on, settled_at
            )
            result.submissions_settled += len(submissions)
            result.damage[user_id] = dealt

        all_today = self.state.submissions_for(instance_id, on)
        if all_today and self.state.get_narrative(instance_id, on) is None:
            result.narrative_created = self._narrate(instance, on, before, all_today)

        after = {state.user_id: state for state in self.state.list_combatants(instance_id)}
        if any(state.hp <= 0 for state in after.values()):
            if self.state.mark_instance_completed(instance_id, self._clock()):
                result.completed = True
                logger.info("Instance %s completed on %s", instance_id, on)
                if self.telemetry is not None:
                    self.telemetry.track_game_progression("instance_completed", 1.0, instance_id=instance_id)
        self.state.set_last_settled(instance_id, on)
        return result

    def _combatants(self, instance: CombatInstance, on: date) -> Dict[str, CombatantState]:
        combatants: Dict[str, CombatantState] = {}
        for user_id in instance.participants:
            combatant = self.state.get_combatant(instance.id, user_id)
            if combatant is None:
                raise ValueError(f"Missing combatant stats for {user_id} in instance {instance.id}")
            combatant.status_effects, _ = self.resolver.prune_expired(combatant.status_effects, on)
            combatants[user_id] = combatant
        return combatants

    def _settle_user(
        self,
        instance: CombatInstance,
        user_id: str,
        own: CombatantState,
        opponent: CombatantState,
        submissions: List[Submission],
        on: date,
        settled_at: datetime,
    ) -> int:
        tally = _UserTally()
        context = {
            "effects": own.status_effects,
            "streak": own.streak,
            "level": own.level,
            "hp": own.hp,
            "max_hp": own.max_hp,
        }
        for submission in sorted(submissions, key=lambda item: (item.sequence, item.id)):
            quest = self.state.get_quest(submission.quest_id)
            if quest is None:
                raise ValueError(f"Submission {submission.id} references missing quest {submission.quest_id}")
            outcome = self.scoring.evaluate(quest, submission, context)
            tally.outcomes.append((submission.id, outcome))
            tally.new_effects.extend(outcome.effects_produced)
            if submission.completed:
                tally.completed += 1
            if outcome.quality is not QualityTier.FAILED:
                tally.base_damage += outcome.damage_dealt
                tally.base_xp += outcome.xp_gained

        multiplier = self.resolver.combo_multiplier(tally.completed, own.status_effects)
        # One bonus, derived from damage, is credited to both damage and XP.
        bonus = self.resolver.combo_bonus(tally.base_damage, multiplier)
        damage = tally.base_damage + bonus
        xp = tally.base_xp + bonus
        damage, xp = self.resolver.adjust_outgoing(damage, xp, own.status_effects)
        damage = self.resolver.adjust_incoming(damage, opponent.status_effects)

        streak = own.streak + 1 if tally.completed else max(0, own.streak - 1)
        effects = self.resolver.apply_effects(own.status_effects, dict.fromkeys(tally.new_effects), on)

        self.state.apply_user_settlement(
            instance_id=instance.id,
            user_id=user_id,
            opponent_id=opponent.user_id,
            outcomes=tally.outcomes,
            xp_gained=xp,
            damage_dealt=damage,
            streak=streak,
            effects=effects,
            settled_on=on,
            settled_at=settled_at,
        )
        logger.info(
            "Instance %s: %s settled %d submissions for %d damage (combo x%.1f)",
            instance.id,
            user_id,
            len(tally.outcomes),
            damage,
            multiplier,
        )
        return damage

    def _narrate(
        self,
        instance: CombatInstance,
        on: date,
        before: Dict[str, CombatantState],
        submissions: List[Submission],
    ) -> bool:
        first = self.state.first_narrative_date(instance.id)
        day_number = (on - first).days + 1 if first and first <= on else 1
        after = {state.user_id: state.snapshot() for state in self.state.list_combatants(instance.id)}
        quest_names = {}
        for submission in submissions:
            if submission.quest_id not in quest_names:
                quest = self.state.get_quest(submission.quest_id)
                quest_names[submission.quest_id] = quest.name if quest else f"Quest {submission.quest_id}"
        summary = build_day_summary(
            instance,
            on,
            day_number,
            {user_id: self.state.display_name(user_id) for user_id in instance.participants},
            {user_id: state.snapshot() for user_id, state in before.items()},
            after,
            submissions,
            quest_names,
        )

        try:
            text = self.narrator.summarize(summary)
            source = getattr(self.narrator, "last_source", getattr(self.narrator, "source", "custom"))
        except Exception:
            logger.exception("Narrator failed for instance %s on %s, using template", instance.id, on)
            text = self.template.summarize(summary)
            source = self.template.source

        return self.state.add_narrative(
            NarrativeRecord(
                instance_id=instance.id,
                narrated_on=on,
                text=text,
                source=source,
                created_at=self._clock(),
            )
        )


__all__ = [
    "InstanceResult",
    "SettlementAbortedError",
    "SettlementEngine",
    "SettlementInProgressError",
]
