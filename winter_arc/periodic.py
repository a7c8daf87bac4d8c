"""Weekly tournaments, the shared monthly boss and scheduled sidequests."""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from .availability import SUNDAY, month_bounds, week_bounds
from .config import Settings, get_settings
from .models import (
    BossStatus,
    CombatantState,
    CombatInstance,
    InstanceStatus,
    MonthlyBossFight,
    Quest,
    Recurrence,
    SidequestEvent,
    WeeklyTournamentResult,
)
from .narrative import RewardGenerator
from .rng import DeterministicRNG
from .state import ArenaState
from .telemetry import TelemetryCollector

logger = logging.getLogger(__name__)

_DATA_DIR = Path(__file__).parent / "data"
_YAML_CACHE: Dict[str, Any] = {}


def _load_yaml_resource(filename: str) -> Dict[str, Any]:
    if filename not in _YAML_CACHE:
        with (_DATA_DIR / filename).open("r", encoding="utf-8") as fh:
            _YAML_CACHE[filename] = yaml.safe_load(fh) or {}
    return _YAML_CACHE[filename]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def pick_tournament_winner(
    instance: CombatInstance, first: CombatantState, second: CombatantState
) -> tuple[str, str]:
    """Higher HP wins; equal HP goes to higher cumulative damage, then player one."""

    if first.hp != second.hp:
        ranked = sorted((first, second), key=lambda item: item.hp, reverse=True)
    elif first.total_damage_dealt != second.total_damage_dealt:
        ranked = sorted((first, second), key=lambda item: item.total_damage_dealt, reverse=True)
    else:
        ranked = [first, second] if first.user_id == instance.player1_id else [second, first]
    return ranked[0].user_id, ranked[1].user_id


class WeeklyTournamentResolver:
    """Settles the end-of-week duel for every active instance."""

    def __init__(
        self,
        state: ArenaState,
        rewards: Optional[RewardGenerator] = None,
        telemetry: Optional[TelemetryCollector] = None,
    ) -> None:
        self.state = state
        self.rewards = rewards or RewardGenerator()
        self.telemetry = telemetry

    def resolve(self, on: date, *, force: bool = False) -> List[WeeklyTournamentResult]:
        """Create this week's results; a no-op unless ``on`` is the last day of the week."""

        if on.weekday() != SUNDAY and not force:
            return []
        week_start, week_end = week_bounds(on)
        results: List[WeeklyTournamentResult] = []
        for instance in self.state.list_instances(InstanceStatus.ACTIVE):
            if self.state.get_tournament(instance.id, week_start) is not None:
                continue
            first = self.state.get_combatant(instance.id, instance.player1_id)
            second = self.state.get_combatant(instance.id, instance.player2_id)
            if first is None or second is None:
                logger.warning("Instance %s is missing combatant stats, skipping tournament", instance.id)
                continue
            winner_id, loser_id = pick_tournament_winner(instance, first, second)
            by_user = {first.user_id: first, second.user_id: second}
            winner_name = self.state.display_name(winner_id)
            loser_name = self.state.display_name(loser_id)
            winner_reward, loser_penalty = self.rewards.tournament_rewards(
                winner_name,
                loser_name,
                {
                    "week_start": week_start.isoformat(),
                    "winner": {**by_user[winner_id].snapshot(), "name": winner_name},
                    "loser": {**by_user[loser_id].snapshot(), "name": loser_name},
                },
            )
            result = WeeklyTournamentResult(
                instance_id=instance.id,
                week_start=week_start,
                week_end=week_end,
                winner_id=winner_id,
                loser_id=loser_id,
                winner_reward=winner_reward,
                loser_penalty=loser_penalty,
            )
            stored = self.state.record_tournament(
                result,
                winner_xp_bonus=int(winner_reward.get("xp_bonus", 0)),
                loser_xp_reduction=int(loser_penalty.get("xp_reduction", 0)),
            )
            if not stored:
                continue
            logger.info("Week of %s: %s beat %s in instance %s", week_start, winner_id, loser_id, instance.id)
            if self.telemetry is not None:
                self.telemetry.track_game_progression("weekly_tournament", 1.0, instance_id=instance.id)
            results.append(result)
        return results


class MonthlyBossResolver:
    """Derives the shared boss's HP from the month's completed-quest damage."""

    def __init__(
        self,
        state: ArenaState,
        rewards: Optional[RewardGenerator] = None,
        settings: Optional[Settings] = None,
        telemetry: Optional[TelemetryCollector] = None,
        roster: Optional[List[Dict[str, Any]]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.state = state
        self.rewards = rewards or RewardGenerator()
        self.settings = settings or get_settings()
        self.telemetry = telemetry
        self._roster = roster
        self._clock = clock

    @property
    def roster(self) -> List[Dict[str, Any]]:
        if self._roster is not None:
            return self._roster
        return list(_load_yaml_resource("bosses.yaml").get("bosses", []))

    def ensure_boss(self, on: date) -> MonthlyBossFight:
        month = on.strftime("%Y-%m")
        boss = self.state.get_boss(month)
        if boss is not None:
            return boss
        rng = DeterministicRNG.for_key(self.settings.rng_seed, "boss", month)
        template = rng.choice(self.roster)
        logger.info("Summoning %s as the boss for %s", template["name"], month)
        return self.state.create_boss(
            month,
            template["name"],
            int(template["hp"]),
            template.get("abilities", []),
            now=self._clock(),
        )

    def refresh(self, on: date) -> MonthlyBossFight:
        """Recompute the month's boss HP and complete it once it reaches zero."""

        boss = self.ensure_boss(on)
        if boss.status is BossStatus.COMPLETED:
            return boss

        start, end = month_bounds(on)
        damage = self.state.damage_by_instance(start, end)
        total = sum(damage.values())
        hp = max(0, boss.max_hp - total)
        participating: List[Dict[str, Any]] = []
        for instance_id, dealt in damage.items():
            if dealt <= 0:
                continue
            instance = self.state.get_instance(instance_id)
            if instance is None:
                continue
            participating.append(
                {"instance_id": instance_id, "damage": dealt, "users": list(instance.participants)}
            )
        self.state.update_boss_progress(boss.id, hp, participating)

        if hp == 0:
            recipients = [
                (entry["instance_id"], user_id) for entry in participating for user_id in entry["users"]
            ]
            names = sorted({self.state.display_name(user_id) for _, user_id in recipients})
            rewards = self.rewards.boss_victory_rewards(boss.name, names)
            xp_reward = int(rewards.get("xp_reward", self.settings.boss_reward_xp))
            if self.state.complete_boss(boss.id, rewards, recipients, xp_reward, self._clock()):
                logger.info("%s defeated for %s; rewarded %d users", boss.name, boss.month, len(names))
                if self.telemetry is not None:
                    self.telemetry.track_game_progression(
                        "boss_defeated", float(boss.max_hp), details={"month": boss.month}
                    )

        refreshed = self.state.get_boss(boss.month)
        assert refreshed is not None
        return refreshed

    def status(self, on: date) -> Dict[str, Any]:
        boss = self.refresh(on)
        dealt = boss.max_hp - boss.hp
        return {
            "month": boss.month,
            "name": boss.name,
            "hp": boss.hp,
            "max_hp": boss.max_hp,
            "status": boss.status.value,
            "progress_percent": round(100.0 * dealt / boss.max_hp, 1) if boss.max_hp else 100.0,
            "abilities": list(boss.abilities),
            "contributions": list(boss.participating),
            "victory_rewards": dict(boss.victory_rewards),
            "completed_at": boss.completed_at.isoformat() if boss.completed_at else None,
        }

    def history(self, limit: int = 12) -> List[Dict[str, Any]]:
        return [
            {
                "month": boss.month,
                "name": boss.name,
                "max_hp": boss.max_hp,
                "completed_at": boss.completed_at.isoformat() if boss.completed_at else None,
                "rewards": self.state.boss_rewards(boss.id),
            }
            for boss in self.state.completed_bosses(limit)
        ]


class SidequestScheduler:
    """Randomly opens a one-off sidequest for an instance the day after settlement."""

    def __init__(
        self,
        state: ArenaState,
        settings: Optional[Settings] = None,
        templates: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self.state = state
        self.settings = settings or get_settings()
        self._templates = templates

    @property
    def templates(self) -> List[Dict[str, Any]]:
        if self._templates is not None:
            return self._templates
        return list(_load_yaml_resource("sidequests.yaml").get("sidequests", []))

    def maybe_spawn(self, on: date) -> List[SidequestEvent]:
        valid_from = on + timedelta(days=1)
        expires_on = valid_from + timedelta(days=max(1, self.settings.sidequest_lifetime_days) - 1)
        events: List[SidequestEvent] = []
        templates = self.templates
        if not templates:
            return events
        for instance in self.state.list_instances(InstanceStatus.ACTIVE):
            if self.state.has_sidequest_from(instance.id, valid_from):
                continue
            rng = DeterministicRNG.for_key(self.settings.rng_seed, "sidequest", instance.id, on.isoformat())
            if not rng.chance(self.settings.sidequest_chance):
                continue
            template = rng.choice(templates)
            event = self.state.add_sidequest_event(instance.id, template, valid_from, expires_on)
            entry = self.settings.fallback_table.get(event.difficulty, {"damage": 15, "xp": 8})
            for user_id in instance.participants:
                self.state.add_quest(
                    Quest(
                        id=0,
                        owner_id=user_id,
                        name=event.name,
                        recurrence=Recurrence.SIDEQUEST,
                        quest_type=event.quest_type,
                        difficulty=event.difficulty,
                        categories=list(template.get("categories", [])),
                        base_damage=int(entry["damage"]),
                        base_xp=int(entry["xp"]),
                        emoji=event.emoji,
                        event_id=event.id,
                    )
                )
            logger.info("Sidequest '%s' opens for instance %s on %s", event.name, instance.id, valid_from)
            events.append(event)
        return events


__all__ = [
    "MonthlyBossResolver",
    "SidequestScheduler",
    "WeeklyTournamentResolver",
    "pick_tournament_winner",
]
