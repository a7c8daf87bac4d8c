"""Core data models for Winter Arc."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Recurrence(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    SIDEQUEST = "sidequest"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Recurrence":
        """Map a stored recurrence string onto the enum, defaulting to daily."""

        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.DAILY


class QualityTier(str, Enum):
    FAILED = "failed"
    POOR = "poor"
    AVERAGE = "average"
    GOOD = "good"
    EXCELLENT = "excellent"


class Polarity(str, Enum):
    BUFF = "buff"
    DEBUFF = "debuff"


class EffectKind(str, Enum):
    """Closed set of mechanical modifiers a status effect can carry."""

    COMBO_BLOCK = "combo_block"
    DAMAGE_DEALT = "damage_dealt"
    DAMAGE_TAKEN = "damage_taken"
    XP_GAINED = "xp_gained"
    CRIT_CHANCE = "crit_chance"


class InstanceStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class BossStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass(frozen=True)
class EffectModifier:
    kind: EffectKind
    value: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "value": self.value}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "EffectModifier":
        return EffectModifier(kind=EffectKind(data["kind"]), value=float(data.get("value", 0.0)))


@dataclass(frozen=True)
class EffectDefinition:
    """Catalog entry describing a status effect before it is applied."""

    name: str
    emoji: str
    description: str
    polarity: Polarity
    duration_days: int
    modifiers: Tuple[EffectModifier, ...]


@dataclass
class StatusEffect:
    name: str
    polarity: Polarity
    modifiers: Tuple[EffectModifier, ...]
    expires_at: date
    emoji: str = ""
    description: str = ""

    @property
    def blocks_combo(self) -> bool:
        return any(mod.kind is EffectKind.COMBO_BLOCK for mod in self.modifiers)

    def is_expired(self, today: date) -> bool:
        return self.expires_at < today

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "polarity": self.polarity.value,
            "modifiers": [mod.to_dict() for mod in self.modifiers],
            "expires_at": self.expires_at.isoformat(),
            "emoji": self.emoji,
            "description": self.description,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "StatusEffect":
        return StatusEffect(
            name=data["name"],
            polarity=Polarity(data.get("polarity", "debuff")),
            modifiers=tuple(EffectModifier.from_dict(item) for item in data.get("modifiers", [])),
            expires_at=date.fromisoformat(data["expires_at"]),
            emoji=data.get("emoji", ""),
            description=data.get("description", ""),
        )


@dataclass
class User:
    id: str
    name: str


@dataclass
class Quest:
    id: int
    owner_id: str
    name: str
    recurrence: Recurrence = Recurrence.DAILY
    quest_type: str = "attack"
    difficulty: str = "medium"
    categories: List[str] = field(default_factory=list)
    # Overrides for the difficulty fallback table; None means use the table.
    base_damage: Optional[int] = None
    base_xp: Optional[int] = None
    target_value: Optional[float] = None
    comparison: str = ">="
    emoji: str = ""
    is_active: bool = True
    event_id: Optional[int] = None

    def keywords(self) -> str:
        """Lowercased name and categories used for effect keyword matching."""

        return " ".join([self.name, *self.categories]).lower()


@dataclass
class Submission:
    id: int
    instance_id: int
    user_id: str
    quest_id: int
    submitted_on: date
    completed: bool
    value: Optional[float]
    sequence: int
    period_key: str
    created_at: datetime
    settled_at: Optional[datetime] = None
    quality: Optional[str] = None
    damage_dealt: int = 0
    xp_gained: int = 0
    is_critical: bool = False
    multiplier: float = 1.0
    effects_produced: List[str] = field(default_factory=list)

    @property
    def is_settled(self) -> bool:
        return self.settled_at is not None


@dataclass
class CombatantState:
    instance_id: int
    user_id: str
    hp: int
    max_hp: int
    xp: int = 0
    streak: int = 0
    status_effects: List[StatusEffect] = field(default_factory=list)
    total_damage_dealt: int = 0
    weekly_wins: int = 0
    last_action_date: Optional[date] = None
    xp_per_level: int = field(default=100, repr=False, compare=False)

    @property
    def level(self) -> int:
        return level_for_xp(self.xp, self.xp_per_level)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "hp": self.hp,
            "max_hp": self.max_hp,
            "xp": self.xp,
            "level": self.level,
            "streak": self.streak,
            "total_damage_dealt": self.total_damage_dealt,
            "status_effects": [effect.name for effect in self.status_effects],
        }


def level_for_xp(xp: int, per_level: int = 100) -> int:
    return max(0, xp) // per_level + 1


@dataclass
class CombatInstance:
    id: int
    player1_id: str
    player2_id: str
    status: InstanceStatus = InstanceStatus.ACTIVE
    started_on: Optional[date] = None
    last_settled_date: Optional[date] = None

    @property
    def participants(self) -> Tuple[str, str]:
        return (self.player1_id, self.player2_id)

    def opponent_of(self, user_id: str) -> str:
        if user_id == self.player1_id:
            return self.player2_id
        if user_id == self.player2_id:
            return self.player1_id
        raise ValueError(f"User {user_id} does not participate in instance {self.id}")


@dataclass
class SidequestEvent:
    id: int
    instance_id: int
    name: str
    difficulty: str
    quest_type: str
    valid_from: date
    expires_on: date
    description: str = ""
    emoji: str = ""

    def is_open(self, on: date) -> bool:
        return self.valid_from <= on <= self.expires_on


@dataclass
class NarrativeRecord:
    instance_id: int
    narrated_on: date
    text: str
    source: str
    created_at: datetime


@dataclass
class WeeklyTournamentResult:
    instance_id: int
    week_start: date
    week_end: date
    winner_id: str
    loser_id: str
    winner_reward: Dict[str, Any]
    loser_penalty: Dict[str, Any]


@dataclass
class MonthlyBossFight:
    id: int
    month: str
    name: str
    max_hp: int
    hp: int
    abilities: List[str]
    status: BossStatus = BossStatus.ACTIVE
    participating: List[Dict[str, Any]] = field(default_factory=list)
    victory_rewards: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[datetime] = None


@dataclass
class Availability:
    available: bool
    reason: str
    next_available: Optional[date] = None


@dataclass
class ScoringOutcome:
    quality: QualityTier
    damage_dealt: int
    xp_gained: int
    is_critical: bool = False
    effects_produced: List[str] = field(default_factory=list)
    multiplier: float = 1.0
    source: str = "scorer"


@dataclass
class SubmissionRequest:
    quest_id: int
    completed: bool
    value: Optional[float] = None


@dataclass
class Rejection:
    quest_id: int
    reason: str
    next_available: Optional[date] = None
    quest_name: Optional[str] = None


@dataclass
class SubmissionReceipt:
    instance_id: int
    user_id: str
    submitted_on: date
    accepted: List[Submission] = field(default_factory=list)
    rejected: List[Rejection] = field(default_factory=list)


@dataclass
class SettlementReport:
    settled_on: date
    instances_processed: int = 0
    submissions_settled: int = 0
    narratives_created: int = 0
    instances_completed: List[int] = field(default_factory=list)
    failed_instances: Dict[int, str] = field(default_factory=dict)
    tournaments: List[WeeklyTournamentResult] = field(default_factory=list)
    boss: Optional[MonthlyBossFight] = None
    sidequests_created: int = 0
    effects_pruned: int = 0
    periodic_errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_instances and not self.periodic_errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.settled_on.isoformat(),
            "instances_processed": self.instances_processed,
            "submissions_settled": self.submissions_settled,
            "narratives_created": self.narratives_created,
            "instances_completed": list(self.instances_completed),
            "failed_instances": {str(k): v for k, v in self.failed_instances.items()},
            "tournaments": len(self.tournaments),
            "boss_hp": self.boss.hp if self.boss else None,
            "sidequests_created": self.sidequests_created,
            "effects_pruned": self.effects_pruned,
            "periodic_errors": list(self.periodic_errors),
        }
