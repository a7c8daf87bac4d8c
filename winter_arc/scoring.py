"""Per-submission scoring with an LLM scorer, a two-tier cache and a deterministic fallback."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from .config import Settings, get_settings
from .llm_client import LLMClient, LLMGenerationError
from .models import QualityTier, Quest, ScoringOutcome, Submission
from .modifiers import ModifierResolver
from .rng import DeterministicRNG
from .state import ArenaState
from .telemetry import TelemetryCollector

logger = logging.getLogger(__name__)

_SCORER_SYSTEM_PROMPT = (
    "You are the impartial judge of a two-player habit battle game. "
    "Rate how well a quest was performed and answer with a single JSON object "
    'of the form {"quality": "failed|poor|average|good|excellent", '
    '"damage_dealt": <int>, "xp_gained": <int>}.'
)


class ScoringResponseError(ValueError):
    """Raised when the scoring service returns something that fails validation."""


class ScoringResponse(BaseModel):
    """Schema every scoring service reply must satisfy before it is used."""

    quality: QualityTier
    damage_dealt: int = Field(ge=0)
    xp_gained: int = Field(ge=0)


def cache_key(quest: Quest, submission: Submission) -> str:
    value = "none" if submission.value is None else repr(float(submission.value))
    return "|".join(
        [quest.quest_type, quest.difficulty.lower(), "1" if submission.completed else "0", value]
    )


class ScoreCache:
    """Memory cache backed by the store's ``scoring_cache`` table.

    Only the raw tier and base numbers are cached; critical hits and effects
    are derived per submission after lookup.
    """

    def __init__(self, store: Optional[ArenaState] = None) -> None:
        self._memory: Dict[str, Dict[str, Any]] = {}
        self._store = store

    def get(self, key: str) -> Optional[ScoringOutcome]:
        payload = self._memory.get(key)
        if payload is None and self._store is not None:
            payload = self._store.get_cached_score(key)
            if payload is not None:
                self._memory[key] = payload
        if payload is None:
            return None
        try:
            return ScoringOutcome(
                quality=QualityTier(payload["quality"]),
                damage_dealt=int(payload["damage_dealt"]),
                xp_gained=int(payload["xp_gained"]),
                source="cache",
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding unreadable cached score for %s", key)
            self._memory.pop(key, None)
            return None

    def put(self, key: str, outcome: ScoringOutcome) -> None:
        payload = {
            "quality": outcome.quality.value,
            "damage_dealt": outcome.damage_dealt,
            "xp_gained": outcome.xp_gained,
        }
        self._memory[key] = payload
        if self._store is not None:
            self._store.put_cached_score(key, payload)

    def __len__(self) -> int:
        return len(self._memory)


def fallback_outcome(
    quest: Quest,
    completed: bool,
    settings: Optional[Settings] = None,
    resolver: Optional[ModifierResolver] = None,
) -> ScoringOutcome:
    """Deterministic outcome from the difficulty table; never raises.

    A quest carrying its own ``base_damage`` or ``base_xp`` uses that value in
    place of the table entry.
    """

    settings = settings or get_settings()
    if not completed:
        effects = resolver.failure_effects(quest) if resolver is not None else []
        return ScoringOutcome(
            quality=QualityTier.FAILED,
            damage_dealt=0,
            xp_gained=0,
            effects_produced=effects,
            multiplier=0.0,
            source="fallback",
        )
    table = settings.fallback_table
    entry = table.get((quest.difficulty or "").lower()) or table.get("medium") or {"damage": 15, "xp": 8}
    damage = quest.base_damage if quest.base_damage is not None else entry["damage"]
    xp = quest.base_xp if quest.base_xp is not None else entry["xp"]
    return ScoringOutcome(
        quality=QualityTier.AVERAGE,
        damage_dealt=int(damage),
        xp_gained=int(xp),
        source="fallback",
    )


class LLMQuestScorer:
    """Asks the language model to grade a submission and validates the reply."""

    def __init__(self, client: LLMClient, settings: Optional[Settings] = None) -> None:
        self.client = client
        self.settings = settings or get_settings()

    def build_prompt(self, quest: Quest, submission: Submission, context: Dict[str, Any]) -> str:
        lines = [
            f"Quest: {quest.name} ({quest.quest_type}, {quest.difficulty})",
            f"Categories: {', '.join(quest.categories) or 'none'}",
            f"Completed: {'yes' if submission.completed else 'no'}",
        ]
        if submission.value is not None:
            lines.append(f"Reported value: {submission.value}")
        if quest.target_value is not None:
            lines.append(f"Target: {quest.comparison} {quest.target_value}")
        if context.get("hp") is not None:
            lines.append(f"Current HP: {context['hp']}/{context.get('max_hp', '?')}")
        if context.get("streak"):
            lines.append(f"Current streak: {context['streak']} days")
        effects = context.get("effects") or []
        if effects:
            lines.append("Active effects: " + ", ".join(effect.name for effect in effects))
        lines.append("Tier ranges (damage, xp):")
        for tier, ranges in self.settings.tier_ranges.items():
            lines.append(f"- {tier}: damage {ranges['damage'][0]}-{ranges['damage'][1]}, "
                         f"xp {ranges['xp'][0]}-{ranges['xp'][1]}")
        return "\n".join(lines)

    def parse(self, raw: str) -> ScoringOutcome:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ScoringResponseError(f"Scorer reply is not JSON: {raw[:80]!r}") from exc
        try:
            response = ScoringResponse.model_validate(data)
        except ValidationError as exc:
            raise ScoringResponseError(str(exc)) from exc
        damage_range, xp_range = self._ranges(response.quality)
        return ScoringOutcome(
            quality=response.quality,
            damage_dealt=_clamp(response.damage_dealt, damage_range),
            xp_gained=_clamp(response.xp_gained, xp_range),
            source="llm",
        )

    def score(self, quest: Quest, submission: Submission, context: Dict[str, Any]) -> ScoringOutcome:
        raw = self.client.complete(
            self.build_prompt(quest, submission, context),
            system=_SCORER_SYSTEM_PROMPT,
            context={"type": "scoring"},
            moderate=False,
            json_mode=True,
        )
        return self.parse(raw)

    def _ranges(self, quality: QualityTier) -> Tuple[Tuple[int, int], Tuple[int, int]]:
        ranges = self.settings.tier_ranges.get(quality.value)
        if ranges is None:
            raise ScoringResponseError(f"No range configured for tier {quality.value}")
        return ranges["damage"], ranges["xp"]


def _clamp(value: int, bounds: Tuple[int, int]) -> int:
    low, high = bounds
    return max(low, min(high, value))


class ScoringEngine:
    """Turns a submission into a :class:`ScoringOutcome`.

    Completed submissions go to the scorer (through the cache); anything the
    scorer cannot answer falls back to the difficulty table. Incomplete
    submissions are graded locally as failures.
    """

    def __init__(
        self,
        scorer: Optional[LLMQuestScorer] = None,
        cache: Optional[ScoreCache] = None,
        resolver: Optional[ModifierResolver] = None,
        settings: Optional[Settings] = None,
        telemetry: Optional[TelemetryCollector] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.scorer = scorer
        self.cache = cache if cache is not None else ScoreCache()
        self.resolver = resolver or ModifierResolver(self.settings)
        self.telemetry = telemetry

    def evaluate(self, quest: Quest, submission: Submission, context: Optional[Dict[str, Any]] = None) -> ScoringOutcome:
        context = context or {}
        if not submission.completed:
            outcome = fallback_outcome(quest, False, self.settings, self.resolver)
            outcome.source = "rules"
            self._track(outcome, quest)
            return outcome

        key = cache_key(quest, submission)
        outcome = self.cache.get(key)
        if outcome is None:
            outcome = self._score_or_fallback(quest, submission, context)
            if outcome.source != "fallback":
                self.cache.put(key, outcome)

        if outcome.source != "fallback":
            self._roll_critical(outcome, submission, context)
            outcome.effects_produced = self.resolver.success_effects(quest, outcome.quality)
        self._track(outcome, quest)
        return outcome

    def _score_or_fallback(self, quest: Quest, submission: Submission, context: Dict[str, Any]) -> ScoringOutcome:
        if self.scorer is None:
            return fallback_outcome(quest, True, self.settings, self.resolver)
        try:
            return self.scorer.score(quest, submission, context)
        except (LLMGenerationError, ScoringResponseError) as exc:
            logger.warning("Scorer unavailable for submission %s, using fallback: %s", submission.id, exc)
        except Exception:
            logger.exception("Unexpected scorer failure for submission %s, using fallback", submission.id)
        if self.telemetry is not None:
            self.telemetry.track_error("scorer_fallback", operation="scoring")
        return fallback_outcome(quest, True, self.settings, self.resolver)

    def _roll_critical(self, outcome: ScoringOutcome, submission: Submission, context: Dict[str, Any]) -> None:
        if outcome.quality is not QualityTier.EXCELLENT:
            return
        chance = self.settings.critical_chance + self.resolver.crit_bonus(context.get("effects") or [])
        rng = DeterministicRNG.for_key(self.settings.rng_seed, "crit", submission.id)
        if rng.chance(chance):
            outcome.is_critical = True
            outcome.multiplier = self.settings.critical_multiplier
            outcome.damage_dealt = int(outcome.damage_dealt * self.settings.critical_multiplier)

    def _track(self, outcome: ScoringOutcome, quest: Quest) -> None:
        if self.telemetry is not None:
            self.telemetry.track_scoring(outcome.source, quest.quest_type, quest.difficulty)


__all__ = [
    "LLMQuestScorer",
    "ScoreCache",
    "ScoringEngine",
    "ScoringResponse",
    "ScoringResponseError",
    "cache_key",
    "fallback_outcome",
]
