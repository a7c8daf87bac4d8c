"""Daily battle narration and periodic reward generation.

Both the narrator and the reward generator try the language model first and
fall back to deterministic content, so a settlement run never fails because
the text service is down.
"""
from __future__ import annotations

import json
import logging
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError

from .llm_client import LLMClient, LLMGenerationError
from .models import CombatInstance, Submission

logger = logging.getLogger(__name__)

_REWARDS_PATH = Path(__file__).parent / "data" / "rewards.yaml"
_REWARDS_CACHE: Optional[Dict[str, Any]] = None

_NARRATOR_SYSTEM_PROMPT = (
    "You narrate an epic winter battle between two friends who fight by completing "
    "real-life habits. Write 3-5 vivid sentences in the present tense. Mention both "
    "warriors by name, the damage exchanged and any status effects. Keep it playful."
)
_REWARD_SYSTEM_PROMPT = (
    "You design light-hearted rewards and penalties for a friendly habit battle game. "
    "Answer with a single JSON object only."
)


def _load_rewards() -> Dict[str, Any]:
    global _REWARDS_CACHE
    if _REWARDS_CACHE is None:
        with _REWARDS_PATH.open("r", encoding="utf-8") as fh:
            _REWARDS_CACHE = yaml.safe_load(fh) or {}
    return _REWARDS_CACHE


def build_day_summary(
    instance: CombatInstance,
    on: date,
    day_number: int,
    names: Mapping[str, str],
    before: Mapping[str, Dict[str, Any]],
    after: Mapping[str, Dict[str, Any]],
    submissions: Sequence[Submission],
    quest_names: Mapping[int, str],
) -> Dict[str, Any]:
    """Structured description of one instance's day, fed to a narrator."""

    players: List[Dict[str, Any]] = []
    for user_id in instance.participants:
        own = [item for item in submissions if item.user_id == user_id]
        start = before.get(user_id, {})
        end = after.get(user_id, {})
        dealt = int(end.get("total_damage_dealt", 0)) - int(start.get("total_damage_dealt", 0))
        players.append(
            {
                "user_id": user_id,
                "name": names.get(user_id, user_id),
                "submitted": bool(own),
                "damage_dealt": max(0, dealt),
                "before": dict(start),
                "after": dict(end),
                "quests": [
                    {
                        "name": quest_names.get(item.quest_id, f"Quest {item.quest_id}"),
                        "completed": item.completed,
                        "quality": item.quality,
                        "damage": item.damage_dealt,
                        "xp": item.xp_gained,
                        "critical": item.is_critical,
                        "effects": list(item.effects_produced),
                    }
                    for item in own
                ],
            }
        )

    first, second = players
    winner: Optional[str] = None
    if first["damage_dealt"] > second["damage_dealt"]:
        winner = first["user_id"]
    elif second["damage_dealt"] > first["damage_dealt"]:
        winner = second["user_id"]

    return {
        "instance_id": instance.id,
        "date": on.isoformat(),
        "day_number": day_number,
        "players": players,
        "both_submitted": all(player["submitted"] for player in players),
        "winner": winner,
    }


class TemplateNarrator:
    """Deterministic narrator used on its own or as the LLM fallback."""

    source = "template"

    def summarize(self, summary: Dict[str, Any]) -> str:
        players = summary["players"]
        lines = [f"Day {summary['day_number']} of the Winter Arc."]
        for player in players:
            if not player["submitted"]:
                lines.append(f"{player['name']} never showed up to the battlefield.")
                continue
            completed = sum(1 for quest in player["quests"] if quest["completed"])
            line = (
                f"{player['name']} completed {completed} of {len(player['quests'])} quests "
                f"and dealt {player['damage_dealt']} damage."
            )
            crits = sum(1 for quest in player["quests"] if quest["critical"])
            if crits:
                line += f" {crits} critical strike{'s' if crits > 1 else ''} landed!"
            effects = sorted({name for quest in player["quests"] for name in quest["effects"]})
            if effects:
                line += f" Now affected by: {', '.join(effects)}."
            lines.append(line)

        winner_id = summary.get("winner")
        if winner_id is None:
            lines.append("Neither warrior gained the upper hand today.")
        else:
            winner = next(player for player in players if player["user_id"] == winner_id)
            lines.append(f"{winner['name']} wins the day!")

        standings = ", ".join(
            f"{player['name']} {player['after'].get('hp', '?')}/{player['after'].get('max_hp', '?')} HP"
            for player in players
        )
        lines.append(f"Standing: {standings}.")
        return " ".join(lines)


class LLMNarrator:
    """Narrates through the language model, falling back to a template on failure."""

    source = "llm"

    def __init__(self, client: LLMClient, fallback: Optional[TemplateNarrator] = None) -> None:
        self.client = client
        self.fallback = fallback or TemplateNarrator()
        self.last_source = self.source

    def build_prompt(self, summary: Dict[str, Any]) -> str:
        return (
            f"Narrate day {summary['day_number']} of this battle.\n"
            f"{json.dumps(summary, indent=2, default=str)}"
        )

    def summarize(self, summary: Dict[str, Any]) -> str:
        try:
            text = self.client.complete(
                self.build_prompt(summary),
                system=_NARRATOR_SYSTEM_PROMPT,
                context={"type": "narrative", "summary": f"Day {summary['day_number']} battle"},
            )
        except LLMGenerationError as exc:
            logger.warning("Narration failed for instance %s, using template: %s", summary.get("instance_id"), exc)
            self.last_source = self.fallback.source
            return self.fallback.summarize(summary)
        self.last_source = self.source
        return text


class WinnerReward(BaseModel):
    xp_bonus: int = Field(default=0, ge=0, le=500)
    trophy: str
    unlock: str = ""
    description: str = ""


class LoserPenalty(BaseModel):
    penalty_type: str
    penalty_description: str
    xp_reduction: int = Field(default=0, ge=0, le=500)
    motivation: str = ""


class TournamentRewards(BaseModel):
    winner: WinnerReward
    loser: LoserPenalty


class BossVictoryRewards(BaseModel):
    xp_reward: int = Field(ge=0)
    cosmetics: List[str] = Field(default_factory=list)
    titles: List[str] = Field(default_factory=list)
    next_month_preview: str = ""
    celebration_message: str = ""


class RewardGenerator:
    """Produces tournament and boss reward payloads."""

    def __init__(self, client: Optional[LLMClient] = None, data: Optional[Dict[str, Any]] = None) -> None:
        self.client = client
        self._data = data

    @property
    def data(self) -> Dict[str, Any]:
        return self._data if self._data is not None else _load_rewards()

    def tournament_rewards(
        self, winner_name: str, loser_name: str, context: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        prompt = (
            f"{winner_name} won this week's tournament against {loser_name}.\n"
            f"Week details: {json.dumps(context, default=str)}\n"
            'Reply as {"winner": {"xp_bonus": int, "trophy": str, "unlock": str, "description": str}, '
            '"loser": {"penalty_type": str, "penalty_description": str, "xp_reduction": int, "motivation": str}}'
        )
        parsed = self._ask(prompt, TournamentRewards, "tournament")
        if parsed is None:
            fallback = TournamentRewards.model_validate(self.data["tournament_fallback"])
            return fallback.winner.model_dump(), fallback.loser.model_dump()
        return parsed.winner.model_dump(), parsed.loser.model_dump()

    def boss_victory_rewards(self, boss_name: str, participants: Sequence[str]) -> Dict[str, Any]:
        prompt = (
            f"The heroes {', '.join(participants)} defeated the monthly boss {boss_name}.\n"
            'Reply as {"xp_reward": int, "cosmetics": [str], "titles": [str], '
            '"next_month_preview": str, "celebration_message": str}'
        )
        parsed = self._ask(prompt, BossVictoryRewards, "boss_victory")
        if parsed is None:
            parsed = BossVictoryRewards.model_validate(self.data["boss_victory_fallback"])
        return parsed.model_dump()

    def _ask(self, prompt: str, model, purpose: str):
        if self.client is None:
            return None
        try:
            raw = self.client.complete(
                prompt,
                system=_REWARD_SYSTEM_PROMPT,
                context={"type": purpose},
                json_mode=True,
            )
            return model.model_validate(json.loads(raw))
        except (LLMGenerationError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Reward generation for %s fell back to defaults: %s", purpose, exc)
            return None


__all__ = [
    "LLMNarrator",
    "RewardGenerator",
    "TemplateNarrator",
    "build_day_summary",
]
