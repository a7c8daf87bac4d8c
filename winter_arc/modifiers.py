"""Combo multipliers and status effect lifecycle.

Status effects carry a closed set of typed modifiers (see
:class:`~winter_arc.models.EffectKind`). Effects are assigned from quest
keywords when a quest is failed, or when it is completed at the excellent
tier, and expire one day after the settlement that produced them.
"""
from __future__ import annotations

import logging
import math
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import yaml

from .config import Settings, get_settings
from .models import (
    EffectDefinition,
    EffectKind,
    EffectModifier,
    Polarity,
    QualityTier,
    Quest,
    StatusEffect,
)

logger = logging.getLogger(__name__)

_DATA_PATH = Path(__file__).parent / "data" / "status_effects.yaml"
_CATALOG_CACHE: Optional[Dict[str, Any]] = None


def _load_catalog(path: Path = _DATA_PATH) -> Dict[str, Any]:
    global _CATALOG_CACHE
    if path == _DATA_PATH and _CATALOG_CACHE is not None:
        return _CATALOG_CACHE
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if path == _DATA_PATH:
        _CATALOG_CACHE = data
    return data


class EffectCatalog:
    """Status effect definitions and the keyword triggers that assign them."""

    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        data = data if data is not None else _load_catalog()
        self.definitions: Dict[str, EffectDefinition] = {}
        for entry in data.get("status_effects", []):
            modifiers = tuple(
                EffectModifier(kind=EffectKind(item["kind"]), value=float(item.get("value", 0.0)))
                for item in entry.get("modifiers", [])
            )
            definition = EffectDefinition(
                name=entry["name"],
                emoji=entry.get("emoji", ""),
                description=entry.get("description", ""),
                polarity=Polarity(entry.get("polarity", "debuff")),
                duration_days=int(entry.get("duration_days", 1)),
                modifiers=modifiers,
            )
            self.definitions[definition.name] = definition
        self.failure_triggers: Dict[str, List[str]] = {
            name: [word.lower() for word in words]
            for name, words in (data.get("failure_triggers") or {}).items()
        }
        self.success_triggers: Dict[str, List[str]] = {
            name: [word.lower() for word in words]
            for name, words in (data.get("success_triggers") or {}).items()
        }
        self.success_quest_types: Dict[str, str] = dict(data.get("success_quest_types") or {})

    def get(self, name: str) -> EffectDefinition:
        try:
            return self.definitions[name]
        except KeyError as exc:
            raise KeyError(f"Unknown status effect: {name}") from exc


def _modifier_total(effects: Iterable[StatusEffect], kind: EffectKind) -> float:
    """Sum the parameters of every ``kind`` modifier across ``effects``."""

    return sum(
        modifier.value
        for effect in effects
        for modifier in effect.modifiers
        if modifier.kind is kind
    )


def _scaled(amount: int, factor: float) -> int:
    return max(0, math.floor(round(amount * max(0.0, factor), 6)))


class ModifierResolver:
    """Applies combo multipliers and status effect modifiers."""

    def __init__(self, settings: Optional[Settings] = None, catalog: Optional[EffectCatalog] = None) -> None:
        self.settings = settings or get_settings()
        self.catalog = catalog or EffectCatalog()

    # Combo ---------------------------------------------------------------
    def combo_multiplier(self, completed_count: int, effects: Sequence[StatusEffect] = ()) -> float:
        if any(effect.blocks_combo for effect in effects):
            return 1.0
        if completed_count >= 3:
            return self.settings.combo_three
        if completed_count == 2:
            return self.settings.combo_two
        return 1.0

    @staticmethod
    def combo_bonus(base_total: int, multiplier: float) -> int:
        # Round before flooring so 30 * 0.2 lands on 6 rather than 5.
        return max(0, math.floor(round(base_total * (multiplier - 1.0), 6)))

    # Effect modifiers ----------------------------------------------------
    @staticmethod
    def adjust_outgoing(damage: int, xp: int, effects: Sequence[StatusEffect]) -> Tuple[int, int]:
        """Scale a user's outgoing damage and XP by their own active effects."""

        damage_factor = 1.0 + _modifier_total(effects, EffectKind.DAMAGE_DEALT)
        xp_factor = 1.0 + _modifier_total(effects, EffectKind.XP_GAINED)
        return _scaled(damage, damage_factor), _scaled(xp, xp_factor)

    @staticmethod
    def adjust_incoming(damage: int, effects: Sequence[StatusEffect]) -> int:
        """Scale damage about to land on a user by that user's active effects."""

        return _scaled(damage, 1.0 + _modifier_total(effects, EffectKind.DAMAGE_TAKEN))

    @staticmethod
    def crit_bonus(effects: Sequence[StatusEffect]) -> float:
        return _modifier_total(effects, EffectKind.CRIT_CHANCE)

    # Effect lifecycle ----------------------------------------------------
    @staticmethod
    def prune_expired(effects: Sequence[StatusEffect], today: date) -> Tuple[List[StatusEffect], int]:
        """Drop effects that expired before ``today``; returns (kept, removed count)."""

        kept = [effect for effect in effects if not effect.is_expired(today)]
        return kept, len(effects) - len(kept)

    def apply_effects(
        self,
        effects: Sequence[StatusEffect],
        names: Iterable[str],
        today: date,
    ) -> List[StatusEffect]:
        """Apply named effects, replacing any existing effect with the same name."""

        current = list(effects)
        for name in names:
            definition = self.catalog.get(name)
            current = [effect for effect in current if effect.name != name]
            current.append(
                StatusEffect(
                    name=definition.name,
                    polarity=definition.polarity,
                    modifiers=definition.modifiers,
                    expires_at=today + timedelta(days=definition.duration_days),
                    emoji=definition.emoji,
                    description=definition.description,
                )
            )
        kept, _ = self.prune_expired(current, today)
        return kept

    def failure_effects(self, quest: Quest) -> List[str]:
        keywords = quest.keywords()
        return [
            name
            for name, words in self.catalog.failure_triggers.items()
            if any(word in keywords for word in words)
        ]

    def success_effects(self, quest: Quest, quality: QualityTier) -> List[str]:
        if quality is not QualityTier.EXCELLENT:
            return []
        names: List[str] = []
        by_type = self.catalog.success_quest_types.get(quest.quest_type)
        if by_type:
            names.append(by_type)
        keywords = quest.keywords()
        for name, words in self.catalog.success_triggers.items():
            if name not in names and any(word in keywords for word in words):
                names.append(name)
        return names


__all__ = ["EffectCatalog", "ModifierResolver"]
