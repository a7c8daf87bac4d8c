"""Configuration loading utilities for Winter Arc."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml


DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    starting_hp: int
    max_hp: int
    xp_per_level: int
    combo_two: float
    combo_three: float
    critical_chance: float
    critical_multiplier: float
    fallback_table: Dict[str, Dict[str, int]]
    tier_ranges: Dict[str, Dict[str, Tuple[int, int]]]
    lock_stale_minutes: int
    rng_seed: int
    schedule_timezone: str
    schedule_hour: int
    schedule_minute: int
    sidequest_chance: float
    sidequest_lifetime_days: int
    boss_reward_xp: int

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        combatant = data.get("combatant", {})
        combo = data.get("combo", {})
        scoring = data.get("scoring", {})
        settlement = data.get("settlement", {})
        schedule = data.get("schedule", {})
        sidequests = data.get("sidequests", {})
        boss = data.get("boss", {})
        fallback = {
            str(name): {"damage": int(entry["damage"]), "xp": int(entry["xp"])}
            for name, entry in scoring.get("fallback", {}).items()
        }
        tiers = {
            str(name): {
                "damage": (int(entry["damage"][0]), int(entry["damage"][1])),
                "xp": (int(entry["xp"][0]), int(entry["xp"][1])),
            }
            for name, entry in scoring.get("tiers", {}).items()
        }
        return Settings(
            starting_hp=int(combatant.get("starting_hp", 100)),
            max_hp=int(combatant.get("max_hp", 100)),
            xp_per_level=int(combatant.get("xp_per_level", 100)),
            combo_two=float(combo.get("two_quests", 1.2)),
            combo_three=float(combo.get("three_or_more", 1.5)),
            critical_chance=float(scoring.get("critical_chance", 0.15)),
            critical_multiplier=float(scoring.get("critical_multiplier", 2.0)),
            fallback_table=fallback,
            tier_ranges=tiers,
            lock_stale_minutes=int(settlement.get("lock_stale_minutes", 30)),
            rng_seed=int(settlement.get("rng_seed", 0)),
            schedule_timezone=str(schedule.get("timezone", "Asia/Kolkata")),
            schedule_hour=int(schedule.get("hour", 0)),
            schedule_minute=int(schedule.get("minute", 0)),
            sidequest_chance=float(sidequests.get("chance", 0.2)),
            sidequest_lifetime_days=int(sidequests.get("lifetime_days", 1)),
            boss_reward_xp=int(boss.get("reward_xp", 200)),
        )


class SettingsLoader:
    """Loads and caches settings from YAML configuration files."""

    def __init__(self, path: Path | None = None) -> None:
        env_path = os.getenv("WINTER_ARC_SETTINGS_PATH")
        self._path = path or (Path(env_path) if env_path else DEFAULT_SETTINGS_PATH)
        self._cache: Settings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> Settings:
        if self._cache is not None and not force:
            return self._cache
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        self._cache = Settings.from_dict(data)
        return self._cache


def get_settings() -> Settings:
    """Convenience accessor for default settings."""

    return SettingsLoader().load()


__all__ = ["Settings", "SettingsLoader", "get_settings"]
