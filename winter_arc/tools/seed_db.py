"""Seed the database with a demo battle between two warriors."""
from __future__ import annotations

import argparse
from datetime import date
from pathlib import Path
from typing import List, Optional

from ..config import get_settings
from ..models import Quest, Recurrence, User
from ..state import ArenaState

DEMO_QUESTS = [
    {"name": "Morning Workout", "difficulty": "heavy", "quest_type": "attack", "categories": ["fitness"]},
    {"name": "Sleep by 11pm", "difficulty": "medium", "quest_type": "defense", "categories": ["sleep"]},
    {"name": "Meditate 10 minutes", "difficulty": "light", "quest_type": "healing", "categories": ["mindfulness"]},
    {"name": "No Junk Food", "difficulty": "medium", "quest_type": "defense", "categories": ["nutrition"]},
    {"name": "Weekly Long Run", "difficulty": "heavy", "quest_type": "attack", "categories": ["fitness"],
     "recurrence": "weekly"},
    {"name": "Monthly Budget Review", "difficulty": "medium", "quest_type": "defense", "categories": ["finance"],
     "recurrence": "monthly"},
]


def seed_database(path: Path, player1: str, player2: str, started_on: date) -> int:
    settings = get_settings()
    state = ArenaState(
        path, starting_hp=settings.starting_hp, max_hp=settings.max_hp, xp_per_level=settings.xp_per_level
    )
    for user_id in (player1, player2):
        state.upsert_user(User(id=user_id, name=user_id.title()))
        for template in DEMO_QUESTS:
            entry = settings.fallback_table.get(template["difficulty"], {"damage": 15, "xp": 8})
            state.add_quest(
                Quest(
                    id=0,
                    owner_id=user_id,
                    name=template["name"],
                    recurrence=Recurrence.parse(template.get("recurrence")),
                    quest_type=template["quest_type"],
                    difficulty=template["difficulty"],
                    categories=list(template["categories"]),
                    base_damage=int(entry["damage"]),
                    base_xp=int(entry["xp"]),
                )
            )
    instance = state.create_instance(player1, player2, started_on)
    print(f"Seeded instance {instance.id} ({player1} vs {player2}) with {len(DEMO_QUESTS)} quests each into {path}")
    return instance.id


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Seed the Winter Arc database")
    parser.add_argument("db", type=Path, help="Path to SQLite database")
    parser.add_argument("--player1", default="alice")
    parser.add_argument("--player2", default="bob")
    args = parser.parse_args(argv)
    seed_database(args.db, args.player1, args.player2, date.today())


if __name__ == "__main__":  # pragma: no cover - CLI tool
    main()
