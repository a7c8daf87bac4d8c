"""Administrative reset of a combat instance."""
from __future__ import annotations

import argparse
import json
from datetime import date
from pathlib import Path
from typing import List, Optional

from ..config import get_settings
from ..state import ArenaState


def reset(state_db: Path, instance_id: int, started_on: date) -> dict:
    settings = get_settings()
    state = ArenaState(
        state_db, starting_hp=settings.starting_hp, max_hp=settings.max_hp, xp_per_level=settings.xp_per_level
    )
    if state.get_instance(instance_id) is None:
        raise SystemExit(f"Combat instance {instance_id} does not exist in {state_db}")
    return state.reset_instance(instance_id, started_on)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Clear an instance's history and restore both combatants to full health."
    )
    parser.add_argument("instance_id", type=int, help="Combat instance to reset")
    parser.add_argument("--state-db", type=Path, default=Path("winter_arc.db"), help="Path to SQLite database")
    parser.add_argument(
        "--start-date",
        type=date.fromisoformat,
        default=None,
        help="New start date in YYYY-MM-DD form (default: today).",
    )
    parser.add_argument("--yes", action="store_true", help="Confirm the reset; required.")
    args = parser.parse_args(argv)
    if not args.yes:
        parser.error("refusing to reset without --yes")
    deleted = reset(args.state_db, args.instance_id, args.start_date or date.today())
    print(json.dumps({"instance_id": args.instance_id, "deleted": deleted}, indent=2))


if __name__ == "__main__":  # pragma: no cover - CLI tool
    main()
