"""Run the daily settlement from the command line."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import date
from pathlib import Path
from typing import List, Optional

from ..llm_client import LLMClient
from ..service import ArenaService
from ..settlement import SettlementAbortedError, SettlementInProgressError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Settle pending Winter Arc quest submissions.")
    parser.add_argument(
        "--state-db",
        type=Path,
        default=None,
        help="Path to the arena SQLite database (default: $WINTER_ARC_DB_PATH or winter_arc.db).",
    )
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Date to settle in YYYY-MM-DD form (default: yesterday in the arena timezone).",
    )
    parser.add_argument(
        "--no-llm",
        action="store_true",
        help="Skip the language model and use deterministic scoring and narration.",
    )
    parser.add_argument("--json", action="store_true", help="Output JSON for automation.")
    return parser


def _build_service(args: argparse.Namespace) -> ArenaService:
    db_path = args.state_db or Path(os.getenv("WINTER_ARC_DB_PATH", "winter_arc.db"))
    llm_client = None if args.no_llm else LLMClient()
    return ArenaService(db_path, llm_client=llm_client)


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = build_parser().parse_args(argv)
    service = _build_service(args)
    try:
        report = service.settle(args.date)
    except SettlementInProgressError as exc:
        logger.error("%s", exc)
        return 2
    except SettlementAbortedError as exc:
        logger.error("Settlement aborted: %s", exc)
        return 1

    summary = report.to_dict()
    if args.json:
        print(json.dumps(summary, indent=2))
    else:
        print(
            f"Settled {summary['submissions_settled']} submissions across "
            f"{summary['instances_processed']} instances for {summary['date']}; "
            f"{summary['narratives_created']} narratives written."
        )
        for instance_id, reason in summary["failed_instances"].items():
            print(f"  ! instance {instance_id}: {reason}")
        for error in summary["periodic_errors"]:
            print(f"  ! {error}")
    return 0 if report.ok else 1


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
