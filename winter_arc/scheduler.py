"""Scheduler wiring for the nightly settlement run."""
from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .models import SettlementReport
from .service import ArenaService
from .settlement import SettlementAbortedError, SettlementInProgressError

logger = logging.getLogger(__name__)

SETTLEMENT_JOB_ID = "daily_settlement"


class SettlementScheduler:
    """Runs settlement once a day at the configured local time."""

    def __init__(self, service: ArenaService) -> None:
        self.service = service
        self.scheduler: Optional[BackgroundScheduler] = None

    def start(self) -> None:
        settings = self.service.settings
        self.scheduler = BackgroundScheduler(timezone=settings.schedule_timezone)
        self.scheduler.add_job(
            self.run_settlement,
            "cron",
            id=SETTLEMENT_JOB_ID,
            hour=settings.schedule_hour,
            minute=settings.schedule_minute,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        self.service.telemetry.track_system_event("scheduler_started", source="settlement")
        logger.info(
            "Settlement scheduled daily at %02d:%02d %s",
            settings.schedule_hour,
            settings.schedule_minute,
            settings.schedule_timezone,
        )

    def shutdown(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None

    def run_settlement(self, on: Optional[date] = None) -> Optional[SettlementReport]:
        """Job body; also the manual trigger. Errors are logged, never raised into the scheduler."""

        try:
            report = self.service.settle(on)
        except SettlementInProgressError:
            logger.warning("Skipping scheduled settlement: a run is already in progress")
            return None
        except SettlementAbortedError:
            logger.exception("Scheduled settlement aborted; will retry at the next boundary")
            return None
        if not report.ok:
            logger.error("Settlement for %s finished with failures: %s", report.settled_on, report.to_dict())
        return report


__all__ = ["BackgroundScheduler", "SettlementScheduler"]
