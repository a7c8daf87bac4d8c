"""Telemetry and run metrics tracking for Winter Arc."""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Types of metrics tracked."""
    SUBMISSION = "submission"
    SETTLEMENT = "settlement"
    SCORING = "scoring"
    GAME_PROGRESSION = "game_progression"
    ERROR_RATE = "error_rate"
    PERFORMANCE = "performance"
    LLM_ACTIVITY = "llm_activity"
    SYSTEM_EVENT = "system_event"


@dataclass
class MetricEvent:
    """Individual metric event."""
    timestamp: float
    metric_type: MetricType
    name: str
    value: float
    tags: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


class TelemetryCollector:
    """Collects and stores telemetry data for settlement runs and scoring."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize telemetry collector with database storage."""
        env_path = os.getenv("WINTER_ARC_TELEMETRY_DB")
        self.db_path = db_path or Path(env_path or "telemetry.db")
        self._init_database()
        self._metrics_buffer: List[MetricEvent] = []
        self._flush_interval = 60  # seconds
        self._last_flush = time.time()

    def _init_database(self):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    metric_type TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value REAL NOT NULL,
                    tags TEXT,
                    metadata TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_metrics_type_name
                ON metrics(metric_type, name)
            """)
            conn.commit()

    def track_submission(self, user_id: str, accepted: int, rejected: int) -> None:
        """Track a batch of quest submissions received through the ledger."""
        self.record(
            MetricType.SUBMISSION,
            "quests_submitted",
            float(accepted),
            tags={"user_id": user_id},
            metadata={"accepted": accepted, "rejected": rejected},
        )

    def track_settlement(self, settled_on: str, report: Dict[str, Any], duration_ms: float) -> None:
        """Record the outcome of one settlement run."""
        self.record(
            MetricType.SETTLEMENT,
            "settlement_run",
            float(report.get("submissions_settled", 0)),
            tags={
                "date": settled_on,
                "success": "true" if not report.get("failed_instances") else "false",
            },
            metadata={**report, "duration_ms": duration_ms},
        )

    def track_scoring(self, source: str, quest_type: str, difficulty: str) -> None:
        """Count scored submissions by where the outcome came from (llm, cache, fallback)."""
        self.record(
            MetricType.SCORING,
            source,
            1.0,
            tags={"quest_type": quest_type, "difficulty": difficulty},
        )

    def track_game_progression(
        self,
        event_name: str,
        value: float,
        instance_id: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """Track game progression events (tournaments, bosses, completions)."""
        tags = {}
        if instance_id is not None:
            tags["instance_id"] = str(instance_id)

        self.record(
            MetricType.GAME_PROGRESSION,
            event_name,
            value,
            tags=tags,
            metadata=details or {}
        )

    def track_error(
        self,
        error_type: str,
        operation: Optional[str] = None,
        instance_id: Optional[int] = None,
        error_details: Optional[str] = None
    ):
        """Track errors and failures."""
        tags = {}
        if operation:
            tags["operation"] = operation
        if instance_id is not None:
            tags["instance_id"] = str(instance_id)

        self.record(
            MetricType.ERROR_RATE,
            error_type,
            1.0,
            tags=tags,
            metadata={"error_details": error_details} if error_details else {}
        )

    def track_performance(
        self,
        operation: str,
        duration_ms: float,
        tags: Optional[Dict[str, str]] = None
    ):
        """Track performance metrics."""
        self.record(
            MetricType.PERFORMANCE,
            operation,
            duration_ms,
            tags=tags or {},
            metadata={"unit": "milliseconds"}
        )

    def track_llm_activity(
        self,
        purpose: str,
        success: bool,
        duration_ms: float,
        error: Optional[str] = None,
    ) -> None:
        """Record latency/outcome information for an LLM call."""

        tags = {
            "purpose": purpose,
            "success": "true" if success else "false",
        }
        metadata: Dict[str, Any] = {"duration_ms": duration_ms}
        if error:
            metadata["error"] = error

        self.record(
            MetricType.LLM_ACTIVITY,
            purpose,
            duration_ms,
            tags=tags,
            metadata=metadata,
        )

    def track_system_event(
        self,
        event: str,
        *,
        source: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Record internal events such as lock contention or scheduler starts."""

        tags = {}
        if source:
            tags["source"] = source

        metadata = {}
        if reason:
            metadata["reason"] = reason

        self.record(
            MetricType.SYSTEM_EVENT,
            event,
            1.0,
            tags=tags,
            metadata=metadata,
        )

    def record(
        self,
        metric_type: MetricType,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """Record a metric event."""
        event = MetricEvent(
            timestamp=time.time(),
            metric_type=metric_type,
            name=name,
            value=value,
            tags=tags or {},
            metadata=metadata or {}
        )

        self._metrics_buffer.append(event)

        if len(self._metrics_buffer) >= 100 or \
           time.time() - self._last_flush > self._flush_interval:
            self.flush()

    def flush(self):
        """Flush buffered metrics to database."""
        if not self._metrics_buffer:
            return

        try:
            with sqlite3.connect(self.db_path) as conn:
                for event in self._metrics_buffer:
                    conn.execute("""
                        INSERT INTO metrics
                        (timestamp, metric_type, name, value, tags, metadata)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """, (
                        event.timestamp,
                        event.metric_type.value,
                        event.name,
                        event.value,
                        json.dumps(event.tags),
                        json.dumps(event.metadata, default=str)
                    ))
                conn.commit()

            logger.debug("Flushed %d metrics to database", len(self._metrics_buffer))
            self._metrics_buffer.clear()
            self._last_flush = time.time()

        except sqlite3.Error as e:
            logger.error("Failed to flush metrics: %s", e)

    def get_scoring_summary(self, hours: int = 24) -> Dict[str, int]:
        """Count scored submissions per outcome source over the window."""

        self.flush()
        start_time = time.time() - (hours * 3600)
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "SELECT name, COUNT(*) FROM metrics WHERE metric_type = ? AND timestamp >= ? GROUP BY name",
                [MetricType.SCORING.value, start_time],
            )
            return {row[0]: int(row[1]) for row in cursor.fetchall()}

    def get_llm_activity_summary(
        self,
        hours: int = 24
    ) -> Dict[str, Dict[str, Any]]:
        """Summarise LLM activity over the given window."""

        self.flush()
        start_time = time.time() - (hours * 3600)

        query = """
            SELECT
                name,
                SUM(CASE WHEN json_extract(tags, '$.success') = 'true' THEN 1 ELSE 0 END) as success_count,
                SUM(CASE WHEN json_extract(tags, '$.success') = 'false' THEN 1 ELSE 0 END) as failure_count,
                COUNT(*) as total_calls,
                AVG(value) as avg_duration
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
            GROUP BY name
        """

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, [
                MetricType.LLM_ACTIVITY.value,
                start_time,
            ])
            summary: Dict[str, Dict[str, Any]] = {}
            for row in cursor.fetchall():
                successes = row[1] or 0
                total = row[3] or 0
                summary[row[0]] = {
                    "total_calls": total,
                    "successes": successes,
                    "failures": row[2] or 0,
                    "success_rate": successes / total if total else 0.0,
                    "avg_duration_ms": row[4] or 0.0,
                }
            return summary

    def get_system_events(
        self,
        hours: int = 24,
        limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Return recent system events such as lock contention."""

        self.flush()
        start_time = time.time() - (hours * 3600)

        query = """
            SELECT
                name,
                timestamp,
                json_extract(tags, '$.source') as source,
                json_extract(metadata, '$.reason') as reason
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
            ORDER BY timestamp DESC
            LIMIT ?
        """

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, [
                MetricType.SYSTEM_EVENT.value,
                start_time,
                limit,
            ])
            return [
                {
                    "event": row[0],
                    "timestamp": datetime.fromtimestamp(row[1]).isoformat(),
                    "source": row[2],
                    "reason": row[3],
                }
                for row in cursor.fetchall()
            ]


_telemetry: Optional[TelemetryCollector] = None


def get_telemetry() -> TelemetryCollector:
    """Get or create singleton telemetry collector."""
    global _telemetry
    if _telemetry is None:
        _telemetry = TelemetryCollector()
    return _telemetry


class track_duration:
    """Context manager for tracking operation duration."""

    def __init__(
        self,
        operation: str,
        tags: Optional[Dict[str, str]] = None,
        telemetry: Optional[TelemetryCollector] = None,
    ):
        self.operation = operation
        self.tags = tags or {}
        self.telemetry = telemetry
        self.start_time = None
        self.duration_ms = 0.0

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.time() - self.start_time) * 1000
        telemetry = self.telemetry or get_telemetry()
        telemetry.track_performance(self.operation, self.duration_ms, self.tags)

        if exc_type:
            telemetry.track_error(
                exc_type.__name__,
                operation=self.operation,
                error_details=str(exc_val)
            )


__all__ = ["MetricType", "TelemetryCollector", "get_telemetry", "track_duration"]
