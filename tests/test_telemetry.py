"""Tests for telemetry and metrics tracking."""
import json
import sqlite3
import tempfile
import time
from pathlib import Path

import pytest

from winter_arc.telemetry import (
    MetricEvent,
    MetricType,
    TelemetryCollector,
    get_telemetry,
    track_duration,
)


def test_metric_event_creation():
    """Test MetricEvent dataclass creation."""
    event = MetricEvent(
        timestamp=time.time(),
        metric_type=MetricType.SUBMISSION,
        name="quests_submitted",
        value=2.0,
        tags={"user_id": "alice"},
    )

    assert event.metric_type == MetricType.SUBMISSION
    assert event.value == 2.0
    assert event.metadata == {}


def test_telemetry_collector_init():
    """Test TelemetryCollector initialization."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test_telemetry.db"
        collector = TelemetryCollector(db_path)

        assert collector.db_path == db_path
        assert db_path.exists()
        assert len(collector._metrics_buffer) == 0


def test_track_submission_is_buffered():
    with tempfile.TemporaryDirectory() as tmpdir:
        collector = TelemetryCollector(Path(tmpdir) / "test.db")

        collector.track_submission("alice", accepted=2, rejected=1)

        assert len(collector._metrics_buffer) == 1
        event = collector._metrics_buffer[0]
        assert event.metric_type == MetricType.SUBMISSION
        assert event.tags == {"user_id": "alice"}
        assert event.metadata == {"accepted": 2, "rejected": 1}


def test_flush_writes_buffer():
    """Flushing persists buffered events and empties the buffer."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        collector = TelemetryCollector(db_path)
        collector.track_settlement(
            "2024-11-04",
            {"submissions_settled": 3, "failed_instances": {}},
            duration_ms=12.5,
        )

        collector.flush()

        assert collector._metrics_buffer == []
        with sqlite3.connect(db_path) as conn:
            row = conn.execute("SELECT metric_type, name, value, tags, metadata FROM metrics").fetchone()
        assert row[0] == "settlement"
        assert row[1] == "settlement_run"
        assert row[2] == 3.0
        assert json.loads(row[3]) == {"date": "2024-11-04", "success": "true"}
        assert json.loads(row[4])["duration_ms"] == 12.5


def test_settlement_with_failures_tagged_unsuccessful():
    with tempfile.TemporaryDirectory() as tmpdir:
        collector = TelemetryCollector(Path(tmpdir) / "test.db")

        collector.track_settlement("2024-11-04", {"failed_instances": {"3": "boom"}}, duration_ms=1.0)

        assert collector._metrics_buffer[0].tags["success"] == "false"
        assert collector._metrics_buffer[0].value == 0.0


def test_buffer_flushes_at_capacity():
    with tempfile.TemporaryDirectory() as tmpdir:
        collector = TelemetryCollector(Path(tmpdir) / "test.db")

        for _ in range(100):
            collector.track_scoring("fallback", "attack", "medium")

        assert collector._metrics_buffer == []


def test_scoring_summary_counts_by_source():
    with tempfile.TemporaryDirectory() as tmpdir:
        collector = TelemetryCollector(Path(tmpdir) / "test.db")
        collector.track_scoring("llm", "attack", "heavy")
        collector.track_scoring("cache", "attack", "heavy")
        collector.track_scoring("cache", "defense", "light")

        assert collector.get_scoring_summary() == {"llm": 1, "cache": 2}


def test_llm_activity_summary():
    with tempfile.TemporaryDirectory() as tmpdir:
        collector = TelemetryCollector(Path(tmpdir) / "test.db")
        collector.track_llm_activity("narrative", success=True, duration_ms=100.0)
        collector.track_llm_activity("narrative", success=False, duration_ms=300.0, error="timeout")
        collector.track_llm_activity("scoring", success=True, duration_ms=50.0)

        summary = collector.get_llm_activity_summary()

        assert summary["narrative"]["total_calls"] == 2
        assert summary["narrative"]["successes"] == 1
        assert summary["narrative"]["failures"] == 1
        assert summary["narrative"]["success_rate"] == pytest.approx(0.5)
        assert summary["narrative"]["avg_duration_ms"] == pytest.approx(200.0)
        assert summary["scoring"]["success_rate"] == 1.0


def test_system_events_newest_first():
    with tempfile.TemporaryDirectory() as tmpdir:
        collector = TelemetryCollector(Path(tmpdir) / "test.db")
        collector.track_system_event("scheduler_started", source="settlement")
        time.sleep(0.01)
        collector.track_system_event("settlement_lock_busy", source="run-2", reason="held")

        events = collector.get_system_events(limit=5)

        assert [event["event"] for event in events] == ["settlement_lock_busy", "scheduler_started"]
        assert events[0]["source"] == "run-2"
        assert events[0]["reason"] == "held"
        assert events[1]["reason"] is None


def test_track_duration_records_performance_and_errors():
    """Errors inside the block are recorded and still propagate."""
    with tempfile.TemporaryDirectory() as tmpdir:
        collector = TelemetryCollector(Path(tmpdir) / "test.db")

        with track_duration("submit_quests", telemetry=collector) as timer:
            pass
        with pytest.raises(ValueError):
            with track_duration("settle_instance", telemetry=collector):
                raise ValueError("bad quest")

        types = [event.metric_type for event in collector._metrics_buffer]
        assert types == [MetricType.PERFORMANCE, MetricType.PERFORMANCE, MetricType.ERROR_RATE]
        assert timer.duration_ms >= 0
        error = collector._metrics_buffer[-1]
        assert error.name == "ValueError"
        assert error.tags == {"operation": "settle_instance"}
        assert error.metadata == {"error_details": "bad quest"}


def test_game_progression_tags_instance():
    with tempfile.TemporaryDirectory() as tmpdir:
        collector = TelemetryCollector(Path(tmpdir) / "test.db")

        collector.track_game_progression("tournament_resolved", 1.0, instance_id=4, details={"winner": "alice"})

        event = collector._metrics_buffer[0]
        assert event.tags == {"instance_id": "4"}
        assert event.metadata == {"winner": "alice"}


def test_get_telemetry_singleton_uses_environment_path(tmp_path):
    collector = get_telemetry()

    assert collector is get_telemetry()
    assert collector.db_path == tmp_path / "telemetry.db"
