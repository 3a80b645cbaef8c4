"""Tests for telemetry and metrics tracking."""
import sqlite3
import tempfile
import time
from pathlib import Path

from crewmute.telemetry import MetricEvent, MetricType, TelemetryCollector


def test_metric_event_creation():
    """Test MetricEvent dataclass creation."""
    event = MetricEvent(
        timestamp=time.time(),
        metric_type=MetricType.VOICE_BATCH,
        name="start-game",
        value=2.0,
        tags={"outcome": "partial"},
    )

    assert event.metric_type == MetricType.VOICE_BATCH
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


def test_track_command_is_buffered_until_flush():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        collector = TelemetryCollector(db_path)

        collector.track_command("new", "42", "1000", success=True, duration_ms=12.5)
        assert len(collector._metrics_buffer) == 1

        collector.flush()
        assert collector._metrics_buffer == []
        with sqlite3.connect(db_path) as conn:
            rows = conn.execute("SELECT metric_type, name FROM metrics").fetchall()
        assert rows == [("command_usage", "new")]


def test_batch_summary_counts_failed_updates():
    with tempfile.TemporaryDirectory() as tmpdir:
        collector = TelemetryCollector(Path(tmpdir) / "test.db")

        collector.track_batch("start-game", applied=5, failed=0)
        collector.track_batch("start-game", applied=3, failed=2)
        collector.track_batch("end-game", applied=1, failed=1)

        summary = collector.get_batch_summary(hours=1)

        assert summary == {
            "start-game": {"batches": 2, "failed_updates": 2},
            "end-game": {"batches": 1, "failed_updates": 1},
        }


def test_error_summary():
    with tempfile.TemporaryDirectory() as tmpdir:
        collector = TelemetryCollector(Path(tmpdir) / "test.db")

        collector.track_error("Forbidden", command="dead")
        collector.track_error("Forbidden", command="new")
        collector.track_error("NotFound")

        assert collector.get_error_summary(hours=1) == {"Forbidden": 2, "NotFound": 1}


def test_buffer_flushes_automatically_when_full():
    with tempfile.TemporaryDirectory() as tmpdir:
        collector = TelemetryCollector(Path(tmpdir) / "test.db")
        for _ in range(100):
            collector.track_transition("in_game")
        assert collector._metrics_buffer == []
