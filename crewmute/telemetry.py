"""Telemetry for commands, voice batches and lifecycle transitions."""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Types of metrics tracked."""
    COMMAND_USAGE = "command_usage"
    ERROR_RATE = "error_rate"
    VOICE_BATCH = "voice_batch"
    LIFECYCLE = "lifecycle"


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
    """Buffers metric events and flushes them to SQLite."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or Path(
            os.getenv("CREWMUTE_TELEMETRY_DB", "crewmute_telemetry.db")
        )
        self._init_database()
        self._metrics_buffer: List[MetricEvent] = []
        self._flush_interval = 60
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

    def track_command(
        self,
        command_name: str,
        user_id: str,
        guild_id: str,
        success: bool = True,
        duration_ms: Optional[float] = None,
    ):
        """Track prefix command usage."""
        self.record(
            MetricType.COMMAND_USAGE,
            command_name,
            1.0,
            tags={"user_id": user_id, "guild_id": guild_id, "success": str(success)},
            metadata={"duration_ms": duration_ms} if duration_ms else {},
        )

    def track_error(
        self,
        error_type: str,
        command: Optional[str] = None,
        error_details: Optional[str] = None,
    ):
        """Track errors and failures."""
        tags = {}
        if command:
            tags["command"] = command
        self.record(
            MetricType.ERROR_RATE,
            error_type,
            1.0,
            tags=tags,
            metadata={"error_details": error_details} if error_details else {},
        )

    def track_batch(self, purpose: str, *, applied: int, failed: int):
        """Track the outcome of one voice-state batch."""
        self.record(
            MetricType.VOICE_BATCH,
            purpose,
            float(failed),
            tags={"outcome": "partial" if failed else "ok"},
            metadata={"applied": applied, "failed": failed},
        )

    def track_transition(self, phase: str):
        self.record(MetricType.LIFECYCLE, phase, 1.0)

    def record(
        self,
        metric_type: MetricType,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        """Record a metric event."""
        event = MetricEvent(
            timestamp=time.time(),
            metric_type=metric_type,
            name=name,
            value=value,
            tags=tags or {},
            metadata=metadata or {},
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
                conn.executemany(
                    """
                    INSERT INTO metrics
                    (timestamp, metric_type, name, value, tags, metadata)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            event.timestamp,
                            event.metric_type.value,
                            event.name,
                            event.value,
                            json.dumps(event.tags),
                            json.dumps(event.metadata),
                        )
                        for event in self._metrics_buffer
                    ],
                )
                conn.commit()

            logger.debug("Flushed %d metrics to database", len(self._metrics_buffer))
            self._metrics_buffer.clear()
            self._last_flush = time.time()

        except Exception as e:
            logger.error("Failed to flush metrics: %s", e)

    def get_batch_summary(self, hours: int = 24) -> Dict[str, Dict[str, int]]:
        """Batches and failed voice updates per orchestration routine."""
        self.flush()
        start_time = time.time() - (hours * 3600)
        query = """
            SELECT name, COUNT(*), SUM(value)
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
            GROUP BY name
        """
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, [MetricType.VOICE_BATCH.value, start_time])
            return {
                row[0]: {"batches": row[1], "failed_updates": int(row[2] or 0)}
                for row in cursor.fetchall()
            }

    def get_error_summary(self, hours: int = 24) -> Dict[str, int]:
        """Get error counts for the last N hours."""
        self.flush()
        start_time = time.time() - (hours * 3600)
        query = """
            SELECT name, COUNT(*) as error_count
            FROM metrics
            WHERE metric_type = ? AND timestamp >= ?
            GROUP BY name
            ORDER BY error_count DESC
        """
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(query, [MetricType.ERROR_RATE.value, start_time])
            return {row[0]: row[1] for row in cursor.fetchall()}


# Singleton instance
_telemetry: Optional[TelemetryCollector] = None


def get_telemetry() -> TelemetryCollector:
    """Get or create singleton telemetry collector."""
    global _telemetry
    if _telemetry is None:
        _telemetry = TelemetryCollector()
    return _telemetry


__all__ = ["MetricEvent", "MetricType", "TelemetryCollector", "get_telemetry"]
