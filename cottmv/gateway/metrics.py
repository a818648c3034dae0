"""Metrics logging to SQLite for observability and trend analysis.

Usage:
    from cottmv.gateway.metrics import log_event

    # In async code:
    await log_event(
        "transcode_complete",
        cache_key="3f2a...:720p:mp4",
        quality="720p",
        size_bytes=48_213_004,
        duration_ms=61_250,
    )

Query examples:
    # Median-ish transcode time per quality, last 7 days
    SELECT quality, AVG(duration_ms), COUNT(*)
    FROM metrics_event
    WHERE event_type = 'transcode_complete'
      AND timestamp > datetime('now', '-7 days')
    GROUP BY quality;

    # Cache hit rate
    SELECT SUM(CASE WHEN event_type = 'cache_hit' THEN 1 ELSE 0 END) * 100.0 / COUNT(*) as hit_rate
    FROM metrics_event WHERE event_type IN ('cache_hit', 'transcode_started');
"""

import asyncio
import json
import sqlite3
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any

# Global connection, initialized on startup
_db_path: Path | None = None
_write_queue: asyncio.Queue[dict[str, Any]] | None = None
_writer_task: asyncio.Task[None] | None = None


SCHEMA = """
CREATE TABLE IF NOT EXISTS metrics_event (
    id INTEGER PRIMARY KEY,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    event_type TEXT NOT NULL,

    -- Transcode fields
    media_id INTEGER,
    cache_key TEXT,
    quality TEXT,
    format TEXT,
    size_bytes INTEGER,
    duration_ms INTEGER,
    cache_hit BOOLEAN,

    -- Request fields
    endpoint TEXT,
    method TEXT,
    status_code INTEGER,

    -- Context
    request_id TEXT,

    -- Flexible data
    data JSON
);

CREATE INDEX IF NOT EXISTS idx_metrics_timestamp ON metrics_event(timestamp);
CREATE INDEX IF NOT EXISTS idx_metrics_event_type ON metrics_event(event_type);
CREATE INDEX IF NOT EXISTS idx_metrics_cache_key ON metrics_event(cache_key) WHERE cache_key IS NOT NULL;
"""

_COLUMNS = [
    "timestamp",
    "event_type",
    "media_id",
    "cache_key",
    "quality",
    "format",
    "size_bytes",
    "duration_ms",
    "cache_hit",
    "endpoint",
    "method",
    "status_code",
    "request_id",
    "data",
]


def init_metrics_db(db_path: Path | str) -> None:
    """Initialize metrics database. Call once on startup."""
    global _db_path
    _db_path = Path(db_path)
    _db_path.parent.mkdir(parents=True, exist_ok=True)

    with sqlite3.connect(_db_path) as conn:
        conn.executescript(SCHEMA)
        conn.execute("PRAGMA journal_mode=WAL")


async def start_metrics_writer() -> None:
    """Start background writer task. Call after init_metrics_db."""
    global _write_queue, _writer_task
    _write_queue = asyncio.Queue()
    _writer_task = asyncio.create_task(_writer_loop())


async def stop_metrics_writer() -> None:
    """Stop background writer and flush pending events."""
    global _writer_task, _write_queue
    if _writer_task:
        _writer_task.cancel()
        try:
            await _writer_task
        except asyncio.CancelledError:
            pass
        _writer_task = None

    # Flush remaining events
    if _write_queue and _db_path:
        events = []
        while not _write_queue.empty():
            try:
                events.append(_write_queue.get_nowait())
            except asyncio.QueueEmpty:
                break
        if events:
            _write_batch(events)
    _write_queue = None


async def _writer_loop() -> None:
    """Background task that batches writes to SQLite."""
    batch: list[dict[str, Any]] = []
    batch_interval = 5.0  # seconds, metrics don't need real-time visibility

    while True:
        try:
            # Collect events for up to batch_interval seconds
            try:
                event = await asyncio.wait_for(_write_queue.get(), timeout=batch_interval)  # type: ignore[union-attr]
                batch.append(event)
                while not _write_queue.empty():  # type: ignore[union-attr]
                    try:
                        batch.append(_write_queue.get_nowait())  # type: ignore[union-attr]
                    except asyncio.QueueEmpty:
                        break
            except asyncio.TimeoutError:
                pass

            if batch:
                _write_batch(batch)
                batch = []

        except asyncio.CancelledError:
            # Final flush on shutdown
            if batch:
                _write_batch(batch)
            raise
        except Exception:
            # Log but don't crash the writer
            traceback.print_exc()
            batch = []


def _write_batch(events: list[dict[str, Any]]) -> None:
    """Write a batch of events to SQLite (sync, called from async context)."""
    if not _db_path:
        return

    rows = []
    for event in events:
        row = [event.get(column) for column in _COLUMNS]
        row[0] = event.get("timestamp", datetime.utcnow().isoformat())
        row[-1] = json.dumps(event.get("data")) if event.get("data") else None
        rows.append(row)

    placeholders = ", ".join(["?"] * len(_COLUMNS))
    column_names = ", ".join(_COLUMNS)
    sql = f"INSERT INTO metrics_event ({column_names}) VALUES ({placeholders})"

    with sqlite3.connect(_db_path) as conn:
        conn.executemany(sql, rows)


async def log_event(event_type: str, **kwargs: Any) -> None:
    """Log a metrics event asynchronously.

    Args:
        event_type: Event type (e.g., 'transcode_complete', 'cache_cleanup')
        **kwargs: Event fields matching the schema columns, plus optional 'data' dict
    """
    if _write_queue is None:
        return  # Metrics not initialized

    event = {"event_type": event_type, **kwargs}
    await _write_queue.put(event)


async def log_error(message: str, **context: Any) -> None:
    """Log an error event with optional traceback."""
    tb = traceback.format_exc()
    await log_event(
        "error",
        data={"message": message, "traceback": tb if tb != "NoneType: None\n" else None, **context},
    )
