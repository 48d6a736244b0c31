"""SQLite aggregate store for usage tracking."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from usage_core.buckets import HOUR_MS
from usage_core.errors import StoreReadError, StoreWriteError
from usage_core.models import BucketAggregate, EventKind, LifecycleEvent

SCHEMA = """
CREATE TABLE IF NOT EXISTS entities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id TEXT NOT NULL UNIQUE,
    display_name TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS hourly_usage (
    entity_row INTEGER NOT NULL,
    bucket_start INTEGER NOT NULL,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    occurrence_count INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (entity_row, bucket_start),
    FOREIGN KEY (entity_row) REFERENCES entities(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS sync_metadata (
    key TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS lifecycle_events (
    id TEXT PRIMARY KEY,
    timestamp INTEGER NOT NULL,
    kind TEXT NOT NULL,
    entity_id TEXT NOT NULL DEFAULT '',
    component_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_hourly_usage_bucket ON hourly_usage(bucket_start);
CREATE INDEX IF NOT EXISTS idx_lifecycle_events_timestamp ON lifecycle_events(timestamp);
"""

LAST_SYNC_KEY = "last_sync_timestamp_utc"

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _row_to_bucket(row: sqlite3.Row) -> BucketAggregate:
    return BucketAggregate(
        entity_id=row["entity_id"],
        bucket_start=row["bucket_start"],
        duration_ms=row["duration_ms"],
        occurrence_count=row["occurrence_count"],
    )


class UsageStore:
    """SQLite-backed store for hourly usage aggregates.

    Holds the entity registry, one row per (entity, hour) bucket, the sync
    checkpoint, and the raw lifecycle events imported for local syncing.

    Not thread-safe. Each thread should have its own UsageStore instance.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def __enter__(self) -> "UsageStore":
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    @classmethod
    def open(cls, path: Path) -> UsageStore:
        """Open or create a database at the given path."""
        conn = sqlite3.connect(path)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    @classmethod
    def open_in_memory(cls) -> UsageStore:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:")
        conn.row_factory = sqlite3.Row
        return cls(conn)

    # Sync checkpoint

    def get_checkpoint(self) -> int | None:
        """Return the last successful sync time, or None if never synced.

        Raises:
            StoreReadError: If the read fails.
        """
        try:
            row = self._conn.execute(
                "SELECT value FROM sync_metadata WHERE key = ?", (LAST_SYNC_KEY,)
            ).fetchone()
        except sqlite3.Error as e:
            raise StoreReadError(f"Failed to read checkpoint: {e}") from e
        return row["value"] if row else None

    def set_checkpoint(self, timestamp: int) -> None:
        """Persist the last successful sync time.

        Raises:
            StoreWriteError: If the write fails.
        """
        try:
            self._conn.execute(
                """
                INSERT INTO sync_metadata (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (LAST_SYNC_KEY, timestamp),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StoreWriteError(f"Failed to write checkpoint: {e}") from e

    # Entity registry

    def ensure_entity(self, entity_id: str, display_name: str) -> int:
        """Register an entity if it is unknown. Returns its internal row ID.

        An existing entity keeps its original display name.

        Raises:
            StoreWriteError: If the write fails.
        """
        try:
            self._conn.execute(
                """
                INSERT OR IGNORE INTO entities (entity_id, display_name, created_at)
                VALUES (?, ?, ?)
                """,
                (entity_id, display_name, _now_iso()),
            )
            self._conn.commit()
            row = self._conn.execute(
                "SELECT id FROM entities WHERE entity_id = ?", (entity_id,)
            ).fetchone()
        except sqlite3.Error as e:
            raise StoreWriteError(f"Failed to register entity {entity_id!r}: {e}") from e
        return row["id"]

    def get_entity(self, entity_id: str) -> dict[str, Any] | None:
        """Get a registry entry by entity ID, or None if unknown."""
        try:
            row = self._conn.execute(
                "SELECT * FROM entities WHERE entity_id = ?", (entity_id,)
            ).fetchone()
        except sqlite3.Error as e:
            raise StoreReadError(f"Failed to look up entity {entity_id!r}: {e}") from e
        return dict(row) if row else None

    def list_entities(self) -> list[dict[str, Any]]:
        """Get all registered entities ordered by display name."""
        cursor = self._conn.execute("SELECT * FROM entities ORDER BY display_name, entity_id")
        return [dict(row) for row in cursor.fetchall()]

    # Hourly aggregates

    def upsert_bucket(
        self,
        entity_id: str,
        bucket_start: int,
        duration_ms: int,
        occurrence_count: int,
    ) -> None:
        """Write the usage of one entity for one hour, replacing any previous value.

        The entity must already be registered via ensure_entity().

        Raises:
            ValueError: If bucket_start is not aligned to an hour.
            StoreWriteError: If the entity is unknown or the write fails.
        """
        if bucket_start % HOUR_MS != 0:
            raise ValueError(f"Bucket start {bucket_start} is not hour-aligned")
        try:
            cursor = self._conn.execute(
                """
                INSERT INTO hourly_usage
                (entity_row, bucket_start, duration_ms, occurrence_count, updated_at)
                SELECT id, ?, ?, ?, ? FROM entities WHERE entity_id = ?
                ON CONFLICT(entity_row, bucket_start) DO UPDATE SET
                    duration_ms = excluded.duration_ms,
                    occurrence_count = excluded.occurrence_count,
                    updated_at = excluded.updated_at
                """,
                (bucket_start, duration_ms, occurrence_count, _now_iso(), entity_id),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            raise StoreWriteError(
                f"Failed to write bucket {entity_id!r}@{bucket_start}: {e}"
            ) from e
        if cursor.rowcount == 0:
            raise StoreWriteError(f"Unknown entity {entity_id!r}")

    def query_buckets(self, start: int, end: int) -> list[BucketAggregate]:
        """Get hourly aggregates with start <= bucket_start < end.

        Returns:
            Aggregates ordered by bucket_start, then entity_id.
        """
        cursor = self._conn.execute(
            """
            SELECT e.entity_id, u.bucket_start, u.duration_ms, u.occurrence_count
            FROM hourly_usage u
            JOIN entities e ON e.id = u.entity_row
            WHERE u.bucket_start >= ? AND u.bucket_start < ?
            ORDER BY u.bucket_start ASC, e.entity_id ASC
            """,
            (start, end),
        )
        return [_row_to_bucket(row) for row in cursor.fetchall()]

    def query_buckets_for_entity(
        self, entity_id: str, start: int, end: int
    ) -> list[BucketAggregate]:
        """Get one entity's hourly aggregates with start <= bucket_start < end."""
        cursor = self._conn.execute(
            """
            SELECT e.entity_id, u.bucket_start, u.duration_ms, u.occurrence_count
            FROM hourly_usage u
            JOIN entities e ON e.id = u.entity_row
            WHERE e.entity_id = ? AND u.bucket_start >= ? AND u.bucket_start < ?
            ORDER BY u.bucket_start ASC
            """,
            (entity_id, start, end),
        )
        return [_row_to_bucket(row) for row in cursor.fetchall()]

    def count_buckets(self) -> int:
        """Count stored hourly aggregates."""
        row = self._conn.execute("SELECT COUNT(*) AS n FROM hourly_usage").fetchone()
        return row["n"]

    def delete_buckets_before(self, before: int) -> int:
        """Delete hourly aggregates starting before a timestamp.

        Retention is the caller's policy; syncing never deletes rows.

        Returns:
            Number of rows deleted.
        """
        cursor = self._conn.execute(
            "DELETE FROM hourly_usage WHERE bucket_start < ?", (before,)
        )
        self._conn.commit()
        logger.info("Deleted %d hourly buckets before %d", cursor.rowcount, before)
        return cursor.rowcount

    # Raw lifecycle events

    def insert_event(self, event: LifecycleEvent) -> bool:
        """Insert a lifecycle event.

        Returns True if the event was inserted, False if it already existed.
        Uses INSERT OR IGNORE for idempotent inserts.
        """
        cursor = self._conn.execute(
            """
            INSERT OR IGNORE INTO lifecycle_events
            (id, timestamp, kind, entity_id, component_id)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event.compute_id(),
                event.timestamp,
                event.kind.value,
                event.entity_id,
                event.component_id,
            ),
        )
        self._conn.commit()
        return cursor.rowcount > 0

    def get_events(self, start: int, end: int) -> list[LifecycleEvent]:
        """Get lifecycle events with start <= timestamp < end.

        Events sharing a timestamp keep their insertion order.
        """
        cursor = self._conn.execute(
            """
            SELECT timestamp, kind, entity_id, component_id
            FROM lifecycle_events
            WHERE timestamp >= ? AND timestamp < ?
            ORDER BY timestamp ASC, rowid ASC
            """,
            (start, end),
        )
        return [
            LifecycleEvent(
                entity_id=row["entity_id"],
                component_id=row["component_id"],
                timestamp=row["timestamp"],
                kind=EventKind(row["kind"]),
            )
            for row in cursor.fetchall()
        ]

    def count_events(self) -> int:
        """Count stored lifecycle events."""
        row = self._conn.execute("SELECT COUNT(*) AS n FROM lifecycle_events").fetchone()
        return row["n"]
