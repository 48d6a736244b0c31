"""Tests for the SQLite usage store."""

import pytest

from usage_core.db import UsageStore
from usage_core.errors import StoreReadError, StoreWriteError
from usage_core.models import BucketAggregate, EventKind, LifecycleEvent

HOUR = 3_600_000


def make_event(
    *,
    entity_id: str = "org.example.app",
    component_id: str | None = "MainActivity",
    timestamp: int = 1000,
    kind: EventKind = EventKind.ACTIVATED,
) -> LifecycleEvent:
    """Helper to create a LifecycleEvent for testing."""
    return LifecycleEvent(
        entity_id=entity_id,
        component_id=component_id,
        timestamp=timestamp,
        kind=kind,
    )


class TestUsageStoreCreation:
    def test_create_database_in_memory(self):
        """Schema initialization creates all tables."""
        store = UsageStore.open_in_memory()
        assert store.get_checkpoint() is None
        assert store.count_buckets() == 0
        assert store.list_entities() == []

    def test_reopen_keeps_data(self, tmp_path):
        """Data survives closing and reopening the file."""
        db_path = tmp_path / "usage.db"
        with UsageStore.open(db_path) as store:
            store.set_checkpoint(5000)
        with UsageStore.open(db_path) as store:
            assert store.get_checkpoint() == 5000


class TestCheckpoint:
    def test_set_and_overwrite(self):
        store = UsageStore.open_in_memory()
        store.set_checkpoint(1000)
        store.set_checkpoint(2000)
        assert store.get_checkpoint() == 2000

    def test_read_on_closed_store_raises_store_error(self):
        """Connection failures surface as StoreReadError, not sqlite3 errors."""
        store = UsageStore.open_in_memory()
        store.close()
        with pytest.raises(StoreReadError):
            store.get_checkpoint()
        with pytest.raises(StoreReadError):
            store.get_entity("A")


class TestEntities:
    def test_ensure_entity_returns_stable_id(self):
        """Registering the same entity twice returns the same row."""
        store = UsageStore.open_in_memory()
        first = store.ensure_entity("org.example.app", "Example")
        second = store.ensure_entity("org.example.app", "Renamed")
        assert first == second

    def test_display_name_not_refreshed(self):
        """An existing entity keeps its original name."""
        store = UsageStore.open_in_memory()
        store.ensure_entity("org.example.app", "Example")
        store.ensure_entity("org.example.app", "Renamed")
        assert store.get_entity("org.example.app")["display_name"] == "Example"

    def test_get_unknown_entity(self):
        store = UsageStore.open_in_memory()
        assert store.get_entity("missing") is None


class TestBuckets:
    """Tests for hourly aggregate rows."""

    def test_upsert_inserts(self):
        store = UsageStore.open_in_memory()
        store.ensure_entity("A", "App A")
        store.upsert_bucket("A", HOUR, 4000, 1)
        assert store.query_buckets(0, 2 * HOUR) == [
            BucketAggregate(entity_id="A", bucket_start=HOUR, duration_ms=4000, occurrence_count=1)
        ]

    def test_upsert_overwrites(self):
        """A second write for the same key replaces the values, not adds to them."""
        store = UsageStore.open_in_memory()
        store.ensure_entity("A", "App A")
        store.upsert_bucket("A", 0, 4000, 1)
        store.upsert_bucket("A", 0, 6000, 2)
        buckets = store.query_buckets(0, HOUR)
        assert len(buckets) == 1
        assert buckets[0].duration_ms == 6000
        assert buckets[0].occurrence_count == 2

    def test_upsert_unknown_entity_fails(self):
        store = UsageStore.open_in_memory()
        with pytest.raises(StoreWriteError):
            store.upsert_bucket("missing", 0, 1000, 1)

    def test_upsert_rejects_unaligned_bucket(self):
        store = UsageStore.open_in_memory()
        store.ensure_entity("A", "App A")
        with pytest.raises(ValueError):
            store.upsert_bucket("A", 1000, 1000, 1)

    def test_query_range_is_half_open(self):
        """Buckets at the range end are excluded."""
        store = UsageStore.open_in_memory()
        store.ensure_entity("A", "App A")
        for hour in range(4):
            store.upsert_bucket("A", hour * HOUR, 1000, 1)
        buckets = store.query_buckets(HOUR, 3 * HOUR)
        assert [b.bucket_start for b in buckets] == [HOUR, 2 * HOUR]

    def test_query_for_entity(self):
        store = UsageStore.open_in_memory()
        store.ensure_entity("A", "App A")
        store.ensure_entity("B", "App B")
        store.upsert_bucket("A", 0, 1000, 1)
        store.upsert_bucket("B", 0, 2000, 1)
        buckets = store.query_buckets_for_entity("B", 0, HOUR)
        assert [(b.entity_id, b.duration_ms) for b in buckets] == [("B", 2000)]

    def test_delete_before(self):
        store = UsageStore.open_in_memory()
        store.ensure_entity("A", "App A")
        for hour in range(3):
            store.upsert_bucket("A", hour * HOUR, 1000, 1)
        assert store.delete_buckets_before(2 * HOUR) == 2
        assert [b.bucket_start for b in store.query_buckets(0, 10 * HOUR)] == [2 * HOUR]


class TestLifecycleEvents:
    def test_insert_and_get(self):
        store = UsageStore.open_in_memory()
        event = make_event(timestamp=1000)
        assert store.insert_event(event) is True
        assert store.get_events(0, 2000) == [event]

    def test_insert_duplicate_event(self):
        """Same content = no-op."""
        store = UsageStore.open_in_memory()
        event = make_event()
        assert store.insert_event(event) is True
        assert store.insert_event(event) is False
        assert store.count_events() == 1

    def test_get_events_ordered_and_filtered(self):
        store = UsageStore.open_in_memory()
        store.insert_event(make_event(timestamp=3000, kind=EventKind.DEACTIVATED))
        store.insert_event(make_event(timestamp=1000))
        store.insert_event(make_event(timestamp=9000))
        events = store.get_events(0, 9000)
        assert [e.timestamp for e in events] == [1000, 3000]

    def test_system_event_roundtrip(self):
        """System-wide events carry no entity or component."""
        store = UsageStore.open_in_memory()
        event = LifecycleEvent(timestamp=5000, kind=EventKind.SUSPENDED)
        store.insert_event(event)
        assert store.get_events(0, 10_000) == [event]

    def test_distinct_components_produce_distinct_ids(self):
        first = make_event(component_id="One")
        second = make_event(component_id="Two")
        assert first.compute_id() != second.compute_id()
