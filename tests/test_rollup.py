"""Tests for rollups over stored hourly buckets."""

import pytest

from usage_core.db import UsageStore
from usage_core.models import UsagePoint
from usage_core.rollup import (
    average_per_active_bucket,
    average_per_bucket,
    entity_usage_by_day,
    entity_usage_by_hour,
    entity_usage_summary,
    fill_missing_buckets,
    usage_totals_by_day,
    usage_totals_by_hour,
)
from usage_core.service import UsageService
from usage_core.sources import StoredEventSource
from usage_core.sync import SyncCoordinator

HOUR = 3_600_000
DAY = 24 * HOUR


@pytest.fixture
def store():
    """Store with two apps spread over two days."""
    store = UsageStore.open_in_memory()
    store.ensure_entity("A", "App A")
    store.ensure_entity("B", "App B")
    store.upsert_bucket("A", 0, 1000, 1)
    store.upsert_bucket("B", 0, 2000, 2)
    store.upsert_bucket("A", 5 * HOUR, 3000, 1)
    store.upsert_bucket("A", DAY + HOUR, 10_000, 4)
    store.upsert_bucket("B", DAY + 2 * HOUR, 500, 1)
    return store


def point(bucket_start: int, duration: int, count: int) -> UsagePoint:
    return UsagePoint(bucket_start=bucket_start, total_duration_ms=duration, total_count=count)


class TestUsageTotals:
    def test_by_hour_sums_entities(self, store):
        assert usage_totals_by_hour(store, 0, DAY) == [
            point(0, 3000, 3),
            point(5 * HOUR, 3000, 1),
        ]

    def test_by_hour_excludes_range_end(self, store):
        assert usage_totals_by_hour(store, 0, 5 * HOUR) == [point(0, 3000, 3)]

    def test_by_day(self, store):
        assert usage_totals_by_day(store, 0, 2 * DAY) == [
            point(0, 6000, 4),
            point(DAY, 10_500, 5),
        ]

    def test_day_filter_applies_after_rebucketing(self, store):
        """Hours in range whose day starts before the range are not reported."""
        assert usage_totals_by_day(store, DAY + HOUR, 3 * DAY) == []

    def test_partial_last_day_is_kept(self, store):
        """Only the start of the range trims whole days; the end trims by hour."""
        assert usage_totals_by_day(store, 0, DAY + 2 * HOUR) == [
            point(0, 6000, 4),
            point(DAY, 10_000, 4),
        ]

    def test_empty_range(self, store):
        assert usage_totals_by_hour(store, 10 * DAY, 11 * DAY) == []


class TestEntityUsage:
    def test_by_hour(self, store):
        assert entity_usage_by_hour(store, "A", 0, 2 * DAY) == [
            point(0, 1000, 1),
            point(5 * HOUR, 3000, 1),
            point(DAY + HOUR, 10_000, 4),
        ]

    def test_by_day(self, store):
        assert entity_usage_by_day(store, "B", 0, 2 * DAY) == [
            point(0, 2000, 2),
            point(DAY, 500, 1),
        ]

    def test_unknown_entity(self, store):
        assert entity_usage_by_day(store, "missing", 0, 2 * DAY) == []

    def test_summary_sorted_by_duration(self, store):
        """Heaviest app first, with display names from the entity table."""
        summary = entity_usage_summary(store, 0, 2 * DAY)
        assert [(u.entity_id, u.display_name, u.total_duration_ms, u.total_count) for u in summary] == [
            ("A", "App A", 14_000, 6),
            ("B", "App B", 2500, 3),
        ]

    def test_summary_ties_broken_by_id(self):
        store = UsageStore.open_in_memory()
        for entity_id in ("Z", "M"):
            store.ensure_entity(entity_id, entity_id)
            store.upsert_bucket(entity_id, 0, 1000, 1)
        assert [u.entity_id for u in entity_usage_summary(store, 0, HOUR)] == ["M", "Z"]


class TestFillMissingBuckets:
    def test_fills_gaps_with_zeros(self):
        filled = fill_missing_buckets([point(HOUR, 500, 1)], 0, 3 * HOUR, HOUR)
        assert filled == [point(0, 0, 0), point(HOUR, 500, 1), point(2 * HOUR, 0, 0)]

    def test_drops_points_outside_range(self):
        filled = fill_missing_buckets([point(5 * DAY, 500, 1)], 0, DAY, DAY)
        assert filled == [point(0, 0, 0)]

    def test_rejects_non_positive_width(self):
        with pytest.raises(ValueError):
            fill_missing_buckets([], 0, DAY, 0)


class TestAverages:
    def test_average_per_bucket(self):
        points = [point(0, 3000, 3), point(HOUR, 0, 0), point(2 * HOUR, 3000, 0)]
        assert average_per_bucket(points) == (2000, 1)

    def test_average_per_bucket_empty(self):
        assert average_per_bucket([]) == (0, 0)

    def test_average_per_active_bucket_skips_idle(self):
        """Idle hours do not drag the average down."""
        points = [point(0, 3000, 3), point(HOUR, 0, 0), point(2 * HOUR, 1000, 1)]
        assert average_per_active_bucket(points) == 2000

    def test_average_per_active_bucket_all_idle(self):
        assert average_per_active_bucket([point(0, 0, 0)]) == 0


class TestUsageServiceQueries:
    """The facade delegates to the rollups over its store."""

    def test_grouped_queries(self, store):
        service = UsageService(store, SyncCoordinator(store, StoredEventSource(store)))
        assert service.get_usage_totals_grouped_by_hour(0, DAY) == usage_totals_by_hour(store, 0, DAY)
        assert service.get_usage_totals_grouped_by_day(0, 2 * DAY) == [
            point(0, 6000, 4),
            point(DAY, 10_500, 5),
        ]
        assert service.get_entity_usage_grouped_by_hour("B", 0, DAY) == [point(0, 2000, 2)]
        assert service.get_entity_usage_grouped_by_day("A", 0, 2 * DAY) == [
            point(0, 4000, 2),
            point(DAY, 10_000, 4),
        ]
        assert [u.entity_id for u in service.get_entity_usage_summary(0, 2 * DAY)] == ["A", "B"]
