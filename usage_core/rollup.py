"""Rollups over persisted hourly usage buckets."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable

from usage_core.buckets import DAY_MS, HOUR_MS, floor_to_bucket
from usage_core.models import BucketAggregate, EntityUsage, UsagePoint
from usage_core.sources import AggregateStore


def _group_by_bucket(
    buckets: Iterable[BucketAggregate],
    start: int,
    end: int,
    bucket_width_ms: int,
) -> list[UsagePoint]:
    """Re-bucket hourly rows to a coarser width and sum them.

    The range filter applies to the re-bucketed start, so an hour is always
    attributed to the bucket that contains its own start.
    """
    totals: defaultdict[int, list[int]] = defaultdict(lambda: [0, 0])
    for bucket in buckets:
        bucket_start = floor_to_bucket(bucket.bucket_start, bucket_width_ms)
        if not start <= bucket_start < end:
            continue
        totals[bucket_start][0] += bucket.duration_ms
        totals[bucket_start][1] += bucket.occurrence_count

    return [
        UsagePoint(bucket_start=bucket_start, total_duration_ms=duration, total_count=count)
        for bucket_start, (duration, count) in sorted(totals.items())
    ]


def usage_totals(
    store: AggregateStore, start: int, end: int, bucket_width_ms: int = HOUR_MS
) -> list[UsagePoint]:
    """Total usage across all entities per bucket in [start, end).

    Buckets are kept when their re-bucketed start falls in range. With a
    `start` that is not aligned to `bucket_width_ms`, the partial first
    bucket is therefore dropped while a partial last bucket is kept; pass an
    aligned `start` (midnight for day rollups) to cover whole buckets.

    Args:
        store: Store holding hourly aggregates.
        start: Inclusive range start (epoch ms).
        end: Exclusive range end (epoch ms).
        bucket_width_ms: Width of the returned buckets; a multiple of an hour.

    Returns:
        One UsagePoint per non-empty bucket, ascending by bucket start.
    """
    buckets = store.query_buckets(floor_to_bucket(start, HOUR_MS), end)
    return _group_by_bucket(buckets, start, end, bucket_width_ms)


def usage_totals_by_hour(store: AggregateStore, start: int, end: int) -> list[UsagePoint]:
    return usage_totals(store, start, end, HOUR_MS)


def usage_totals_by_day(store: AggregateStore, start: int, end: int) -> list[UsagePoint]:
    return usage_totals(store, start, end, DAY_MS)


def entity_usage_totals(
    store: AggregateStore,
    entity_id: str,
    start: int,
    end: int,
    bucket_width_ms: int = HOUR_MS,
) -> list[UsagePoint]:
    """Like usage_totals(), restricted to a single entity."""
    buckets = store.query_buckets_for_entity(entity_id, floor_to_bucket(start, HOUR_MS), end)
    return _group_by_bucket(buckets, start, end, bucket_width_ms)


def entity_usage_by_hour(
    store: AggregateStore, entity_id: str, start: int, end: int
) -> list[UsagePoint]:
    return entity_usage_totals(store, entity_id, start, end, HOUR_MS)


def entity_usage_by_day(
    store: AggregateStore, entity_id: str, start: int, end: int
) -> list[UsagePoint]:
    return entity_usage_totals(store, entity_id, start, end, DAY_MS)


def entity_usage_summary(store: AggregateStore, start: int, end: int) -> list[EntityUsage]:
    """Total usage per entity for hours starting in [start, end).

    Returns:
        List of EntityUsage sorted by total duration descending.
    """
    totals: defaultdict[str, list[int]] = defaultdict(lambda: [0, 0])
    for bucket in store.query_buckets(start, end):
        totals[bucket.entity_id][0] += bucket.duration_ms
        totals[bucket.entity_id][1] += bucket.occurrence_count

    summary = []
    for entity_id, (duration, count) in totals.items():
        entity = store.get_entity(entity_id)
        summary.append(
            EntityUsage(
                entity_id=entity_id,
                display_name=entity["display_name"] if entity else entity_id,
                total_duration_ms=duration,
                total_count=count,
            )
        )
    summary.sort(key=lambda usage: (-usage.total_duration_ms, usage.entity_id))
    return summary


def fill_missing_buckets(
    points: Iterable[UsagePoint], start: int, end: int, bucket_width_ms: int
) -> list[UsagePoint]:
    """Return a dense series over [start, end) with zeroed points for gaps.

    Points outside the range are dropped. The series steps from `start`, so
    `start` should be aligned to the bucket width.
    """
    if bucket_width_ms <= 0:
        raise ValueError(f"Bucket width must be positive, got {bucket_width_ms}")
    by_start = {point.bucket_start: point for point in points if start <= point.bucket_start < end}
    filled = []
    cursor = start
    while cursor < end:
        filled.append(by_start.get(cursor) or UsagePoint(bucket_start=cursor))
        cursor += bucket_width_ms
    return filled


def average_per_bucket(points: list[UsagePoint]) -> tuple[int, int]:
    """Average (duration_ms, count) over every point of a series."""
    if not points:
        return 0, 0
    total_duration = sum(point.total_duration_ms for point in points)
    total_count = sum(point.total_count for point in points)
    return total_duration // len(points), total_count // len(points)


def average_per_active_bucket(points: list[UsagePoint]) -> int:
    """Average duration over the buckets that saw any usage."""
    active = [point.total_duration_ms for point in points if point.total_duration_ms > 0]
    if not active:
        return 0
    return sum(active) // len(active)
