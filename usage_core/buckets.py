"""Fixed-width time bucketing of foreground intervals."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Iterator

from usage_core.models import BucketAggregate, ForegroundInterval

HOUR_MS = 3_600_000
DAY_MS = 86_400_000

BucketKey = tuple[str, int]


def floor_to_bucket(timestamp: int, bucket_width_ms: int) -> int:
    """Round a timestamp down to the start of its bucket."""
    if bucket_width_ms <= 0:
        raise ValueError(f"Bucket width must be positive, got {bucket_width_ms}")
    return (timestamp // bucket_width_ms) * bucket_width_ms


def split_interval(
    interval: ForegroundInterval, bucket_width_ms: int
) -> Iterator[tuple[int, int]]:
    """Split an interval at bucket boundaries.

    Yields:
        (bucket_start, duration_ms) for every bucket the interval touches.
        Zero-length and inverted intervals yield nothing.
    """
    cursor = interval.start
    while cursor < interval.end:
        bucket_start = floor_to_bucket(cursor, bucket_width_ms)
        segment_end = min(interval.end, bucket_start + bucket_width_ms)
        yield bucket_start, segment_end - cursor
        cursor = segment_end


def aggregate(
    intervals: Iterable[ForegroundInterval],
    bucket_width_ms: int = HOUR_MS,
) -> dict[BucketKey, BucketAggregate]:
    """Fold intervals into per-(entity, bucket) usage totals.

    An interval counts as one occurrence in every bucket it lands in, so a
    session spanning three hours adds one to each of those hours. The result
    does not depend on the order of the input.

    Args:
        intervals: Foreground intervals, in any order.
        bucket_width_ms: Bucket width (default one hour).

    Returns:
        Dict mapping (entity_id, bucket_start) to its BucketAggregate.
    """
    if bucket_width_ms <= 0:
        raise ValueError(f"Bucket width must be positive, got {bucket_width_ms}")

    totals: defaultdict[BucketKey, list[int]] = defaultdict(lambda: [0, 0])
    for interval in intervals:
        for bucket_start, duration in split_interval(interval, bucket_width_ms):
            entry = totals[(interval.entity_id, bucket_start)]
            entry[0] += duration
            entry[1] += 1

    return {
        (entity_id, bucket_start): BucketAggregate(
            entity_id=entity_id,
            bucket_start=bucket_start,
            duration_ms=duration,
            occurrence_count=count,
        )
        for (entity_id, bucket_start), (duration, count) in totals.items()
    }
