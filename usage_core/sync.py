"""Incremental synchronization of lifecycle events into hourly aggregates."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable, Iterable

from usage_core.buckets import DAY_MS, HOUR_MS, aggregate, floor_to_bucket
from usage_core.errors import (
    NameResolutionError,
    SourceUnavailableError,
    StoreReadError,
    StoreWriteError,
    SyncFailure,
)
from usage_core.models import BucketAggregate, SyncResult, SyncStatus
from usage_core.sessions import reconstruct, utc_now_ms
from usage_core.sources import AggregateStore, EventSource, NameResolver

logger = logging.getLogger(__name__)

# Each pass rescans from the start of the day holding the last checkpoint, so
# sessions finalized with a provisional end time get recomputed.
DEFAULT_RESCAN_ALIGNMENT_MS = DAY_MS

# "Currently in the foreground" is only meaningful when the window ends now
LIVE_THRESHOLD_MS = 1500


class SyncCoordinator:
    """Runs sync passes: events -> intervals -> hourly buckets -> store.

    Bucket rows are overwritten, never added to, so re-running a pass over an
    overlapping window is idempotent. Concurrent calls to sync() are
    serialized; the checkpoint read and write would otherwise race.
    """

    def __init__(
        self,
        store: AggregateStore,
        source: EventSource,
        resolver: NameResolver | None = None,
        *,
        bucket_width_ms: int = HOUR_MS,
        rescan_alignment_ms: int = DEFAULT_RESCAN_ALIGNMENT_MS,
        live_threshold_ms: int = LIVE_THRESHOLD_MS,
        clock: Callable[[], int] | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            store: Aggregate store receiving buckets and the checkpoint.
            source: Event source for lifecycle events.
            resolver: Display name lookup for new entities. Without one, the
                raw entity ID is used as the name.
            bucket_width_ms: Width of the stored buckets (default one hour).
            rescan_alignment_ms: Alignment the checkpoint is floored to when
                choosing where a pass starts (default one day).
            live_threshold_ms: Max distance between `now` and the wall clock
                for the source's live entities to be consulted.
            clock: Wall-clock source in epoch ms, for testing.
        """
        self._store = store
        self._source = source
        self._resolver = resolver
        self._bucket_width_ms = bucket_width_ms
        self._rescan_alignment_ms = rescan_alignment_ms
        self._live_threshold_ms = live_threshold_ms
        self._clock = clock or utc_now_ms
        self._lock = threading.Lock()

    def sync(self, now: int, *, full: bool = False) -> SyncResult:
        """Run one sync pass up to `now`.

        Args:
            now: End of the window to sync (epoch ms).
            full: Ignore the checkpoint and rescan everything from epoch 0.

        Returns:
            SyncResult with status `succeeded`, or `partial` if some buckets
            could not be written.

        Raises:
            SyncFailure: If the event source failed or the checkpoint could
                not be read or saved. The checkpoint is left unchanged.
        """
        with self._lock:
            return self._sync(now, full)

    def _sync(self, now: int, full: bool) -> SyncResult:
        try:
            checkpoint = self._store.get_checkpoint() or 0
        except StoreReadError as e:
            logger.warning("Sync aborted, checkpoint not readable: %s", e)
            result = SyncResult(status=SyncStatus.ABORTED, window_start=0, window_end=now)
            raise SyncFailure(f"Checkpoint not readable: {e}", result) from e

        window_start = floor_to_bucket(0 if full else checkpoint, self._rescan_alignment_ms)
        window_end = now
        logger.info("Syncing usage from %d to %d", window_start, window_end)

        try:
            events = list(self._source.fetch_events(window_start, window_end))
            live = self._live_entities(window_end)
        except SourceUnavailableError as e:
            logger.warning("Sync aborted, event source unavailable: %s", e)
            result = SyncResult(
                status=SyncStatus.ABORTED,
                window_start=window_start,
                window_end=window_end,
            )
            raise SyncFailure(f"Event source unavailable: {e}", result) from e

        reconstruction = reconstruct(
            events, window_start, window_end, live, now=self._clock()
        )
        buckets = aggregate(reconstruction.intervals, self._bucket_width_ms)
        written, failed = self._write_buckets(buckets.values())

        result = SyncResult(
            status=SyncStatus.PARTIAL if failed else SyncStatus.SUCCEEDED,
            window_start=window_start,
            window_end=window_end,
            buckets_written=written,
            buckets_failed=failed,
            intervals=len(reconstruction.intervals),
            malformed_events=reconstruction.malformed,
            unmatched_closes=reconstruction.unmatched_closes,
        )

        try:
            self._store.set_checkpoint(max(checkpoint, now))
        except StoreWriteError as e:
            logger.warning("Sync aborted, checkpoint not saved: %s", e)
            aborted = result.model_copy(update={"status": SyncStatus.ABORTED})
            raise SyncFailure(f"Checkpoint not saved: {e}", aborted) from e

        logger.info(
            "Sync completed: %d events, %d intervals, %d buckets written, %d failed",
            len(events),
            result.intervals,
            written,
            failed,
        )
        return result

    def _live_entities(self, window_end: int) -> set[str]:
        if abs(self._clock() - window_end) > self._live_threshold_ms:
            return set()
        return set(self._source.live_entities_now())

    def _write_buckets(self, buckets: Iterable[BucketAggregate]) -> tuple[int, int]:
        """Overwrite every bucket in the store. Returns (written, failed)."""
        by_entity: defaultdict[str, list[BucketAggregate]] = defaultdict(list)
        for bucket in buckets:
            by_entity[bucket.entity_id].append(bucket)

        written = 0
        failed = 0
        for entity_id in sorted(by_entity):
            entity_buckets = sorted(by_entity[entity_id], key=lambda b: b.bucket_start)
            try:
                self._ensure_entity(entity_id)
            except (StoreReadError, StoreWriteError) as e:
                logger.warning("Skipping %d buckets for %r: %s", len(entity_buckets), entity_id, e)
                failed += len(entity_buckets)
                continue

            for bucket in entity_buckets:
                try:
                    self._store.upsert_bucket(
                        entity_id,
                        bucket.bucket_start,
                        bucket.duration_ms,
                        bucket.occurrence_count,
                    )
                except StoreWriteError as e:
                    logger.warning("Skipping bucket %r@%d: %s", entity_id, bucket.bucket_start, e)
                    failed += 1
                else:
                    written += 1
        return written, failed

    def _ensure_entity(self, entity_id: str) -> None:
        if self._store.get_entity(entity_id) is None:
            self._store.ensure_entity(entity_id, self._resolve_name(entity_id))

    def _resolve_name(self, entity_id: str) -> str:
        if self._resolver is None:
            return entity_id
        try:
            return self._resolver.resolve_display_name(entity_id)
        except NameResolutionError as e:
            logger.warning("Using raw ID as display name: %s", e)
            return entity_id
