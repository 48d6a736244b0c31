"""Public entry points for syncing and querying usage."""

from __future__ import annotations

import logging

from usage_core import rollup
from usage_core.errors import SyncFailure
from usage_core.models import EntityUsage, SyncResult, UsagePoint
from usage_core.sources import AggregateStore
from usage_core.sync import SyncCoordinator

logger = logging.getLogger(__name__)


class UsageService:
    """Incremental sync plus the rollup queries, over one aggregate store."""

    def __init__(self, store: AggregateStore, coordinator: SyncCoordinator) -> None:
        self._store = store
        self._coordinator = coordinator

    def run_incremental_sync(self, now: int, *, full: bool = False) -> SyncResult:
        """Sync up to `now`. An aborted pass is reported, not raised."""
        try:
            return self._coordinator.sync(now, full=full)
        except SyncFailure as e:
            logger.error("Incremental sync failed: %s", e)
            return e.result

    def get_usage_totals_grouped_by_hour(self, start: int, end: int) -> list[UsagePoint]:
        return rollup.usage_totals_by_hour(self._store, start, end)

    def get_usage_totals_grouped_by_day(self, start: int, end: int) -> list[UsagePoint]:
        return rollup.usage_totals_by_day(self._store, start, end)

    def get_entity_usage_grouped_by_hour(
        self, entity_id: str, start: int, end: int
    ) -> list[UsagePoint]:
        return rollup.entity_usage_by_hour(self._store, entity_id, start, end)

    def get_entity_usage_grouped_by_day(
        self, entity_id: str, start: int, end: int
    ) -> list[UsagePoint]:
        return rollup.entity_usage_by_day(self._store, entity_id, start, end)

    def get_entity_usage_summary(self, start: int, end: int) -> list[EntityUsage]:
        return rollup.entity_usage_summary(self._store, start, end)
