"""Collaborator interfaces for syncing, and their local implementations."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from usage_core.db import UsageStore
from usage_core.errors import NameResolutionError, SourceUnavailableError
from usage_core.models import BucketAggregate, LifecycleEvent


class EventSource(Protocol):
    def fetch_events(self, window_start: int, window_end: int) -> Iterable[LifecycleEvent]:
        """Events in [window_start, window_end), ordered by timestamp.

        Raises:
            SourceUnavailableError: If events cannot be read.
        """
        ...

    def live_entities_now(self) -> set[str]:
        """Entities currently in the foreground."""
        ...


class NameResolver(Protocol):
    def resolve_display_name(self, entity_id: str) -> str:
        """Raises NameResolutionError if the entity has no known name."""
        ...


class AggregateStore(Protocol):
    """Reads raise StoreReadError and writes raise StoreWriteError on failure."""

    def get_checkpoint(self) -> int | None: ...

    def set_checkpoint(self, timestamp: int) -> None: ...

    def ensure_entity(self, entity_id: str, display_name: str) -> int: ...

    def get_entity(self, entity_id: str) -> dict[str, Any] | None: ...

    def upsert_bucket(
        self,
        entity_id: str,
        bucket_start: int,
        duration_ms: int,
        occurrence_count: int,
    ) -> None: ...

    def query_buckets(self, start: int, end: int) -> list[BucketAggregate]: ...

    def query_buckets_for_entity(
        self, entity_id: str, start: int, end: int
    ) -> list[BucketAggregate]: ...


class StoredEventSource:
    """Event source reading lifecycle events imported into a UsageStore.

    There is no live process list locally, so entities reported as currently
    in the foreground are whatever the caller passes in.
    """

    def __init__(self, store: UsageStore, live_entities: Iterable[str] = ()) -> None:
        self._store = store
        self._live = set(live_entities)

    def fetch_events(self, window_start: int, window_end: int) -> list[LifecycleEvent]:
        try:
            return self._store.get_events(window_start, window_end)
        except sqlite3.Error as e:
            raise SourceUnavailableError(f"Failed to read lifecycle events: {e}") from e

    def live_entities_now(self) -> set[str]:
        return set(self._live)


class MappingNameResolver:
    """Resolves display names from a fixed entity ID -> name mapping."""

    def __init__(self, names: Mapping[str, str] | None = None) -> None:
        self._names = dict(names or {})

    def resolve_display_name(self, entity_id: str) -> str:
        name = self._names.get(entity_id)
        if not name:
            raise NameResolutionError(entity_id)
        return name
