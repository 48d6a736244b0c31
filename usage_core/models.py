"""Domain models for usage tracking."""

from __future__ import annotations

import hashlib
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class EventKind(str, Enum):
    """Lifecycle transition recorded by the event source."""

    ACTIVATED = "activated"
    DEACTIVATED = "deactivated"
    SUSPENDED = "suspended"
    RESUMED = "resumed"


COMPONENT_KINDS = {EventKind.ACTIVATED, EventKind.DEACTIVATED}


class LifecycleEvent(BaseModel):
    """A single lifecycle transition.

    entity_id and component_id are required for activated/deactivated events
    but optional at the model level so that malformed events can still be read and skipped
    during reconstruction. System-wide kinds carry no entity or component.
    """

    model_config = ConfigDict(frozen=True)

    entity_id: str = ""
    component_id: str | None = None
    timestamp: int
    kind: EventKind

    def compute_id(self) -> str:
        """Compute deterministic ID from content hash."""
        content = "|".join([
            self.kind.value,
            str(self.timestamp),
            self.entity_id,
            self.component_id or "",
        ])
        return hashlib.sha256(content.encode()).hexdigest()[:32]

    @property
    def is_malformed(self) -> bool:
        return self.kind in COMPONENT_KINDS and not (self.entity_id and self.component_id)


class ForegroundInterval(BaseModel):
    """Span of time during which an entity was continuously in the foreground."""

    model_config = ConfigDict(frozen=True)

    entity_id: str
    start: int
    end: int

    @property
    def duration_ms(self) -> int:
        return self.end - self.start


class BucketAggregate(BaseModel):
    """Accumulated usage of one entity within one aligned time bucket."""

    model_config = ConfigDict(frozen=True)

    entity_id: str
    bucket_start: int
    duration_ms: int = Field(ge=0)
    occurrence_count: int = Field(ge=0)


class UsagePoint(BaseModel):
    """Usage totals for one bucket of a rollup series."""

    bucket_start: int
    total_duration_ms: int = 0
    total_count: int = 0


class EntityUsage(BaseModel):
    """Usage totals for one entity over a range."""

    entity_id: str
    display_name: str
    total_duration_ms: int = 0
    total_count: int = 0


class SyncStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    ABORTED = "aborted"


class SyncResult(BaseModel):
    """Outcome of one incremental sync pass.

    `partial` means the pass completed and the checkpoint advanced, but some
    buckets could not be written. `aborted` means the checkpoint did not move;
    buckets already overwritten in the same pass are left in place.
    """

    status: SyncStatus
    window_start: int
    window_end: int
    buckets_written: int = 0
    buckets_failed: int = 0
    intervals: int = 0
    malformed_events: int = 0
    unmatched_closes: int = 0

    @property
    def ok(self) -> bool:
        return self.status is not SyncStatus.ABORTED
