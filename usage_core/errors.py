"""Exceptions raised by usage tracking components."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from usage_core.models import SyncResult


class UsageCoreError(Exception):
    """Base exception for usage tracking errors."""

    pass


class SourceUnavailableError(UsageCoreError):
    """Raised when the event source cannot deliver events."""

    pass


class NameResolutionError(UsageCoreError):
    """Raised when an entity's display name cannot be resolved."""

    def __init__(self, entity_id: str) -> None:
        super().__init__(f"No display name for entity: {entity_id}")
        self.entity_id = entity_id


class StoreWriteError(UsageCoreError):
    """Raised when the aggregate store fails to persist a row."""

    pass


class StoreReadError(UsageCoreError):
    """Raised when the aggregate store cannot be read."""

    pass


class SyncFailure(UsageCoreError):
    """Raised when a sync pass aborts.

    The attached result has status `aborted` and the checkpoint was not moved.
    """

    def __init__(self, message: str, result: SyncResult) -> None:
        super().__init__(message)
        self.result = result
