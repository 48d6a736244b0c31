"""Foreground session reconstruction from lifecycle events.

A single forward pass over the events tracks, per (entity, component) pair,
either the timestamp of the activation that opened it or None once the pair
has been closed. Closed pairs are kept so that a later deactivation can tell
"never seen" apart from "seen and already stopped": only a close for an
entity never seen in the pass is taken as a session that began before the
window. Any other close without a matching open is dropped.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from usage_core.models import EventKind, ForegroundInterval, LifecycleEvent

logger = logging.getLogger(__name__)

Component = tuple[str, str]


class Reconstruction(BaseModel):
    """Intervals recovered from one pass, plus what had to be skipped.

    malformed counts events that could not be interpreted at all.
    unmatched_closes counts deactivations dropped because the entity was
    already seen but this component was not open; that is expected input,
    not an error.
    """

    intervals: list[ForegroundInterval] = Field(default_factory=list)
    malformed: int = 0
    unmatched_closes: int = 0


def utc_now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def _open_starts(active: dict[Component, int | None], entity_id: str) -> list[int]:
    """Start times of every still-open component of an entity."""
    return [
        start
        for (eid, _), start in active.items()
        if eid == entity_id and start is not None
    ]


def _seen(active: dict[Component, int | None], entity_id: str) -> bool:
    """Whether any component of an entity appeared earlier in the pass."""
    return any(eid == entity_id for eid, _ in active)


def _close_all(active: dict[Component, int | None]) -> None:
    for component in active:
        active[component] = None


def reconstruct(
    events: Iterable[LifecycleEvent],
    window_start: int,
    window_end: int,
    live_at_window_end: Collection[str] = frozenset(),
    *,
    now: int | None = None,
) -> Reconstruction:
    """Rebuild foreground intervals from a chronologically ordered event stream.

    Args:
        events: Events for [window_start, window_end), ordered by timestamp.
        window_start: Inclusive start of the queried window (epoch ms).
        window_end: Exclusive end of the queried window (epoch ms).
        live_at_window_end: Entities known to be in the foreground right now.
            Sessions still open at the end of the pass are only kept for these.
        now: Current time (epoch ms), defaults to the wall clock. Open sessions
            are never extended past it.

    Returns:
        Reconstruction with non-empty intervals and the skip counters.
    """
    if now is None:
        now = utc_now_ms()
    final_end = min(window_end, now)
    live = set(live_at_window_end)

    result = Reconstruction()
    active: dict[Component, int | None] = {}
    saw_events = False

    def emit(entity_id: str, start: int, end: int) -> None:
        if end > start:
            result.intervals.append(
                ForegroundInterval(entity_id=entity_id, start=start, end=end)
            )

    for event in events:
        saw_events = True

        if event.is_malformed:
            result.malformed += 1
            logger.warning(
                "Skipping malformed %s event for %r at %d: missing entity or component",
                event.kind.value,
                event.entity_id,
                event.timestamp,
            )
            continue

        if event.kind is EventKind.ACTIVATED:
            # Repeated activation without a close restarts the session
            active[(event.entity_id, event.component_id)] = event.timestamp

        elif event.kind is EventKind.DEACTIVATED:
            component = (event.entity_id, event.component_id)
            start = active.get(component)

            if start is not None:
                active[component] = None
            elif not _seen(active, event.entity_id):
                # Entity was already in the foreground when the window opened
                start = window_start
                active[component] = None
            else:
                result.unmatched_closes += 1
                logger.debug(
                    "Discarding unmatched close of %r/%r at %d",
                    event.entity_id,
                    event.component_id,
                    event.timestamp,
                )
                continue

            # Other components of the entity still open bound this session
            end = min([event.timestamp, *_open_starts(active, event.entity_id)])
            emit(event.entity_id, start, end)

        elif event.kind is EventKind.SUSPENDED:
            for (entity_id, _), start in active.items():
                if start is not None:
                    emit(entity_id, start, event.timestamp)
            _close_all(active)

        elif event.kind is EventKind.RESUMED:
            _close_all(active)

    for (entity_id, _), start in active.items():
        if start is not None and entity_id in live:
            emit(entity_id, start, final_end)

    if not saw_events:
        for entity_id in sorted(live):
            emit(entity_id, window_start, final_end)

    return result
