"""
Local event storage consumed by reconciliation and sync.

The pool never requires a store for subscriptions or publishes. Negentropy
reconciliation needs one to know which events are held locally, and
[RelayPool.sync()][relaypool.core.pool.RelayPool.sync] saves fetched events
into it.

Any object implementing [EventStore][relaypool.core.store.EventStore] can be
passed to the pool; [MemoryEventStore][relaypool.core.store.MemoryEventStore]
is the default.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Protocol, runtime_checkable

from relaypool.models.event import Event
from relaypool.models.filter import Filter


@runtime_checkable
class EventStore(Protocol):
    """Storage interface used by the pool."""

    async def save(self, event: Event) -> bool:
        """Persist *event*. Returns False if it was already stored."""
        ...

    async def query(self, filters: Sequence[Filter]) -> list[Event]:
        """Return stored events matching any of *filters*, newest first."""
        ...

    async def get(self, event_ids: Iterable[str]) -> list[Event]:
        """Return the stored events among *event_ids*."""
        ...

    async def negentropy_items(self, filter_: Filter) -> list[tuple[int, str]]:
        """Return ``(created_at, id)`` pairs of stored events matching *filter_*."""
        ...


class MemoryEventStore:
    """In-process dict-backed [EventStore][relaypool.core.store.EventStore].

    ``limit`` on a filter is honored by :meth:`query` (newest first) but
    ignored by :meth:`negentropy_items`, which always covers the full range.
    """

    def __init__(self, events: Iterable[Event] = ()) -> None:
        self._events: dict[str, Event] = {e.id: e for e in events}

    def __len__(self) -> int:
        return len(self._events)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._events

    async def save(self, event: Event) -> bool:
        if event.id in self._events:
            return False
        self._events[event.id] = event
        return True

    async def query(self, filters: Sequence[Filter]) -> list[Event]:
        selected: dict[str, Event] = {}
        for f in filters:
            matches = sorted(
                (e for e in self._events.values() if f.match(e)),
                key=lambda e: (-e.created_at, e.id),
            )
            if f.limit is not None:
                matches = matches[: f.limit]
            for e in matches:
                selected[e.id] = e
        return sorted(selected.values(), key=lambda e: (-e.created_at, e.id))

    async def get(self, event_ids: Iterable[str]) -> list[Event]:
        return [self._events[i] for i in event_ids if i in self._events]

    async def negentropy_items(self, filter_: Filter) -> list[tuple[int, str]]:
        return [(e.created_at, e.id) for e in self._events.values() if filter_.match(e)]
