"""
Event deduplication across relays.

Every event the pool receives from any relay passes through one
[EventDeduplicator][relaypool.core.dedup.EventDeduplicator] before it can
reach the unified event stream. The first sighting of an id is
``DELIVERED``; every later sighting while the id is still remembered is a
``DUPLICATE`` that only adds the relay to the id's confirmation set.

The memory is a bounded
[SeenEventIndex][relaypool.core.dedup.SeenEventIndex]: when full, the
oldest-inserted id is evicted. Confirmations never refresh recency, so an id
popular across many relays is evicted as early as one seen only once. An
evicted id that shows up again is delivered again.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from enum import StrEnum

from pydantic import BaseModel, Field

from relaypool.models.event import Event  # noqa: TC001


class DedupConfig(BaseModel):
    """Capacity of the seen-event memory."""

    capacity: int = Field(
        default=100_000, ge=1, description="Maximum number of event ids remembered"
    )


class DedupOutcome(StrEnum):
    DELIVERED = "delivered"
    DUPLICATE = "duplicate"


@dataclass(frozen=True, slots=True)
class DedupResult:
    """Outcome of observing one event from one relay.

    Attributes:
        outcome: ``DELIVERED`` on first sighting, ``DUPLICATE`` otherwise.
        confirmed_by: The live confirmation set for the event id. Later
            sightings add to the same set, so a consumer holding it sees
            confirmations arrive.
    """

    outcome: DedupOutcome
    confirmed_by: set[str]

    @property
    def delivered(self) -> bool:
        return self.outcome is DedupOutcome.DELIVERED


class SeenEventIndex:
    """Bounded, insertion-ordered map of event id to confirming relays."""

    __slots__ = ("_capacity", "_entries")

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._entries: OrderedDict[str, set[str]] = OrderedDict()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._entries

    def get(self, event_id: str) -> set[str] | None:
        return self._entries.get(event_id)

    def insert(self, event_id: str, relay_url: str) -> tuple[set[str], list[str]]:
        """Insert a new id with its first confirmation.

        Returns:
            The new confirmation set and the ids evicted to make room.
        """
        confirmations = {relay_url}
        self._entries[event_id] = confirmations
        evicted: list[str] = []
        while len(self._entries) > self._capacity:
            oldest, _ = self._entries.popitem(last=False)
            evicted.append(oldest)
        return confirmations, evicted

    def confirm(self, event_id: str, relay_url: str) -> set[str]:
        """Add *relay_url* to an existing entry without refreshing its recency."""
        confirmations = self._entries[event_id]
        confirmations.add(relay_url)
        return confirmations

    def clear(self) -> None:
        self._entries.clear()


class EventDeduplicator:
    """Decides whether an event is delivered or is a duplicate.

    Not thread-safe. Called only from the event loop thread inside the pool's
    synchronous message routing, which makes every ``observe`` atomic with
    respect to other relays' messages.

    Examples:
        ```python
        dedup = EventDeduplicator(DedupConfig(capacity=10_000))
        dedup.observe(event, "wss://a.example").delivered   # True
        dedup.observe(event, "wss://b.example").delivered   # False
        dedup.confirmations(event.id)                       # {'wss://a...', 'wss://b...'}
        ```
    """

    def __init__(self, config: DedupConfig | None = None) -> None:
        self._config = config or DedupConfig()
        self._index = SeenEventIndex(self._config.capacity)
        self._evictions = 0

    @property
    def config(self) -> DedupConfig:
        return self._config

    @property
    def index(self) -> SeenEventIndex:
        return self._index

    @property
    def evictions(self) -> int:
        """Number of ids evicted since construction."""
        return self._evictions

    def observe(self, event: Event, source_relay: str) -> DedupResult:
        existing = self._index.get(event.id)
        if existing is not None:
            return DedupResult(DedupOutcome.DUPLICATE, self._index.confirm(event.id, source_relay))
        confirmations, evicted = self._index.insert(event.id, source_relay)
        self._evictions += len(evicted)
        return DedupResult(DedupOutcome.DELIVERED, confirmations)

    def confirmations(self, event_id: str) -> frozenset[str]:
        """Snapshot of the relays that confirmed *event_id* (empty when unknown)."""
        return frozenset(self._index.get(event_id) or ())

    def seen(self, event_id: str) -> bool:
        return event_id in self._index

    def clear(self) -> None:
        self._index.clear()
