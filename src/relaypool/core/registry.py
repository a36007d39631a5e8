"""
Subscription registry: which filters are active, where, and who serves them.

The registry is pure bookkeeping. It never touches a transport: the
[RelayPool][relaypool.core.pool.RelayPool] reads its answers and enqueues the
corresponding ``REQ`` / ``CLOSE`` messages. Every method is synchronous, so
each call is one atomic critical section on the event loop thread.

A subscription tracks three relay sets, always subsets of the pool's relays:

* ``targets`` -- relays the subscription should run on.
* ``serving`` -- targets that are connected and were sent the current ``REQ``.
* ``eose`` -- serving relays that reported end of stored events.

Ids are never reused: an id stays reserved after its subscription is
released, for the lifetime of the registry.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from relaypool.models.event import Event  # noqa: TC001
from relaypool.models.filter import Filter

from .exceptions import PoolUsageError, SubscriptionClosedError, UnknownSubscriptionError


SUBSCRIPTION_ID_MAX_LENGTH = 64


class SubscriptionConfig(BaseModel):
    """Subscription lifecycle settings."""

    close_grace_timeout: float = Field(
        default=5.0,
        ge=0.0,
        description="Seconds to wait for CLOSED acknowledgements before releasing a subscription",
    )


def generate_subscription_id() -> str:
    """Return a random 32-character hex subscription id."""
    return secrets.token_hex(16)


EventSink = Callable[[str, Event], None]


@dataclass(slots=True, eq=False)
class Subscription:
    """State of one subscription.

    Attributes:
        id: Stable subscription id, reused verbatim across reconnects.
        filters: Current filters, in order.
        targets: Relays the subscription should run on.
        serving: Relays currently serving it.
        eose: Relays that sent ``EOSE`` for the current ``REQ``.
        closed: Whether the caller closed it.
        pending_close: Relays that were sent ``CLOSE`` and have not acknowledged.
        sink: Private event sink; when set, events bypass the unified stream.
    """

    id: str
    filters: tuple[Filter, ...]
    targets: set[str]
    serving: set[str] = field(default_factory=set)
    eose: set[str] = field(default_factory=set)
    closed: bool = False
    pending_close: set[str] = field(default_factory=set)
    sink: EventSink | None = None
    close_handle: Any = field(default=None, repr=False)

    @property
    def is_private(self) -> bool:
        return self.sink is not None

    def eose_complete(self) -> bool:
        """Whether every serving relay has sent ``EOSE``."""
        return bool(self.serving) and self.serving <= self.eose


class SubscriptionRegistry:
    """Bookkeeping for every subscription of one pool."""

    def __init__(self, config: SubscriptionConfig | None = None) -> None:
        self._config = config or SubscriptionConfig()
        self._subscriptions: dict[str, Subscription] = {}
        self._issued: set[str] = set()

    @property
    def config(self) -> SubscriptionConfig:
        return self._config

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, subscription_id: object) -> bool:
        return subscription_id in self._subscriptions

    def __iter__(self) -> Iterator[Subscription]:
        return iter(list(self._subscriptions.values()))

    # -- Lookup ----------------------------------------------------------------

    def get(self, subscription_id: str) -> Subscription | None:
        return self._subscriptions.get(subscription_id)

    def require(self, subscription_id: str) -> Subscription:
        """Return the subscription or raise ``UnknownSubscriptionError``."""
        sub = self._subscriptions.get(subscription_id)
        if sub is None:
            raise UnknownSubscriptionError(f"unknown subscription: {subscription_id}")
        return sub

    def require_open(self, subscription_id: str) -> Subscription:
        sub = self.require(subscription_id)
        if sub.closed:
            raise SubscriptionClosedError(f"subscription {subscription_id} is closed")
        return sub

    def active(self) -> list[Subscription]:
        return [s for s in self._subscriptions.values() if not s.closed]

    def targeting(self, url: str) -> list[Subscription]:
        """Open subscriptions that should run on *url*, in creation order."""
        return [s for s in self._subscriptions.values() if not s.closed and url in s.targets]

    # -- Mutations -------------------------------------------------------------

    def create(
        self,
        filters: Sequence[Filter],
        targets: Iterable[str],
        *,
        subscription_id: str | None = None,
        sink: EventSink | None = None,
    ) -> Subscription:
        """Register a subscription and reserve its id.

        Raises:
            PoolUsageError: If no filter is given or the id was already issued.
        """
        filters = tuple(filters)
        if not filters:
            raise PoolUsageError("a subscription needs at least one filter")
        for f in filters:
            if not isinstance(f, Filter):
                raise PoolUsageError(f"expected Filter, got {type(f).__name__}")

        if subscription_id is None:
            subscription_id = generate_subscription_id()
            while subscription_id in self._issued:
                subscription_id = generate_subscription_id()
        else:
            if not subscription_id or len(subscription_id) > SUBSCRIPTION_ID_MAX_LENGTH:
                raise PoolUsageError(
                    f"subscription id must be 1..{SUBSCRIPTION_ID_MAX_LENGTH} characters"
                )
            if subscription_id in self._issued:
                raise PoolUsageError(f"subscription id already used: {subscription_id}")

        self._issued.add(subscription_id)
        sub = Subscription(id=subscription_id, filters=filters, targets=set(targets), sink=sink)
        self._subscriptions[subscription_id] = sub
        return sub

    def mark_served(self, subscription_id: str, url: str) -> None:
        """Record that *url* was sent the current ``REQ``."""
        sub = self.require(subscription_id)
        sub.serving.add(url)
        sub.eose.discard(url)

    def record_eose(self, subscription_id: str, url: str) -> Subscription | None:
        sub = self._subscriptions.get(subscription_id)
        if sub is None or url not in sub.serving:
            return None
        sub.eose.add(url)
        return sub

    def record_closed(self, subscription_id: str, url: str) -> tuple[Subscription | None, bool]:
        """Handle a relay ``CLOSED``.

        Returns:
            The subscription (``None`` when unknown) and whether the message
            acknowledged a ``CLOSE`` the pool sent, as opposed to the relay
            ending the subscription on its own.
        """
        sub = self._subscriptions.get(subscription_id)
        if sub is None:
            return None, False
        if url in sub.pending_close:
            sub.pending_close.discard(url)
            if sub.closed and not sub.pending_close:
                self.release(subscription_id)
            return sub, True
        sub.serving.discard(url)
        sub.eose.discard(url)
        return sub, False

    def update_filters(self, subscription_id: str, filters: Sequence[Filter]) -> Subscription:
        """Replace the filters of an open subscription.

        The serving set is kept; EOSE state restarts because every serving
        relay receives a new ``REQ``.
        """
        filters = tuple(filters)
        if not filters:
            raise PoolUsageError("a subscription needs at least one filter")
        sub = self.require_open(subscription_id)
        sub.filters = filters
        sub.eose.clear()
        return sub

    def close(self, subscription_id: str) -> tuple[Subscription, set[str]]:
        """Mark the subscription closed.

        Returns:
            The subscription and the relays that must be sent ``CLOSE``.

        Raises:
            UnknownSubscriptionError: If the id is unknown.
            SubscriptionClosedError: If it was already closed.
        """
        sub = self.require_open(subscription_id)
        sub.closed = True
        to_close = set(sub.serving)
        sub.pending_close = set(to_close)
        sub.serving.clear()
        if not to_close:
            self.release(subscription_id)
        return sub, to_close

    def release(self, subscription_id: str) -> Subscription | None:
        """Forget the subscription. Its id stays reserved."""
        sub = self._subscriptions.pop(subscription_id, None)
        if sub is not None and sub.close_handle is not None:
            sub.close_handle.cancel()
            sub.close_handle = None
        return sub

    def relay_severed(self, url: str) -> list[Subscription]:
        """Unmark *url* everywhere after its connection dropped.

        Pending close acknowledgements from *url* are considered received.
        """
        affected = []
        for sub in list(self._subscriptions.values()):
            if url in sub.serving or url in sub.eose:
                sub.serving.discard(url)
                sub.eose.discard(url)
                affected.append(sub)
            if url in sub.pending_close:
                sub.pending_close.discard(url)
                if sub.closed and not sub.pending_close:
                    self.release(sub.id)
        return affected

    def relay_removed(self, url: str) -> list[Subscription]:
        """Drop *url* from every relay set after it left the pool.

        Returns the subscriptions that were served by or targeted *url*.
        """
        affected = {sub.id: sub for sub in self.relay_severed(url)}
        for sub in self._subscriptions.values():
            if url in sub.targets:
                sub.targets.discard(url)
                affected[sub.id] = sub
        return list(affected.values())

    def clear(self) -> None:
        for sub_id in list(self._subscriptions):
            self.release(sub_id)

    def was_issued(self, subscription_id: str) -> bool:
        return subscription_id in self._issued

    def reserve_id(self) -> str:
        """Reserve a fresh id outside any subscription (negentropy sessions)."""
        subscription_id = generate_subscription_id()
        while subscription_id in self._issued:
            subscription_id = generate_subscription_id()
        self._issued.add(subscription_id)
        return subscription_id
