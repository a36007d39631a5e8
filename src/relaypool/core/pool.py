"""
Relay pool: one logical Nostr client over many independent relays.

The [RelayPool][relaypool.core.pool.RelayPool] owns every
[RelayConnection][relaypool.core.connection.RelayConnection], the
[SubscriptionRegistry][relaypool.core.registry.SubscriptionRegistry], the
[EventDeduplicator][relaypool.core.dedup.EventDeduplicator], the
[ReconciliationEngine][relaypool.core.reconciliation.ReconciliationEngine]
and the two broadcast streams (unified events and diagnostic notifications).

Each connection runs its own task and calls back into the pool through
synchronous hooks, so all routing (dedup, registry updates, stream
publication) happens in short critical sections on the event loop thread.
Per-relay failures never fail a pool-wide operation: publish, subscribe,
unsubscribe, update_filters, reconcile and sync return per-relay reports.
Only [PoolUsageError][relaypool.core.exceptions.PoolUsageError] subclasses
and [ConfigurationError][relaypool.core.exceptions.ConfigurationError]
reach the caller as exceptions.

Examples:
    ```python
    pool = RelayPool.from_yaml("config/pool.yaml")

    async with pool:
        await pool.wait_for_connection(timeout=10)
        report = pool.subscribe(Filter(kinds=(1,), limit=100))
        async for item in pool.stream():
            print(item.event.id, sorted(item.confirmed_by))
    ```

See Also:
    [PoolConfig][relaypool.core.pool.PoolConfig]: Aggregate configuration
        grouping every pool-related setting.
"""

from __future__ import annotations

import asyncio
import functools
import random
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path  # noqa: TC003
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from relaypool.models.constants import ConnectionStatus, NegentropyDirection, RelayServiceFlag
from relaypool.models.event import Event
from relaypool.models.filter import Filter
from relaypool.models.message import (
    AuthMessage,
    ClientMessage,
    CloseMessage,
    ClosedMessage,
    EoseMessage,
    EventMessage,
    NegErrMessage,
    NegMsgMessage,
    NoticeMessage,
    OkMessage,
    PublishMessage,
    RelayMessage,
    ReqMessage,
)
from relaypool.models.notification import (
    ConsumerOverflow,
    InvalidEvent,
    Notification,
    ProtocolViolation,
    RelayAuthChallenge,
    RelayNotice,
    RelayStatusChanged,
    SubscriptionClosedByRelay,
)
from relaypool.models.relay import Relay, normalize_relay_url
from relaypool.utils.keys import verify_event
from relaypool.utils.protocol import message_label
from relaypool.utils.transport import TransportFactory, websocket_transport_factory

from .connection import RelayConnection, RelayOptions
from .dedup import DedupConfig, EventDeduplicator
from .exceptions import (
    ConfigurationError,
    PoolUsageError,
    RelayPoolError,
    RelayRejection,
    TransportError,
    UnknownRelayError,
)
from .logger import Logger
from .metrics import (
    CONSUMER_OVERFLOWS,
    EVENTS_TOTAL,
    MESSAGES_RECEIVED,
    PUBLISH_OUTCOMES,
    RELAY_RECONNECTS,
    MetricsConfig,
    MetricsServer,
    clear_relay_status,
    set_relay_status,
)
from .reconciliation import NegentropyConfig, ReconciliationEngine, ReconciliationSession
from .registry import Subscription, SubscriptionConfig, SubscriptionRegistry
from .store import EventStore, MemoryEventStore
from .stream import EventStream, StreamConfig, StreamConsumer, StreamItem
from .yaml import load_yaml


_FRAME_PREVIEW_LENGTH = 1024
_DEFAULT_FETCH_TIMEOUT = 10.0

Verifier = Callable[[Event], bool]


# ---------------------------------------------------------------------------
# Configuration Models
# ---------------------------------------------------------------------------


class RelayConfig(BaseModel):
    """A relay added when the pool is constructed.

    YAML accepts either a bare URL string or a mapping with ``url`` and
    ``options``.
    """

    url: str = Field(description="Relay WebSocket URL")
    options: RelayOptions | None = Field(
        default=None, description="Overrides default_relay_options for this relay"
    )

    @model_validator(mode="before")
    @classmethod
    def accept_bare_url(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"url": data}
        return data

    @field_validator("url")
    @classmethod
    def normalize_url(cls, v: str) -> str:
        return normalize_relay_url(v)


class PoolConfig(BaseModel):
    """Aggregate configuration for a [RelayPool][relaypool.core.pool.RelayPool].

    Examples:
        ```yaml
        name: archive
        verify_events: true
        relays:
          - wss://relay.damus.io
          - url: ws://abcdef.onion
            options:
              proxy_url: socks5://127.0.0.1:9050
        dedup:
          capacity: 200000
        negentropy:
          direction: both
        ```
    """

    name: str = Field(default="default", min_length=1, description="Pool name (metrics label)")
    verify_events: bool = Field(default=True, description="Verify ids and signatures")
    relays: list[RelayConfig] = Field(default_factory=list)
    default_relay_options: RelayOptions = Field(default_factory=RelayOptions)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    notifications: StreamConfig = Field(default_factory=StreamConfig)
    subscriptions: SubscriptionConfig = Field(default_factory=SubscriptionConfig)
    negentropy: NegentropyConfig = Field(default_factory=NegentropyConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> PoolConfig:
        """Load the configuration from a YAML file.

        Raises:
            FileNotFoundError: If the file does not exist.
            ConfigurationError: If the YAML or any value is invalid.
        """
        return cls.from_dict(load_yaml(config_path))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PoolConfig:
        """Validate a configuration dictionary.

        Raises:
            ConfigurationError: If any value is invalid.
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid pool configuration: {e}") from e


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


class PublishStatus(StrEnum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    NOT_ATTEMPTED = "not_attempted"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class PublishOutcome:
    """What one relay did with a published event.

    Attributes:
        status: ``accepted``, ``rejected``, ``not_attempted`` or ``failed``.
        message: The relay's ``OK`` message, or why nothing was attempted.
        error: The [RelayRejection][relaypool.core.exceptions.RelayRejection]
            for rejected events.
    """

    status: PublishStatus
    message: str = ""
    error: RelayPoolError | None = field(default=None, compare=False)

    @property
    def accepted(self) -> bool:
        return self.status is PublishStatus.ACCEPTED


@dataclass(slots=True)
class PublishReport:
    """Per-relay outcomes of one publish."""

    event_id: str
    outcomes: dict[str, PublishOutcome] = field(default_factory=dict)

    def __getitem__(self, url: str) -> PublishOutcome:
        return self.outcomes[normalize_relay_url(url)]

    def _urls(self, status: PublishStatus) -> list[str]:
        return [url for url, o in self.outcomes.items() if o.status is status]

    @property
    def accepted(self) -> list[str]:
        return self._urls(PublishStatus.ACCEPTED)

    @property
    def rejected(self) -> list[str]:
        return self._urls(PublishStatus.REJECTED)

    @property
    def not_attempted(self) -> list[str]:
        return self._urls(PublishStatus.NOT_ATTEMPTED)

    @property
    def failed(self) -> list[str]:
        return self._urls(PublishStatus.FAILED)


class DeliveryStatus(StrEnum):
    SENT = "sent"
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass(slots=True)
class SubscribeReport:
    """Per-relay result of ``subscribe``, ``update_filters`` or ``unsubscribe``.

    ``deferred`` relays are targets that are not connected yet; they receive
    the ``REQ`` on their next ``CONNECTED`` transition.
    """

    subscription_id: str
    outcomes: dict[str, DeliveryStatus] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    def __getitem__(self, url: str) -> DeliveryStatus:
        return self.outcomes[normalize_relay_url(url)]

    @property
    def sent(self) -> list[str]:
        return [u for u, s in self.outcomes.items() if s is DeliveryStatus.SENT]

    @property
    def deferred(self) -> list[str]:
        return [u for u, s in self.outcomes.items() if s is DeliveryStatus.DEFERRED]

    @property
    def failed(self) -> list[str]:
        return [u for u, s in self.outcomes.items() if s is DeliveryStatus.FAILED]


# ---------------------------------------------------------------------------
# fetch_events exit policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ExitOnEose:
    """Return as soon as every serving relay sent ``EOSE``."""


@dataclass(frozen=True, slots=True)
class WaitForEventsAfterEose:
    """After ``EOSE``, wait for *count* additional live events."""

    count: int

    def __post_init__(self) -> None:
        if self.count < 0:
            raise ValueError(f"count must be >= 0, got {self.count}")


@dataclass(frozen=True, slots=True)
class WaitDurationAfterEose:
    """After ``EOSE``, keep collecting for *seconds*."""

    seconds: float

    def __post_init__(self) -> None:
        if self.seconds < 0:
            raise ValueError(f"seconds must be >= 0, got {self.seconds}")


ExitPolicy = ExitOnEose | WaitForEventsAfterEose | WaitDurationAfterEose


class _Fetch:
    """Collector behind a private ``fetch_events`` subscription."""

    __slots__ = ("after_eose", "changed", "closed_by", "eose", "events", "interrupted")

    def __init__(self) -> None:
        self.events: dict[str, Event] = {}
        self.after_eose = 0
        self.closed_by: set[str] = set()
        self.eose = asyncio.Event()
        self.changed = asyncio.Event()
        self.interrupted = False

    def add(self, _url: str, event: Event) -> None:
        if event.id in self.events:
            return
        self.events[event.id] = event
        if self.eose.is_set():
            self.after_eose += 1
        self.changed.set()

    def interrupt(self) -> None:
        self.interrupted = True
        self.eose.set()
        self.changed.set()


# ---------------------------------------------------------------------------
# Sync results
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RelaySyncResult:
    """Outcome of syncing one relay.

    Attributes:
        url: The relay.
        session: The reconciliation session (aborted or completed).
        received: Events fetched from the relay and newly saved locally.
        sent: Ids of local events the relay accepted.
        rejected: Local event id to rejection reason.
        fell_back: Whether a plain filter fetch replaced reconciliation.
    """

    url: str
    session: ReconciliationSession
    received: list[Event] = field(default_factory=list)
    sent: list[str] = field(default_factory=list)
    rejected: dict[str, str] = field(default_factory=dict)
    fell_back: bool = False


@dataclass(slots=True)
class SyncOutcome:
    """Per-relay results of [RelayPool.sync()][relaypool.core.pool.RelayPool.sync]."""

    filter: Filter
    direction: NegentropyDirection
    results: dict[str, RelaySyncResult] = field(default_factory=dict)

    def __getitem__(self, url: str) -> RelaySyncResult:
        return self.results[normalize_relay_url(url)]

    @property
    def received(self) -> list[Event]:
        """Every newly saved event across relays, without repeats."""
        seen: dict[str, Event] = {}
        for result in self.results.values():
            for event in result.received:
                seen.setdefault(event.id, event)
        return list(seen.values())

    @property
    def sent(self) -> set[str]:
        return {event_id for r in self.results.values() for event_id in r.sent}


def _batched(items: Sequence[str], size: int) -> Iterable[list[str]]:
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


class RelayPool:
    """Many relays presented as one client.

    Args:
        config: Pool configuration; defaults apply when omitted.
        store: Local events used by reconciliation and filled by ``sync``.
            Defaults to a fresh
            [MemoryEventStore][relaypool.core.store.MemoryEventStore].
        verifier: ``event -> bool`` authenticity check run on every inbound
            event when ``verify_events`` is enabled. Defaults to
            [verify_event][relaypool.utils.keys.verify_event].
        transport_factory: Creates transports for every connection attempt.
        rng: Random source for backoff jitter.

    Note:
        The pool is bound to the running event loop. Construct it, use it and
        shut it down from coroutines on the same loop.
    """

    def __init__(
        self,
        config: PoolConfig | None = None,
        *,
        store: EventStore | None = None,
        verifier: Verifier | None = None,
        transport_factory: TransportFactory = websocket_transport_factory,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._config = config or PoolConfig()
        self._name = self._config.name
        self._store: EventStore = store if store is not None else MemoryEventStore()
        self._verifier: Verifier | None = None
        if self._config.verify_events:
            self._verifier = verifier or verify_event
        self._transport_factory = transport_factory
        self._rng = rng
        self._logger = Logger("relaypool.pool")

        self._connections: dict[str, RelayConnection] = {}
        self._registry = SubscriptionRegistry(self._config.subscriptions)
        self._dedup = EventDeduplicator(self._config.dedup)
        self._events: EventStream[StreamItem] = EventStream(
            "events", self._config.stream, functools.partial(self._on_overflow, "events")
        )
        self._notifications: EventStream[Notification] = EventStream(
            "notifications",
            self._config.notifications,
            functools.partial(self._on_overflow, "notifications"),
        )
        self._engine = ReconciliationEngine(
            self._store,
            self._send_to,
            self._registry.reserve_id,
            self._config.negentropy,
            metrics_label=self._name,
        )
        self._metrics_server = MetricsServer(self._config.metrics)
        self._pending_ok: dict[tuple[str, str], asyncio.Future[PublishOutcome]] = {}
        self._fetches: dict[str, _Fetch] = {}
        self._started = False
        self._closed = False

        for entry in self._config.relays:
            self.add_relay(entry.url, entry.options)

    @classmethod
    def from_yaml(cls, config_path: str | Path, **kwargs: Any) -> RelayPool:
        """Create a pool from a YAML configuration file.

        Keyword arguments are forwarded to the constructor (store, verifier,
        transport_factory, rng).

        Raises:
            FileNotFoundError: If the file does not exist.
            ConfigurationError: If the configuration is invalid.
        """
        return cls(PoolConfig.from_yaml(config_path), **kwargs)

    @classmethod
    def from_dict(cls, data: dict[str, Any], **kwargs: Any) -> RelayPool:
        return cls(PoolConfig.from_dict(data), **kwargs)

    # -- Properties --------------------------------------------------------------

    @property
    def config(self) -> PoolConfig:
        return self._config

    @property
    def name(self) -> str:
        return self._name

    @property
    def store(self) -> EventStore:
        return self._store

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    @property
    def deduplicator(self) -> EventDeduplicator:
        return self._dedup

    @property
    def engine(self) -> ReconciliationEngine:
        return self._engine

    @property
    def relays(self) -> list[RelayConnection]:
        return list(self._connections.values())

    @property
    def is_closed(self) -> bool:
        return self._closed

    def relay(self, url: str | Relay) -> RelayConnection:
        """Return the connection for *url*.

        Raises:
            UnknownRelayError: If the relay is not in the pool.
        """
        return self._connections[self._known_url(url)]

    def status(self) -> dict[str, ConnectionStatus]:
        """Snapshot of every relay's connection status."""
        return {url: conn.status for url, conn in self._connections.items()}

    def subscriptions(self) -> list[Subscription]:
        """Open subscriptions, private fetches included."""
        return self._registry.active()

    # -- Relay management ----------------------------------------------------------

    def add_relay(self, url: str | Relay, options: RelayOptions | None = None) -> RelayConnection:
        """Add a relay. Idempotent per normalized URL.

        A relay added after [connect()][relaypool.core.pool.RelayPool.connect]
        starts connecting immediately.

        Raises:
            PoolUsageError: If the URL is invalid or the pool is shut down.
        """
        self._ensure_open()
        try:
            relay = url if isinstance(url, Relay) else Relay(url)
        except (ValueError, TypeError) as e:
            raise PoolUsageError(f"invalid relay url {url!r}: {e}") from e

        existing = self._connections.get(relay.url)
        if existing is not None:
            return existing

        conn = RelayConnection(
            relay,
            options or self._config.default_relay_options,
            transport_factory=self._transport_factory,
            on_status=self._handle_status,
            on_message=self._handle_message,
            on_violation=self._handle_violation,
            rng=self._rng,
        )
        self._connections[relay.url] = conn
        set_relay_status(self._name, relay.url, conn.status)
        self._logger.info("relay_added", relay=relay.url, network=relay.network)
        if self._started:
            conn.connect()
        return conn

    async def remove_relay(self, url: str | Relay) -> None:
        """Terminate a relay and forget it.

        Its reconciliation sessions are aborted, pending publish
        acknowledgements fail, and it is removed from every subscription. A
        fetch left with nothing to wait for returns at once.

        Raises:
            UnknownRelayError: If the relay is not in the pool.
        """
        key = self._known_url(url)
        conn = self._connections.pop(key)
        self._engine.relay_lost(key, "relay removed")
        self._fail_pending_ok(key, "relay removed")
        for sub in self._registry.relay_removed(key):
            self._check_fetch(sub)
        await conn.terminate()
        clear_relay_status(self._name, key)
        self._logger.info("relay_removed", relay=key)

    # -- Lifecycle -------------------------------------------------------------------

    async def connect(self) -> None:
        """Start every connection task and the metrics endpoint (when enabled)."""
        self._ensure_open()
        self._started = True
        await self._metrics_server.start()
        for conn in self._connections.values():
            if not conn.is_terminated:
                conn.connect()
        self._logger.info("pool_started", relays=len(self._connections))

    def connect_relay(self, url: str | Relay) -> None:
        """Start (or restart) the connection task of one relay.

        Raises:
            UnknownRelayError: If the relay is not in the pool.
            RelayTerminatedError: If the relay was terminated.
        """
        self._ensure_open()
        self.relay(url).connect()

    async def disconnect_relay(self, url: str | Relay) -> None:
        """Stop one relay without reconnecting; ``connect_relay`` may follow."""
        await self.relay(url).disconnect()

    async def wait_for_connection(
        self,
        timeout: float | None = None,  # noqa: ASYNC109
        relays: Iterable[str | Relay] | None = None,
    ) -> list[str]:
        """Wait until the relays are connected or *timeout* elapses.

        Returns:
            URLs connected when the wait ended.
        """
        conns = [self._connections[url] for url in self._resolve(relays, None)]
        await asyncio.gather(*(c.wait_until_connected(timeout) for c in conns))
        return [c.url for c in conns if c.is_connected]

    async def shutdown(self) -> None:
        """Cancel everything, terminate every relay and close both streams.

        Idempotent. Returns only once every connection task has stopped.
        """
        if self._closed:
            return
        self._closed = True
        self._logger.info("pool_shutdown_started", relays=len(self._connections))

        self._engine.abort_all("pool shut down")
        for key in list(self._pending_ok):
            self._fail_pending_ok(key[0], "pool shut down")
        for fetch in self._fetches.values():
            fetch.interrupt()
        self._fetches.clear()
        self._registry.clear()

        await asyncio.gather(*(conn.terminate() for conn in self._connections.values()))
        for url in self._connections:
            clear_relay_status(self._name, url)
        self._connections.clear()

        self._events.close()
        self._notifications.close()
        self._dedup.clear()
        await self._metrics_server.stop()
        self._logger.info("pool_shutdown_completed")

    async def __aenter__(self) -> RelayPool:
        await self.connect()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.shutdown()

    # -- Streams ---------------------------------------------------------------------

    def stream(self, name: str | None = None, buffer_size: int | None = None) -> StreamConsumer[StreamItem]:
        """Attach a consumer to the unified, deduplicated event stream."""
        return self._events.consumer(name, buffer_size)

    def notifications(
        self, name: str | None = None, buffer_size: int | None = None
    ) -> StreamConsumer[Notification]:
        """Attach a consumer to the diagnostic notification stream."""
        return self._notifications.consumer(name, buffer_size)

    # -- Publish ---------------------------------------------------------------------

    async def publish(
        self, event: Event, relays: Iterable[str | Relay] | None = None
    ) -> PublishReport:
        """Send *event* to the target relays and collect their ``OK`` answers.

        Targets default to every WRITE relay. Relays that are not connected
        are ``not_attempted``; nothing is queued for them. Each attempted
        relay is awaited for at most its ``send_timeout``.

        Raises:
            UnknownRelayError: If an explicit target is not in the pool.
        """
        self._ensure_open()
        targets = self._resolve(relays, RelayServiceFlag.WRITE)
        report = PublishReport(event.id)
        waits: dict[str, asyncio.Future[PublishOutcome]] = {}
        loop = asyncio.get_running_loop()

        for url in targets:
            conn = self._connections[url]
            if not conn.is_connected:
                report.outcomes[url] = PublishOutcome(
                    PublishStatus.NOT_ATTEMPTED, f"relay is {conn.status}"
                )
                continue
            key = (url, event.id)
            pending = self._pending_ok.get(key)
            if pending is not None:
                waits[url] = pending
                continue
            try:
                conn.send(PublishMessage(event))
            except RelayPoolError as e:
                report.outcomes[url] = PublishOutcome(PublishStatus.FAILED, str(e), e)
                continue
            future: asyncio.Future[PublishOutcome] = loop.create_future()
            self._pending_ok[key] = future
            waits[url] = future

        if waits:
            outcomes = await asyncio.gather(
                *(self._await_ok(url, event.id, fut) for url, fut in waits.items())
            )
            report.outcomes.update(zip(waits, outcomes, strict=True))

        for url, outcome in report.outcomes.items():
            PUBLISH_OUTCOMES.labels(pool=self._name, outcome=outcome.status.value).inc()
            if outcome.status is PublishStatus.REJECTED:
                self._logger.info("publish_rejected", relay=url, event_id=event.id, reason=outcome.message)
        self._logger.debug(
            "publish_completed",
            event_id=event.id,
            accepted=len(report.accepted),
            targets=len(targets),
        )
        return report

    async def _await_ok(
        self, url: str, event_id: str, future: asyncio.Future[PublishOutcome]
    ) -> PublishOutcome:
        conn = self._connections.get(url)
        timeout = conn.options.send_timeout if conn else self._config.default_relay_options.send_timeout
        try:
            async with asyncio.timeout(timeout):
                return await asyncio.shield(future)
        except TimeoutError:
            return PublishOutcome(PublishStatus.FAILED, f"no OK within {timeout}s")
        finally:
            if self._pending_ok.get((url, event_id)) is future:
                del self._pending_ok[(url, event_id)]

    def _fail_pending_ok(self, url: str, reason: str) -> None:
        for key in [k for k in self._pending_ok if k[0] == url]:
            future = self._pending_ok.pop(key)
            if not future.done():
                future.set_result(PublishOutcome(PublishStatus.FAILED, reason))

    # -- Subscriptions -----------------------------------------------------------------

    def subscribe(
        self,
        filters: Filter | Sequence[Filter],
        relays: Iterable[str | Relay] | None = None,
        *,
        subscription_id: str | None = None,
    ) -> SubscribeReport:
        """Open a subscription feeding the unified stream.

        Targets default to every READ relay in the pool at call time; relays
        added later are not included.

        Raises:
            PoolUsageError: No filters, or a reused or invalid id.
            UnknownRelayError: If an explicit target is not in the pool.
        """
        self._ensure_open()
        targets = self._resolve(relays, RelayServiceFlag.READ)
        sub = self._registry.create(_as_filters(filters), targets, subscription_id=subscription_id)
        report = self._issue(sub, targets)
        self._logger.info(
            "subscription_opened",
            subscription_id=sub.id,
            sent=len(report.sent),
            deferred=len(report.deferred),
            failed=len(report.failed),
        )
        return report

    def unsubscribe(self, subscription_id: str) -> SubscribeReport:
        """Close a subscription on every relay serving it.

        Bookkeeping is released once every relay acknowledged with
        ``CLOSED`` or after ``close_grace_timeout``. Events that arrive in the
        meantime are dropped.

        Raises:
            UnknownSubscriptionError: If the id is unknown.
            SubscriptionClosedError: If it is already closed.
        """
        sub, to_close = self._registry.close(subscription_id)
        report = SubscribeReport(sub.id)
        for url in sorted(to_close):
            conn = self._connections.get(url)
            if conn is None:
                continue
            conn.unmark_served(sub.id)
            try:
                self._send_to(url, CloseMessage(sub.id))
            except RelayPoolError as e:
                self._registry.record_closed(sub.id, url)
                report.outcomes[url] = DeliveryStatus.FAILED
                report.errors[url] = str(e)
            else:
                report.outcomes[url] = DeliveryStatus.SENT

        fetch = self._fetches.pop(sub.id, None)
        if fetch is not None:
            fetch.interrupt()
        if sub.id in self._registry:
            loop = asyncio.get_running_loop()
            sub.close_handle = loop.call_later(
                self._registry.config.close_grace_timeout, self._expire_close, sub.id
            )
        self._logger.debug("subscription_closed", subscription_id=sub.id, relays=len(to_close))
        return report

    def update_filters(
        self, subscription_id: str, filters: Filter | Sequence[Filter]
    ) -> SubscribeReport:
        """Replace the filters and re-issue ``REQ`` with the same id.

        Raises:
            UnknownSubscriptionError: If the id is unknown.
            SubscriptionClosedError: If it was closed.
        """
        sub = self._registry.update_filters(subscription_id, _as_filters(filters))
        report = SubscribeReport(sub.id)
        for url in sorted(sub.targets):
            if url in sub.serving:
                try:
                    self._send_to(url, ReqMessage(sub.id, sub.filters))
                except RelayPoolError as e:
                    report.outcomes[url] = DeliveryStatus.FAILED
                    report.errors[url] = str(e)
                else:
                    report.outcomes[url] = DeliveryStatus.SENT
            else:
                report.outcomes[url] = DeliveryStatus.DEFERRED
        self._logger.debug("subscription_updated", subscription_id=sub.id, filters=len(sub.filters))
        return report

    def _issue(self, sub: Subscription, urls: Iterable[str]) -> SubscribeReport:
        report = SubscribeReport(sub.id)
        for url in urls:
            conn = self._connections[url]
            if not conn.is_connected:
                report.outcomes[url] = DeliveryStatus.DEFERRED
                continue
            try:
                conn.send(ReqMessage(sub.id, sub.filters))
            except RelayPoolError as e:
                report.outcomes[url] = DeliveryStatus.FAILED
                report.errors[url] = str(e)
                self._logger.warning("subscription_send_failed", relay=url, subscription_id=sub.id, error=str(e))
                continue
            self._registry.mark_served(sub.id, url)
            conn.mark_served(sub.id)
            report.outcomes[url] = DeliveryStatus.SENT
        return report

    def _expire_close(self, subscription_id: str) -> None:
        sub = self._registry.get(subscription_id)
        if sub is None or not sub.closed:
            return
        self._logger.debug(
            "subscription_close_timeout",
            subscription_id=subscription_id,
            unacknowledged=len(sub.pending_close),
        )
        sub.close_handle = None
        self._registry.release(subscription_id)

    # -- Fetch -----------------------------------------------------------------------

    async def fetch_events(
        self,
        filters: Filter | Sequence[Filter],
        relays: Iterable[str | Relay] | None = None,
        *,
        timeout: float = _DEFAULT_FETCH_TIMEOUT,  # noqa: ASYNC109
        policy: ExitPolicy | None = None,
    ) -> list[Event]:
        """Collect stored events through a private subscription.

        Waits until every serving relay sent ``EOSE`` (or ended the
        subscription), applies *policy*, closes the subscription and returns
        the events, newest first. The fetch ends early with what it has when
        *timeout* elapses. Events are deduplicated within the fetch and never
        reach the unified stream.
        """
        self._ensure_open()
        policy = policy or ExitOnEose()
        targets = self._resolve(relays, RelayServiceFlag.READ)
        fetch = _Fetch()
        sub = self._registry.create(_as_filters(filters), targets, sink=fetch.add)
        self._fetches[sub.id] = fetch
        report = self._issue(sub, targets)

        try:
            if report.sent:
                try:
                    async with asyncio.timeout(timeout):
                        await self._wait_fetch(fetch, policy)
                except TimeoutError:
                    self._logger.debug(
                        "fetch_timeout", subscription_id=sub.id, events=len(fetch.events)
                    )
        finally:
            self._fetches.pop(sub.id, None)
            current = self._registry.get(sub.id)
            if current is not None and not current.closed:
                self.unsubscribe(sub.id)

        return sorted(fetch.events.values(), key=lambda e: (-e.created_at, e.id))

    @staticmethod
    async def _wait_fetch(fetch: _Fetch, policy: ExitPolicy) -> None:
        await fetch.eose.wait()
        if fetch.interrupted:
            return
        match policy:
            case WaitForEventsAfterEose(count=count):
                while fetch.after_eose < count and not fetch.interrupted:
                    fetch.changed.clear()
                    await fetch.changed.wait()
            case WaitDurationAfterEose(seconds=seconds):
                await asyncio.sleep(seconds)

    def _check_fetch(self, sub: Subscription) -> None:
        fetch = self._fetches.get(sub.id)
        if fetch is None or fetch.eose.is_set():
            return
        # Done once every serving relay sent EOSE, or nobody can serve anymore.
        if sub.eose_complete() or (not sub.serving and sub.targets <= fetch.closed_by):
            fetch.eose.set()
            fetch.changed.set()

    # -- Reconciliation ------------------------------------------------------------------

    async def reconcile(
        self, filter_: Filter, relays: Iterable[str | Relay] | None = None
    ) -> dict[str, ReconciliationSession]:
        """Run negentropy against each target relay concurrently.

        Targets default to every READ relay. A relay that is not connected
        yields an aborted session.
        """
        self._ensure_open()
        targets = self._resolve(relays, RelayServiceFlag.READ)
        sessions = await asyncio.gather(*(self._engine.reconcile(url, filter_) for url in targets))
        return dict(zip(targets, sessions, strict=True))

    async def sync(
        self,
        filter_: Filter,
        relays: Iterable[str | Relay] | None = None,
        *,
        direction: NegentropyDirection | None = None,
        fallback_to_fetch: bool = False,
    ) -> SyncOutcome:
        """Reconcile, then act on the difference.

        ``down`` fetches the ids the relay has in batches of
        ``fetch_batch_size`` and saves them to the store; ``up`` publishes
        local events the relay lacks. With *fallback_to_fetch* a relay whose
        reconciliation aborted is synced with a plain filter fetch instead.
        """
        direction = NegentropyDirection(direction or self._config.negentropy.direction)
        sessions = await self.reconcile(filter_, relays)
        outcome = SyncOutcome(filter_, direction)
        results = await asyncio.gather(
            *(
                self._sync_relay(url, session, filter_, direction, fallback_to_fetch)
                for url, session in sessions.items()
            )
        )
        outcome.results = {r.url: r for r in results}
        self._logger.info(
            "sync_completed",
            relays=len(results),
            received=len(outcome.received),
            sent=len(outcome.sent),
        )
        return outcome

    async def _sync_relay(
        self,
        url: str,
        session: ReconciliationSession,
        filter_: Filter,
        direction: NegentropyDirection,
        fallback_to_fetch: bool,  # noqa: FBT001
    ) -> RelaySyncResult:
        result = RelaySyncResult(url, session)
        timeout = self._config.negentropy.message_timeout

        if session.aborted:
            if fallback_to_fetch and direction.do_down and url in self._connections:
                result.fell_back = True
                self._logger.info("sync_fallback_fetch", relay=url, reason=session.abort_reason)
                events = await self.fetch_events(filter_, [url], timeout=timeout)
                await self._save_all(events, result)
            return result

        if direction.do_down and session.need_ids:
            batch_size = self._config.negentropy.fetch_batch_size
            for batch in _batched(session.need_ids, batch_size):
                if url not in self._connections:
                    break
                wanted = set(batch)
                events = await self.fetch_events(Filter(ids=tuple(batch)), [url], timeout=timeout)
                await self._save_all([e for e in events if e.id in wanted], result)

        if direction.do_up and session.have_ids:
            for event in await self._store.get(session.have_ids):
                if url not in self._connections:
                    break
                report = await self.publish(event, [url])
                outcome = report.outcomes[url]
                if outcome.accepted:
                    result.sent.append(event.id)
                else:
                    result.rejected[event.id] = outcome.message or outcome.status.value
        return result

    async def _save_all(self, events: Iterable[Event], result: RelaySyncResult) -> None:
        for event in events:
            if await self._store.save(event):
                result.received.append(event)

    # -- Connection hooks ------------------------------------------------------------------

    def _handle_status(
        self,
        conn: RelayConnection,
        old: ConnectionStatus,
        new: ConnectionStatus,
        reason: str | None,
    ) -> None:
        url = conn.url
        if url in self._connections:
            set_relay_status(self._name, url, new)
        if old is ConnectionStatus.DISCONNECTED and new is ConnectionStatus.CONNECTING:
            RELAY_RECONNECTS.labels(pool=self._name, relay=url).inc()
        self._notify(RelayStatusChanged(url=url, old=old, new=new, reason=reason))

        if new is ConnectionStatus.CONNECTED:
            subs = self._registry.targeting(url)
            for sub in subs:
                self._issue(sub, [url])
            if subs:
                self._logger.info("relay_resubscribed", relay=url, subscriptions=len(subs))
            return

        if new in (ConnectionStatus.DISCONNECTED, ConnectionStatus.TERMINATED):
            affected = self._registry.relay_severed(url)
            self._engine.relay_lost(url, f"relay {new}: {reason}" if reason else f"relay {new}")
            self._fail_pending_ok(url, f"relay {new}")
            for sub in affected:
                self._check_fetch(sub)

    def _handle_message(self, conn: RelayConnection, message: RelayMessage) -> None:
        url = conn.url
        MESSAGES_RECEIVED.labels(pool=self._name, type=message_label(message)).inc()
        match message:
            case EventMessage():
                self._on_event(url, message)
            case EoseMessage(subscription_id=sub_id):
                sub = self._registry.record_eose(sub_id, url)
                if sub is not None:
                    self._check_fetch(sub)
            case OkMessage():
                self._on_ok(url, message)
            case ClosedMessage():
                self._on_closed(conn, message)
            case NoticeMessage(message=text):
                self._logger.info("relay_notice", relay=url, notice=text)
                self._engine.handle_notice(url, text)
                self._notify(RelayNotice(url=url, message=text))
            case AuthMessage(challenge=challenge):
                self._logger.debug("relay_auth_challenge", relay=url)
                self._notify(RelayAuthChallenge(url=url, challenge=challenge))
            case NegMsgMessage():
                if not self._engine.handle_message(url, message):
                    self._violation(url, f"NEG-MSG for unknown session {message.subscription_id}")
            case NegErrMessage():
                if not self._engine.handle_error(url, message):
                    self._violation(url, f"NEG-ERR for unknown session {message.subscription_id}")

    def _handle_violation(self, conn: RelayConnection, reason: str, frame: str) -> None:
        self._violation(conn.url, reason, frame)

    # -- Routing -----------------------------------------------------------------------------

    def _on_event(self, url: str, message: EventMessage) -> None:
        event = message.event
        sub = self._registry.get(message.subscription_id)
        if sub is None or sub.closed or url not in sub.serving:
            EVENTS_TOTAL.labels(pool=self._name, outcome="dropped").inc()
            return
        try:
            matched = any(f.match(event) for f in sub.filters)
        except ValueError as e:
            self._reject_invalid(url, event, sub.id, str(e))
            return
        if not matched:
            self._violation(url, f"event {event.id} does not match subscription {sub.id}")
            return
        if self._verifier is not None and not self._verifier(event):
            self._reject_invalid(url, event, sub.id, "id or signature check failed")
            return
        if sub.sink is not None:
            sub.sink(url, event)
            return

        result = self._dedup.observe(event, url)
        if result.delivered:
            EVENTS_TOTAL.labels(pool=self._name, outcome="delivered").inc()
            self._events.publish(StreamItem(event, url, result.confirmed_by))
        else:
            EVENTS_TOTAL.labels(pool=self._name, outcome="duplicate").inc()

    def _on_ok(self, url: str, message: OkMessage) -> None:
        future = self._pending_ok.get((url, message.event_id))
        if future is None or future.done():
            self._logger.debug("unexpected_ok", relay=url, event_id=message.event_id)
            return
        if message.accepted:
            future.set_result(PublishOutcome(PublishStatus.ACCEPTED, message.message))
        else:
            future.set_result(
                PublishOutcome(
                    PublishStatus.REJECTED, message.message, RelayRejection(url, message.message)
                )
            )

    def _on_closed(self, conn: RelayConnection, message: ClosedMessage) -> None:
        url = conn.url
        sub_id = message.subscription_id
        if self._engine.handle_closed(url, sub_id, message.message):
            return
        sub, was_ack = self._registry.record_closed(sub_id, url)
        if sub is None:
            self._logger.debug("closed_for_unknown_subscription", relay=url, subscription_id=sub_id)
            return
        conn.unmark_served(sub_id)
        if was_ack:
            return

        rejection = RelayRejection(url, message.message)
        self._logger.warning(
            "subscription_closed_by_relay", subscription_id=sub_id, error=str(rejection)
        )
        self._notify(SubscriptionClosedByRelay(url=url, subscription_id=sub_id, message=message.message))
        fetch = self._fetches.get(sub_id)
        if fetch is not None:
            fetch.closed_by.add(url)
            self._check_fetch(sub)

    def _reject_invalid(self, url: str, event: Event, subscription_id: str, reason: str) -> None:
        EVENTS_TOTAL.labels(pool=self._name, outcome="invalid").inc()
        self._logger.warning("event_invalid", relay=url, event_id=event.id, reason=reason)
        self._notify(InvalidEvent(url=url, event_id=event.id, subscription_id=subscription_id))

    def _violation(self, url: str, reason: str, frame: str | None = None) -> None:
        self._logger.warning("protocol_violation", relay=url, reason=reason)
        if frame is not None and len(frame) > _FRAME_PREVIEW_LENGTH:
            frame = frame[:_FRAME_PREVIEW_LENGTH]
        self._notify(ProtocolViolation(url=url, reason=reason, frame=frame))

    def _notify(self, notification: Notification) -> None:
        self._notifications.publish(notification)

    def _on_overflow(
        self, stream: str, consumer: StreamConsumer[Any], dropped: int, disconnected: bool  # noqa: FBT001
    ) -> None:
        CONSUMER_OVERFLOWS.labels(pool=self._name, stream=stream).inc(dropped)
        self._logger.warning(
            "consumer_overflow",
            stream=stream,
            consumer=consumer.name,
            dropped=consumer.dropped,
            disconnected=disconnected,
        )
        # Reporting an overflow of the notification stream on itself would recurse.
        if stream != "notifications":
            self._notify(
                ConsumerOverflow(
                    stream=stream,
                    consumer=consumer.name,
                    dropped=consumer.dropped,
                    disconnected=disconnected,
                )
            )

    # -- Helpers -------------------------------------------------------------------------------

    def _send_to(self, url: str, message: ClientMessage) -> None:
        conn = self._connections.get(url)
        if conn is None:
            raise UnknownRelayError(f"relay not in pool: {url}")
        if not conn.is_connected:
            raise TransportError(f"relay {url} is {conn.status}")
        conn.send(message)

    def _known_url(self, url: str | Relay) -> str:
        try:
            key = normalize_relay_url(url)
        except (ValueError, TypeError) as e:
            raise UnknownRelayError(f"invalid relay url {url!r}: {e}") from e
        if key not in self._connections:
            raise UnknownRelayError(f"relay not in pool: {key}")
        return key

    def _resolve(
        self, relays: Iterable[str | Relay] | None, flag: RelayServiceFlag | None
    ) -> list[str]:
        if relays is None:
            return [
                url
                for url, conn in self._connections.items()
                if flag is None or conn.flags & flag
            ]
        if isinstance(relays, str | Relay):
            relays = [relays]
        resolved: list[str] = []
        for r in relays:
            key = self._known_url(r)
            if key not in resolved:
                resolved.append(key)
        return resolved

    def _ensure_open(self) -> None:
        if self._closed:
            raise PoolUsageError("pool is shut down")

    def __repr__(self) -> str:
        connected = sum(1 for c in self._connections.values() if c.is_connected)
        return (
            f"RelayPool(name={self._name}, relays={len(self._connections)}, "
            f"connected={connected}, subscriptions={len(self._registry)})"
        )


def _as_filters(filters: Filter | Sequence[Filter]) -> list[Filter]:
    if isinstance(filters, Filter):
        return [filters]
    return list(filters)
