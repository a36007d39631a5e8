"""Core layer: connections, routing, deduplication, streams and reconciliation.

Sits at the top of the diamond DAG and depends on ``relaypool.models``,
``relaypool.nips`` and ``relaypool.utils``.

Attributes:
    RelayPool: The orchestrator. See [RelayPool][relaypool.core.pool.RelayPool].
    RelayConnection: Per-relay lifecycle state machine with backoff and an
        outbound queue. See [RelayConnection][relaypool.core.connection.RelayConnection].
    SubscriptionRegistry: Subscription bookkeeping with stable, never-reused
        ids. See [SubscriptionRegistry][relaypool.core.registry.SubscriptionRegistry].
    EventDeduplicator: Cross-relay dedup over a bounded
        [SeenEventIndex][relaypool.core.dedup.SeenEventIndex].
    ReconciliationEngine: NIP-77 sessions per relay.
    EventStream: Bounded multi-consumer broadcast.
    Logger: Structured logger supporting key=value and JSON output modes.
    MetricsServer: Prometheus ``/metrics`` HTTP endpoint.

Examples:
    ```python
    from relaypool.core import RelayPool, PoolConfig

    pool = RelayPool(PoolConfig(relays=["wss://relay.damus.io"]))
    async with pool:
        events = await pool.fetch_events(Filter(kinds=(0,), limit=10))
    ```
"""

from .connection import Backoff, BackoffConfig, RelayConnection, RelayOptions
from .dedup import DedupConfig, DedupOutcome, DedupResult, EventDeduplicator, SeenEventIndex
from .exceptions import (
    CapacityExceeded,
    ConfigurationError,
    OutboundQueueFull,
    PoolUsageError,
    ProtocolError,
    ReconciliationAbort,
    RelayPoolError,
    RelayRejection,
    RelaySSLError,
    RelayTerminatedError,
    RelayTimeoutError,
    SubscriptionClosedError,
    TransportError,
    UnknownRelayError,
    UnknownSubscriptionError,
)
from .logger import Logger, StructuredFormatter, format_kv_pairs
from .metrics import MetricsConfig, MetricsServer
from .pool import (
    DeliveryStatus,
    ExitOnEose,
    ExitPolicy,
    PoolConfig,
    PublishOutcome,
    PublishReport,
    PublishStatus,
    RelayConfig,
    RelayPool,
    RelaySyncResult,
    SubscribeReport,
    SyncOutcome,
    WaitDurationAfterEose,
    WaitForEventsAfterEose,
)
from .reconciliation import (
    NegentropyConfig,
    ReconciliationEngine,
    ReconciliationSession,
    SessionStatus,
)
from .registry import Subscription, SubscriptionConfig, SubscriptionRegistry
from .store import EventStore, MemoryEventStore
from .stream import EventStream, OverflowPolicy, StreamConfig, StreamConsumer, StreamItem
from .yaml import load_yaml


__all__ = [
    "Backoff",
    "BackoffConfig",
    "CapacityExceeded",
    "ConfigurationError",
    "DedupConfig",
    "DedupOutcome",
    "DedupResult",
    "DeliveryStatus",
    "EventDeduplicator",
    "EventStore",
    "EventStream",
    "ExitOnEose",
    "ExitPolicy",
    "Logger",
    "MemoryEventStore",
    "MetricsConfig",
    "MetricsServer",
    "NegentropyConfig",
    "OutboundQueueFull",
    "OverflowPolicy",
    "PoolConfig",
    "PoolUsageError",
    "ProtocolError",
    "PublishOutcome",
    "PublishReport",
    "PublishStatus",
    "ReconciliationAbort",
    "ReconciliationEngine",
    "ReconciliationSession",
    "RelayConfig",
    "RelayConnection",
    "RelayOptions",
    "RelayPool",
    "RelayPoolError",
    "RelayRejection",
    "RelaySSLError",
    "RelaySyncResult",
    "RelayTerminatedError",
    "RelayTimeoutError",
    "SeenEventIndex",
    "SessionStatus",
    "StreamConfig",
    "StreamConsumer",
    "StreamItem",
    "StructuredFormatter",
    "SubscribeReport",
    "Subscription",
    "SubscriptionClosedError",
    "SubscriptionConfig",
    "SubscriptionRegistry",
    "SyncOutcome",
    "TransportError",
    "UnknownRelayError",
    "UnknownSubscriptionError",
    "WaitDurationAfterEose",
    "WaitForEventsAfterEose",
    "format_kv_pairs",
    "load_yaml",
]
