"""
Prometheus metrics collection and HTTP exposition.

Defines module-level metric objects (singletons, thread-safe) shared by every
pool in the process. Each metric carries a ``pool`` label so several pools
can coexist, and per-relay metrics additionally carry ``relay``.

The ``MetricsServer`` provides an async HTTP endpoint (via aiohttp) for
Prometheus scraping. It is started by
[RelayPool.connect()][relaypool.core.pool.RelayPool.connect] when
``MetricsConfig.enabled`` is set.

Architecture:
    RELAY_STATUS:               One-hot gauge of each relay's connection state.
    RELAY_RECONNECTS:           Reconnect attempts per relay.
    MESSAGES_RECEIVED:          Inbound relay messages by type.
    EVENTS_TOTAL:               Events by outcome (delivered/duplicate/invalid).
    PUBLISH_OUTCOMES:           Per-relay publish results by outcome.
    CONSUMER_OVERFLOWS:         Stream consumer buffer overflows.
    RECONCILIATIONS:            Negentropy sessions by final status.
    RECONCILIATION_ROUNDS:      Histogram of rounds per negentropy session.
"""

from __future__ import annotations

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from pydantic import BaseModel, Field

from relaypool.models.constants import ConnectionStatus


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class MetricsConfig(BaseModel):
    """Configuration for the Prometheus metrics endpoint.

    The endpoint is only started when ``enabled`` is True. Metric objects are
    updated regardless, so an application exposing its own endpoint still
    sees them.
    """

    enabled: bool = Field(default=False, description="Enable the /metrics endpoint")
    port: int = Field(default=8000, ge=1024, le=65535, description="Metrics HTTP port")
    host: str = Field(default="127.0.0.1", description="Metrics HTTP bind address")
    path: str = Field(default="/metrics", description="Metrics endpoint path")


# ---------------------------------------------------------------------------
# Pool Metrics
# ---------------------------------------------------------------------------

RELAY_STATUS = Gauge(
    "relaypool_relay_status",
    "Relay connection state (1 for the current state, 0 otherwise)",
    ["pool", "relay", "status"],
)

RELAY_RECONNECTS = Counter(
    "relaypool_relay_reconnects",
    "Reconnect attempts scheduled after a failure or severance",
    ["pool", "relay"],
)

MESSAGES_RECEIVED = Counter(
    "relaypool_messages_received",
    "Relay messages received, by message type",
    ["pool", "type"],
)

EVENTS_TOTAL = Counter(
    "relaypool_events",
    "Events received from relays, by routing outcome",
    ["pool", "outcome"],
)

PUBLISH_OUTCOMES = Counter(
    "relaypool_publish_outcomes",
    "Per-relay publish results, by outcome",
    ["pool", "outcome"],
)

CONSUMER_OVERFLOWS = Counter(
    "relaypool_consumer_overflows",
    "Stream consumer buffer overflows",
    ["pool", "stream"],
)

RECONCILIATIONS = Counter(
    "relaypool_reconciliations",
    "Negentropy reconciliation sessions by final status",
    ["pool", "status"],
)

RECONCILIATION_ROUNDS = Histogram(
    "relaypool_reconciliation_rounds",
    "Message rounds per negentropy reconciliation session",
    ["pool"],
    buckets=(1, 2, 3, 5, 8, 13, 21, 34, 64, 128, 256),
)


def set_relay_status(pool: str, relay: str, status: ConnectionStatus) -> None:
    """Mark *status* as the current state of *relay* in the one-hot gauge."""
    for candidate in ConnectionStatus:
        RELAY_STATUS.labels(pool=pool, relay=relay, status=candidate.value).set(
            1 if candidate is status else 0
        )


def clear_relay_status(pool: str, relay: str) -> None:
    """Remove every status series of a relay that left the pool."""
    for candidate in ConnectionStatus:
        try:
            RELAY_STATUS.remove(pool, relay, candidate.value)
        except KeyError:
            continue


# ---------------------------------------------------------------------------
# HTTP Server
# ---------------------------------------------------------------------------


class MetricsServer:
    """Async HTTP server exposing a Prometheus-compatible /metrics endpoint.

    Example:
        server = MetricsServer(MetricsConfig(enabled=True, port=8001))
        await server.start()
        # ... pool runs ...
        await server.stop()
    """

    def __init__(self, config: MetricsConfig) -> None:
        self._config = config
        self._runner: web.AppRunner | None = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        """Start listening for Prometheus scrape requests.

        Returns immediately (no-op) if metrics are disabled or the server is
        already running.

        Raises:
            OSError: If the port is already in use or binding fails.
        """
        if not self._config.enabled or self._runner is not None:
            return

        app = web.Application()
        app.router.add_get(self._config.path, self._handle_metrics)

        runner = web.AppRunner(app, access_log=None)
        await runner.setup()

        site = web.TCPSite(runner, self._config.host, self._config.port)
        await site.start()
        self._runner = runner

    async def stop(self) -> None:
        """Stop the HTTP server and release resources. Idempotent."""
        if self._runner:
            runner, self._runner = self._runner, None
            await runner.cleanup()

    @staticmethod
    async def _handle_metrics(_request: web.Request) -> web.Response:
        """Serve the latest Prometheus metrics in exposition format."""
        output = generate_latest()
        return web.Response(
            body=output,
            headers={"Content-Type": CONTENT_TYPE_LATEST},
        )
