"""
Per-relay connection state machine.

Each [RelayConnection][relaypool.core.connection.RelayConnection] owns one
transport channel at a time and drives its own lifecycle independently of
every other relay:

```text
INITIALIZED --connect()--> CONNECTING --handshake ok--> CONNECTED
                              |    ^                        |
                   failure    |    | backoff elapsed        | error / closed by relay
                              v    |                        v
                           DISCONNECTED <-------------------+
any state --terminate()--> TERMINATED (final)
```

While ``CONNECTED`` a writer task drains the bounded outbound queue in FIFO
order and a reader task decodes every inbound frame and hands it to the
message hook in arrival order. A frame that fails to decode is reported to
the violation hook and skipped; it never tears the connection down.

When the link drops the outbound queue is discarded, the status hook fires
(the pool uses it to unmark subscriptions and abort reconciliation sessions)
and a reconnect is scheduled after an exponential backoff with jitter,
capped at ``max_delay`` and reset on every successful ``CONNECTED``
transition. On reconnection the status hook fires again and the pool
re-issues every subscription targeting the relay.

Hooks are synchronous and must not block: they run on the event loop inside
the connection task.
"""

from __future__ import annotations

import asyncio
import contextlib
import random
import ssl
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field, ValidationInfo, field_validator

from relaypool.models.constants import DEFAULT_RELAY_FLAGS, ConnectionStatus, RelayServiceFlag
from relaypool.models.message import ClientMessage, RelayMessage  # noqa: TC001
from relaypool.models.relay import Relay
from relaypool.utils.protocol import (
    MessageDecodeError,
    decode_relay_message,
    encode_client_message,
)
from relaypool.utils.transport import (
    Transport,
    TransportFactory,
    TransportOptions,
    websocket_transport_factory,
)

from .exceptions import (
    OutboundQueueFull,
    RelaySSLError,
    RelayTerminatedError,
    RelayTimeoutError,
    TransportError,
)
from .logger import Logger


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class BackoffConfig(BaseModel):
    """Reconnect delay curve.

    The n-th consecutive failure waits
    ``min(min_delay * multiplier**n, max_delay)`` seconds, scaled by a random
    factor in ``[1 - jitter, 1 + jitter]`` and capped again at ``max_delay``.
    """

    min_delay: float = Field(default=1.0, ge=0.0, description="First retry delay (seconds)")
    max_delay: float = Field(default=60.0, ge=0.0, description="Maximum retry delay (seconds)")
    multiplier: float = Field(default=2.0, ge=1.0, description="Growth factor per failure")
    jitter: float = Field(default=0.1, ge=0.0, le=1.0, description="Relative random spread")

    @field_validator("max_delay")
    @classmethod
    def validate_max_delay(cls, v: float, info: ValidationInfo) -> float:
        """Ensure max_delay >= min_delay."""
        min_delay = info.data.get("min_delay", 1.0)
        if v < min_delay:
            raise ValueError(f"max_delay ({v}) must be >= min_delay ({min_delay})")
        return v


class RelayOptions(BaseModel):
    """Per-relay connection settings.

    ``flags`` accepts an integer, a
    [RelayServiceFlag][relaypool.models.constants.RelayServiceFlag] or a list
    of flag names (``["read", "write"]``) so it reads naturally in YAML.
    """

    flags: RelayServiceFlag = Field(default=DEFAULT_RELAY_FLAGS, description="READ/WRITE/PING")
    reconnect: bool = Field(default=True, description="Reconnect after failures")
    connect_timeout: float = Field(default=10.0, gt=0.0, description="Handshake timeout")
    send_timeout: float = Field(
        default=10.0, gt=0.0, description="Frame send and publish acknowledgement timeout"
    )
    max_queue_size: int = Field(default=1024, ge=1, description="Outbound queue capacity")
    ping_interval: float = Field(
        default=30.0, gt=0.0, description="Heartbeat interval when the PING flag is set"
    )
    proxy_url: str | None = Field(default=None, description="SOCKS5 proxy for overlay relays")
    allow_insecure: bool = Field(default=False, description="Skip TLS certificate checks")
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)

    @field_validator("flags", mode="before")
    @classmethod
    def parse_flags(cls, v: Any) -> Any:
        if isinstance(v, list | tuple | set | frozenset):
            flags = RelayServiceFlag.NONE
            for name in v:
                try:
                    flags |= RelayServiceFlag[str(name).upper()]
                except KeyError:
                    raise ValueError(f"unknown relay flag: {name!r}") from None
            return flags
        return v

    def transport_options(self) -> TransportOptions:
        heartbeat = self.ping_interval if self.flags & RelayServiceFlag.PING else None
        return TransportOptions(
            proxy_url=self.proxy_url,
            allow_insecure=self.allow_insecure,
            heartbeat=heartbeat,
        )


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


class Backoff:
    """Stateful exponential backoff with jitter."""

    def __init__(self, config: BackoffConfig, rng: Callable[[], float] = random.random) -> None:
        self._config = config
        self._rng = rng
        self._attempts = 0

    @property
    def attempts(self) -> int:
        """Consecutive failures since the last reset."""
        return self._attempts

    def next_delay(self) -> float:
        cfg = self._config
        base = min(cfg.min_delay * (cfg.multiplier**self._attempts), cfg.max_delay)
        self._attempts += 1
        spread = base * cfg.jitter * (2 * self._rng() - 1)
        return max(0.0, min(base + spread, cfg.max_delay))

    def reset(self) -> None:
        self._attempts = 0


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

StatusHook = Callable[["RelayConnection", ConnectionStatus, ConnectionStatus, "str | None"], None]
MessageHook = Callable[["RelayConnection", RelayMessage], None]
ViolationHook = Callable[["RelayConnection", str, str], None]


def _transport_error(error: BaseException) -> TransportError:
    if isinstance(error, TransportError):
        return error
    if isinstance(error, TimeoutError):
        return RelayTimeoutError(str(error) or "timed out")
    if isinstance(error, ssl.SSLError):
        return RelaySSLError(str(error))
    return TransportError(str(error) or type(error).__name__)


class RelayConnection:
    """Lifecycle, outbound queue and inbound dispatch for one relay.

    Owned exclusively by a [RelayPool][relaypool.core.pool.RelayPool], which
    installs the hooks. Usable standalone for tests and tools.

    Args:
        relay: The relay to connect to.
        options: Connection settings.
        transport_factory: Creates a fresh transport for every attempt.
        on_status: ``(connection, old, new, reason)`` on every transition.
        on_message: ``(connection, message)`` for every decoded frame.
        on_violation: ``(connection, reason, frame)`` for undecodable frames.
        rng: Random source for backoff jitter.
    """

    def __init__(
        self,
        relay: Relay,
        options: RelayOptions | None = None,
        *,
        transport_factory: TransportFactory = websocket_transport_factory,
        on_status: StatusHook | None = None,
        on_message: MessageHook | None = None,
        on_violation: ViolationHook | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._relay = relay
        self._options = options or RelayOptions()
        self._transport_factory = transport_factory
        self._on_status = on_status
        self._on_message = on_message
        self._on_violation = on_violation
        self._backoff = Backoff(self._options.backoff, rng)
        self._logger = Logger("relaypool.connection").bind(relay=relay.url)

        self._status = ConnectionStatus.INITIALIZED
        self._queue: asyncio.Queue[ClientMessage] = asyncio.Queue(self._options.max_queue_size)
        self._transport: Transport | None = None
        self._task: asyncio.Task[None] | None = None
        self._connected = asyncio.Event()
        self._served: set[str] = set()
        self._last_error: TransportError | None = None
        self._connects = 0

    # -- Properties ------------------------------------------------------------

    @property
    def relay(self) -> Relay:
        return self._relay

    @property
    def url(self) -> str:
        return self._relay.url

    @property
    def options(self) -> RelayOptions:
        return self._options

    @property
    def flags(self) -> RelayServiceFlag:
        return self._options.flags

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED

    @property
    def is_terminated(self) -> bool:
        return self._status is ConnectionStatus.TERMINATED

    @property
    def last_error(self) -> TransportError | None:
        return self._last_error

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    @property
    def served_subscriptions(self) -> frozenset[str]:
        """Subscription ids this relay currently serves."""
        return frozenset(self._served)

    @property
    def connect_count(self) -> int:
        """Successful handshakes since construction."""
        return self._connects

    # -- Subscription bookkeeping -------------------------------------------------

    def mark_served(self, subscription_id: str) -> None:
        self._served.add(subscription_id)

    def unmark_served(self, subscription_id: str) -> None:
        self._served.discard(subscription_id)

    # -- Lifecycle -----------------------------------------------------------------

    def connect(self) -> None:
        """Start the connection task. No-op while it is already running.

        Raises:
            RelayTerminatedError: If the connection was terminated.
        """
        if self.is_terminated:
            raise RelayTerminatedError(f"relay {self.url} is terminated")
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name=f"relay:{self.url}")
        self._task.add_done_callback(self._on_task_done)

    async def disconnect(self) -> None:
        """Stop the connection task without reconnecting. ``connect()`` may follow."""
        if self.is_terminated:
            return
        await self._stop_task()
        await self._close_transport()
        self._discard_queue()
        if self._status is not ConnectionStatus.INITIALIZED:
            self._set_status(ConnectionStatus.DISCONNECTED, "disconnected by client")

    async def terminate(self) -> None:
        """Release the transport and stop for good. Idempotent."""
        if self.is_terminated:
            return
        await self._stop_task()
        await self._close_transport()
        self._discard_queue()
        self._set_status(ConnectionStatus.TERMINATED, "terminated")

    async def wait_until_connected(self, timeout: float | None = None) -> bool:  # noqa: ASYNC109
        """Wait for the ``CONNECTED`` state. Returns False on timeout."""
        if self.is_connected:
            return True
        try:
            async with asyncio.timeout(timeout):
                await self._connected.wait()
        except TimeoutError:
            return False
        return self.is_connected

    # -- Outbound ------------------------------------------------------------------

    def send(self, message: ClientMessage) -> None:
        """Enqueue *message* for the writer.

        Raises:
            RelayTerminatedError: If the connection was terminated.
            OutboundQueueFull: If the queue holds ``max_queue_size`` messages.
        """
        if self.is_terminated:
            raise RelayTerminatedError(f"relay {self.url} is terminated")
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            raise OutboundQueueFull(
                f"outbound queue of {self.url} is full ({self._options.max_queue_size})"
            ) from None

    # -- Internals -------------------------------------------------------------------

    def _set_status(self, new: ConnectionStatus, reason: str | None = None) -> None:
        old = self._status
        if old is new:
            return
        self._status = new
        if new is ConnectionStatus.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()
        if new is not ConnectionStatus.CONNECTED:
            self._served.clear()
        self._logger.debug("relay_status_changed", old=old, new=new, reason=reason)
        if self._on_status is not None:
            self._on_status(self, old, new, reason)

    def _discard_queue(self) -> int:
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            dropped += 1
        if dropped:
            self._logger.debug("outbound_queue_discarded", dropped=dropped)
        return dropped

    async def _stop_task(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._logger.error("relay_task_crashed", error=repr(error))

    async def _run(self) -> None:
        while True:
            self._set_status(ConnectionStatus.CONNECTING)
            transport = self._transport_factory(self._relay, self._options.transport_options())
            self._transport = transport
            try:
                async with asyncio.timeout(self._options.connect_timeout):
                    await transport.connect(self._options.connect_timeout)
            except asyncio.CancelledError:
                await self._close_transport()
                raise
            except Exception as e:  # noqa: BLE001  # connect error boundary: every failure retries
                await self._close_transport()
                self._last_error = _transport_error(e)
                self._logger.warning(
                    "relay_connect_failed",
                    error=str(self._last_error),
                    error_type=type(self._last_error).__name__,
                    attempt=self._backoff.attempts + 1,
                )
                self._set_status(ConnectionStatus.DISCONNECTED, str(self._last_error))
                if not await self._wait_before_reconnect():
                    return
                continue

            self._backoff.reset()
            self._last_error = None
            self._connects += 1
            self._logger.info("relay_connected", connects=self._connects)
            self._set_status(ConnectionStatus.CONNECTED)

            reason = await self._serve(transport)

            await self._close_transport()
            self._discard_queue()
            self._logger.warning("relay_disconnected", reason=reason)
            self._set_status(ConnectionStatus.DISCONNECTED, reason)
            if not await self._wait_before_reconnect():
                return

    async def _wait_before_reconnect(self) -> bool:
        if not self._options.reconnect:
            self._logger.info("relay_reconnect_disabled")
            return False
        delay = self._backoff.next_delay()
        self._logger.info(
            "relay_reconnect_scheduled", delay=round(delay, 3), attempt=self._backoff.attempts
        )
        await asyncio.sleep(delay)
        return True

    async def _serve(self, transport: Transport) -> str:
        """Run reader and writer until either stops. Returns the reason."""
        reader = asyncio.create_task(self._read_loop(transport), name=f"reader:{self.url}")
        writer = asyncio.create_task(self._write_loop(transport), name=f"writer:{self.url}")
        try:
            done, _ = await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (reader, writer):
                task.cancel()
            await asyncio.gather(reader, writer, return_exceptions=True)

        for task in done:
            if task.cancelled():
                continue
            error = task.exception()
            if error is not None:
                self._last_error = _transport_error(error)
                return f"{type(error).__name__}: {error}"
            return str(task.result())
        return "stopped"

    async def _read_loop(self, transport: Transport) -> str:
        while True:
            frame = await transport.receive()
            if frame is None:
                return "connection closed by relay"
            try:
                message = decode_relay_message(frame)
            except MessageDecodeError as e:
                self._logger.debug("relay_frame_invalid", error=str(e))
                if self._on_violation is not None:
                    self._on_violation(self, str(e), frame)
                continue
            if self._on_message is not None:
                self._on_message(self, message)

    async def _write_loop(self, transport: Transport) -> str:
        while True:
            message = await self._queue.get()
            frame = encode_client_message(message)
            async with asyncio.timeout(self._options.send_timeout):
                await transport.send(frame)

    def __repr__(self) -> str:
        return f"RelayConnection(url={self.url}, status={self._status})"
