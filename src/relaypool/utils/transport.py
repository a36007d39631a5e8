"""WebSocket transport for relay connections.

A [Transport][relaypool.utils.transport.Transport] is one bidirectional text
channel to one relay. The connection state machine owns exactly one at a
time and creates a fresh one for every (re)connect through a
[TransportFactory][relaypool.utils.transport.TransportFactory].

[WebSocketTransport][relaypool.utils.transport.WebSocketTransport] is the
default implementation, built on aiohttp. Overlay relays (Tor, I2P, Lokinet)
are reached through a SOCKS5 proxy via ``aiohttp_socks.ProxyConnector``;
clearnet relays use a verified TLS context unless ``allow_insecure`` is set.

Errors surface as the standard library types the pool maps onto its own
hierarchy: ``TimeoutError`` for timeouts, ``ssl.SSLError`` for certificate
failures and ``OSError`` for everything else.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
from collections.abc import Callable
from dataclasses import dataclass
from typing import Final, Protocol

import aiohttp
from aiohttp_socks import ProxyConnector

from relaypool.models.relay import Relay


DEFAULT_TIMEOUT: Final[float] = 10.0

_WS_CLOSE_TIMEOUT = 5.0
_WS_MAX_MSG_SIZE = 16 * 1024 * 1024


logger = logging.getLogger("relaypool.utils.transport")


# Multi-word patterns for SSL/TLS certificate errors. Single keywords like
# "verify" or "handshake" are avoided to prevent false positives from
# unrelated errors (e.g. DNS "cannot verify hostname").
_SSL_ERROR_PATTERNS: tuple[str, ...] = (
    "ssl certificate",
    "certificate verify",
    "certificate has expired",
    "self signed certificate",
    "self-signed certificate",
    "unable to get local issuer",
    "x509",
    "tlsv1 alert",
    "ssl handshake",
    "tls handshake failed",
    "certificate_unknown",
    "certificate_expired",
    "ssl error",
    "tls error",
    "cert verify failed",
)


def is_ssl_error(error_message: str) -> bool:
    """Check if an error message indicates an SSL/TLS certificate error."""
    error_lower = error_message.lower()
    return any(pattern in error_lower for pattern in _SSL_ERROR_PATTERNS)


class Transport(Protocol):
    """One bidirectional text channel to a relay."""

    async def connect(self, timeout: float) -> None:  # noqa: ASYNC109
        """Open the channel. Raises ``TimeoutError`` or ``OSError``."""
        ...

    async def send(self, frame: str) -> None:
        """Send one text frame. Raises ``OSError`` if the channel is broken."""
        ...

    async def receive(self) -> str | None:
        """Return the next text frame, or ``None`` once the channel closed."""
        ...

    async def close(self) -> None:
        """Release the channel. Idempotent and never raises."""
        ...


@dataclass(frozen=True, slots=True)
class TransportOptions:
    """Per-relay transport settings, derived from the relay's options."""

    proxy_url: str | None = None
    allow_insecure: bool = False
    heartbeat: float | None = None


TransportFactory = Callable[[Relay, TransportOptions], Transport]


def _ssl_context(allow_insecure: bool) -> ssl.SSLContext | bool:  # noqa: FBT001
    if not allow_insecure:
        return True
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


class WebSocketTransport:
    """aiohttp WebSocket client for a single relay.

    Warning:
        ``allow_insecure=True`` disables **all** certificate verification for
        the relay. Only enable it for relays known to serve self-signed or
        expired certificates.
    """

    def __init__(self, relay: Relay, options: TransportOptions | None = None) -> None:
        self._relay = relay
        self._options = options or TransportOptions()
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    @property
    def relay(self) -> Relay:
        return self._relay

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def _connector(self) -> aiohttp.BaseConnector:
        ssl_context = _ssl_context(self._options.allow_insecure)
        if self._relay.is_overlay and self._options.proxy_url:
            return ProxyConnector.from_url(self._options.proxy_url, ssl=ssl_context)
        return aiohttp.TCPConnector(ssl=ssl_context)

    async def connect(self, timeout: float = DEFAULT_TIMEOUT) -> None:  # noqa: ASYNC109
        """Perform the WebSocket handshake.

        Raises:
            TimeoutError: If the handshake does not finish within *timeout*.
            ssl.SSLError: On certificate failures.
            OSError: On any other connection failure.
        """
        if self._relay.is_overlay and not self._options.proxy_url:
            raise OSError(f"{self._relay.network} relay requires a proxy_url")

        session = aiohttp.ClientSession(connector=self._connector())
        try:
            ws = await asyncio.wait_for(
                session.ws_connect(
                    self._relay.url,
                    heartbeat=self._options.heartbeat,
                    max_msg_size=_WS_MAX_MSG_SIZE,
                    autoping=True,
                ),
                timeout=timeout,
            )
        except TimeoutError:
            await session.close()
            logger.debug("ws_connect_timeout url=%s", self._relay.url)
            raise
        except asyncio.CancelledError:
            await session.close()
            raise
        except aiohttp.ClientConnectorCertificateError as e:
            await session.close()
            raise ssl.SSLError(f"Certificate error: {e}") from e
        except (aiohttp.ClientError, ssl.SSLError, OSError) as e:
            await session.close()
            logger.debug("ws_connect_failed url=%s error=%s", self._relay.url, e)
            if isinstance(e, ssl.SSLError) or is_ssl_error(str(e)):
                raise ssl.SSLError(f"SSL error: {e}") from e
            raise OSError(f"Connection failed: {e}") from e

        self._session = session
        self._ws = ws

    async def send(self, frame: str) -> None:
        if self._ws is None or self._ws.closed:
            raise OSError("WebSocket is not open")
        try:
            await self._ws.send_str(frame)
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise OSError(f"Send failed: {e}") from e

    async def receive(self) -> str | None:
        if self._ws is None:
            return None
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                return str(msg.data)
            if msg.type == aiohttp.WSMsgType.BINARY:
                try:
                    return bytes(msg.data).decode("utf-8")
                except UnicodeDecodeError:
                    logger.debug("ws_binary_not_utf8 url=%s", self._relay.url)
                    continue
            if msg.type in (aiohttp.WSMsgType.PING, aiohttp.WSMsgType.PONG):
                continue
            # CLOSE, CLOSING, CLOSED, ERROR -> connection terminated
            return None

    async def close(self) -> None:
        """Close the WebSocket and session with timeouts to prevent hanging."""
        ws, self._ws = self._ws, None
        session, self._session = self._session, None
        # aiohttp can raise ClientError, ServerDisconnectedError, etc. during
        # close; teardown must always complete.
        if ws is not None:
            with contextlib.suppress(Exception):
                await asyncio.wait_for(ws.close(), timeout=_WS_CLOSE_TIMEOUT)
        if session is not None:
            with contextlib.suppress(Exception):
                await asyncio.wait_for(session.close(), timeout=_WS_CLOSE_TIMEOUT)

    def __repr__(self) -> str:
        return f"WebSocketTransport(url={self._relay.url}, open={self.is_open})"


def websocket_transport_factory(relay: Relay, options: TransportOptions) -> Transport:
    """Default [TransportFactory][relaypool.utils.transport.TransportFactory]."""
    return WebSocketTransport(relay, options)
