"""
Unit tests for utils.transport module.

Tests:
- is_ssl_error() detection
- WebSocketTransport overlay proxy requirement
- Connection error mapping (timeout, SSL, OSError)
- Frame receive handling (text, binary, control, close)
"""

import asyncio
import ssl
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from relaypool.models import Relay
from relaypool.utils.transport import (
    TransportOptions,
    WebSocketTransport,
    is_ssl_error,
    websocket_transport_factory,
)


CLEARNET = Relay("wss://relay.example.com")
TOR = Relay("ws://" + "a" * 56 + ".onion")


def _ws_message(msg_type: aiohttp.WSMsgType, data: object = None) -> MagicMock:
    msg = MagicMock()
    msg.type = msg_type
    msg.data = data
    return msg


def _session(ws_connect: AsyncMock) -> MagicMock:
    session = MagicMock()
    session.ws_connect = ws_connect
    session.close = AsyncMock()
    return session


# =============================================================================
# is_ssl_error() Tests
# =============================================================================


class TestIsSslError:
    @pytest.mark.parametrize(
        "message",
        [
            "SSL certificate problem",
            "[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed",
            "certificate has expired",
            "self-signed certificate in chain",
            "X509 error",
        ],
    )
    def test_ssl_messages(self, message: str) -> None:
        assert is_ssl_error(message)

    @pytest.mark.parametrize(
        "message", ["Connection refused", "timed out", "cannot verify hostname", ""]
    )
    def test_non_ssl_messages(self, message: str) -> None:
        assert not is_ssl_error(message)


# =============================================================================
# Connect Tests
# =============================================================================


class TestConnect:
    async def test_overlay_requires_proxy(self) -> None:
        transport = WebSocketTransport(TOR)
        with pytest.raises(OSError, match="proxy_url"):
            await transport.connect(1.0)

    async def test_overlay_uses_proxy_connector(self) -> None:
        transport = WebSocketTransport(TOR, TransportOptions(proxy_url="socks5://127.0.0.1:9050"))
        with patch("relaypool.utils.transport.ProxyConnector.from_url") as from_url:
            transport._connector()
        from_url.assert_called_once()
        assert from_url.call_args[0][0] == "socks5://127.0.0.1:9050"

    async def test_success(self) -> None:
        ws = MagicMock()
        ws.closed = False
        session = _session(AsyncMock(return_value=ws))
        transport = WebSocketTransport(CLEARNET, TransportOptions(heartbeat=20.0))
        with patch("relaypool.utils.transport.aiohttp.ClientSession", return_value=session):
            await transport.connect(1.0)
        assert transport.is_open
        kwargs = session.ws_connect.call_args.kwargs
        assert session.ws_connect.call_args.args[0] == "wss://relay.example.com"
        assert kwargs["heartbeat"] == 20.0

    async def test_connection_refused_maps_to_oserror(self) -> None:
        session = _session(AsyncMock(side_effect=aiohttp.ClientError("Connection refused")))
        transport = WebSocketTransport(CLEARNET)
        with (
            patch("relaypool.utils.transport.aiohttp.ClientSession", return_value=session),
            pytest.raises(OSError, match="Connection failed"),
        ):
            await transport.connect(1.0)
        session.close.assert_awaited_once()
        assert not transport.is_open

    async def test_ssl_message_maps_to_ssl_error(self) -> None:
        session = _session(AsyncMock(side_effect=aiohttp.ClientError("certificate verify failed")))
        transport = WebSocketTransport(CLEARNET)
        with (
            patch("relaypool.utils.transport.aiohttp.ClientSession", return_value=session),
            pytest.raises(ssl.SSLError),
        ):
            await transport.connect(1.0)

    async def test_timeout(self) -> None:
        async def hang(*args: object, **kwargs: object) -> None:
            await asyncio.sleep(10)

        session = _session(AsyncMock(side_effect=hang))
        transport = WebSocketTransport(CLEARNET)
        with (
            patch("relaypool.utils.transport.aiohttp.ClientSession", return_value=session),
            pytest.raises(TimeoutError),
        ):
            await transport.connect(0.01)
        session.close.assert_awaited_once()


# =============================================================================
# Send / Receive Tests
# =============================================================================


class TestFrames:
    def _open(self, *messages: MagicMock) -> tuple[WebSocketTransport, MagicMock]:
        ws = MagicMock()
        ws.closed = False
        ws.receive = AsyncMock(side_effect=list(messages))
        ws.send_str = AsyncMock()
        ws.close = AsyncMock()
        transport = WebSocketTransport(CLEARNET)
        transport._ws = ws
        return transport, ws

    async def test_send_not_open(self) -> None:
        with pytest.raises(OSError):
            await WebSocketTransport(CLEARNET).send("[]")

    async def test_send(self) -> None:
        transport, ws = self._open()
        await transport.send('["CLOSE","s"]')
        ws.send_str.assert_awaited_once_with('["CLOSE","s"]')

    async def test_send_failure_maps_to_oserror(self) -> None:
        transport, ws = self._open()
        ws.send_str.side_effect = ConnectionResetError("reset")
        with pytest.raises(OSError, match="Send failed"):
            await transport.send("[]")

    async def test_receive_skips_control_frames(self) -> None:
        transport, _ = self._open(
            _ws_message(aiohttp.WSMsgType.PING),
            _ws_message(aiohttp.WSMsgType.BINARY, b"\xff\xfe"),
            _ws_message(aiohttp.WSMsgType.BINARY, b'["EOSE","s"]'),
            _ws_message(aiohttp.WSMsgType.TEXT, '["NOTICE","x"]'),
            _ws_message(aiohttp.WSMsgType.CLOSE),
        )
        assert await transport.receive() == '["EOSE","s"]'
        assert await transport.receive() == '["NOTICE","x"]'
        assert await transport.receive() is None

    async def test_receive_before_connect(self) -> None:
        assert await WebSocketTransport(CLEARNET).receive() is None

    async def test_close_is_idempotent(self) -> None:
        transport, ws = self._open()
        await transport.close()
        await transport.close()
        ws.close.assert_awaited_once()
        assert not transport.is_open


class TestFactory:
    def test_factory(self) -> None:
        transport = websocket_transport_factory(CLEARNET, TransportOptions())
        assert isinstance(transport, WebSocketTransport)
        assert transport.relay is CLEARNET
