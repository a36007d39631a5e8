"""
Unit tests for core.exceptions module.

Tests:
- Hierarchy shape (what callers can catch)
- RelayRejection attributes
- CancelledError is never swallowed by a RelayPoolError handler
"""

import asyncio

import pytest

from relaypool.core.exceptions import (
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


class TestHierarchy:
    @pytest.mark.parametrize(
        ("exc", "parent"),
        [
            (ConfigurationError, RelayPoolError),
            (TransportError, RelayPoolError),
            (RelayTimeoutError, TransportError),
            (RelaySSLError, TransportError),
            (ProtocolError, RelayPoolError),
            (RelayRejection, RelayPoolError),
            (ReconciliationAbort, RelayPoolError),
            (CapacityExceeded, RelayPoolError),
            (OutboundQueueFull, CapacityExceeded),
            (PoolUsageError, RelayPoolError),
            (UnknownRelayError, PoolUsageError),
            (RelayTerminatedError, PoolUsageError),
            (UnknownSubscriptionError, PoolUsageError),
            (SubscriptionClosedError, PoolUsageError),
        ],
    )
    def test_subclass(self, exc: type[Exception], parent: type[Exception]) -> None:
        assert issubclass(exc, parent)

    def test_transport_errors_are_not_usage_errors(self) -> None:
        assert not issubclass(TransportError, PoolUsageError)

    def test_cancelled_error_outside_hierarchy(self) -> None:
        assert not issubclass(asyncio.CancelledError, RelayPoolError)


class TestRelayRejection:
    def test_attributes(self) -> None:
        exc = RelayRejection("wss://r.example.com", "blocked: spam")
        assert exc.url == "wss://r.example.com"
        assert exc.reason == "blocked: spam"
        assert str(exc) == "wss://r.example.com: blocked: spam"

    def test_catchable_as_base(self) -> None:
        with pytest.raises(RelayPoolError):
            raise RelayRejection("wss://r.example.com", "no")
