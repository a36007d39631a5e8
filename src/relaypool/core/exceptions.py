"""relaypool exception hierarchy.

Provides typed exceptions for every error category so callers can tell
recoverable per-relay failures from caller mistakes, and so that
``asyncio.CancelledError`` is never caught by accident.

Exception hierarchy:

```text
RelayPoolError (base -- never raised directly)
├── ConfigurationError        -- config validation, bad YAML
├── TransportError            -- recoverable: triggers backoff
│   ├── RelayTimeoutError     -- connect or send timed out
│   └── RelaySSLError         -- certificate issues
├── ProtocolError             -- malformed or unexpected relay message
├── RelayRejection            -- relay refused a publish or subscription
├── ReconciliationAbort       -- negentropy unsupported or aborted
├── CapacityExceeded          -- a bounded buffer is full
│   └── OutboundQueueFull     -- per-relay outbound queue
└── PoolUsageError            -- caller error, raised synchronously
    ├── UnknownRelayError
    ├── RelayTerminatedError
    ├── UnknownSubscriptionError
    └── SubscriptionClosedError
```

Per-relay failures never fail a pool-wide operation; they are reported in
per-relay result maps and on the notification stream. Only
[PoolUsageError][relaypool.core.exceptions.PoolUsageError] subclasses and
[ConfigurationError][relaypool.core.exceptions.ConfigurationError] reach the
caller as exceptions.
"""

from __future__ import annotations


class RelayPoolError(Exception):
    """Base exception for all relaypool errors.

    Never raised directly -- always use a specific subclass.
    """


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(RelayPoolError):
    """Invalid or missing configuration (YAML file, option values).

    See Also:
        [load_yaml()][relaypool.core.yaml.load_yaml]: YAML loading function
            that raises this on unreadable files.
    """


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class TransportError(RelayPoolError):
    """Base for relay connectivity failures.

    Recoverable: the connection state machine schedules a reconnect with
    backoff when one of these surfaces.
    """


class RelayTimeoutError(TransportError):
    """Connection handshake or send timed out."""


class RelaySSLError(TransportError):
    """TLS/SSL certificate or handshake failure."""


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ProtocolError(RelayPoolError):
    """A relay frame could not be decoded or violates the message grammar.

    Reported as a
    [ProtocolViolation][relaypool.models.notification.ProtocolViolation]
    notification; never tears the connection down.
    """


class RelayRejection(RelayPoolError):
    """A relay refused a publish (``OK false``) or ended a subscription (``CLOSED``)."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class ReconciliationAbort(RelayPoolError):
    """A negentropy session ended before converging.

    Attached to the aborted
    [ReconciliationSession][relaypool.core.reconciliation.ReconciliationSession],
    which keeps the partial difference established so far.
    """


# ---------------------------------------------------------------------------
# Capacity
# ---------------------------------------------------------------------------


class CapacityExceeded(RelayPoolError):
    """A bounded buffer is full."""


class OutboundQueueFull(CapacityExceeded):
    """The outbound queue of a relay connection is full."""


# ---------------------------------------------------------------------------
# Caller errors
# ---------------------------------------------------------------------------


class PoolUsageError(RelayPoolError):
    """The caller used the pool incorrectly. Raised synchronously."""


class UnknownRelayError(PoolUsageError):
    """The URL does not name a relay currently held by the pool."""


class RelayTerminatedError(PoolUsageError):
    """The relay connection was terminated and accepts no further work."""


class UnknownSubscriptionError(PoolUsageError):
    """The subscription id was never issued or has been released."""


class SubscriptionClosedError(PoolUsageError):
    """The subscription was closed; it can no longer be updated."""
