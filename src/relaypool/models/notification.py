"""
Diagnostic notifications published by the pool.

Every notification is a frozen record carrying the relay ``url`` it concerns
(``None`` for pool-wide conditions) and a ``timestamp``. They are delivered on
the stream returned by
[RelayPool.notifications()][relaypool.core.pool.RelayPool.notifications] and
never interrupt pool-wide operations.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from .constants import ConnectionStatus  # noqa: TC001


@dataclass(frozen=True, slots=True, kw_only=True)
class Notification:
    """Base record for all diagnostic notifications."""

    url: str | None = None
    timestamp: float = field(default_factory=time.time, compare=False)


@dataclass(frozen=True, slots=True, kw_only=True)
class RelayStatusChanged(Notification):
    """A relay connection moved between lifecycle states."""

    old: ConnectionStatus
    new: ConnectionStatus
    reason: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class RelayNotice(Notification):
    """A relay sent a human-readable ``NOTICE``."""

    message: str


@dataclass(frozen=True, slots=True, kw_only=True)
class RelayAuthChallenge(Notification):
    """A relay sent a NIP-42 ``AUTH`` challenge. The pool does not answer it."""

    challenge: str


@dataclass(frozen=True, slots=True, kw_only=True)
class SubscriptionClosedByRelay(Notification):
    """A relay ended a subscription with ``CLOSED``."""

    subscription_id: str
    message: str


@dataclass(frozen=True, slots=True, kw_only=True)
class ProtocolViolation(Notification):
    """A relay frame could not be decoded or was unexpected."""

    reason: str
    frame: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class InvalidEvent(Notification):
    """An event failed verification and was dropped."""

    event_id: str
    subscription_id: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class ConsumerOverflow(Notification):
    """A stream consumer's buffer overflowed."""

    stream: str
    consumer: str
    dropped: int
    disconnected: bool = False
