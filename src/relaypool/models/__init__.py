"""Pure frozen dataclasses with zero I/O for Nostr relays, events and filters.

The models layer is the foundation of the diamond DAG. It has **no dependencies**
on any other relaypool package. Every model uses
``@dataclass(frozen=True, slots=True)`` and validates in ``__post_init__`` so
invalid instances never escape the constructor.

Attributes:
    Relay: Validated Nostr relay URL with RFC 3986 parsing and automatic
        [NetworkType][relaypool.models.constants.NetworkType] detection.
    Event: Shape-validated NIP-01 event, converted to ``nostr_sdk.Event`` on demand.
    Filter: NIP-01 filter with builders, local matching and JSON round trip.
    ConnectionStatus: Lifecycle states of a relay connection.
    RelayServiceFlag: READ / WRITE / PING usage flags.
    NegentropyDirection: What reconciliation does with the difference.

See Also:
    [relaypool.models.message][]: Typed NIP-01 / NIP-77 message records.
    [relaypool.models.notification][]: Diagnostic notification records.
"""

from .constants import (
    DEFAULT_RELAY_FLAGS,
    EVENT_KIND_MAX,
    ConnectionStatus,
    NegentropyDirection,
    NetworkType,
    RelayServiceFlag,
)
from .event import Event
from .filter import Filter
from .message import (
    AuthMessage,
    ClientMessage,
    CloseMessage,
    ClosedMessage,
    EoseMessage,
    EventMessage,
    NegCloseMessage,
    NegErrMessage,
    NegMsgMessage,
    NegOpenMessage,
    NoticeMessage,
    OkMessage,
    PublishMessage,
    RelayMessage,
    ReqMessage,
)
from .notification import (
    ConsumerOverflow,
    InvalidEvent,
    Notification,
    ProtocolViolation,
    RelayAuthChallenge,
    RelayNotice,
    RelayStatusChanged,
    SubscriptionClosedByRelay,
)
from .relay import Relay, normalize_relay_url


__all__ = [
    "DEFAULT_RELAY_FLAGS",
    "EVENT_KIND_MAX",
    "AuthMessage",
    "ClientMessage",
    "CloseMessage",
    "ClosedMessage",
    "ConnectionStatus",
    "ConsumerOverflow",
    "EoseMessage",
    "Event",
    "EventMessage",
    "Filter",
    "InvalidEvent",
    "NegCloseMessage",
    "NegErrMessage",
    "NegMsgMessage",
    "NegOpenMessage",
    "NegentropyDirection",
    "NetworkType",
    "NoticeMessage",
    "Notification",
    "OkMessage",
    "ProtocolViolation",
    "PublishMessage",
    "Relay",
    "RelayAuthChallenge",
    "RelayMessage",
    "RelayNotice",
    "RelayServiceFlag",
    "RelayStatusChanged",
    "ReqMessage",
    "SubscriptionClosedByRelay",
    "normalize_relay_url",
]
