"""
Typed records for the NIP-01 and NIP-77 messages the pool exchanges.

Client-to-relay records are produced by the pool and serialized by
[encode_client_message()][relaypool.utils.protocol.encode_client_message];
relay-to-client records are produced by
[decode_relay_message()][relaypool.utils.protocol.decode_relay_message].
"""

from __future__ import annotations

from dataclasses import dataclass

from .event import Event  # noqa: TC001
from .filter import Filter  # noqa: TC001


# -- Client to relay ----------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ReqMessage:
    """``["REQ", <subscription_id>, <filter>...]``"""

    subscription_id: str
    filters: tuple[Filter, ...]


@dataclass(frozen=True, slots=True)
class CloseMessage:
    """``["CLOSE", <subscription_id>]``"""

    subscription_id: str


@dataclass(frozen=True, slots=True)
class PublishMessage:
    """``["EVENT", <event>]``"""

    event: Event


@dataclass(frozen=True, slots=True)
class NegOpenMessage:
    """``["NEG-OPEN", <subscription_id>, <filter>, <hex message>]``"""

    subscription_id: str
    filter: Filter
    message: str


@dataclass(frozen=True, slots=True)
class NegCloseMessage:
    """``["NEG-CLOSE", <subscription_id>]``"""

    subscription_id: str


# -- Both directions ----------------------------------------------------------


@dataclass(frozen=True, slots=True)
class NegMsgMessage:
    """``["NEG-MSG", <subscription_id>, <hex message>]``"""

    subscription_id: str
    message: str


# -- Relay to client ----------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EventMessage:
    """``["EVENT", <subscription_id>, <event>]``"""

    subscription_id: str
    event: Event


@dataclass(frozen=True, slots=True)
class OkMessage:
    """``["OK", <event_id>, <accepted>, <message>]``"""

    event_id: str
    accepted: bool
    message: str = ""


@dataclass(frozen=True, slots=True)
class EoseMessage:
    """``["EOSE", <subscription_id>]``"""

    subscription_id: str


@dataclass(frozen=True, slots=True)
class ClosedMessage:
    """``["CLOSED", <subscription_id>, <message>]``"""

    subscription_id: str
    message: str = ""


@dataclass(frozen=True, slots=True)
class NoticeMessage:
    """``["NOTICE", <message>]``"""

    message: str


@dataclass(frozen=True, slots=True)
class AuthMessage:
    """``["AUTH", <challenge>]``"""

    challenge: str


@dataclass(frozen=True, slots=True)
class NegErrMessage:
    """``["NEG-ERR", <subscription_id>, <reason>]``"""

    subscription_id: str
    reason: str


ClientMessage = (
    ReqMessage | CloseMessage | PublishMessage | NegOpenMessage | NegMsgMessage | NegCloseMessage
)

RelayMessage = (
    EventMessage
    | OkMessage
    | EoseMessage
    | ClosedMessage
    | NoticeMessage
    | AuthMessage
    | NegMsgMessage
    | NegErrMessage
)
