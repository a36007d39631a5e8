"""NIP-01 / NIP-77 JSON message codec.

Converts between the typed records of
[relaypool.models.message][relaypool.models.message] and the JSON array
frames exchanged over the WebSocket. Both directions are implemented so the
same codec serves the pool (client side) and test relays (relay side).

Decoding never trusts the relay: any frame that is not a JSON array with a
known label and correctly typed members raises
[MessageDecodeError][relaypool.utils.protocol.MessageDecodeError], which the
connection reports as a protocol violation without dropping the link.

Examples:
    ```python
    frame = encode_client_message(ReqMessage("sub1", (Filter(kinds=(1,)),)))
    # '["REQ","sub1",{"kinds":[1]}]'

    msg = decode_relay_message('["EOSE","sub1"]')
    # EoseMessage(subscription_id='sub1')
    ```
"""

from __future__ import annotations

import json
from typing import Any

from relaypool.models.event import Event
from relaypool.models.filter import Filter
from relaypool.models.message import (
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


class MessageDecodeError(ValueError):
    """A frame is not a well-formed protocol message."""


def _dumps(data: list[Any]) -> str:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def _loads(frame: str | bytes) -> list[Any]:
    try:
        data = json.loads(frame)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MessageDecodeError(f"invalid JSON: {e}") from e
    if not isinstance(data, list) or not data or not isinstance(data[0], str):
        raise MessageDecodeError("message must be a non-empty JSON array with a string label")
    return data


def _str(data: list[Any], index: int, name: str, *, optional: bool = False) -> str:
    if index >= len(data):
        if optional:
            return ""
        raise MessageDecodeError(f"{data[0]}: missing {name}")
    value = data[index]
    if not isinstance(value, str):
        raise MessageDecodeError(f"{data[0]}: {name} must be a string")
    return value


def _arity(data: list[Any], minimum: int) -> None:
    if len(data) < minimum:
        raise MessageDecodeError(f"{data[0]}: expected at least {minimum - 1} argument(s)")


def _event(data: list[Any], index: int) -> Event:
    try:
        return Event.from_dict(data[index])
    except (TypeError, ValueError) as e:
        raise MessageDecodeError(f"{data[0]}: malformed event: {e}") from e


def _filter(data: list[Any], index: int) -> Filter:
    try:
        return Filter.from_dict(data[index])
    except (TypeError, ValueError) as e:
        raise MessageDecodeError(f"{data[0]}: malformed filter: {e}") from e


# ---------------------------------------------------------------------------
# Client to relay
# ---------------------------------------------------------------------------


def encode_client_message(message: ClientMessage) -> str:
    """Serialize a client-to-relay message to a JSON frame."""
    match message:
        case ReqMessage(subscription_id=sub_id, filters=filters):
            return _dumps(["REQ", sub_id, *(f.to_dict() for f in filters)])
        case CloseMessage(subscription_id=sub_id):
            return _dumps(["CLOSE", sub_id])
        case PublishMessage(event=event):
            return _dumps(["EVENT", event.to_dict()])
        case NegOpenMessage(subscription_id=sub_id, filter=filter_, message=msg):
            return _dumps(["NEG-OPEN", sub_id, filter_.to_dict(), msg])
        case NegMsgMessage(subscription_id=sub_id, message=msg):
            return _dumps(["NEG-MSG", sub_id, msg])
        case NegCloseMessage(subscription_id=sub_id):
            return _dumps(["NEG-CLOSE", sub_id])
    raise TypeError(f"not a client message: {type(message).__name__}")


def decode_client_message(frame: str | bytes) -> ClientMessage:
    """Parse a client-to-relay JSON frame (relay side)."""
    data = _loads(frame)
    label = data[0]

    if label == "REQ":
        _arity(data, 2)
        return ReqMessage(
            _str(data, 1, "subscription id"),
            tuple(_filter(data, i) for i in range(2, len(data))),
        )
    if label == "CLOSE":
        _arity(data, 2)
        return CloseMessage(_str(data, 1, "subscription id"))
    if label == "EVENT":
        _arity(data, 2)
        return PublishMessage(_event(data, 1))
    if label == "NEG-OPEN":
        _arity(data, 4)
        return NegOpenMessage(
            _str(data, 1, "subscription id"), _filter(data, 2), _str(data, 3, "message")
        )
    if label == "NEG-MSG":
        _arity(data, 3)
        return NegMsgMessage(_str(data, 1, "subscription id"), _str(data, 2, "message"))
    if label == "NEG-CLOSE":
        _arity(data, 2)
        return NegCloseMessage(_str(data, 1, "subscription id"))
    raise MessageDecodeError(f"unknown client message label: {label!r}")


# ---------------------------------------------------------------------------
# Relay to client
# ---------------------------------------------------------------------------


def encode_relay_message(message: RelayMessage) -> str:
    """Serialize a relay-to-client message to a JSON frame (relay side)."""
    match message:
        case EventMessage(subscription_id=sub_id, event=event):
            return _dumps(["EVENT", sub_id, event.to_dict()])
        case OkMessage(event_id=event_id, accepted=accepted, message=msg):
            return _dumps(["OK", event_id, accepted, msg])
        case EoseMessage(subscription_id=sub_id):
            return _dumps(["EOSE", sub_id])
        case ClosedMessage(subscription_id=sub_id, message=msg):
            return _dumps(["CLOSED", sub_id, msg])
        case NoticeMessage(message=msg):
            return _dumps(["NOTICE", msg])
        case AuthMessage(challenge=challenge):
            return _dumps(["AUTH", challenge])
        case NegMsgMessage(subscription_id=sub_id, message=msg):
            return _dumps(["NEG-MSG", sub_id, msg])
        case NegErrMessage(subscription_id=sub_id, reason=reason):
            return _dumps(["NEG-ERR", sub_id, reason])
    raise TypeError(f"not a relay message: {type(message).__name__}")


def decode_relay_message(frame: str | bytes) -> RelayMessage:
    """Parse a relay-to-client JSON frame.

    Raises:
        MessageDecodeError: If the frame is malformed or has an unknown label.
    """
    data = _loads(frame)
    label = data[0]

    if label == "EVENT":
        _arity(data, 3)
        return EventMessage(_str(data, 1, "subscription id"), _event(data, 2))
    if label == "OK":
        _arity(data, 3)
        accepted = data[2]
        if not isinstance(accepted, bool):
            raise MessageDecodeError("OK: accepted flag must be a boolean")
        return OkMessage(_str(data, 1, "event id"), accepted, _str(data, 3, "message", optional=True))
    if label == "EOSE":
        _arity(data, 2)
        return EoseMessage(_str(data, 1, "subscription id"))
    if label == "CLOSED":
        _arity(data, 2)
        return ClosedMessage(
            _str(data, 1, "subscription id"), _str(data, 2, "message", optional=True)
        )
    if label == "NOTICE":
        _arity(data, 2)
        return NoticeMessage(_str(data, 1, "message"))
    if label == "AUTH":
        _arity(data, 2)
        return AuthMessage(_str(data, 1, "challenge"))
    if label == "NEG-MSG":
        _arity(data, 3)
        return NegMsgMessage(_str(data, 1, "subscription id"), _str(data, 2, "message"))
    if label == "NEG-ERR":
        _arity(data, 3)
        return NegErrMessage(_str(data, 1, "subscription id"), _str(data, 2, "reason"))
    raise MessageDecodeError(f"unknown relay message label: {label!r}")


def message_label(frame_or_message: RelayMessage | ClientMessage) -> str:
    """Short label (``EVENT``, ``OK``...) used for logs and metrics."""
    return _LABELS.get(type(frame_or_message), "UNKNOWN")


_LABELS: dict[type, str] = {
    EventMessage: "EVENT",
    OkMessage: "OK",
    EoseMessage: "EOSE",
    ClosedMessage: "CLOSED",
    NoticeMessage: "NOTICE",
    AuthMessage: "AUTH",
    NegMsgMessage: "NEG-MSG",
    NegErrMessage: "NEG-ERR",
    ReqMessage: "REQ",
    CloseMessage: "CLOSE",
    PublishMessage: "EVENT",
    NegOpenMessage: "NEG-OPEN",
    NegCloseMessage: "NEG-CLOSE",
}
