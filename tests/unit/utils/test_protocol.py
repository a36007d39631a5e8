"""
Unit tests for utils.protocol module.

Tests:
- encode_client_message() wire format
- decode_relay_message() for every relay label
- Rejection of malformed frames
- Relay-side helpers used by test relays
"""

import json

import pytest

from relaypool.models import Filter
from relaypool.models.message import (
    AuthMessage,
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
    ReqMessage,
)
from relaypool.utils.protocol import (
    MessageDecodeError,
    decode_client_message,
    decode_relay_message,
    encode_client_message,
    encode_relay_message,
    message_label,
)
from tests.fixtures.events import make_event


# =============================================================================
# Encoding Tests
# =============================================================================


class TestEncodeClientMessage:
    def test_req(self) -> None:
        frame = encode_client_message(ReqMessage("sub1", (Filter(kinds=(1,)), Filter(limit=5))))
        assert frame == '["REQ","sub1",{"kinds":[1]},{"limit":5}]'

    def test_close(self) -> None:
        assert encode_client_message(CloseMessage("sub1")) == '["CLOSE","sub1"]'

    def test_publish(self) -> None:
        event = make_event("hi")
        assert json.loads(encode_client_message(PublishMessage(event))) == ["EVENT", event.to_dict()]

    def test_negentropy(self) -> None:
        assert encode_client_message(NegOpenMessage("n1", Filter(kinds=(1,)), "6100")) == (
            '["NEG-OPEN","n1",{"kinds":[1]},"6100"]'
        )
        assert encode_client_message(NegMsgMessage("n1", "61")) == '["NEG-MSG","n1","61"]'
        assert encode_client_message(NegCloseMessage("n1")) == '["NEG-CLOSE","n1"]'

    def test_rejects_relay_message(self) -> None:
        with pytest.raises(TypeError):
            encode_client_message(EoseMessage("sub1"))  # type: ignore[arg-type]


# =============================================================================
# Decoding Tests
# =============================================================================


class TestDecodeRelayMessage:
    def test_event(self) -> None:
        event = make_event()
        message = decode_relay_message(json.dumps(["EVENT", "sub1", event.to_dict()]))
        assert message == EventMessage("sub1", event)

    def test_event_with_null_bytes_and_empty_tag(self) -> None:
        data = {**make_event().to_dict(), "content": "hello\u0000world", "tags": [[]]}
        message = decode_relay_message(json.dumps(["EVENT", "sub1", data]))
        assert isinstance(message, EventMessage)
        assert message.event.content == "hello\x00world"
        assert message.event.tags == ((),)

    @pytest.mark.parametrize(
        ("frame", "expected"),
        [
            ('["OK","' + "a" * 64 + '",true,""]', OkMessage("a" * 64, True, "")),
            ('["OK","' + "a" * 64 + '",false]', OkMessage("a" * 64, False, "")),
            ('["EOSE","sub1"]', EoseMessage("sub1")),
            ('["CLOSED","sub1","error: shutting down"]', ClosedMessage("sub1", "error: shutting down")),
            ('["CLOSED","sub1"]', ClosedMessage("sub1", "")),
            ('["NOTICE","hello"]', NoticeMessage("hello")),
            ('["AUTH","challenge"]', AuthMessage("challenge")),
            ('["NEG-MSG","n1","61"]', NegMsgMessage("n1", "61")),
            ('["NEG-ERR","n1","blocked"]', NegErrMessage("n1", "blocked")),
        ],
    )
    def test_labels(self, frame: str, expected: object) -> None:
        assert decode_relay_message(frame) == expected

    def test_bytes_frame(self) -> None:
        assert decode_relay_message(b'["EOSE","s"]') == EoseMessage("s")

    @pytest.mark.parametrize(
        "frame",
        [
            "not json",
            "{}",
            "[]",
            "[1, 2]",
            '["UNKNOWN","x"]',
            '["EOSE"]',
            '["EOSE",5]',
            '["OK","abc","yes",""]',
            '["EVENT","sub1",{"id":"bad"}]',
            '["NEG-MSG","n1"]',
        ],
    )
    def test_malformed(self, frame: str) -> None:
        with pytest.raises(MessageDecodeError):
            decode_relay_message(frame)

    def test_decode_error_is_value_error(self) -> None:
        assert issubclass(MessageDecodeError, ValueError)


# =============================================================================
# Relay Side Tests
# =============================================================================


class TestRelaySide:
    def test_client_frames_round_trip(self) -> None:
        messages = [
            ReqMessage("s", (Filter(kinds=(1,)),)),
            CloseMessage("s"),
            PublishMessage(make_event()),
            NegOpenMessage("n", Filter(), "61"),
            NegMsgMessage("n", "61"),
            NegCloseMessage("n"),
        ]
        for message in messages:
            assert decode_client_message(encode_client_message(message)) == message

    def test_req_without_filters(self) -> None:
        assert decode_client_message('["REQ","s"]') == ReqMessage("s", ())

    def test_unknown_client_label(self) -> None:
        with pytest.raises(MessageDecodeError):
            decode_client_message('["AUTH","x"]')

    def test_encode_relay_message(self) -> None:
        assert encode_relay_message(OkMessage("a" * 64, False, "blocked")) == (
            '["OK","' + "a" * 64 + '",false,"blocked"]'
        )

    def test_message_label(self) -> None:
        assert message_label(PublishMessage(make_event())) == "EVENT"
        assert message_label(NegErrMessage("n", "x")) == "NEG-ERR"
