"""
Unit tests for models.event module.

Tests:
- Field shape validation
- Conversion to nostr_sdk.Event
- Tag helpers
- Wire round trip through dict and JSON
"""

import dataclasses

import pytest

from relaypool.models import Event
from tests.fixtures.events import PLACEHOLDER_SIG, PUBKEY_A, make_event


def _fields(**overrides: object) -> dict[str, object]:
    fields: dict[str, object] = {
        "id": "1" * 64,
        "pubkey": PUBKEY_A,
        "created_at": 1_700_000_000,
        "kind": 1,
        "tags": [],
        "content": "hi",
        "sig": PLACEHOLDER_SIG,
    }
    fields.update(overrides)
    return fields


# =============================================================================
# Validation Tests
# =============================================================================


class TestEventValidation:
    """Shape validation in __post_init__."""

    def test_valid(self) -> None:
        event = Event(**_fields())
        assert event.kind == 1

    @pytest.mark.parametrize(
        ("field", "value"),
        [
            ("id", "ABC"),
            ("id", "G" * 64),
            ("pubkey", "a" * 63),
            ("sig", "f" * 64),
        ],
    )
    def test_bad_hex_fields(self, field: str, value: str) -> None:
        with pytest.raises(ValueError):
            Event(**_fields(**{field: value}))

    def test_negative_timestamp(self) -> None:
        with pytest.raises(ValueError):
            Event(**_fields(created_at=-1))

    def test_kind_out_of_range(self) -> None:
        with pytest.raises(ValueError):
            Event(**_fields(kind=65_536))

    def test_bool_timestamp_rejected(self) -> None:
        with pytest.raises(TypeError):
            Event(**_fields(created_at=True))

    def test_tags_must_be_strings(self) -> None:
        with pytest.raises(TypeError):
            Event(**_fields(tags=[["e", 1]]))

    def test_empty_tag_accepted(self) -> None:
        event = Event(**_fields(tags=[[], ["t", "x"]]))
        assert event.tags == ((), ("t", "x"))
        assert event.tag_values("t") == ("x",)

    def test_tags_frozen_to_tuples(self) -> None:
        event = Event(**_fields(tags=[["e", "x"], ["p", "y"]]))
        assert event.tags == (("e", "x"), ("p", "y"))

    def test_content_null_byte_accepted(self) -> None:
        event = Event(**_fields(content="a\x00b", tags=[["t", "x\x00y"]]))
        assert event.content == "a\x00b"


# =============================================================================
# SDK Conversion Tests
# =============================================================================


class TestEventToNostr:
    """Conversion to nostr_sdk.Event."""

    def test_signed_event_has_valid_id(self) -> None:
        assert make_event("content").to_nostr().verify_id()

    def test_id_no_longer_matches_after_tampering(self) -> None:
        event = dataclasses.replace(make_event("a"), content="b")
        assert not event.to_nostr().verify_id()

    def test_conversion_is_cached(self) -> None:
        event = make_event()
        assert event.to_nostr() is event.to_nostr()

    def test_cache_does_not_affect_equality(self) -> None:
        event = make_event()
        copy = Event.from_dict(event.to_dict())
        event.to_nostr()
        assert copy == event
        assert hash(copy) == hash(event)

    def test_pubkey_off_curve_raises_value_error(self) -> None:
        event = Event(**_fields(pubkey="f" * 64))
        with pytest.raises(ValueError, match="nostr_sdk"):
            event.to_nostr()


# =============================================================================
# Tag Helper Tests
# =============================================================================


class TestEventTags:
    def test_iter_tags(self) -> None:
        event = make_event(tags=[["e", "1"], ["p", "2"], ["e", "3", "wss://r"]])
        assert list(event.iter_tags("e")) == [("e", "1"), ("e", "3", "wss://r")]

    def test_tag_values_skips_bare_tags(self) -> None:
        event = make_event(tags=[["t", "a"], ["t"], ["t", "b"]])
        assert event.tag_values("t") == ("a", "b")


# =============================================================================
# Serialization Tests
# =============================================================================


class TestEventSerialization:
    def test_dict_round_trip(self) -> None:
        event = make_event(tags=[["e", "x"]])
        assert Event.from_dict(event.to_dict()) == event

    def test_json_round_trip(self) -> None:
        event = make_event("unicode ✓")
        assert Event.from_json(event.to_json()) == event

    def test_missing_field(self) -> None:
        data = make_event().to_dict()
        del data["sig"]
        with pytest.raises(ValueError, match="sig"):
            Event.from_dict(data)

    def test_not_a_mapping(self) -> None:
        with pytest.raises(TypeError):
            Event.from_dict(["not", "a", "dict"])  # type: ignore[arg-type]

    def test_invalid_json(self) -> None:
        with pytest.raises(ValueError):
            Event.from_json("{not json")

    def test_repr_is_short(self) -> None:
        event = make_event()
        assert event.id[:16] in repr(event)
        assert event.content not in repr(event)
