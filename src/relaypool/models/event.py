"""
Immutable Nostr event record.

Holds the seven NIP-01 fields of a signed event as plain Python values and
lazily wraps them in a ``nostr_sdk.Event`` for everything cryptographic or
protocol-defined: id and signature checks go through
[verify_event()][relaypool.utils.keys.verify_event], filter matching through
[Filter.match()][relaypool.models.filter.Filter.match]. Construction only
checks field *shape*.

See Also:
    [relaypool.core.dedup][]: Deduplicates events by
        [Event.id][relaypool.models.event.Event].
    [relaypool.utils.keys][]: Signs and verifies events through ``nostr_sdk``.
"""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from nostr_sdk import Event as NostrEvent
from nostr_sdk import NostrSdkError

from ._validation import (
    HEX32_LEN,
    HEX64_LEN,
    validate_hex,
    validate_int_range,
    validate_str,
    validate_tags,
    validate_timestamp,
)
from .constants import EVENT_KIND_MAX


@dataclass(frozen=True, slots=True)
class Event:
    """Immutable, shape-validated Nostr event.

    Attributes:
        id: 32-byte event id as lowercase hex.
        pubkey: 32-byte author public key as lowercase hex.
        created_at: Unix timestamp in seconds.
        kind: Event kind, ``0..65535``.
        tags: Tuple of tags, each a tuple of strings.
        content: Arbitrary content string.
        sig: 64-byte Schnorr signature as lowercase hex.

    Raises:
        TypeError: If a field has the wrong type.
        ValueError: If a hex field has the wrong length or casing, the
            timestamp is negative, or the kind is out of range.

    Examples:
        ```python
        event = Event.from_json(raw)
        event.to_nostr().verify_id()     # True for a well-formed event
        event.tag_values("p")            # ('ab12...', ...)
        ```
    """

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: tuple[tuple[str, ...], ...]
    content: str
    sig: str
    _sdk: NostrEvent | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        validate_hex(self.id, "id", HEX32_LEN)
        validate_hex(self.pubkey, "pubkey", HEX32_LEN)
        validate_hex(self.sig, "sig", HEX64_LEN)
        validate_timestamp(self.created_at, "created_at")
        validate_int_range(self.kind, "kind", 0, EVENT_KIND_MAX)
        validate_str(self.content, "content")
        object.__setattr__(self, "tags", validate_tags(self.tags))

    def __repr__(self) -> str:
        return f"Event(id={self.id[:16]}..., kind={self.kind}, created_at={self.created_at})"

    def iter_tags(self, name: str) -> Iterator[tuple[str, ...]]:
        """Yield every tag whose first element is *name*."""
        for tag in self.tags:
            if tag and tag[0] == name:
                yield tag

    def tag_values(self, name: str) -> tuple[str, ...]:
        """Return the first value of every tag named *name* (NIP-01 indexable tags)."""
        return tuple(tag[1] for tag in self.iter_tags(name) if len(tag) > 1)

    def to_nostr(self) -> NostrEvent:
        """Return this event as a ``nostr_sdk.Event``, parsed once and cached.

        Raises:
            ValueError: If ``nostr_sdk`` cannot represent the event, for
                instance a pubkey that is not a curve point or an empty tag.
        """
        sdk = self._sdk
        if sdk is None:
            try:
                sdk = NostrEvent.from_json(self.to_json())
            except NostrSdkError as e:
                raise ValueError(f"event {self.id} rejected by nostr_sdk: {e}") from e
            object.__setattr__(self, "_sdk", sdk)
        return sdk

    def to_dict(self) -> dict[str, Any]:
        """Return the wire representation as a plain dict."""
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(t) for t in self.tags],
            "content": self.content,
            "sig": self.sig,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Event:
        """Build an event from its wire dict.

        Raises:
            TypeError: If *data* is not a mapping or a field has the wrong type.
            ValueError: If a field is missing or fails shape validation.
        """
        if not isinstance(data, Mapping):
            raise TypeError(f"event must be a JSON object, got {type(data).__name__}")
        try:
            return cls(
                id=data["id"],
                pubkey=data["pubkey"],
                created_at=data["created_at"],
                kind=data["kind"],
                tags=data["tags"],
                content=data["content"],
                sig=data["sig"],
            )
        except KeyError as e:
            raise ValueError(f"event is missing field {e.args[0]!r}") from None

    @classmethod
    def from_json(cls, raw: str) -> Event:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"event is not valid JSON: {e}") from e
        return cls.from_dict(data)
