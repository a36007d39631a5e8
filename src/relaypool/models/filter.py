"""
Immutable NIP-01 subscription filter.

A [Filter][relaypool.models.filter.Filter] is a conjunction of constraints:
an event matches when it satisfies every constraint that is set, and within
one list constraint any element may match. Builder helpers return new
instances, so a filter can be shared freely between subscriptions, fetches
and reconciliation sessions.

Matching is delegated to ``nostr_sdk.Filter.match_event`` so local checks
agree with what relays built on the same library consider a match.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from nostr_sdk import Filter as NostrFilter

from ._validation import (
    HEX32_LEN,
    validate_hex,
    validate_int_range,
    validate_str,
    validate_timestamp,
)
from .constants import EVENT_KIND_MAX
from .event import Event


_TagConstraints = tuple[tuple[str, tuple[str, ...]], ...]


def _freeze_tags(value: Mapping[str, Iterable[str]] | Iterable[Any] | None) -> _TagConstraints:
    if not value:
        return ()
    items = value.items() if isinstance(value, Mapping) else value
    merged: dict[str, tuple[str, ...]] = {}
    for letter, values in items:
        if not isinstance(letter, str) or len(letter) != 1 or not letter.isalpha():
            raise ValueError(f"tag filter name must be a single letter, got {letter!r}")
        if isinstance(values, str):
            raise TypeError(f"values for #{letter} must be a list of strings")
        frozen = tuple(values)
        for v in frozen:
            validate_str(v, f"#{letter}")
        merged[letter] = merged.get(letter, ()) + frozen
    return tuple(sorted(merged.items()))


@dataclass(frozen=True, slots=True)
class Filter:
    """Immutable NIP-01 filter.

    ``None`` means "unconstrained"; an empty tuple means "match nothing"
    for list constraints, which is how relays interpret ``"ids": []``.

    Attributes:
        ids: Exact event ids.
        authors: Exact author public keys.
        kinds: Event kinds.
        tags: Single-letter generic tag constraints as sorted
            ``(letter, values)`` pairs, serialized as ``"#e"``, ``"#p"``...
        since: Lower ``created_at`` bound (inclusive).
        until: Upper ``created_at`` bound (inclusive).
        limit: Maximum number of stored events the relay should return.
        search: NIP-50 full text query, evaluated by the relay only.

    Examples:
        ```python
        f = Filter().with_kinds(1).with_authors(pk).with_since(1700000000)
        f.to_dict()  # {'authors': [...], 'kinds': [1], 'since': 1700000000}
        f.match(event)
        ```
    """

    ids: tuple[str, ...] | None = None
    authors: tuple[str, ...] | None = None
    kinds: tuple[int, ...] | None = None
    tags: _TagConstraints = field(default=())
    since: int | None = None
    until: int | None = None
    limit: int | None = None
    search: str | None = None
    _sdk: NostrFilter | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.ids is not None:
            object.__setattr__(self, "ids", tuple(self.ids))
            for v in self.ids:
                validate_hex(v, "ids", HEX32_LEN)
        if self.authors is not None:
            object.__setattr__(self, "authors", tuple(self.authors))
            for v in self.authors:
                validate_hex(v, "authors", HEX32_LEN)
        if self.kinds is not None:
            object.__setattr__(self, "kinds", tuple(self.kinds))
            for k in self.kinds:
                validate_int_range(k, "kinds", 0, EVENT_KIND_MAX)
        object.__setattr__(self, "tags", _freeze_tags(self.tags))
        for name in ("since", "until", "limit"):
            value = getattr(self, name)
            if value is not None:
                validate_timestamp(value, name)
        if self.search is not None:
            validate_str(self.search, "search")

    # -- Builders -------------------------------------------------------------

    def with_ids(self, *ids: str) -> Filter:
        return replace(self, ids=(self.ids or ()) + ids)

    def with_authors(self, *authors: str) -> Filter:
        return replace(self, authors=(self.authors or ()) + authors)

    def with_kinds(self, *kinds: int) -> Filter:
        return replace(self, kinds=(self.kinds or ()) + kinds)

    def with_tag(self, letter: str, *values: str) -> Filter:
        return replace(self, tags=(*self.tags, (letter, values)))

    def with_since(self, since: int) -> Filter:
        return replace(self, since=since)

    def with_until(self, until: int) -> Filter:
        return replace(self, until=until)

    def with_limit(self, limit: int) -> Filter:
        return replace(self, limit=limit)

    def with_search(self, search: str) -> Filter:
        return replace(self, search=search)

    def without_limit(self) -> Filter:
        return replace(self, limit=None)

    # -- Queries --------------------------------------------------------------

    @property
    def tag_constraints(self) -> dict[str, tuple[str, ...]]:
        return dict(self.tags)

    def is_empty(self) -> bool:
        """Whether no constraint at all is set."""
        return self == Filter()

    def matches_nothing(self) -> bool:
        """Whether an explicitly empty list constraint rules out every event."""
        lists = (self.ids, self.authors, self.kinds, *(values for _, values in self.tags))
        return any(values is not None and not values for values in lists)

    def to_nostr(self) -> NostrFilter:
        """Return the ``nostr_sdk.Filter`` used for local matching, built once.

        ``limit`` and ``search`` are relay-side hints and are left out.
        """
        sdk = self._sdk
        if sdk is None:
            local = replace(self, limit=None, search=None)
            sdk = NostrFilter.from_json(local.to_json())
            object.__setattr__(self, "_sdk", sdk)
        return sdk

    def match(self, event: Event) -> bool:
        """Return whether *event* satisfies every constraint of this filter.

        Raises:
            ValueError: If ``nostr_sdk`` cannot represent *event*, see
                [Event.to_nostr()][relaypool.models.event.Event.to_nostr].
        """
        if self.matches_nothing():
            return False
        return self.to_nostr().match_event(event.to_nostr())

    # -- Serialization --------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Return the NIP-01 JSON object for this filter."""
        data: dict[str, Any] = {}
        if self.ids is not None:
            data["ids"] = list(self.ids)
        if self.authors is not None:
            data["authors"] = list(self.authors)
        if self.kinds is not None:
            data["kinds"] = list(self.kinds)
        for letter, values in self.tags:
            data[f"#{letter}"] = list(values)
        if self.since is not None:
            data["since"] = self.since
        if self.until is not None:
            data["until"] = self.until
        if self.limit is not None:
            data["limit"] = self.limit
        if self.search is not None:
            data["search"] = self.search
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Filter:
        """Parse a NIP-01 filter object.

        Unknown keys are ignored so filters from newer NIPs still parse.

        Raises:
            TypeError: If *data* is not a mapping or a value has the wrong type.
            ValueError: If a value fails validation.
        """
        if not isinstance(data, Mapping):
            raise TypeError(f"filter must be a JSON object, got {type(data).__name__}")

        def _list(key: str) -> tuple[Any, ...] | None:
            value = data.get(key)
            if value is None:
                return None
            if not isinstance(value, list):
                raise TypeError(f"{key} must be a list, got {type(value).__name__}")
            return tuple(value)

        tags = {
            key[1:]: _list(key) or ()
            for key in data
            if isinstance(key, str) and key.startswith("#") and len(key) == 2
        }
        return cls(
            ids=_list("ids"),
            authors=_list("authors"),
            kinds=_list("kinds"),
            tags=tags,  # type: ignore[arg-type]
            since=data.get("since"),
            until=data.get("until"),
            limit=data.get("limit"),
            search=data.get("search"),
        )
