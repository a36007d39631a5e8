"""Shared validation helpers for frozen dataclass models.

Private module. The ``__post_init__`` methods of
[Event][relaypool.models.event.Event] and [Filter][relaypool.models.filter.Filter]
call these to reject wrong types and malformed hex before a value can
reach the wire codec. Content rules beyond NIP-01 shape are left to relays.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any


_HEX_RE = re.compile(r"^[0-9a-f]*$")

HEX32_LEN: int = 64
HEX64_LEN: int = 128


def validate_timestamp(value: Any, name: str) -> None:
    """Raise if *value* is not a non-negative ``int`` (``bool`` excluded)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an int, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative")


def validate_str(value: Any, name: str) -> None:
    """Raise if *value* is not a ``str``."""
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a str, got {type(value).__name__}")


def validate_hex(value: Any, name: str, length: int) -> None:
    """Raise if *value* is not a lowercase hex string of exactly *length* chars."""
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a str, got {type(value).__name__}")
    if len(value) != length or not _HEX_RE.match(value):
        raise ValueError(f"{name} must be {length} lowercase hex characters")


def validate_tags(value: Any, name: str = "tags") -> tuple[tuple[str, ...], ...]:
    """Validate an event tag list and return it as nested tuples.

    Each tag must be a sequence of strings.
    """
    if isinstance(value, str | bytes) or not isinstance(value, Iterable):
        raise TypeError(f"{name} must be a list of lists, got {type(value).__name__}")
    frozen: list[tuple[str, ...]] = []
    for i, tag in enumerate(value):
        if isinstance(tag, str | bytes) or not isinstance(tag, Iterable):
            raise TypeError(f"{name}[{i}] must be a list, got {type(tag).__name__}")
        items = tuple(tag)
        for item in items:
            validate_str(item, f"{name}[{i}]")
        frozen.append(items)
    return tuple(frozen)


def validate_int_range(value: Any, name: str, low: int, high: int) -> None:
    """Raise if *value* is not an ``int`` in ``[low, high]`` (``bool`` excluded)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an int, got {type(value).__name__}")
    if not low <= value <= high:
        raise ValueError(f"{name} must be between {low} and {high}, got {value}")
