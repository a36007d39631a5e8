"""Sorted vector of ``(timestamp, id)`` items backing one negentropy session."""

from __future__ import annotations

from bisect import bisect_left
from collections.abc import Iterable

from .codec import ID_SIZE, MAX_TIMESTAMP, Bound, NegentropyError, fingerprint


class NegentropyStorage:
    """Immutable once sealed; items ordered by timestamp then id bytes.

    Examples:
        ```python
        storage = NegentropyStorage()
        storage.insert(1700000000, "ab" * 32)
        storage.seal()
        ```
    """

    def __init__(self, items: Iterable[tuple[int, str | bytes]] = ()) -> None:
        self._items: list[tuple[int, bytes]] = []
        self._sealed = False
        for timestamp, item_id in items:
            self.insert(timestamp, item_id)

    def insert(self, timestamp: int, item_id: str | bytes) -> None:
        if self._sealed:
            raise NegentropyError("storage is already sealed")
        raw = bytes.fromhex(item_id) if isinstance(item_id, str) else bytes(item_id)
        if len(raw) != ID_SIZE:
            raise NegentropyError(f"bad id size: {len(raw)}")
        if not 0 <= timestamp < MAX_TIMESTAMP:
            raise NegentropyError(f"timestamp out of range: {timestamp}")
        self._items.append((timestamp, raw))

    def seal(self) -> NegentropyStorage:
        if self._sealed:
            raise NegentropyError("storage is already sealed")
        self._items.sort()
        # Duplicates would distort fingerprints.
        deduped: list[tuple[int, bytes]] = []
        for item in self._items:
            if not deduped or deduped[-1] != item:
                deduped.append(item)
        self._items = deduped
        self._sealed = True
        return self

    @property
    def sealed(self) -> bool:
        return self._sealed

    def _check_sealed(self) -> None:
        if not self._sealed:
            raise NegentropyError("storage is not sealed")

    def size(self) -> int:
        self._check_sealed()
        return len(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def get(self, index: int) -> tuple[int, bytes]:
        self._check_sealed()
        return self._items[index]

    def ids(self, begin: int, end: int) -> list[bytes]:
        self._check_sealed()
        return [item_id for _, item_id in self._items[begin:end]]

    def find_lower_bound(self, begin: int, end: int, bound: Bound) -> int:
        """First index in ``[begin, end)`` whose item is not below *bound*."""
        self._check_sealed()
        return bisect_left(self._items, bound.as_key(), begin, end)

    def fingerprint(self, begin: int, end: int) -> bytes:
        return fingerprint(self.ids(begin, end))
