"""
Wire primitives of the negentropy protocol.

Varints are big-endian base-128 with the high bit set on every byte except
the last. Bounds are ``(timestamp, id prefix)`` pairs; timestamps are
delta-encoded against the previous bound of the same message, with ``0``
reserved for "infinity".
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass


PROTOCOL_VERSION: int = 0x61
ID_SIZE: int = 32
FINGERPRINT_SIZE: int = 16

# Sentinel timestamp for the open upper end of the full range.
MAX_TIMESTAMP: int = 2**64 - 1


class NegentropyError(ValueError):
    """A negentropy message is malformed or the session is misused."""


class Mode:
    SKIP = 0
    FINGERPRINT = 1
    ID_LIST = 2


@dataclass(frozen=True, slots=True, order=True)
class Bound:
    """Upper bound of a range: every item ``< (timestamp, id)`` is inside."""

    timestamp: int
    id: bytes = b""

    def as_key(self) -> tuple[int, bytes]:
        return (self.timestamp, self.id)


def encode_varint(n: int) -> bytes:
    if n < 0:
        raise NegentropyError("cannot encode a negative varint")
    if n == 0:
        return b"\x00"
    out = bytearray()
    while n:
        out.append(n & 0x7F)
        n >>= 7
    out.reverse()
    for i in range(len(out) - 1):
        out[i] |= 0x80
    return bytes(out)


class Reader:
    """Cursor over an incoming negentropy message."""

    __slots__ = ("_data", "_pos")

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def __len__(self) -> int:
        return len(self._data) - self._pos

    def read_byte(self) -> int:
        if self._pos >= len(self._data):
            raise NegentropyError("parse ends prematurely")
        b = self._data[self._pos]
        self._pos += 1
        return b

    def read_bytes(self, n: int) -> bytes:
        if len(self) < n:
            raise NegentropyError("parse ends prematurely")
        chunk = self._data[self._pos : self._pos + n]
        self._pos += n
        return chunk

    def read_varint(self) -> int:
        result = 0
        while True:
            b = self.read_byte()
            result = (result << 7) | (b & 0x7F)
            if not b & 0x80:
                return result


def fingerprint(ids: list[bytes]) -> bytes:
    """Fingerprint of a set of ids.

    The ids are summed as little-endian 256-bit integers modulo 2**256; the
    sum (32 bytes, little-endian) followed by the varint count is hashed with
    SHA-256 and truncated to 16 bytes.
    """
    total = 0
    for item in ids:
        total += int.from_bytes(item, "little")
    total &= (1 << 256) - 1
    digest = hashlib.sha256(total.to_bytes(32, "little") + encode_varint(len(ids))).digest()
    return digest[:FINGERPRINT_SIZE]
