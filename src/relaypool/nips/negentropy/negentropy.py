"""
Negentropy range-based set reconciliation (protocol version 1).

Both sides hold a sealed [NegentropyStorage][relaypool.nips.negentropy.storage.NegentropyStorage].
The initiator sends fingerprints of 16 buckets covering its whole range; the
other side answers every range whose fingerprint differs by splitting it
again, until ranges are small enough (fewer than 32 items) to be exchanged as
plain id lists. Every disagreement strictly shrinks the ranges still in
play, so the exchange always terminates; the initiator accumulates the ids
only it has (``have``) and the ids only the other side has (``need``).

Examples:
    ```python
    ne = Negentropy(storage)
    msg = ne.initiate()
    while msg is not None:
        reply = await relay_roundtrip(msg)
        msg, have, need = ne.reconcile(reply)
    ```
"""

from __future__ import annotations

from .codec import (
    FINGERPRINT_SIZE,
    ID_SIZE,
    MAX_TIMESTAMP,
    PROTOCOL_VERSION,
    Bound,
    Mode,
    NegentropyError,
    Reader,
    encode_varint,
)
from .storage import NegentropyStorage


BUCKETS: int = 16
ID_LIST_THRESHOLD: int = BUCKETS * 2
MIN_FRAME_SIZE_LIMIT: int = 4096
# Room kept free for the trailing fingerprint when a frame is cut short.
_FRAME_SLACK: int = 200


def _to_bytes(message: str | bytes) -> bytes:
    if isinstance(message, bytes):
        return message
    try:
        return bytes.fromhex(message)
    except ValueError as e:
        raise NegentropyError(f"message is not valid hex: {e}") from e


class Negentropy:
    """One side of a negentropy exchange.

    Args:
        storage: Sealed item storage.
        frame_size_limit: Maximum message size in bytes, ``0`` for no limit.
            Otherwise at least 4096.

    Raises:
        NegentropyError: If the storage is not sealed or the limit is too small.
    """

    def __init__(self, storage: NegentropyStorage, frame_size_limit: int = 0) -> None:
        if not storage.sealed:
            raise NegentropyError("storage is not sealed")
        if frame_size_limit and frame_size_limit < MIN_FRAME_SIZE_LIMIT:
            raise NegentropyError(f"frame_size_limit must be 0 or >= {MIN_FRAME_SIZE_LIMIT}")
        self._storage = storage
        self._frame_size_limit = frame_size_limit
        self._is_initiator = False
        self._last_timestamp_in = 0
        self._last_timestamp_out = 0

    @property
    def is_initiator(self) -> bool:
        return self._is_initiator

    def initiate(self) -> str:
        """Build the opening message (hex) covering the full range."""
        if self._is_initiator:
            raise NegentropyError("already initiated")
        self._is_initiator = True
        self._last_timestamp_out = 0

        out = bytearray([PROTOCOL_VERSION])
        self._split_range(0, self._storage.size(), Bound(MAX_TIMESTAMP), out)
        return out.hex()

    def reconcile(self, message: str | bytes) -> tuple[str | None, list[str], list[str]]:
        """Process one incoming message.

        Returns:
            ``(next_message, have_ids, need_ids)``. ``next_message`` is hex,
            or ``None`` on the initiator side once the sets are reconciled.
            The id lists hold only the differences found in *this* message
            and are always empty on the responder side.

        Raises:
            NegentropyError: If the message is malformed or uses an
                unsupported protocol version (initiator side).
        """
        query = Reader(_to_bytes(message))
        have_ids: list[str] = []
        need_ids: list[str] = []
        self._last_timestamp_in = 0
        self._last_timestamp_out = 0

        full_output = bytearray([PROTOCOL_VERSION])

        version = query.read_byte()
        if not 0x60 <= version <= 0x6F:
            raise NegentropyError("invalid negentropy protocol version byte")
        if version != PROTOCOL_VERSION:
            if self._is_initiator:
                raise NegentropyError(
                    f"unsupported negentropy protocol version requested: {version - 0x60}"
                )
            return full_output.hex(), have_ids, need_ids

        storage_size = self._storage.size()
        prev_bound = Bound(0)
        prev_index = 0
        skip = False

        while len(query):
            o = bytearray()

            def flush_skip() -> None:
                nonlocal skip
                if skip:
                    skip = False
                    o.extend(self._encode_bound(prev_bound))
                    o.extend(encode_varint(Mode.SKIP))

            curr_bound = self._decode_bound(query)
            mode = query.read_varint()

            lower = prev_index
            upper = self._storage.find_lower_bound(prev_index, storage_size, curr_bound)

            if mode == Mode.SKIP:
                skip = True

            elif mode == Mode.FINGERPRINT:
                theirs = query.read_bytes(FINGERPRINT_SIZE)
                if theirs != self._storage.fingerprint(lower, upper):
                    flush_skip()
                    self._split_range(lower, upper, curr_bound, o)
                else:
                    skip = True

            elif mode == Mode.ID_LIST:
                count = query.read_varint()
                their_ids = [query.read_bytes(ID_SIZE) for _ in range(count)]

                if self._is_initiator:
                    skip = True
                    remaining = dict.fromkeys(their_ids)
                    for item_id in self._storage.ids(lower, upper):
                        if item_id in remaining:
                            del remaining[item_id]
                        else:
                            have_ids.append(item_id.hex())
                    need_ids.extend(item_id.hex() for item_id in remaining)
                else:
                    flush_skip()
                    response = bytearray()
                    response_count = 0
                    end_bound = curr_bound
                    for index in range(lower, upper):
                        if self._exceeded_frame_size_limit(len(full_output) + len(response)):
                            timestamp, item_id = self._storage.get(index)
                            end_bound = Bound(timestamp, item_id)
                            upper = index
                            break
                        response.extend(self._storage.get(index)[1])
                        response_count += 1

                    o.extend(self._encode_bound(end_bound))
                    o.extend(encode_varint(Mode.ID_LIST))
                    o.extend(encode_varint(response_count))
                    o.extend(response)
                    full_output.extend(o)
                    o.clear()

            else:
                raise NegentropyError(f"unexpected mode: {mode}")

            if self._exceeded_frame_size_limit(len(full_output) + len(o)):
                remaining_fp = self._storage.fingerprint(upper, storage_size)
                full_output.extend(self._encode_bound(Bound(MAX_TIMESTAMP)))
                full_output.extend(encode_varint(Mode.FINGERPRINT))
                full_output.extend(remaining_fp)
                break

            full_output.extend(o)
            prev_index = upper
            prev_bound = curr_bound

        if self._is_initiator and len(full_output) == 1:
            return None, have_ids, need_ids
        return full_output.hex(), have_ids, need_ids

    # -- Range splitting -------------------------------------------------------

    def _split_range(self, lower: int, upper: int, upper_bound: Bound, out: bytearray) -> None:
        num_elems = upper - lower

        if num_elems < ID_LIST_THRESHOLD:
            out.extend(self._encode_bound(upper_bound))
            out.extend(encode_varint(Mode.ID_LIST))
            out.extend(encode_varint(num_elems))
            for item_id in self._storage.ids(lower, upper):
                out.extend(item_id)
            return

        items_per_bucket, buckets_with_extra = divmod(num_elems, BUCKETS)
        curr = lower
        for i in range(BUCKETS):
            bucket_size = items_per_bucket + (1 if i < buckets_with_extra else 0)
            our_fp = self._storage.fingerprint(curr, curr + bucket_size)
            curr += bucket_size

            if curr == upper:
                next_bound = upper_bound
            else:
                next_bound = self._minimal_bound(
                    self._storage.get(curr - 1), self._storage.get(curr)
                )

            out.extend(self._encode_bound(next_bound))
            out.extend(encode_varint(Mode.FINGERPRINT))
            out.extend(our_fp)

    def _exceeded_frame_size_limit(self, n: int) -> bool:
        return bool(self._frame_size_limit) and n > self._frame_size_limit - _FRAME_SLACK

    @staticmethod
    def _minimal_bound(prev: tuple[int, bytes], curr: tuple[int, bytes]) -> Bound:
        """Shortest bound separating *prev* from *curr*."""
        if curr[0] != prev[0]:
            return Bound(curr[0])
        shared = 0
        for a, b in zip(curr[1], prev[1], strict=True):
            if a != b:
                break
            shared += 1
        return Bound(curr[0], curr[1][: shared + 1])

    # -- Bound encoding ----------------------------------------------------------

    def _decode_timestamp_in(self, reader: Reader) -> int:
        timestamp = reader.read_varint()
        timestamp = MAX_TIMESTAMP if timestamp == 0 else timestamp - 1
        if self._last_timestamp_in == MAX_TIMESTAMP or timestamp == MAX_TIMESTAMP:
            self._last_timestamp_in = MAX_TIMESTAMP
            return MAX_TIMESTAMP
        timestamp += self._last_timestamp_in
        self._last_timestamp_in = timestamp
        return timestamp

    def _decode_bound(self, reader: Reader) -> Bound:
        timestamp = self._decode_timestamp_in(reader)
        length = reader.read_varint()
        if length > ID_SIZE:
            raise NegentropyError("bound key too long")
        return Bound(timestamp, reader.read_bytes(length))

    def _encode_timestamp_out(self, timestamp: int) -> bytes:
        if timestamp == MAX_TIMESTAMP:
            self._last_timestamp_out = MAX_TIMESTAMP
            return encode_varint(0)
        delta = timestamp - self._last_timestamp_out
        self._last_timestamp_out = timestamp
        return encode_varint(delta + 1)

    def _encode_bound(self, bound: Bound) -> bytes:
        return (
            self._encode_timestamp_out(bound.timestamp)
            + encode_varint(len(bound.id))
            + bound.id
        )
