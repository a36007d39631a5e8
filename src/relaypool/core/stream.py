"""
Bounded multi-consumer broadcast streams.

The pool publishes into an [EventStream][relaypool.core.stream.EventStream]
from synchronous message routing, so publishing never awaits: every consumer
owns a bounded buffer and a slow consumer only affects itself. When a buffer
is full the stream applies its
[OverflowPolicy][relaypool.core.stream.OverflowPolicy]:

* ``drop_oldest`` -- discard the oldest buffered item to make room.
* ``disconnect`` -- detach the consumer; it drains what it already holds and
  then raises [CapacityExceeded][relaypool.core.exceptions.CapacityExceeded].

Examples:
    ```python
    consumer = pool.stream()
    async for item in consumer:
        print(item.event.id, sorted(item.confirmed_by))
    ```
"""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

from relaypool.models.event import Event  # noqa: TC001

from .exceptions import CapacityExceeded


T = TypeVar("T")

_consumer_ids = itertools.count(1)


class OverflowPolicy(StrEnum):
    DROP_OLDEST = "drop_oldest"
    DISCONNECT = "disconnect"


class StreamConfig(BaseModel):
    """Per-consumer buffering for a broadcast stream."""

    buffer_size: int = Field(default=4096, ge=1, description="Items buffered per consumer")
    overflow_policy: OverflowPolicy = Field(
        default=OverflowPolicy.DROP_OLDEST, description="What to do when a buffer is full"
    )


@dataclass(frozen=True, slots=True)
class StreamItem:
    """An event delivered on the unified stream.

    Attributes:
        event: The deduplicated event.
        relay_url: The relay that delivered it first.
    """

    event: Event
    relay_url: str
    _confirmations: set[str] = field(repr=False, compare=False)

    @property
    def confirmed_by(self) -> frozenset[str]:
        """Relays that have sent this event so far. Grows as duplicates arrive."""
        return frozenset(self._confirmations)


OverflowCallback = Callable[["StreamConsumer[Any]", int, bool], None]


class StreamConsumer(Generic[T]):
    """One reader of an [EventStream][relaypool.core.stream.EventStream].

    Iterate with ``async for`` or call [get()][relaypool.core.stream.StreamConsumer.get].
    Iteration ends once the stream is closed and the buffer is drained.
    """

    def __init__(self, stream: EventStream[T], name: str, buffer_size: int) -> None:
        self._stream = stream
        self._name = name
        self._buffer: deque[T] = deque()
        self._buffer_size = buffer_size
        self._wakeup = asyncio.Event()
        self._closed = False
        self._overflowed = False
        self._overflowing = False
        self._dropped = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def overflowed(self) -> bool:
        """Whether the consumer was detached because its buffer overflowed."""
        return self._overflowed

    @property
    def dropped(self) -> int:
        """Items discarded because the buffer was full."""
        return self._dropped

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def _push(self, item: T, policy: OverflowPolicy, on_overflow: OverflowCallback | None) -> bool:
        """Buffer *item*. Returns False when the consumer must be detached."""
        if len(self._buffer) < self._buffer_size:
            self._buffer.append(item)
            self._wakeup.set()
            return True

        self._dropped += 1
        if policy is OverflowPolicy.DISCONNECT:
            self._overflowed = True
            self._close()
            if on_overflow is not None:
                on_overflow(self, 1, True)
            return False

        self._buffer.popleft()
        self._buffer.append(item)
        self._wakeup.set()
        # One report per overflow episode; a successful read ends the episode.
        if not self._overflowing:
            self._overflowing = True
            if on_overflow is not None:
                on_overflow(self, 1, False)
        return True

    def _close(self) -> None:
        self._closed = True
        self._wakeup.set()

    def get_nowait(self) -> T | None:
        """Return the next buffered item, or ``None`` when the buffer is empty."""
        if self._buffer:
            self._overflowing = False
            return self._buffer.popleft()
        return None

    async def get(self) -> T | None:
        """Wait for the next item.

        Returns:
            The next item, or ``None`` once the stream is closed and drained.

        Raises:
            CapacityExceeded: The consumer was detached on overflow and its
                remaining buffer has been drained.
        """
        while True:
            if self._buffer:
                self._overflowing = False
                return self._buffer.popleft()
            if self._overflowed:
                raise CapacityExceeded(
                    f"consumer {self._name} of stream {self._stream.name} was disconnected "
                    f"after dropping {self._dropped} item(s)"
                )
            if self._closed:
                return None
            self._wakeup.clear()
            await self._wakeup.wait()

    def close(self) -> None:
        """Detach from the stream. Buffered items can still be read."""
        self._stream.remove(self)
        self._close()

    def __aiter__(self) -> StreamConsumer[T]:
        return self

    async def __anext__(self) -> T:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def __repr__(self) -> str:
        return (
            f"StreamConsumer(name={self._name}, pending={len(self._buffer)}, "
            f"dropped={self._dropped}, closed={self._closed})"
        )


class EventStream(Generic[T]):
    """Bounded broadcast of items to any number of consumers.

    Args:
        name: Stream name used in logs, metrics and overflow reports.
        config: Buffer size and overflow policy applied to every consumer.
        on_overflow: Synchronous callback ``(consumer, dropped, disconnected)``
            invoked when a consumer's buffer overflows.
    """

    def __init__(
        self,
        name: str,
        config: StreamConfig | None = None,
        on_overflow: OverflowCallback | None = None,
    ) -> None:
        self._name = name
        self._config = config or StreamConfig()
        self._on_overflow = on_overflow
        self._consumers: list[StreamConsumer[T]] = []
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def consumer_count(self) -> int:
        return len(self._consumers)

    def consumer(self, name: str | None = None, buffer_size: int | None = None) -> StreamConsumer[T]:
        """Attach a new consumer. On a closed stream the consumer is already closed."""
        consumer: StreamConsumer[T] = StreamConsumer(
            self,
            name or f"{self._name}-{next(_consumer_ids)}",
            buffer_size or self._config.buffer_size,
        )
        if self._closed:
            consumer._close()
        else:
            self._consumers.append(consumer)
        return consumer

    def publish(self, item: T) -> int:
        """Deliver *item* to every consumer without awaiting.

        Returns:
            Number of consumers that buffered the item.
        """
        if self._closed:
            return 0
        delivered = 0
        for consumer in list(self._consumers):
            if consumer._push(item, self._config.overflow_policy, self._on_overflow):
                delivered += 1
            else:
                self.remove(consumer)
        return delivered

    def remove(self, consumer: StreamConsumer[T]) -> None:
        if consumer in self._consumers:
            self._consumers.remove(consumer)

    def close(self) -> None:
        """Close the stream and every consumer. Idempotent."""
        if self._closed:
            return
        self._closed = True
        consumers, self._consumers = self._consumers, []
        for consumer in consumers:
            consumer._close()

    def __repr__(self) -> str:
        return f"EventStream(name={self._name}, consumers={len(self._consumers)}, closed={self._closed})"
