"""
Observable values and broadcast streams.

ObservableState holds one current value and pushes every replacement to
subscribers (a new subscriber first receives the current value).
Broadcast fans out discrete events to whoever is subscribed right now.

subscribe() registers immediately, before the first await, so nothing
published after the call is missed. Use it as an async context manager
(or call close()) to unregister.

Single-loop primitives: publish only from the event loop thread.
"""

import asyncio
import logging
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription(Generic[T]):
    def __init__(self, owner: "Broadcast[T]", queue: asyncio.Queue):
        self._owner = owner
        self._queue = queue

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        return await self._queue.get()

    async def get(self) -> T:
        return await self._queue.get()

    def get_nowait(self) -> T:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._owner._unregister(self._queue)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()
        return False


class Broadcast(Generic[T]):
    """Fan-out of events to per-subscriber queues."""

    def __init__(self, name: str = "broadcast", max_queue: int = 256):
        self.name = name
        self._max_queue = max_queue
        self._queues: List[asyncio.Queue] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def publish(self, item: T) -> None:
        for queue in list(self._queues):
            if queue.full():
                # Slow subscriber loses its oldest item; the publisher never blocks
                queue.get_nowait()
                logger.debug(f"[EVENTS] {self.name}: dropped oldest item for slow subscriber")
            queue.put_nowait(item)

    def subscribe(self) -> Subscription[T]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        self._queues.append(queue)
        return Subscription(self, queue)

    def _unregister(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)


class ObservableState(Broadcast[T]):
    """A value with change notification (the chat UI binds to one of these)."""

    def __init__(self, initial: T, name: str = "state"):
        super().__init__(name=name)
        self._value = initial

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        if value == self._value:
            return
        self._value = value
        self.publish(value)

    def update(self, fn: Callable[[T], T]) -> T:
        """Replace the value with fn(current) and notify. Returns the new value."""
        self.set(fn(self._value))
        return self._value

    def subscribe(self) -> Subscription[T]:
        subscription = super().subscribe()
        subscription._queue.put_nowait(self._value)
        return subscription
