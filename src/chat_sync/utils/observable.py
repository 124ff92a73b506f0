"""
Observable snapshot holder.

'Observable' keeps the latest immutable snapshot of some state and pushes every
new snapshot to its subscribers. UI collaborators either register a plain
callback ('subscribe') or consume snapshots as an async iterator ('watch').
Snapshots must be immutable (tuples of pydantic models) so a subscriber can
never mutate the state it observes.
"""

import asyncio
from collections.abc import AsyncGenerator, Callable
from typing import Generic, TypeVar

from loguru import logger

T = TypeVar("T")


class Observable(Generic[T]):
    def __init__(self, initial: T) -> None:
        self._value = initial
        self._callbacks: list[Callable[[T], None]] = []
        self._queues: set[asyncio.Queue[T]] = set()

    @property
    def value(self) -> T:
        return self._value

    def publish(self, value: T) -> None:
        self._value = value
        for callback in list(self._callbacks):
            try:
                callback(value)
            except Exception:
                logger.exception(f"Snapshot subscriber {callback!r} raised")
        for queue in self._queues:
            queue.put_nowait(value)

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register 'callback' and return a function that unregisters it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    async def watch(self) -> AsyncGenerator[T, None]:
        """Yield the current snapshot, then every published one until the consumer stops iterating."""
        queue: asyncio.Queue[T] = asyncio.Queue()
        self._queues.add(queue)
        try:
            yield self._value
            while True:
                yield await queue.get()
        finally:
            self._queues.discard(queue)
