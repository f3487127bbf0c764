from __future__ import annotations

import asyncio
from collections import deque
from typing import Deque, Generic, TypeVar


T = TypeVar("T")


class QueueClosed(Exception):
    pass


class BoundedDequeQueue(Generic[T]):
    """
    Bounded async queue with synchronous close.

    - put() waits for room (producer backpressure) and returns False once closed.
    - close() is synchronous so it can run from a generator's finally block while
      that generator is being torn down; it wakes every waiter.
    - Items already queued stay readable after close; get() raises QueueClosed once drained.
    """

    def __init__(self, maxsize: int) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be > 0")
        self._maxsize = int(maxsize)
        self._q: Deque[T] = deque()
        self._closed = False
        self._not_empty = asyncio.Event()
        self._not_full = asyncio.Event()
        self._not_full.set()

    def qsize(self) -> int:
        return len(self._q)

    def closed(self) -> bool:
        return self._closed

    async def put(self, item: T) -> bool:
        while not self._closed and len(self._q) >= self._maxsize:
            self._not_full.clear()
            await self._not_full.wait()
        if self._closed:
            return False
        self._q.append(item)
        self._not_empty.set()
        return True

    async def get(self) -> T:
        while not self._q and not self._closed:
            self._not_empty.clear()
            await self._not_empty.wait()
        if self._q:
            item = self._q.popleft()
            self._not_full.set()
            return item
        raise QueueClosed()

    def close(self) -> None:
        self._closed = True
        self._not_empty.set()
        self._not_full.set()
