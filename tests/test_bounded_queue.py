from __future__ import annotations

import asyncio

import pytest

from leasing_agent.bounded_queue import BoundedDequeQueue, QueueClosed


def test_queued_items_survive_close_then_get_raises() -> None:
    async def _run() -> None:
        q: BoundedDequeQueue[int] = BoundedDequeQueue(2)
        assert await q.put(1)
        assert await q.put(2)
        q.close()
        assert await q.put(3) is False
        assert q.closed()
        assert [await q.get(), await q.get()] == [1, 2]
        with pytest.raises(QueueClosed):
            await q.get()

    asyncio.run(_run())


def test_close_wakes_blocked_producer_and_consumer() -> None:
    async def _run() -> None:
        full: BoundedDequeQueue[str] = BoundedDequeQueue(1)
        await full.put("a")
        producer = asyncio.create_task(full.put("b"))
        empty: BoundedDequeQueue[str] = BoundedDequeQueue(1)
        consumer = asyncio.create_task(empty.get())
        await asyncio.sleep(0)

        full.close()
        empty.close()
        assert await producer is False
        with pytest.raises(QueueClosed):
            await consumer
        assert full.qsize() == 1

    asyncio.run(_run())


def test_zero_size_rejected() -> None:
    with pytest.raises(ValueError):
        BoundedDequeQueue(0)
