from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Protocol, TypeVar


T = TypeVar("T")


class Clock(Protocol):
    def now_ms(self) -> int: ...

    def wall_ms(self) -> int: ...

    async def sleep_ms(self, ms: int) -> None: ...

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T: ...


@dataclass(frozen=True, slots=True)
class RealClock(Clock):
    def now_ms(self) -> int:
        return int(time.monotonic() * 1000)

    def wall_ms(self) -> int:
        return int(time.time() * 1000)

    async def sleep_ms(self, ms: int) -> None:
        await asyncio.sleep(max(0, ms) / 1000.0)

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T:
        if timeout_ms <= 0:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000.0)


class FakeClock(Clock):
    """
    Deterministic clock for tests.

    - now_ms()/wall_ms() only move when advance() is called.
    - sleep_ms() blocks until advance() reaches the wake time.
    """

    def __init__(self, start_ms: int = 0) -> None:
        self._now_ms = int(start_ms)
        self._sleepers: list[tuple[int, asyncio.Future[None]]] = []

    def now_ms(self) -> int:
        return self._now_ms

    def wall_ms(self) -> int:
        return self._now_ms

    async def sleep_ms(self, ms: int) -> None:
        if ms <= 0:
            await asyncio.sleep(0)
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._sleepers.append((self._now_ms + int(ms), fut))
        self._sleepers.sort(key=lambda x: x[0])
        await fut

    async def run_with_timeout(self, awaitable: Awaitable[T], timeout_ms: int) -> T:
        if timeout_ms <= 0:
            return await awaitable

        main_task = asyncio.ensure_future(awaitable)
        timeout_task = asyncio.create_task(self.sleep_ms(timeout_ms))
        try:
            done, _ = await asyncio.wait(
                {main_task, timeout_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if timeout_task in done and not main_task.done():
                main_task.cancel()
                await asyncio.gather(main_task, return_exceptions=True)
                raise TimeoutError(f"operation timed out after {timeout_ms}ms")

            timeout_task.cancel()
            await asyncio.gather(timeout_task, return_exceptions=True)
            return await main_task
        except asyncio.CancelledError:
            main_task.cancel()
            timeout_task.cancel()
            await asyncio.gather(main_task, timeout_task, return_exceptions=True)
            raise

    def set_ms(self, ms: int) -> None:
        """Jump the clock without waking sleepers (timestamp-only tests)."""
        self._now_ms = int(ms)

    async def advance(self, ms: int) -> None:
        if ms < 0:
            raise ValueError("FakeClock.advance(ms): ms must be >= 0")

        # Let tasks scheduled in this tick register their sleepers first.
        await asyncio.sleep(0)

        self._now_ms += int(ms)
        ready = [fut for wake_at, fut in self._sleepers if wake_at <= self._now_ms]
        self._sleepers = [(w, f) for w, f in self._sleepers if w > self._now_ms]
        for fut in ready:
            if not fut.done():
                fut.set_result(None)

        await asyncio.sleep(0)
