from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Optional

from .bounded_queue import BoundedDequeQueue, QueueClosed
from .protocol import OutboundData, OutboundEnd, OutboundEvent, OutboundTTS, sse_frame


class ResponseStream:
    """
    Outbound channel for one webhook response.

    Producers call emit_speech / emit_debug / end_stream. The HTTP layer drains
    iter_sse(); a speech chunk counts as flushed only once the consumer has come
    back for the next frame, so flushed_text never exceeds what the caller received.

    The stream is settled once the consumer has read through response.end or
    the stream was disconnected; only then is flushed_text final.
    """

    def __init__(self, *, turn_id: Optional[str] = None, maxsize: int = 256) -> None:
        self.turn_id = turn_id
        self._q: BoundedDequeQueue[OutboundEvent] = BoundedDequeQueue(maxsize)
        self._ended = False
        self._completed = False
        self._disconnected = False
        self._settled = asyncio.Event()
        self._flushed: list[str] = []

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    @property
    def flushed_text(self) -> str:
        return "".join(self._flushed)

    async def emit_speech(self, text: str) -> bool:
        if not text or self._ended or self._disconnected:
            return False
        return await self._q.put(OutboundTTS(content=text, turn_id=self.turn_id))

    async def emit_debug(self, event: dict[str, Any]) -> bool:
        if self._ended or self._disconnected:
            return False
        return await self._q.put(OutboundData(content=dict(event), turn_id=self.turn_id))

    async def end_stream(self) -> None:
        if self._ended:
            return
        self._ended = True
        if not self._disconnected:
            await self._q.put(OutboundEnd(turn_id=self.turn_id))
        self._q.close()

    async def wait_settled(self) -> None:
        await self._settled.wait()

    def disconnect(self) -> None:
        if self._completed or self._disconnected:
            return
        self._disconnected = True
        self._q.close()
        self._settled.set()

    async def iter_events(self) -> AsyncIterator[OutboundEvent]:
        try:
            while True:
                try:
                    event = await self._q.get()
                except QueueClosed:
                    return
                yield event
                if isinstance(event, OutboundTTS):
                    self._flushed.append(event.content)
                elif isinstance(event, OutboundEnd):
                    self._completed = True
                    self._settled.set()
                    return
        finally:
            if not self._completed:
                self.disconnect()

    async def iter_sse(self) -> AsyncIterator[str]:
        try:
            async for event in self.iter_events():
                yield sse_frame(event)
        finally:
            # Closing this wrapper does not close the inner generator.
            if not self._completed:
                self.disconnect()
