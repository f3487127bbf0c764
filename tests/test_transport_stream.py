from __future__ import annotations

import asyncio

from leasing_agent.protocol import OutboundData, OutboundEnd, OutboundTTS
from leasing_agent.transport import ResponseStream


def test_end_stream_is_emitted_once() -> None:
    async def _run() -> None:
        stream = ResponseStream(turn_id="t1")
        await stream.emit_speech("Hi")
        await stream.emit_debug({"message": "x"})
        await stream.end_stream()
        await stream.end_stream()
        assert await stream.emit_speech("late") is False

        events = [ev async for ev in stream.iter_events()]
        assert [type(e) for e in events] == [OutboundTTS, OutboundData, OutboundEnd]
        assert stream.flushed_text == "Hi"
        assert not stream.disconnected

    asyncio.run(_run())


def test_closing_the_sse_body_marks_disconnect() -> None:
    async def _run() -> None:
        stream = ResponseStream(turn_id="t1")
        await stream.emit_speech("Hello")
        await stream.emit_speech(" there")

        body = stream.iter_sse()
        first = await body.__anext__()
        assert first.startswith("data: ") and '"Hello"' in first
        await body.aclose()

        assert stream.disconnected
        assert await stream.emit_speech("more") is False
        await stream.end_stream()
        assert stream.ended

    asyncio.run(_run())


def test_full_queue_applies_backpressure() -> None:
    async def _run() -> None:
        stream = ResponseStream(maxsize=1)
        await stream.emit_speech("a")
        blocked = asyncio.create_task(stream.emit_speech("b"))
        await asyncio.sleep(0)
        assert not blocked.done()

        events = stream.iter_events()
        assert (await events.__anext__()).content == "a"
        assert await blocked is True
        assert (await events.__anext__()).content == "b"
        assert stream.flushed_text == "a"
        await events.aclose()

    asyncio.run(_run())


def test_settles_when_end_is_read() -> None:
    async def _run() -> None:
        stream = ResponseStream(turn_id="t1")
        await stream.emit_speech("Hi")
        await stream.end_stream()
        waiter = asyncio.create_task(stream.wait_settled())
        await asyncio.sleep(0)
        assert not waiter.done()

        events = [ev async for ev in stream.iter_events()]
        await waiter
        assert [type(e) for e in events] == [OutboundTTS, OutboundEnd]
        assert stream.completed
        stream.disconnect()
        assert not stream.disconnected

    asyncio.run(_run())


def test_settles_when_client_leaves_before_end() -> None:
    async def _run() -> None:
        stream = ResponseStream(turn_id="t1")
        await stream.emit_speech("Hello")
        await stream.emit_speech(" there")
        await stream.end_stream()

        events = stream.iter_events()
        assert (await events.__anext__()).content == "Hello"
        waiter = asyncio.create_task(stream.wait_settled())
        await asyncio.sleep(0)
        assert not waiter.done()
        await events.aclose()

        await waiter
        assert stream.disconnected
        assert not stream.completed
        assert stream.flushed_text == ""

    asyncio.run(_run())
