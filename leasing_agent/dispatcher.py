from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from .clock import Clock
from .config import AgentConfig
from .conversation_store import Message
from .llm_client import LLMClient
from .logs import log_event
from .metrics import M
from .pipeline import GenerationPipeline, PipelineResult
from .prompt import build_welcome_message
from .protocol import (
    MessageEvent,
    SessionEndEvent,
    SessionStartEvent,
    SessionUpdateEvent,
    UnrecognizedEvent,
    WebhookEvent,
)
from .sessions import SessionHandle, SessionRegistry, SessionTicket
from .tools import ToolRegistry
from .transport import ResponseStream


@dataclass(slots=True)
class AckAction:
    reason: str


@dataclass(slots=True)
class StreamAction:
    stream: ResponseStream
    task: "asyncio.Task[Optional[PipelineResult]]"


Action = Union[AckAction, StreamAction]

ToolRegistryFactory = Callable[[str], ToolRegistry]


class SessionEventDispatcher:
    """
    Classifies one inbound webhook event and produces exactly one action.

    Stream work for a session runs in a background task holding that session's
    place in the registry FIFO, so handlers for one session never interleave while
    different sessions proceed in parallel.
    """

    def __init__(
        self,
        *,
        cfg: AgentConfig,
        registry: SessionRegistry,
        llm: LLMClient,
        tools_for_session: ToolRegistryFactory,
        system_prompt: Callable[[], str],
        clock: Clock,
        metrics: Any | None = None,
        welcome_message: Callable[[], str] = build_welcome_message,
    ) -> None:
        self._cfg = cfg
        self._registry = registry
        self._llm = llm
        self._tools_for_session = tools_for_session
        self._system_prompt = system_prompt
        self._clock = clock
        self._metrics = metrics
        self._welcome_message = welcome_message
        self._tasks: set[asyncio.Task[Any]] = set()

    def _inc(self, key: str) -> None:
        if self._metrics is not None:
            self._metrics.inc(M[key], 1)

    def handle(self, event: WebhookEvent) -> Action:
        """
        Synchronous on purpose: the session reservation happens in arrival order,
        before any suspension point. Raises SessionBusyError when the session's
        queue is full.
        """

        self._inc("events_total")
        if isinstance(event, SessionStartEvent):
            ticket = self._registry.reserve(event.session_id)
            stream = self._new_stream(event.turn_id)
            return self._spawn(ticket, self._run_session_start(ticket, stream), stream)
        if isinstance(event, (SessionUpdateEvent, SessionEndEvent)):
            log_event("dispatcher", "control_event", session_id=event.session_id, type=event.type)
            return AckAction(reason=event.type)
        if isinstance(event, MessageEvent):
            ticket = self._registry.reserve(event.session_id)
            stream = self._new_stream(event.turn_id)
            return self._spawn(ticket, self._run_message(ticket, event, stream), stream)
        if isinstance(event, UnrecognizedEvent):
            self._inc("events_unrecognized_total")
            log_event(
                "dispatcher",
                "unrecognized_event_type",
                level=logging.WARNING,
                session_id=event.session_id,
                type=event.type,
            )
            return AckAction(reason="unrecognized")
        raise TypeError(f"unhandled webhook event variant: {type(event).__name__}")

    def _new_stream(self, turn_id: Optional[str]) -> ResponseStream:
        return ResponseStream(turn_id=turn_id, maxsize=self._cfg.outbound_queue_max)

    def _spawn(self, ticket: SessionTicket, coro: Any, stream: ResponseStream) -> StreamAction:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            ticket.release()
            if not t.cancelled() and t.exception() is not None:
                log_event(
                    "dispatcher",
                    "handler_failed",
                    level=logging.ERROR,
                    session_id=ticket.session_id,
                    error=type(t.exception()).__name__,
                )

        task.add_done_callback(_done)
        return StreamAction(stream=stream, task=task)

    async def _persist(self, session: SessionHandle) -> None:
        if session.dirty:
            await session.persist()

    async def _run_session_start(self, ticket: SessionTicket, stream: ResponseStream) -> None:
        try:
            async with ticket as session:
                welcome = self._welcome_message()
                await stream.emit_speech(welcome)
                session.append(Message.assistant(welcome))
                await stream.end_stream()
                await self._persist(session)
                log_event("dispatcher", "session_started", session_id=session.session_id)
        finally:
            await stream.end_stream()

    async def _run_message(
        self,
        ticket: SessionTicket,
        event: MessageEvent,
        stream: ResponseStream,
    ) -> Optional[PipelineResult]:
        try:
            async with ticket as session:
                session.append(Message.user(event.text))
                pipeline = GenerationPipeline(
                    llm=self._llm,
                    tools=self._tools_for_session(session.session_id),
                    clock=self._clock,
                    system_prompt=self._system_prompt,
                    max_steps=self._cfg.effective_max_steps,
                    settle_timeout_ms=self._cfg.stream_settle_timeout_ms,
                    metrics=self._metrics,
                )
                try:
                    result = await pipeline.run(session=session, stream=stream)
                finally:
                    # The user turn happened even when generation failed.
                    await self._persist(session)
                return result
        finally:
            await stream.end_stream()

    async def drain(self) -> None:
        """Wait for in-flight handlers (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
