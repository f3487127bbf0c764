from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Literal

from .clock import Clock
from .config import MAX_STEPS_CEILING
from .conversation_store import Message, ToolCallPart
from .llm_client import LLMClient, TextDelta, ToolCallRequest
from .logs import log_event
from .metrics import M
from .sessions import SessionHandle
from .tools import ToolCallRecord, ToolRegistry
from .transport import ResponseStream


PipelineStatus = Literal["completed", "step_limit", "aborted", "disconnected"]


@dataclass(frozen=True, slots=True)
class PipelineResult:
    status: PipelineStatus
    steps: int
    text: str
    tool_records: tuple[ToolCallRecord, ...]
    appended: bool


def tool_debug_event(record: ToolCallRecord) -> dict[str, Any]:
    return {"message": f"Tool call {record.name} result:\n{record.pretty_result()}"}


def _call_key(call: ToolCallRequest) -> tuple[str, str]:
    return (call.name, json.dumps(call.arguments, sort_keys=True, separators=(",", ":"), default=str))


class GenerationPipeline:
    """
    Bounded tool-augmented generation for one user turn.

    Each step streams text straight to the transport and may request tools. Tool
    results go back into the working context for the next step and are surfaced
    as debug events once the step completes. The loop stops when a step asks for
    no tools, or after max_steps regardless of what the model wants.
    """

    def __init__(
        self,
        *,
        llm: LLMClient,
        tools: ToolRegistry,
        clock: Clock,
        system_prompt: Callable[[], str],
        max_steps: int = MAX_STEPS_CEILING,
        settle_timeout_ms: int = 30000,
        metrics: Any | None = None,
    ) -> None:
        self._llm = llm
        self._tools = tools
        self._clock = clock
        self._system_prompt = system_prompt
        self._max_steps = max(1, min(MAX_STEPS_CEILING, int(max_steps)))
        self._settle_timeout_ms = int(settle_timeout_ms)
        self._metrics = metrics

    @property
    def max_steps(self) -> int:
        return self._max_steps

    def _inc(self, key: str, value: int = 1) -> None:
        if self._metrics is not None:
            self._metrics.inc(M[key], value)

    async def _execute_tools(self, calls: list[ToolCallRequest]) -> list[ToolCallRecord]:
        records: list[ToolCallRecord] = []
        first_by_key: dict[tuple[str, str], ToolCallRecord] = {}
        for call in calls:
            key = _call_key(call)
            prior = first_by_key.get(key)
            if prior is not None:
                # Same tool, same input, same step: answer the repeat without re-running it.
                records.append(dataclasses.replace(prior, tool_call_id=call.id))
                continue
            record = await self._tools.invoke(name=call.name, arguments=call.arguments, tool_call_id=call.id)
            first_by_key[key] = record
            records.append(record)
        return records

    async def _settle(self, session_id: str, stream: ResponseStream) -> None:
        """End the stream, then wait until the client has read through the end or gone away."""

        async def _end_and_wait() -> None:
            await stream.end_stream()
            await stream.wait_settled()

        try:
            await self._clock.run_with_timeout(_end_and_wait(), self._settle_timeout_ms)
        except (TimeoutError, asyncio.TimeoutError):
            # A consumer that never drains counts as gone.
            log_event("pipeline", "settle_timeout", level=logging.WARNING, session_id=session_id)
            stream.disconnect()
        except asyncio.CancelledError:
            stream.disconnect()
            raise

    async def run(self, *, session: SessionHandle, stream: ResponseStream) -> PipelineResult:
        started = self._clock.now_ms()
        system = self._system_prompt()
        specs = self._tools.specs()
        working: list[Message] = list(session.history)
        texts: list[str] = []
        all_records: list[ToolCallRecord] = []
        steps = 0
        status: PipelineStatus = "completed"

        try:
            for step in range(1, self._max_steps + 1):
                if stream.disconnected:
                    status = "disconnected"
                    break
                steps = step
                step_text: list[str] = []
                calls: list[ToolCallRequest] = []

                events = self._llm.stream_step(system=system, messages=working, tools=specs)
                async with contextlib.aclosing(events):
                    async for ev in events:
                        if isinstance(ev, TextDelta):
                            step_text.append(ev.text)
                            await stream.emit_speech(ev.text)
                            if stream.disconnected:
                                break
                        else:
                            calls.append(ev)
                texts.append("".join(step_text))

                if stream.disconnected:
                    status = "disconnected"
                    break
                if not calls:
                    status = "completed"
                    break

                records = await self._execute_tools(calls)
                all_records.extend(records)
                working.append(
                    Message(
                        role="assistant",
                        content="".join(step_text),
                        tool_calls=[ToolCallPart(id=c.id, name=c.name, arguments=c.arguments) for c in calls],
                    )
                )
                for rec in records:
                    working.append(
                        Message(role="tool-result", content=rec.result, tool_call_id=rec.tool_call_id, name=rec.name)
                    )
                for rec in records:
                    await stream.emit_debug(tool_debug_event(rec))

                if step == self._max_steps:
                    status = "step_limit"
                    self._inc("step_limit_hits_total")
                    log_event("pipeline", "step_limit", session_id=session.session_id, steps=step)
        except asyncio.CancelledError:
            stream.disconnect()
            raise
        except Exception as e:
            status = "aborted"
            self._inc("provider_errors_total")
            log_event(
                "pipeline",
                "aborted",
                level=logging.ERROR,
                session_id=session.session_id,
                step=steps,
                error=type(e).__name__,
                detail=str(e)[:200],
            )

        # Nothing is appended until the client's side of the stream is settled.
        await self._settle(session.session_id, stream)
        if status in ("completed", "step_limit") and stream.disconnected:
            status = "disconnected"

        appended = False
        if status == "disconnected":
            self._inc("disconnects_total")
            text = stream.flushed_text
            log_event("pipeline", "disconnected", session_id=session.session_id, step=steps, flushed_chars=len(text))
        elif status == "aborted":
            text = ""
        else:
            text = "".join(texts)
        if text:
            session.append(Message.assistant(text))
            appended = True

        if self._metrics is not None:
            self._metrics.observe(M["steps_per_turn"], steps)
            self._metrics.observe(M["turn_ms"], self._clock.now_ms() - started)
        log_event(
            "pipeline",
            "turn_finished",
            session_id=session.session_id,
            status=status,
            steps=steps,
            tool_calls=len(all_records),
            chars=len(text),
        )
        return PipelineResult(
            status=status,
            steps=steps,
            text=text,
            tool_records=tuple(all_records),
            appended=appended,
        )
