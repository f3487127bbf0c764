from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Protocol, Union

from pydantic import BaseModel

from .clock import Clock
from .conversation_store import Message
from .tools import ToolSpec


class ProviderError(RuntimeError):
    """The model provider failed; fatal for the current turn."""


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ToolCallRequest:
    id: str
    name: str
    arguments: dict[str, Any]


StepEvent = Union[TextDelta, ToolCallRequest]


class LLMClient(Protocol):
    def stream_step(
        self,
        *,
        system: str,
        messages: list[Message],
        tools: list[ToolSpec],
    ) -> AsyncIterator[StepEvent]:
        """One model step: text deltas as they arrive, then any requested tool calls."""
        ...

    async def generate_json(self, *, prompt: str, schema: type[BaseModel]) -> Any: ...

    async def aclose(self) -> None: ...


def _as_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, separators=(",", ":"), sort_keys=True, default=str)


@dataclass(slots=True)
class ScriptedStep:
    tokens: list[str] = field(default_factory=list)
    tool_calls: list[ToolCallRequest] = field(default_factory=list)


class FakeLLMClient:
    """
    Deterministic model for tests and the default `fake` provider.

    Plays `steps` in order; once exhausted it repeats the last one when
    `repeat_last` is set, otherwise it answers with `fallback_text`.
    """

    def __init__(
        self,
        *,
        steps: Optional[list[ScriptedStep]] = None,
        clock: Optional[Clock] = None,
        token_delay_ms: int = 0,
        repeat_last: bool = False,
        fallback_text: str = "Sorry, could you say that again?",
        fail_on_step: Optional[int] = None,
        json_objects: Optional[list[Any]] = None,
    ) -> None:
        self._steps = list(steps or [])
        self._clock = clock
        self._token_delay_ms = int(token_delay_ms)
        self._repeat_last = bool(repeat_last)
        self._fallback_text = fallback_text
        self._fail_on_step = fail_on_step
        self._json_objects = list(json_objects or [])
        self.calls: list[list[Message]] = []
        self.json_prompts: list[str] = []
        self.closed = False

    @property
    def step_calls(self) -> int:
        return len(self.calls)

    def _next_step(self, index: int) -> ScriptedStep:
        if index < len(self._steps):
            return self._steps[index]
        if self._repeat_last and self._steps:
            return self._steps[-1]
        return ScriptedStep(tokens=[self._fallback_text])

    async def stream_step(
        self,
        *,
        system: str,
        messages: list[Message],
        tools: list[ToolSpec],
    ) -> AsyncIterator[StepEvent]:
        index = len(self.calls)
        self.calls.append([m.model_copy(deep=True) for m in messages])
        if self._fail_on_step is not None and index + 1 >= self._fail_on_step:
            raise ProviderError("scripted provider failure")
        step = self._next_step(index)
        for tok in step.tokens:
            if self._token_delay_ms > 0 and self._clock is not None:
                await self._clock.sleep_ms(self._token_delay_ms)
            else:
                await asyncio.sleep(0)
            yield TextDelta(tok)
        for i, call in enumerate(step.tool_calls):
            # Fresh ids per step so repeated steps never collide.
            yield ToolCallRequest(id=f"{call.id}:{index}:{i}", name=call.name, arguments=dict(call.arguments))

    async def generate_json(self, *, prompt: str, schema: type[BaseModel]) -> Any:
        self.json_prompts.append(prompt)
        if not self._json_objects:
            raise ProviderError("no scripted json object")
        return self._json_objects.pop(0)

    async def aclose(self) -> None:
        self.closed = True


class OpenAILLMClient:
    """
    OpenAI Chat Completions streaming adapter with function tools.

    Lazy-imports `openai` so deterministic tests run without the dependency.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        timeout_ms: int = 15000,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_ms = int(timeout_ms)
        self._client: Any = None

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            from openai import AsyncOpenAI  # type: ignore[import-not-found]
        except Exception as e:
            raise RuntimeError(
                "OpenAILLMClient requires the optional dependency 'openai'. "
                "Install with: python3 -m pip install -e '.[openai]'"
            ) from e
        self._client = AsyncOpenAI(api_key=self.api_key, timeout=max(1.0, self.timeout_ms / 1000.0))
        return self._client

    @staticmethod
    def _messages(system: str, messages: list[Message]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = [{"role": "system", "content": system}]
        for m in messages:
            if m.role == "user":
                out.append({"role": "user", "content": _as_text(m.content)})
            elif m.role == "assistant":
                msg: dict[str, Any] = {"role": "assistant", "content": _as_text(m.content) or None}
                if m.tool_calls:
                    msg["tool_calls"] = [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                        }
                        for tc in m.tool_calls
                    ]
                out.append(msg)
            else:
                out.append({"role": "tool", "tool_call_id": m.tool_call_id or "", "content": _as_text(m.content)})
        return out

    @staticmethod
    def _tools(tools: list[ToolSpec]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
            }
            for t in tools
        ]

    @staticmethod
    def _parse_arguments(raw: str) -> dict[str, Any]:
        try:
            parsed = json.loads(raw or "{}")
        except ValueError:
            # Unparseable arguments fail schema validation downstream.
            return {"__unparsed__": raw}
        return parsed if isinstance(parsed, dict) else {"__unparsed__": raw}

    async def stream_step(
        self,
        *,
        system: str,
        messages: list[Message],
        tools: list[ToolSpec],
    ) -> AsyncIterator[StepEvent]:
        client = self._ensure_client()
        pending: dict[int, dict[str, str]] = {}
        try:
            stream = await client.chat.completions.create(
                model=self.model,
                messages=self._messages(system, messages),
                tools=self._tools(tools) or None,
                stream=True,
            )
            async for chunk in stream:
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                delta = getattr(choices[0], "delta", None)
                if delta is None:
                    continue
                text = getattr(delta, "content", None)
                if text:
                    yield TextDelta(str(text))
                for tc in getattr(delta, "tool_calls", None) or []:
                    slot = pending.setdefault(int(getattr(tc, "index", 0) or 0), {"id": "", "name": "", "arguments": ""})
                    if getattr(tc, "id", None):
                        slot["id"] = str(tc.id)
                    fn = getattr(tc, "function", None)
                    if fn is not None:
                        if getattr(fn, "name", None):
                            slot["name"] += str(fn.name)
                        if getattr(fn, "arguments", None):
                            slot["arguments"] += str(fn.arguments)
        except asyncio.CancelledError:
            raise
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"openai stream failed: {type(e).__name__}") from e

        for index in sorted(pending):
            slot = pending[index]
            yield ToolCallRequest(
                id=slot["id"] or f"call_{index}",
                name=slot["name"],
                arguments=self._parse_arguments(slot["arguments"]),
            )

    async def generate_json(self, *, prompt: str, schema: type[BaseModel]) -> Any:
        client = self._ensure_client()
        instructions = (
            "Respond with a single JSON object matching this JSON schema:\n"
            + json.dumps(schema.model_json_schema(), separators=(",", ":"))
        )
        try:
            resp = await client.chat.completions.create(
                model=self.model,
                messages=[{"role": "system", "content": instructions}, {"role": "user", "content": prompt}],
                response_format={"type": "json_object"},
            )
            return json.loads(resp.choices[0].message.content or "{}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ProviderError(f"openai json generation failed: {type(e).__name__}") from e

    async def aclose(self) -> None:
        if self._client is not None:
            close_fn = getattr(self._client, "close", None)
            if callable(close_fn):
                res = close_fn()
                if asyncio.iscoroutine(res):
                    await res
            self._client = None


class GeminiLLMClient:
    """
    Gemini adapter using the Google Gen AI SDK (google-genai), manual function calling.

    Lazily imports `google-genai` so tests do not require credentials or the dependency.
    """

    def __init__(self, *, api_key: str = "", model: str = "gemini-2.5-flash-lite") -> None:
        self._api_key = api_key
        self._model = model
        self._client: Any = None
        self._aclient: Any = None
        self._types: Any = None

    def _ensure_client(self) -> tuple[Any, Any]:
        if self._aclient is not None:
            return (self._aclient, self._types)
        try:
            from google import genai  # type: ignore[import-not-found]
            from google.genai import types  # type: ignore[import-not-found]
        except Exception as e:
            raise RuntimeError(
                "GeminiLLMClient requires the optional dependency 'google-genai'. "
                "Install with: python3 -m pip install -e '.[gemini]'"
            ) from e
        self._client = genai.Client(api_key=self._api_key)
        self._aclient = self._client.aio
        self._types = types
        return (self._aclient, self._types)

    @staticmethod
    def _contents(types_mod: Any, messages: list[Message]) -> list[Any]:
        contents: list[Any] = []
        for m in messages:
            if m.role == "user":
                contents.append(types_mod.Content(role="user", parts=[types_mod.Part(text=_as_text(m.content))]))
            elif m.role == "assistant":
                parts = []
                text = _as_text(m.content)
                if text:
                    parts.append(types_mod.Part(text=text))
                for tc in m.tool_calls or []:
                    parts.append(
                        types_mod.Part(function_call=types_mod.FunctionCall(id=tc.id, name=tc.name, args=tc.arguments))
                    )
                if parts:
                    contents.append(types_mod.Content(role="model", parts=parts))
            else:
                contents.append(
                    types_mod.Content(
                        role="user",
                        parts=[
                            types_mod.Part.from_function_response(
                                name=m.name or "",
                                response={"result": m.content},
                            )
                        ],
                    )
                )
        return contents

    def _config(self, types_mod: Any, system: str, tools: list[ToolSpec]) -> Any:
        declarations = [
            types_mod.FunctionDeclaration(
                name=t.name,
                description=t.description,
                parameters_json_schema=t.parameters,
            )
            for t in tools
        ]
        return types_mod.GenerateContentConfig(
            system_instruction=system,
            tools=[types_mod.Tool(function_declarations=declarations)] if declarations else None,
            automatic_function_calling=types_mod.AutomaticFunctionCallingConfig(disable=True),
        )

    async def stream_step(
        self,
        *,
        system: str,
        messages: list[Message],
        tools: list[ToolSpec],
    ) -> AsyncIterator[StepEvent]:
        aclient, types_mod = self._ensure_client()
        calls: list[ToolCallRequest] = []
        try:
            stream = await aclient.models.generate_content_stream(
                model=self._model,
                contents=self._contents(types_mod, messages),
                config=self._config(types_mod, system, tools),
            )
            async for chunk in stream:
                candidates = getattr(chunk, "candidates", None) or []
                if not candidates:
                    continue
                content = getattr(candidates[0], "content", None)
                for p in getattr(content, "parts", None) or []:
                    if getattr(p, "thought", False):
                        continue
                    fc = getattr(p, "function_call", None)
                    if fc is not None:
                        calls.append(
                            ToolCallRequest(
                                id=str(getattr(fc, "id", None) or f"call_{len(calls)}"),
                                name=str(getattr(fc, "name", "") or ""),
                                arguments=dict(getattr(fc, "args", None) or {}),
                            )
                        )
                        continue
                    text = getattr(p, "text", None)
                    if text:
                        yield TextDelta(str(text))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ProviderError(f"gemini stream failed: {type(e).__name__}") from e

        for call in calls:
            yield call

    async def generate_json(self, *, prompt: str, schema: type[BaseModel]) -> Any:
        aclient, types_mod = self._ensure_client()
        try:
            resp = await aclient.models.generate_content(
                model=self._model,
                contents=prompt,
                config=types_mod.GenerateContentConfig(
                    response_mime_type="application/json",
                    response_schema=schema,
                ),
            )
            return json.loads(getattr(resp, "text", None) or "{}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ProviderError(f"gemini json generation failed: {type(e).__name__}") from e

    async def aclose(self) -> None:
        if self._aclient is not None:
            try:
                close_fn = getattr(self._aclient, "aclose", None)
                if callable(close_fn):
                    await close_fn()
            finally:
                self._aclient = None
                self._client = None
                self._types = None
