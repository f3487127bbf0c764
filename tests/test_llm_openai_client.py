from __future__ import annotations

import asyncio
import importlib.util
import sys
import types
from types import SimpleNamespace

import pytest

from leasing_agent.conversation_store import Message, ToolCallPart
from leasing_agent.llm_client import OpenAILLMClient, ProviderError, TextDelta, ToolCallRequest
from leasing_agent.tools import ToolSpec, UnitListing


def _chunk(content=None, tool_calls=None):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content, tool_calls=tool_calls))])


def _tc(index, id=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))


class _FakeStream:
    def __init__(self, events):
        self._events = list(events)

    def __aiter__(self):
        self._i = 0
        return self

    async def __anext__(self):
        if self._i >= len(self._events):
            raise StopAsyncIteration
        v = self._events[self._i]
        self._i += 1
        if isinstance(v, Exception):
            raise v
        return v


class _FakeCompletions:
    def __init__(self, owner):
        self._owner = owner

    async def create(self, **kwargs):
        self._owner.requests.append(kwargs)
        if kwargs.get("stream"):
            return _FakeStream(self._owner.events)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self._owner.json_text))])


class _FakeAsyncOpenAI:
    instances: list["_FakeAsyncOpenAI"] = []
    events: list = []
    json_text = "{}"

    def __init__(self, api_key=None, timeout=None):
        _ = (api_key, timeout)
        self.closed = False
        self.requests: list[dict] = []
        self.chat = SimpleNamespace(completions=_FakeCompletions(self))
        _FakeAsyncOpenAI.instances.append(self)

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_openai(monkeypatch):
    fake_mod = types.ModuleType("openai")
    fake_mod.AsyncOpenAI = _FakeAsyncOpenAI
    monkeypatch.setitem(sys.modules, "openai", fake_mod)
    _FakeAsyncOpenAI.instances = []
    _FakeAsyncOpenAI.events = []
    _FakeAsyncOpenAI.json_text = "{}"
    return _FakeAsyncOpenAI


def test_openai_client_streams_text_then_tool_calls(fake_openai) -> None:
    fake_openai.events = [
        _chunk(content="Let me "),
        _chunk(content="check."),
        _chunk(tool_calls=[_tc(0, id="call_1", name="get_units", arguments='{"cityAnd')]),
        _chunk(tool_calls=[_tc(0, arguments='State": "Austin, TX"}')]),
        _chunk(tool_calls=[_tc(1, id="call_2", name="book_appointment", arguments="not json")]),
        SimpleNamespace(choices=[]),
    ]

    async def _run() -> None:
        client = OpenAILLMClient(api_key="k", model="gpt-4o-mini")
        spec = ToolSpec(name="get_units", description="d", parameters={"type": "object"})
        history = [
            Message.user("hi"),
            Message(role="assistant", content="", tool_calls=[ToolCallPart(id="c0", name="get_units", arguments={})]),
            Message(role="tool-result", content=[], tool_call_id="c0", name="get_units"),
        ]
        events = [ev async for ev in client.stream_step(system="sys", messages=history, tools=[spec])]

        assert events[:2] == [TextDelta("Let me "), TextDelta("check.")]
        assert events[2] == ToolCallRequest(id="call_1", name="get_units", arguments={"cityAndState": "Austin, TX"})
        assert events[3] == ToolCallRequest(id="call_2", name="book_appointment", arguments={"__unparsed__": "not json"})

        sent = fake_openai.instances[0].requests[0]
        assert [m["role"] for m in sent["messages"]] == ["system", "user", "assistant", "tool"]
        assert sent["messages"][2]["tool_calls"][0]["function"]["name"] == "get_units"
        assert sent["messages"][3]["tool_call_id"] == "c0"
        assert sent["tools"][0]["function"]["name"] == "get_units"

        await client.aclose()
        assert fake_openai.instances[0].closed

    asyncio.run(_run())


def test_openai_stream_failure_becomes_provider_error(fake_openai) -> None:
    fake_openai.events = [_chunk(content="Hi"), ConnectionError("reset")]

    async def _run() -> None:
        client = OpenAILLMClient(api_key="k")
        seen = []
        with pytest.raises(ProviderError):
            async for ev in client.stream_step(system="sys", messages=[Message.user("x")], tools=[]):
                seen.append(ev)
        assert seen == [TextDelta("Hi")]

    asyncio.run(_run())


def test_openai_generate_json(fake_openai) -> None:
    fake_openai.json_text = '{"units": []}'

    async def _run() -> None:
        client = OpenAILLMClient(api_key="k")
        assert await client.generate_json(prompt="make units", schema=UnitListing) == {"units": []}
        req = fake_openai.instances[0].requests[0]
        assert req["response_format"] == {"type": "json_object"}

    asyncio.run(_run())


def test_openai_client_missing_dependency_raises(monkeypatch) -> None:
    if importlib.util.find_spec("openai") is not None:
        # Environment has real package; this contract only applies when dependency is absent.
        return
    monkeypatch.delitem(sys.modules, "openai", raising=False)

    async def _run() -> None:
        client = OpenAILLMClient(api_key="k")
        try:
            async for _ in client.stream_step(system="s", messages=[], tools=[]):
                pass
        except RuntimeError as e:
            assert "optional dependency 'openai'" in str(e)
            return
        raise AssertionError("expected RuntimeError")

    asyncio.run(_run())
