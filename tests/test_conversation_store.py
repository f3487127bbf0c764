from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from leasing_agent.config import AgentConfig
from leasing_agent.conversation_store import (
    InMemoryConversationStore,
    JsonDirConversationStore,
    Message,
    build_conversation_store,
)


def _history(n: int) -> list[Message]:
    return [Message.user(f"u{i}") if i % 2 == 0 else Message.assistant(f"a{i}") for i in range(n)]


def test_memory_store_round_trips_in_order() -> None:
    async def _run() -> None:
        store = InMemoryConversationStore()
        assert await store.load("s1") == []
        for n in (1, 2, 7):
            await store.persist("s1", _history(n))
            assert await store.load("s1") == _history(n)

    asyncio.run(_run())


def test_memory_store_returns_copies() -> None:
    async def _run() -> None:
        store = InMemoryConversationStore()
        msgs = [Message.user("hi")]
        await store.persist("s1", msgs)
        msgs.append(Message.assistant("mutated"))
        loaded = await store.load("s1")
        loaded.append(Message.assistant("also mutated"))

        assert await store.load("s1") == [Message.user("hi")]
        assert store.session_ids() == ["s1"]

    asyncio.run(_run())


def test_file_store_overwrites_whole_history(tmp_path: Path) -> None:
    async def _run() -> None:
        store = JsonDirConversationStore(tmp_path)
        await store.persist("call-1", _history(3))
        await store.persist("call-1", _history(2))
        await store.persist("call-2", _history(1))

        assert await store.load("call-1") == _history(2)
        assert await store.load("call-2") == _history(1)
        assert await store.load("missing") == []

        files = sorted(p.name for p in tmp_path.iterdir())
        assert len(files) == 2
        doc = json.loads((tmp_path / files[0]).read_text(encoding="utf-8"))
        assert set(doc) == {"session_id", "messages"}

    asyncio.run(_run())


def test_file_store_survives_new_instance(tmp_path: Path) -> None:
    async def _run() -> None:
        await JsonDirConversationStore(tmp_path).persist("s1", [Message.user("hello"), Message.assistant("hi")])
        again = JsonDirConversationStore(tmp_path)
        assert [m.content for m in await again.load("s1")] == ["hello", "hi"]

    asyncio.run(_run())


def test_missing_store_dir_falls_back_to_memory_outside_production() -> None:
    store = build_conversation_store(AgentConfig(store_backend="file", store_dir=""))
    assert isinstance(store, InMemoryConversationStore)


def test_missing_store_dir_is_fatal_in_production() -> None:
    with pytest.raises(RuntimeError):
        build_conversation_store(AgentConfig(app_env="production", store_backend="file", store_dir=""))


def test_file_backend_selected_when_configured(tmp_path: Path) -> None:
    store = build_conversation_store(AgentConfig(store_backend="file", store_dir=str(tmp_path / "convos")))
    assert isinstance(store, JsonDirConversationStore)
    assert (tmp_path / "convos").is_dir()
