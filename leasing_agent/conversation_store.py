from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Literal, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, TypeAdapter

from .config import AgentConfig
from .logs import log_event
from .metrics import M


MessageRole = Literal["user", "assistant", "tool-result"]


class ToolCallPart(BaseModel):
    model_config = ConfigDict(extra="forbid")
    id: str
    name: str
    arguments: dict[str, Any]


class Message(BaseModel):
    model_config = ConfigDict(extra="forbid")
    role: MessageRole
    content: Union[str, dict[str, Any], list[Any]]
    # Working-context only (never persisted): tool calls requested by the model,
    # and the call a tool-result answers.
    tool_calls: Optional[list[ToolCallPart]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    @staticmethod
    def user(text: str) -> "Message":
        return Message(role="user", content=text)

    @staticmethod
    def assistant(text: str) -> "Message":
        return Message(role="assistant", content=text)


_history_adapter = TypeAdapter(list[Message])


class StoreUnavailableError(RuntimeError):
    pass


class ConversationStore(Protocol):
    async def load(self, session_id: str) -> list[Message]: ...

    async def persist(self, session_id: str, messages: list[Message]) -> None: ...


class InMemoryConversationStore:
    """Resets on restart. Stores copies so callers cannot mutate history by reference."""

    def __init__(self, *, metrics: Any | None = None) -> None:
        self._conversations: dict[str, list[Message]] = {}
        self._metrics = metrics

    async def load(self, session_id: str) -> list[Message]:
        return [m.model_copy(deep=True) for m in self._conversations.get(session_id, [])]

    async def persist(self, session_id: str, messages: list[Message]) -> None:
        self._conversations[session_id] = [m.model_copy(deep=True) for m in messages]
        if self._metrics is not None:
            self._metrics.inc(M["store_persist_total"], 1)
        log_event("store", "persist", backend="memory", session_id=session_id, messages=len(messages))

    def session_ids(self) -> list[str]:
        return list(self._conversations)


def conversation_key(session_id: str) -> str:
    return f"conversation:{session_id}"


class JsonDirConversationStore:
    """One JSON document per session, whole-history overwrite."""

    def __init__(self, root: str | Path, *, metrics: Any | None = None) -> None:
        self._root = Path(root)
        self._metrics = metrics
        self._root.mkdir(parents=True, exist_ok=True)
        if not os.access(self._root, os.W_OK):
            raise StoreUnavailableError(f"store directory is not writable: {self._root}")

    def _path_for(self, session_id: str) -> Path:
        digest = hashlib.sha256(conversation_key(session_id).encode("utf-8")).hexdigest()
        return self._root / f"conversation-{digest[:32]}.json"

    def _read(self, path: Path) -> list[Message]:
        if not path.exists():
            return []
        raw = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            return []
        return _history_adapter.validate_python(raw.get("messages") or [])

    def _write(self, path: Path, session_id: str, messages: list[Message]) -> None:
        payload = {
            "session_id": session_id,
            "messages": [m.model_dump(exclude_none=True) for m in messages],
        }
        fd, tmp = tempfile.mkstemp(prefix=".conversation-", dir=str(self._root))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(json.dumps(payload, indent=2, sort_keys=True))
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    async def load(self, session_id: str) -> list[Message]:
        return await asyncio.to_thread(self._read, self._path_for(session_id))

    async def persist(self, session_id: str, messages: list[Message]) -> None:
        await asyncio.to_thread(self._write, self._path_for(session_id), session_id, list(messages))
        if self._metrics is not None:
            self._metrics.inc(M["store_persist_total"], 1)
        log_event("store", "persist", backend="file", session_id=session_id, messages=len(messages))


def build_conversation_store(cfg: AgentConfig, *, metrics: Any | None = None) -> ConversationStore:
    if cfg.store_backend == "file":
        try:
            if not cfg.store_dir.strip():
                raise StoreUnavailableError("STORE_DIR is not configured.")
            return JsonDirConversationStore(cfg.store_dir, metrics=metrics)
        except (StoreUnavailableError, OSError) as e:
            if cfg.is_production:
                raise
            log_event(
                "store",
                "fallback_to_memory",
                level=logging.WARNING,
                reason=str(e),
                note="data will reset on restart",
            )
    return InMemoryConversationStore(metrics=metrics)
