"""
Client-side transcript reconciliation.

Streaming speech-to-text and text generation deliver a turn as many fragments,
possibly repeated. The reconciler folds them into one display entry per
(role, turn id), kept in first-seen order.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterator, Literal, Optional

from .clock import Clock, RealClock


EntryRole = Literal["user", "assistant", "data"]

_ROLES = ("user", "assistant", "data")


@dataclass(frozen=True, slots=True)
class Fragment:
    role: EntryRole
    text: str
    turn_id: Optional[str] = None
    replace: bool = False

    def __post_init__(self) -> None:
        if self.role not in _ROLES:
            raise ValueError(f"unknown fragment role: {self.role!r}")


@dataclass(slots=True)
class ConversationEntry:
    role: EntryRole
    text: str
    ts: int
    turn_id: Optional[str] = None


class TranscriptReconciler:
    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self._clock: Clock = clock or RealClock()
        self._entries: list[ConversationEntry] = []
        self._index: dict[tuple[str, str], int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ConversationEntry]:
        return iter(list(self._entries))

    @property
    def entries(self) -> list[ConversationEntry]:
        return list(self._entries)

    def find(self, role: str, turn_id: str) -> Optional[ConversationEntry]:
        pos = self._index.get((role, turn_id))
        return self._entries[pos] if pos is not None else None

    def apply(self, fragment: Fragment, *, timestamp_ms: Optional[int] = None) -> ConversationEntry:
        ts = int(timestamp_ms) if timestamp_ms is not None else self._clock.wall_ms()

        if not fragment.turn_id:
            entry = ConversationEntry(role=fragment.role, text=fragment.text, ts=ts)
            self._entries.append(entry)
            return entry

        key = (fragment.role, fragment.turn_id)
        pos = self._index.get(key)
        if pos is None:
            entry = ConversationEntry(role=fragment.role, text=fragment.text, ts=ts, turn_id=fragment.turn_id)
            self._index[key] = len(self._entries)
            self._entries.append(entry)
            return entry

        entry = self._entries[pos]
        entry.text = fragment.text if fragment.replace else entry.text + fragment.text
        entry.ts = ts
        return entry


def fragment_from_client_event(event: Any) -> Optional[Fragment]:
    """
    Map a transport event delivered to the client onto a fragment.

    Partial user transcripts and generated text arrive as deltas; a final user
    transcript supersedes its partials. Other event types carry no transcript text.
    """

    if not isinstance(event, dict):
        return None
    kind = event.get("type")
    turn_id = event.get("turn_id")
    turn_id = str(turn_id) if turn_id not in (None, "") else None
    content = event.get("content")
    if kind == "user.transcript.delta":
        return Fragment(role="user", text=str(content or ""), turn_id=turn_id)
    if kind == "user.transcript":
        return Fragment(role="user", text=str(content or ""), turn_id=turn_id, replace=True)
    if kind == "response.text":
        return Fragment(role="assistant", text=str(content or ""), turn_id=turn_id)
    if kind == "response.data":
        text = content if isinstance(content, str) else json.dumps(content, indent=2, default=str)
        if isinstance(content, dict) and isinstance(content.get("message"), str):
            text = content["message"]
        return Fragment(role="data", text=text)
    return None


class ConversationBook:
    """One reconciler per conversation id."""

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self._clock = clock
        self._conversations: dict[str, TranscriptReconciler] = {}

    def open(self, conversation_id: str) -> TranscriptReconciler:
        rec = self._conversations.get(conversation_id)
        if rec is None:
            rec = TranscriptReconciler(clock=self._clock)
            self._conversations[conversation_id] = rec
        return rec

    def get(self, conversation_id: str) -> Optional[TranscriptReconciler]:
        return self._conversations.get(conversation_id)

    def update(
        self,
        conversation_id: Optional[str],
        fragment: Fragment,
        *,
        timestamp_ms: Optional[int] = None,
    ) -> Optional[ConversationEntry]:
        if not conversation_id:
            return None
        return self.open(conversation_id).apply(fragment, timestamp_ms=timestamp_ms)

    def ingest_client_event(self, event: Any) -> Optional[ConversationEntry]:
        fragment = fragment_from_client_event(event)
        if fragment is None or not isinstance(event, dict):
            return None
        return self.update(event.get("conversation_id"), fragment)
