from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from .conversation_store import ConversationStore, Message
from .logs import log_event
from .metrics import M


class SessionBusyError(RuntimeError):
    def __init__(self, session_id: str, pending: int) -> None:
        super().__init__(f"session {session_id} already has {pending} pending events")
        self.session_id = session_id
        self.pending = pending


@dataclass(slots=True)
class _SessionSlot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    pending: int = 0


@dataclass(slots=True)
class SessionHandle:
    """Exclusive view of one session's history while its lock is held."""

    session_id: str
    history: list[Message]
    _store: ConversationStore
    dirty: bool = False

    def append(self, message: Message) -> None:
        self.history.append(message)
        self.dirty = True

    async def persist(self) -> None:
        await self._store.persist(self.session_id, list(self.history))
        self.dirty = False


class SessionTicket:
    """
    A reserved place in one session's FIFO.

    Reserving is synchronous so the queue position matches webhook arrival order.
    release() is idempotent; the dispatcher also calls it from a task done-callback
    so a handler cancelled before it ran still frees its place.
    """

    def __init__(self, registry: "SessionRegistry", session_id: str, slot: _SessionSlot) -> None:
        self._registry = registry
        self.session_id = session_id
        self._slot = slot
        self._held = False
        self._released = False

    async def __aenter__(self) -> SessionHandle:
        if self._released:
            raise RuntimeError("session ticket already released")
        await self._slot.lock.acquire()
        self._held = True
        try:
            history = await self._registry.store.load(self.session_id)
        except BaseException:
            self.release()
            raise
        return SessionHandle(session_id=self.session_id, history=history, _store=self._registry.store)

    async def __aexit__(self, *exc: object) -> None:
        self.release()

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        if self._held:
            self._held = False
            self._slot.lock.release()
        self._registry._forget(self.session_id, self._slot)


class SessionRegistry:
    """
    Session-keyed map with per-session serialization.

    One lock per session id, never a global one: session A never waits on session B.
    Events for a session queue in arrival order up to max_pending; beyond that the
    event is rejected with SessionBusyError.
    """

    def __init__(self, store: ConversationStore, *, max_pending: int = 4, metrics: Any | None = None) -> None:
        self.store = store
        self._max_pending = max(1, int(max_pending))
        self._slots: dict[str, _SessionSlot] = {}
        self._metrics = metrics

    def reserve(self, session_id: str) -> SessionTicket:
        slot = self._slots.get(session_id)
        if slot is None:
            slot = _SessionSlot()
            self._slots[session_id] = slot
        if slot.pending >= self._max_pending:
            if self._metrics is not None:
                self._metrics.inc(M["session_busy_rejections_total"], 1)
            log_event(
                "sessions",
                "busy_rejected",
                level=logging.WARNING,
                session_id=session_id,
                pending=slot.pending,
            )
            raise SessionBusyError(session_id, slot.pending)
        slot.pending += 1
        self._report_active()
        return SessionTicket(self, session_id, slot)

    def pending(self, session_id: str) -> int:
        slot = self._slots.get(session_id)
        return slot.pending if slot is not None else 0

    def active_sessions(self) -> int:
        return len(self._slots)

    def _forget(self, session_id: str, slot: _SessionSlot) -> None:
        slot.pending -= 1
        if slot.pending <= 0 and self._slots.get(session_id) is slot:
            del self._slots[session_id]
        self._report_active()

    def _report_active(self) -> None:
        if self._metrics is not None:
            self._metrics.set(M["sessions_active"], len(self._slots))
