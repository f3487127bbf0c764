from __future__ import annotations

import pytest

from leasing_agent.clock import FakeClock
from leasing_agent.reconciler import ConversationBook, Fragment, TranscriptReconciler, fragment_from_client_event


def test_streamed_assistant_fragments_merge_into_one_entry() -> None:
    rec = TranscriptReconciler(clock=FakeClock(start_ms=1000))
    rec.apply(Fragment(role="assistant", turn_id="t1", text="Hello"))
    rec.apply(Fragment(role="assistant", turn_id="t1", text=" world"))

    assert len(rec) == 1
    assert rec.entries[0].text == "Hello world"
    assert rec.entries[0].turn_id == "t1"


def test_final_user_transcript_replaces_partials() -> None:
    rec = TranscriptReconciler(clock=FakeClock())
    rec.apply(Fragment(role="user", turn_id="t2", text="partial"))
    rec.apply(Fragment(role="user", turn_id="t2", text="final text", replace=True))

    assert [e.text for e in rec] == ["final text"]


def test_replace_is_idempotent_and_additive_is_not() -> None:
    rec = TranscriptReconciler(clock=FakeClock())
    final = Fragment(role="user", turn_id="t3", text="book a tour")
    rec.apply(Fragment(role="user", turn_id="t3", text="book", replace=False))
    rec.apply(Fragment(role="user", turn_id="t3", text=final.text, replace=True))
    rec.apply(Fragment(role="user", turn_id="t3", text=final.text, replace=True))
    assert rec.find("user", "t3").text == "book a tour"

    delta = Fragment(role="assistant", turn_id="t3", text="ok")
    rec.apply(delta)
    rec.apply(delta)
    assert rec.find("assistant", "t3").text == "okok"


def test_same_turn_id_different_roles_are_separate_entries() -> None:
    rec = TranscriptReconciler(clock=FakeClock())
    rec.apply(Fragment(role="user", turn_id="t1", text="hi"))
    rec.apply(Fragment(role="assistant", turn_id="t1", text="hello"))

    assert [(e.role, e.text) for e in rec] == [("user", "hi"), ("assistant", "hello")]


def test_updates_do_not_reorder_entries() -> None:
    clock = FakeClock(start_ms=10)
    rec = TranscriptReconciler(clock=clock)
    rec.apply(Fragment(role="user", turn_id="a", text="first"))
    rec.apply(Fragment(role="assistant", turn_id="b", text="second"))
    rec.apply(Fragment(role="data", text="debug"))
    clock.set_ms(50)
    rec.apply(Fragment(role="user", turn_id="a", text=" again"))

    assert [e.text for e in rec] == ["first again", "second", "debug"]
    assert rec.entries[0].ts == 50
    assert rec.entries[1].ts == 10


def test_fragments_without_turn_id_always_append() -> None:
    rec = TranscriptReconciler(clock=FakeClock())
    rec.apply(Fragment(role="data", text="x"))
    rec.apply(Fragment(role="data", text="x"))
    rec.apply(Fragment(role="assistant", text="x", replace=True))

    assert len(rec) == 3


def test_explicit_timestamp_wins_over_clock() -> None:
    rec = TranscriptReconciler(clock=FakeClock(start_ms=5))
    entry = rec.apply(Fragment(role="user", turn_id="t", text="hey"), timestamp_ms=1234)
    assert entry.ts == 1234


def test_unknown_role_rejected() -> None:
    with pytest.raises(ValueError):
        Fragment(role="system", text="nope")  # type: ignore[arg-type]


def test_client_events_map_to_fragments() -> None:
    delta = fragment_from_client_event({"type": "user.transcript.delta", "content": "par", "turn_id": "t1"})
    final = fragment_from_client_event({"type": "user.transcript", "content": "partial", "turn_id": "t1"})
    text = fragment_from_client_event({"type": "response.text", "content": "Hi", "turn_id": "t1"})
    data = fragment_from_client_event(
        {"type": "response.data", "content": {"message": "Tool call get_units result:\n[]"}, "turn_id": "t1"}
    )

    assert delta == Fragment(role="user", text="par", turn_id="t1")
    assert final == Fragment(role="user", text="partial", turn_id="t1", replace=True)
    assert text == Fragment(role="assistant", text="Hi", turn_id="t1")
    assert data == Fragment(role="data", text="Tool call get_units result:\n[]")
    assert fragment_from_client_event({"type": "response.audio", "content": "AAAA"}) is None
    assert fragment_from_client_event("not an event") is None


def test_conversation_book_keeps_conversations_apart() -> None:
    book = ConversationBook(clock=FakeClock())
    book.ingest_client_event({"type": "response.text", "content": "Hello", "turn_id": "t1", "conversation_id": "c1"})
    book.ingest_client_event({"type": "response.text", "content": " world", "turn_id": "t1", "conversation_id": "c1"})
    book.ingest_client_event({"type": "response.text", "content": "Other", "turn_id": "t1", "conversation_id": "c2"})

    assert [e.text for e in book.get("c1")] == ["Hello world"]
    assert [e.text for e in book.get("c2")] == ["Other"]
    assert book.update("", Fragment(role="user", text="dropped")) is None
    assert book.get("c3") is None
