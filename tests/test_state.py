"""Tests for the SessionStore cache."""

from __future__ import annotations

import itertools

import pytest

from marginalia.events.bus import EngineEvent
from marginalia.invocation import InvocationSlot
from marginalia.models.entities import (
    ChangelogEntry,
    ChangelogStatus,
    Comment,
    CommentStatus,
    LocalId,
    Message,
    PersistedId,
    Session,
)
from marginalia.models.signals import InvocationKind
from marginalia.state import SessionStore

from tests.conftest import DOC, events_of


@pytest.fixture
def store(event_bus):
    return SessionStore(DOC, event_bus)


def _comment(cid: str, status: CommentStatus = CommentStatus.PENDING) -> Comment:
    return Comment(
        id=PersistedId(value=cid),
        document_path=DOC,
        selected_text="t",
        instruction="i",
        status=status,
    )


def _persisted(content: str, session_id: str = "s1") -> Message:
    return Message(
        id=PersistedId(value="msg_1"), session_id=session_id, role="user", content=content
    )


class TestMessages:
    def test_optimistic_message_has_local_id(self, store, event_bus):
        message = store.add_optimistic_message("Hi", "sel")
        assert isinstance(message.id, LocalId)
        assert store.messages == (message,)
        assert events_of(event_bus, EngineEvent.MESSAGE_CREATED)[0]["role"] == "user"

    def test_confirm_replaces_in_place(self, store):
        local = store.add_optimistic_message("Hi")
        store.append_message(
            Message(id=PersistedId(value="msg_x"), role="assistant", content="later")
        )
        assert store.confirm_message(local.id.value, _persisted("Hi"))
        assert [m.id.value for m in store.messages] == ["msg_1", "msg_x"]

    def test_confirm_happens_once(self, store, event_bus):
        local = store.add_optimistic_message("Hi")
        assert store.confirm_message(local.id.value, _persisted("Hi"))
        assert not store.confirm_message(local.id.value, _persisted("Hi again"))
        assert store.messages[0].content == "Hi"
        assert len(events_of(event_bus, EngineEvent.MESSAGE_CONFIRMED)) == 1

    def test_confirm_unknown_local_id(self, store):
        assert not store.confirm_message("tmp_missing", _persisted("x"))

    def test_discard_optimistic(self, store, event_bus):
        local = store.add_optimistic_message("Hi")
        store.discard_optimistic(local.id.value)
        assert store.messages == ()
        assert events_of(event_bus, EngineEvent.MESSAGE_DISCARDED) == [
            {"message_id": local.id.value, "role": "user"}
        ]

    def test_accessors_return_tuples(self, store):
        store.add_optimistic_message("Hi")
        assert isinstance(store.messages, tuple)
        assert isinstance(store.comments, tuple)


class TestSessions:
    def test_select_session_replaces_messages(self, store, event_bus):
        store.add_optimistic_message("old")
        store.select_session("s2", [_persisted("new", "s2")])
        assert store.active_session_id == "s2"
        assert [m.content for m in store.messages] == ["new"]
        assert events_of(event_bus, EngineEvent.SESSION_SELECTED)[-1]["session_id"] == "s2"

    def test_adopt_session_inserts_once(self, store, event_bus):
        store.set_sessions([Session(id="s0", document_path=DOC)])
        store.adopt_session("s1")
        store.adopt_session("s1")
        assert [s.id for s in store.sessions] == ["s1", "s0"]
        assert store.active_session_id == "s1"
        assert len(events_of(event_bus, EngineEvent.SESSION_CREATED)) == 1

    def test_remove_active_session_clears_messages(self, store):
        store.set_sessions([Session(id="s1", document_path=DOC)])
        store.select_session("s1", [_persisted("x")])
        store.remove_session("s1")
        assert store.sessions == ()
        assert store.active_session_id is None
        assert store.messages == ()

    def test_remove_other_session_keeps_active(self, store):
        store.set_sessions(
            [Session(id="s1", document_path=DOC), Session(id="s2", document_path=DOC)]
        )
        store.select_session("s1", [_persisted("x")])
        store.remove_session("s2")
        assert store.active_session_id == "s1"
        assert len(store.messages) == 1


class TestStreaming:
    def _invocation(self):
        return InvocationSlot(DOC, itertools.count(1)).acquire(InvocationKind.CHAT)

    def test_begin_and_finish(self, store):
        invocation = self._invocation()
        store.begin_streaming(invocation)
        store.set_stream_output("partial", invocation.invocation_id)
        assert store.is_streaming
        assert store.pending is invocation
        store.finish_streaming(invocation)
        assert not store.is_streaming
        assert store.pending is None
        assert store.stream_output == ""

    def test_identical_output_published_once(self, store, event_bus):
        store.set_stream_output("a", 1)
        store.set_stream_output("a", 1)
        assert events_of(event_bus, EngineEvent.STREAM_UPDATED) == [
            {"invocation_id": 1, "content": "a"}
        ]

    def test_finish_for_superseded_invocation_is_noop(self, store):
        """A late finish for an old invocation must not clear a newer one."""
        slot = InvocationSlot(DOC, itertools.count(1))
        old = slot.acquire(InvocationKind.CHAT)
        slot.release_if_current(old.invocation_id)
        new = slot.acquire(InvocationKind.CHAT)
        store.begin_streaming(new)
        store.set_stream_output("fresh", new.invocation_id)
        store.finish_streaming(old)
        assert store.pending is new
        assert store.is_streaming
        assert store.stream_output == "fresh"


class TestCommentsAndChangelog:
    def test_upsert_inserts_then_updates(self, store, event_bus):
        store.upsert_comment(_comment("c1"))
        store.upsert_comment(_comment("c1", CommentStatus.SENT))
        assert len(store.comments) == 1
        assert store.find_comment("c1").status is CommentStatus.SENT
        assert len(events_of(event_bus, EngineEvent.COMMENT_CREATED)) == 1
        assert events_of(event_bus, EngineEvent.COMMENT_UPDATED)[0]["status"] == "sent"

    def test_remove_comment(self, store, event_bus):
        store.set_comments([_comment("c1"), _comment("c2")])
        store.remove_comment("c1")
        store.remove_comment("missing")
        assert [c.id.value for c in store.comments] == ["c2"]
        assert len(events_of(event_bus, EngineEvent.COMMENT_DELETED)) == 1

    def test_new_changelog_goes_first(self, store):
        older = ChangelogEntry(id="chg_1", document_path=DOC, request_id="r1")
        newer = ChangelogEntry(id="chg_2", document_path=DOC, request_id="r2")
        store.set_changelogs([older])
        store.upsert_changelog(newer)
        store.upsert_changelog(older.model_copy(update={"status": ChangelogStatus.COMPLETED}))
        assert [e.id for e in store.changelogs] == ["chg_2", "chg_1"]
        assert store.changelogs[1].status is ChangelogStatus.COMPLETED
