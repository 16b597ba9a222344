"""Tests for user-initiated cancellation."""

from __future__ import annotations

import asyncio

import pytest

from marginalia.errors import DispatchRejected, NoPendingInvocation, PersistenceRejected
from marginalia.events.bus import EngineEvent
from marginalia.invocation import InvocationState
from marginalia.models.entities import ChangelogStatus, CommentStatus

from tests.conftest import events_of


class TestCancel:
    async def test_nothing_to_cancel(self, engine):
        with pytest.raises(NoPendingInvocation):
            await engine.cancel()

    async def test_cancel_chat_goes_idle(self, engine, channel, drain, event_bus):
        invocation = await engine.send_message("Hello")
        channel.stream("chat", "partial")
        await drain()
        cancelled = await engine.cancel()
        assert cancelled is invocation
        assert invocation.cancelled
        assert invocation.state is InvocationState.CANCELLED
        assert engine.pending is None
        assert not engine.is_streaming
        assert engine.stream_output == ""
        assert channel.cancel_count == 1
        [payload] = events_of(event_bus, EngineEvent.INVOCATION_CANCELLED)
        assert payload["invocation_id"] == invocation.invocation_id

    async def test_local_state_idle_before_transport_teardown(self, engine, channel, drain):
        """The store is idle as soon as cancel() starts, even if the agent is slow to stop."""
        await engine.send_message("Hello")
        release = asyncio.Event()

        async def slow_cancel(document_path=None):
            channel.cancel_count += 1
            await release.wait()

        channel.cancel = slow_cancel
        task = asyncio.create_task(engine.cancel())
        await drain()
        assert not task.done()
        assert engine.pending is None
        assert not engine.is_streaming
        release.set()
        await task

    async def test_late_output_after_cancel_is_dropped(self, engine, channel, gateway):
        await engine.send_message("Hello")
        await engine.cancel()
        channel.stream("chat", "late")
        channel.complete("chat", content="late reply")
        await engine.wait_for_pending()
        assert [m.role for m in engine.messages] == ["user"]
        assert gateway.count("append_message") == 1
        assert engine.stream_output == ""

    async def test_new_dispatch_allowed_after_cancel(self, engine, channel):
        first = await engine.send_message("one")
        await engine.cancel()
        second = await engine.send_message("two")
        assert second.invocation_id > first.invocation_id
        assert engine.pending is second

    async def test_cancel_edit_closes_changelog(self, engine, channel, drain):
        comment = await engine.add_comment("t", "i")
        invocation = await engine.send_edit_batch([comment])
        channel.stream("edit", "half done")
        await drain()
        await engine.cancel()
        [entry] = engine.changelogs
        assert entry.id == invocation.changelog_id
        assert entry.status is ChangelogStatus.ERROR
        assert entry.summary == "Cancelled by user"
        assert engine.comments[0].status is CommentStatus.SENT

    async def test_cancel_changelog_failure_is_logged(self, engine, gateway):
        comment = await engine.add_comment("t", "i")
        await engine.send_edit_batch([comment])
        gateway.fail("update_changelog", PersistenceRejected("gone"))
        await engine.cancel()
        assert engine.pending is None
        assert engine.changelogs[0].status is ChangelogStatus.RUNNING


class TestCancelDuringSetup:
    async def test_chat_cancelled_while_persisting(self, engine, gateway, channel):
        gate = gateway.hold("append_message")
        task = asyncio.create_task(engine.send_message("Hello"))
        await gateway.wait_called("append_message")
        await engine.cancel()
        assert engine.pending is None
        gate.set()
        invocation = await task
        assert invocation.cancelled
        assert channel.requests == []
        assert engine.pending is None
        assert not engine.is_streaming
        [message] = engine.messages
        assert message.is_persisted

    async def test_edit_cancelled_while_creating_changelog(self, engine, gateway, channel):
        comment = await engine.add_comment("t", "i")
        gate = gateway.hold("create_changelog")
        task = asyncio.create_task(engine.send_edit_batch([comment]))
        await gateway.wait_called("create_changelog")
        await engine.cancel()
        gate.set()
        await task
        assert channel.requests == []
        assert gateway.count("update_comment") == 0
        [entry] = engine.changelogs
        assert entry.status is ChangelogStatus.ERROR
        assert entry.summary == "Cancelled by user"
        assert engine.comments[0].status is CommentStatus.PENDING

    async def test_edit_cancelled_while_marking_comments(self, engine, gateway, channel):
        comment = await engine.add_comment("t", "i")
        gate = gateway.hold("update_comment")
        task = asyncio.create_task(engine.send_edit_batch([comment]))
        await gateway.wait_called("update_comment")
        await engine.cancel()
        gate.set()
        await task
        assert channel.requests == []
        [entry] = engine.changelogs
        assert entry.status is ChangelogStatus.ERROR
        assert engine.pending is None

    async def test_slot_held_until_setup_write_settles(self, engine, gateway, channel):
        gate = gateway.hold("append_message")
        first = asyncio.create_task(engine.send_message("one"))
        await gateway.wait_called("append_message")
        await engine.cancel()
        assert engine.pending is None

        with pytest.raises(DispatchRejected, match="already pending"):
            await engine.send_message("two")
        assert gateway.count("append_message") == 1

        gate.set()
        await first
        second = await engine.send_message("two")
        assert engine.pending is second
        assert [r.message for r in channel.requests] == ["two"]
        assert len(engine.sessions) == 1
        assert {m.session_id for m in engine.messages} == {second.session_id}

    async def test_second_cancel_during_setup_has_nothing_to_cancel(self, engine, gateway):
        gate = gateway.hold("append_message")
        task = asyncio.create_task(engine.send_message("Hello"))
        await gateway.wait_called("append_message")
        await engine.cancel()
        with pytest.raises(NoPendingInvocation):
            await engine.cancel()
        gate.set()
        await task

    async def test_setup_failure_after_cancel_frees_the_slot(self, engine, gateway):
        gate = gateway.hold("append_message")
        gateway.fail("append_message", PersistenceRejected("disk full"))
        task = asyncio.create_task(engine.send_message("Hello"))
        await gateway.wait_called("append_message")
        invocation = await engine.cancel()
        gate.set()
        with pytest.raises(PersistenceRejected):
            await task
        assert invocation.state is InvocationState.CANCELLED
        assert engine.messages == ()
        await engine.send_message("again")
