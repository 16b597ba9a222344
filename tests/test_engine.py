"""End-to-end tests for AgentSessionEngine over both transports."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest
import pytest_asyncio

from marginalia.engine import AgentSessionEngine
from marginalia.errors import DispatchRejected
from marginalia.events.bus import EngineEvent
from marginalia.invocation import SlotRegistry
from marginalia.models.entities import ChangelogStatus, CommentStatus
from marginalia.models.signals import TransportKind
from marginalia.store.http import HttpGateway
from marginalia.store.sqlite import SqliteGateway
from marginalia.transport.selector import HostCapabilities, TransportSelector

from tests.conftest import DOC, FakeChannel, events_of


class FakeApp:
    """
    In-memory served application: persistence routes plus the agent endpoints.

    ``snapshots`` and ``statuses`` script the agent; the last entry repeats.
    An ``int`` entry is answered with that HTTP status code.
    """

    def __init__(self) -> None:
        self.sessions: dict[int, dict[str, Any]] = {}
        self.messages: list[dict[str, Any]] = []
        self.comments: dict[int, dict[str, Any]] = {}
        self.changelogs: dict[int, dict[str, Any]] = {}
        self.snapshots: list[Any] = [""]
        self.statuses: list[Any] = [{"status": "pending"}]
        self.started: list[tuple[str, dict[str, Any]]] = []
        self.cancelled: list[str] = []
        self._next_id = 1
        self._clock = 1000

    def _id(self) -> int:
        self._next_id += 1
        return self._next_id

    def _now(self) -> int:
        self._clock += 1
        return self._clock

    def _script(self, queue: list[Any]) -> httpx.Response:
        item = queue[0] if len(queue) == 1 else queue.pop(0)
        if isinstance(item, int):
            return httpx.Response(item)
        if isinstance(item, str):
            return httpx.Response(200, json={"content": item})
        return httpx.Response(200, json=item)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path, method = request.url.path, request.method
        params = request.url.params
        body = json.loads(request.content) if request.content else {}

        if path in ("/api/chat/agent", "/api/claude") and method == "POST":
            self.started.append((path, body))
            return httpx.Response(200, json={"success": True})
        if path.endswith("/cancel"):
            self.cancelled.append(path)
            return httpx.Response(200, json={"success": True})
        if path in ("/api/chat/stream", "/api/claude/stream"):
            if method == "DELETE":
                return httpx.Response(200, json={"success": True})
            return self._script(self.snapshots)
        if path in ("/api/chat/status", "/api/claude") and method == "GET":
            return self._script(self.statuses)

        if path == "/api/chat":
            return self._chat(method, params, body)
        if path == "/api/comments":
            return self._comments(method, params, body)
        if path == "/api/changelogs":
            return self._changelogs(method, params, body)
        return httpx.Response(404)

    def _chat(self, method, params, body) -> httpx.Response:
        if method == "GET" and "session_id" in params:
            sid = int(params["session_id"])
            return httpx.Response(
                200, json={"messages": [m for m in self.messages if m["session_id"] == sid]}
            )
        if method == "GET":
            sessions = [s for s in self.sessions.values() if s["document_path"] == params["document_path"]]
            sessions.sort(key=lambda s: s["updated_at"], reverse=True)
            return httpx.Response(200, json={"sessions": sessions})
        if method == "POST":
            sid = body["session_id"]
            if sid is None:
                sid = self._id()
                now = self._now()
                self.sessions[sid] = {
                    "id": sid,
                    "document_path": body["document_path"],
                    "created_at": now,
                    "updated_at": now,
                }
            sid = int(sid)
            self.sessions[sid]["updated_at"] = self._now()
            message = {
                "id": self._id(),
                "session_id": sid,
                "role": body["role"],
                "content": body["content"],
                "context_selection": body["context_selection"],
                "is_error": body["is_error"],
                "created_at": self._now(),
            }
            self.messages.append(message)
            return httpx.Response(
                200, json={"success": True, "session_id": sid, "message": message}
            )
        if method == "DELETE":
            sid = int(params["id"])
            if sid not in self.sessions:
                return httpx.Response(404)
            del self.sessions[sid]
            self.messages = [m for m in self.messages if m["session_id"] != sid]
            return httpx.Response(200, json={"success": True})
        return httpx.Response(405)

    def _comments(self, method, params, body) -> httpx.Response:
        if method == "GET":
            return httpx.Response(200, json={"comments": list(self.comments.values())})
        if method == "POST":
            comment = {
                "id": self._id(),
                **body,
                "status": "pending",
                "request_id": None,
                "created_at": self._now(),
            }
            self.comments[comment["id"]] = comment
            return httpx.Response(200, json={"comment": comment})
        if method == "PATCH":
            comment = self.comments[int(body["id"])]
            comment["status"] = body["status"]
            if "request_id" in body:
                comment["request_id"] = body["request_id"]
            return httpx.Response(200, json={"comment": comment})
        if method == "DELETE":
            self.comments.pop(int(params["id"]), None)
            return httpx.Response(200, json={"success": True})
        return httpx.Response(405)

    def _changelogs(self, method, params, body) -> httpx.Response:
        if method == "GET":
            entries = sorted(self.changelogs.values(), key=lambda e: e["created_at"], reverse=True)
            return httpx.Response(200, json={"changelogs": entries})
        if method == "POST":
            now = self._now()
            entry = {"id": self._id(), **body, "status": "running", "created_at": now}
            self.changelogs[entry["id"]] = entry
            return httpx.Response(200, json={"changelog": entry})
        if method == "PATCH":
            entry = self.changelogs[int(body["id"])]
            entry.update({k: v for k, v in body.items() if k != "id"})
            return httpx.Response(200, json={"changelog": entry})
        return httpx.Response(405)


@pytest.fixture
def app() -> FakeApp:
    return FakeApp()


@pytest_asyncio.fixture
async def http_engine(app, config, make_client, event_bus):
    """Engine for DOC wired to the FakeApp over HTTP for both persistence and the agent."""
    client = make_client(app)
    selector = TransportSelector(HostCapabilities(), config, client=client)
    eng = AgentSessionEngine(
        DOC,
        HttpGateway(config.http, client=client),
        selector,
        config=config,
        event_bus=event_bus,
    )
    yield eng
    if eng.pending is not None:
        await eng.cancel()
    await eng.close()


class TestHttpHost:
    async def test_chat_round_trip(self, http_engine, app):
        app.snapshots = ["Hel", "Hello"]
        app.statuses = [{"status": "pending"}, {"status": "complete", "content": "Hello!"}]
        assert http_engine.transport_kind is TransportKind.HTTP
        invocation = await http_engine.send_message("Hi", "selection")
        await http_engine.wait_for_pending()
        [(path, body)] = app.started
        assert path == "/api/chat/agent"
        assert body["message"] == "Hi"
        assert body["context_selection"] == "selection"
        assert [m.content for m in http_engine.messages] == ["Hi", "Hello!"]
        assert [m["content"] for m in app.messages] == ["Hi", "Hello!"]
        assert invocation.session_id == str(app.messages[0]["session_id"])
        assert http_engine.pending is None

    async def test_agent_crash_is_recorded(self, http_engine, app):
        app.snapshots = ["partial"]
        app.statuses = [{"status": "error", "content": "agent crashed"}]
        await http_engine.send_message("Hi")
        await http_engine.wait_for_pending()
        reply = http_engine.messages[-1]
        assert reply.content == "Error: agent crashed"
        assert reply.is_error
        assert app.messages[-1]["is_error"] is True

    async def test_failed_stream_fetches_are_tolerated(self, http_engine, app):
        app.snapshots = [500, 503, 500]
        app.statuses = [{"status": "pending"}, {"status": "complete", "content": "fine"}]
        await http_engine.send_message("Hi")
        await http_engine.wait_for_pending()
        assert http_engine.messages[-1].content == "fine"
        assert not http_engine.messages[-1].is_error

    async def test_edit_batch(self, http_engine, app):
        app.snapshots = ["Editing"]
        app.statuses = [{"status": "complete", "content": "Edited the file"}]
        await http_engine.add_comment("old text", "make it better")
        await http_engine.add_comment("other text", "shorter")
        invocation = await http_engine.send_edit_batch()
        await http_engine.wait_for_pending()
        [(path, body)] = app.started
        assert path == "/api/claude"
        assert body["request_id"] == invocation.request_id
        assert len(body["comments"]) == 2
        assert {c["status"] for c in app.comments.values()} == {"applied"}
        [entry] = app.changelogs.values()
        assert entry["status"] == "completed"
        assert entry["summary"] == "Changes applied"
        assert entry["stream_log"] == "Edited the file"
        assert http_engine.changelogs[0].status is ChangelogStatus.COMPLETED

    async def test_cancel_notifies_server(self, http_engine, app):
        await http_engine.send_message("Hi")
        await http_engine.cancel()
        assert app.cancelled == ["/api/chat/cancel"]
        assert http_engine.pending is None
        assert [m.role for m in http_engine.messages] == ["user"]

    async def test_load_selects_most_recent_session(self, http_engine, app):
        app.statuses = [{"status": "complete", "content": "a"}]
        await http_engine.send_message("first session")
        await http_engine.wait_for_pending()
        await http_engine.new_session()
        await http_engine.send_message("second session")
        await http_engine.wait_for_pending()
        await http_engine.new_session()
        await http_engine.load()
        assert len(http_engine.sessions) == 2
        assert http_engine.active_session_id == http_engine.sessions[0].id
        assert [m.content for m in http_engine.messages] == ["second session", "a"]


class TestIpcHost:
    async def test_create_uses_sqlite(self, config):
        channel = FakeChannel()
        engine = await AgentSessionEngine.create(
            DOC, config=config, capabilities=HostCapabilities(channel=channel)
        )
        assert engine.transport_kind is TransportKind.IPC
        assert isinstance(engine._gateway, SqliteGateway)
        await engine.close()

    async def test_create_without_channel_uses_http(self, config):
        engine = await AgentSessionEngine.create(DOC, config=config, capabilities=HostCapabilities())
        assert engine.transport_kind is TransportKind.HTTP
        assert isinstance(engine._gateway, HttpGateway)
        await engine.close()

    async def test_conversation_survives_restart(self, config):
        """A second engine on the same database picks up the last session."""
        channel = FakeChannel()
        caps = HostCapabilities(channel=channel)
        async with AgentSessionEngine.open(DOC, config=config, capabilities=caps) as engine:
            await engine.send_message("remember me")
            channel.complete("chat", content="noted")
        async with AgentSessionEngine.open(DOC, config=config, capabilities=caps) as engine:
            await engine.load()
            assert [m.content for m in engine.messages] == ["remember me", "noted"]
            assert all(m.is_persisted for m in engine.messages)

    async def test_summary_round_trip(self, engine, channel, sqlite_gateway, drain):
        invocation = await engine.send_message("Summarize section 2")
        for snapshot in ["Sum", "Summary: ..."]:
            channel.stream("chat", snapshot)
            await drain()
            assert engine.stream_output == snapshot
        channel.complete("chat", content="Summary: section 2 covers X.")
        await engine.wait_for_pending()
        stored = await sqlite_gateway.list_messages(invocation.session_id)
        assert [(m.role, m.content) for m in stored] == [
            ("user", "Summarize section 2"),
            ("assistant", "Summary: section 2 covers X."),
        ]
        assert engine.stream_output == ""
        assert not engine.is_streaming
        assert engine.pending is None

    async def test_delete_session(self, engine, channel, event_bus):
        await engine.send_message("Hi")
        channel.complete("chat", content="Hey")
        await engine.wait_for_pending()
        session_id = engine.active_session_id
        await engine.delete_session(session_id)
        assert engine.sessions == ()
        assert engine.messages == ()
        assert events_of(event_bus, EngineEvent.SESSION_DELETED)[0]["session_id"] == session_id

    async def test_select_session(self, engine, channel):
        await engine.send_message("one")
        channel.complete("chat", content="1")
        await engine.wait_for_pending()
        first = engine.active_session_id
        await engine.new_session()
        assert engine.messages == ()
        await engine.select_session(first)
        assert [m.content for m in engine.messages] == ["one", "1"]

    async def test_comments_lifecycle(self, engine, channel):
        comment = await engine.add_comment("x" * 60, "shorten")
        assert comment.line_hint == "x" * 50 + "..."
        await engine.remove_comment(comment.id.value)
        assert engine.comments == ()
        await engine.load_comments()
        assert engine.comments == ()

    async def test_load_changelogs(self, engine, channel):
        comment = await engine.add_comment("t", "i")
        await engine.send_edit_batch([comment])
        channel.complete("edit", content="ok")
        await engine.wait_for_pending()
        entries = await engine.load_changelogs()
        assert [e.status for e in entries] == [ChangelogStatus.COMPLETED]
        assert engine.comments[0].status is CommentStatus.APPLIED


class TestSlots:
    async def test_shared_registry_guards_same_document(self, config, sqlite_gateway):
        slots = SlotRegistry()
        channel = FakeChannel()
        caps = HostCapabilities(channel=channel)
        first = await AgentSessionEngine.create(
            DOC, config=config, capabilities=caps, gateway=sqlite_gateway, slots=slots
        )
        second = await AgentSessionEngine.create(
            DOC, config=config, capabilities=caps, gateway=sqlite_gateway, slots=slots
        )
        await first.send_message("Hi")
        with pytest.raises(DispatchRejected):
            await second.send_message("Hi too")
        await first.cancel()
        await first.close()
        await second.close()

    async def test_documents_are_independent(self, config, sqlite_gateway):
        slots = SlotRegistry()
        caps = HostCapabilities(channel=FakeChannel())
        a = await AgentSessionEngine.create(
            "a.md", config=config, capabilities=caps, gateway=sqlite_gateway, slots=slots
        )
        b = await AgentSessionEngine.create(
            "b.md", config=config, capabilities=caps, gateway=sqlite_gateway, slots=slots
        )
        first = await a.send_message("Hi")
        second = await b.send_message("Hi")
        assert second.invocation_id > first.invocation_id
        for engine in (a, b):
            await engine.cancel()
            await engine.close()
