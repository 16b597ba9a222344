"""Shared fixtures for Marginalia tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import httpx
import pytest
import pytest_asyncio

from marginalia.agent.channel import ChannelComplete, ChannelStream
from marginalia.engine import AgentSessionEngine
from marginalia.events.bus import EngineEvent, EventBus
from marginalia.models.config import EngineConfig, PollConfig, RetryConfig, StoreConfig
from marginalia.models.signals import ChatRequest, EditRequest, InvocationKind
from marginalia.store.sqlite import SqliteGateway
from marginalia.transport.selector import HostCapabilities, TransportSelector

DOC = "notes/a.md"


class FakeChannel:
    """In-memory AgentChannel. Tests push stream/complete events by hand."""

    def __init__(self, calls: list[str] | None = None) -> None:
        self.calls = calls if calls is not None else []
        self.requests: list[ChatRequest | EditRequest] = []
        self.cancel_count = 0
        self.cancelled_documents: list[str | None] = []
        self.fail_with: Exception | None = None
        self._stream_listeners: list[Callable[[ChannelStream], None]] = []
        self._complete_listeners: list[Callable[[ChannelComplete], None]] = []

    async def send_chat(self, request: ChatRequest) -> None:
        self.calls.append("send_chat")
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with

    async def send_edit(self, request: EditRequest) -> None:
        self.calls.append("send_edit")
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with

    async def cancel(self, document_path: str | None = None) -> None:
        self.calls.append("cancel")
        self.cancel_count += 1
        self.cancelled_documents.append(document_path)

    def on_stream(self, listener: Callable[[ChannelStream], None]) -> Callable[[], None]:
        self._stream_listeners.append(listener)
        return lambda: self._remove(self._stream_listeners, listener)

    def on_complete(self, listener: Callable[[ChannelComplete], None]) -> Callable[[], None]:
        self._complete_listeners.append(listener)
        return lambda: self._remove(self._complete_listeners, listener)

    @property
    def listener_count(self) -> int:
        return len(self._stream_listeners) + len(self._complete_listeners)

    def stream(
        self, kind: InvocationKind, content: str, *, document_path: str | None = None
    ) -> None:
        event = ChannelStream(type=kind, content=content, document_path=document_path)
        for listener in list(self._stream_listeners):
            listener(event)

    def complete(
        self,
        kind: InvocationKind,
        *,
        success: bool = True,
        content: str = "",
        error: str | None = None,
        document_path: str | None = None,
    ) -> None:
        event = ChannelComplete(
            type=kind,
            success=success,
            content=content,
            error=error,
            document_path=document_path,
        )
        for listener in list(self._complete_listeners):
            listener(event)

    @staticmethod
    def _remove(listeners: list[Any], listener: Any) -> None:
        if listener in listeners:
            listeners.remove(listener)


class RecordingGateway:
    """
    Wraps a real gateway, recording every call name into ``calls``.

    ``fail(method, *excs)`` makes the next calls to ``method`` raise;
    ``hold(method)`` blocks calls to ``method`` until the returned event is set.
    """

    def __init__(self, inner: Any, calls: list[str]) -> None:
        self.inner = inner
        self.calls = calls
        self._failures: dict[str, list[BaseException]] = {}
        self._gates: dict[str, asyncio.Event] = {}

    def fail(self, method: str, *excs: BaseException) -> None:
        self._failures.setdefault(method, []).extend(excs)

    def hold(self, method: str) -> asyncio.Event:
        gate = asyncio.Event()
        self._gates[method] = gate
        return gate

    def count(self, method: str) -> int:
        return self.calls.count(method)

    async def wait_called(self, method: str, timeout: float = 5.0) -> None:
        """Block until ``method`` has been called at least once."""

        async def _poll() -> None:
            while method not in self.calls:
                await asyncio.sleep(0.001)

        await asyncio.wait_for(_poll(), timeout)

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self.inner, name)
        if name.startswith("_") or not callable(attr):
            return attr

        async def _wrapper(*args: Any, **kwargs: Any) -> Any:
            self.calls.append(name)
            gate = self._gates.get(name)
            if gate is not None:
                await gate.wait()
            queued = self._failures.get(name)
            if queued:
                raise queued.pop(0)
            return await attr(*args, **kwargs)

        return _wrapper


@pytest.fixture
def config(tmp_path):
    """EngineConfig with a temp database, no retry backoff and a fast poll."""
    return EngineConfig(
        store=StoreConfig(db_path=str(tmp_path / "test.db")),
        retry=RetryConfig(backoff_seconds=0.0),
        poll=PollConfig(interval_seconds=0.01, request_timeout=1.0),
    )


@pytest_asyncio.fixture
async def sqlite_gateway(config):
    """Initialized SqliteGateway backed by a temp database."""
    gw = SqliteGateway(config.store)
    await gw.initialize()
    yield gw
    await gw.close()


@pytest.fixture
def calls() -> list[str]:
    """Shared call log for ordering assertions across gateway and channel."""
    return []


@pytest.fixture
def gateway(sqlite_gateway, calls):
    """Recording wrapper around the SQLite gateway."""
    return RecordingGateway(sqlite_gateway, calls)


@pytest.fixture
def channel(calls):
    return FakeChannel(calls)


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[EngineEvent, dict[str, Any]]] = []

    def _collect(event: EngineEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


@pytest_asyncio.fixture
async def engine(config, gateway, channel, event_bus):
    """Engine for DOC over the fake channel (IPC) and the recording SQLite gateway."""
    selector = TransportSelector(HostCapabilities(channel=channel), config)
    eng = AgentSessionEngine(DOC, gateway, selector, config=config, event_bus=event_bus)
    yield eng
    if eng.pending is not None:
        await eng.cancel()
    await eng.close()


@pytest.fixture
def drain() -> Callable[[], Any]:
    """Let background tasks (the stream pump) run until they block again."""

    async def _drain() -> None:
        for _ in range(10):
            await asyncio.sleep(0)

    return _drain


def events_of(bus: EventBus, event: EngineEvent) -> list[dict[str, Any]]:
    return [payload for e, payload in bus.collected if e is event]  # type: ignore[attr-defined]


@pytest.fixture
def collected_events():
    """Return a helper that filters the collecting bus by event type."""
    return events_of


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://testserver"
    )


@pytest_asyncio.fixture
async def make_client():
    """Build an httpx.AsyncClient whose requests are answered by ``handler``."""
    clients: list[httpx.AsyncClient] = []

    def _make(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        client = mock_client(handler)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.aclose()
