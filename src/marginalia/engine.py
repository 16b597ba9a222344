"""The UI-facing entry point: AgentSessionEngine."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager

import structlog

from marginalia.agent.refs import parse_refs
from marginalia.cancel import CancellationController
from marginalia.dispatch import DispatchEngine
from marginalia.events.bus import EventBus
from marginalia.invocation import PendingInvocation, SlotRegistry
from marginalia.models.config import EngineConfig
from marginalia.models.entities import (
    ChangelogEntry,
    Comment,
    CommentStatus,
    Message,
    Session,
    line_hint_for,
)
from marginalia.models.signals import AgentRefs, ImageAttachment, TransportKind
from marginalia.reconcile import CompletionReconciler
from marginalia.retry import with_retry
from marginalia.state import SessionStore
from marginalia.store.gateway import PersistenceGateway
from marginalia.store.http import HttpGateway
from marginalia.store.sqlite import SqliteGateway
from marginalia.transport.selector import (
    HostCapabilities,
    TransportSelector,
    detect_capabilities,
)


class AgentSessionEngine:
    """
    Chat and inline-edit sessions with an external agent for one document.

    Wires the Session Store, dispatch, reconciliation and cancellation around
    a persistence gateway and a transport selector. The UI reads the state
    properties and subscribes to :attr:`event_bus`; it never mutates state
    directly.

    Usage::

        async with AgentSessionEngine.open("notes/a.md") as engine:
            await engine.load()
            engine.event_bus.subscribe(EngineEvent.STREAM_UPDATED, render)
            await engine.send_message("Summarize section 2")
            await engine.wait_for_pending()
            print(engine.messages[-1].content)

    On a desktop host (agent CLI installed) the engine talks to the agent
    over a local process channel and stores records in SQLite. Otherwise it
    uses the served application's HTTP endpoints for both.
    """

    def __init__(
        self,
        document_path: str,
        gateway: PersistenceGateway,
        selector: TransportSelector,
        *,
        config: EngineConfig | None = None,
        event_bus: EventBus | None = None,
        slots: SlotRegistry | None = None,
        owns_resources: bool = False,
    ) -> None:
        self._document_path = document_path
        self._config = config or EngineConfig()
        self._gateway = gateway
        self._selector = selector
        self._event_bus = event_bus or EventBus()
        self._owns_resources = owns_resources
        self._slot = (slots or SlotRegistry()).slot_for(document_path)
        self._store = SessionStore(document_path, self._event_bus)
        self._reconciler = CompletionReconciler(
            self._store, gateway, self._slot, self._config.retry, self._event_bus
        )
        self._dispatch = DispatchEngine(
            self._store,
            gateway,
            self._slot,
            selector,
            self._reconciler,
            self._event_bus,
            self._config,
        )
        self._cancellation = CancellationController(
            self._store, gateway, self._slot, self._config.retry, self._event_bus
        )
        self._logger = structlog.get_logger("marginalia.engine").bind(
            document_path=document_path
        )

    @classmethod
    async def create(
        cls,
        document_path: str,
        *,
        config: EngineConfig | None = None,
        capabilities: HostCapabilities | None = None,
        gateway: PersistenceGateway | None = None,
        event_bus: EventBus | None = None,
        slots: SlotRegistry | None = None,
    ) -> AgentSessionEngine:
        """
        Build an engine for ``document_path``.

        Args:
            document_path: The document every record is scoped to.
            config: Engine configuration. Defaults are used if omitted.
            capabilities: Host capabilities. Probed with
                :func:`~marginalia.transport.selector.detect_capabilities`
                if omitted.
            gateway: Persistence gateway. If omitted, a :class:`SqliteGateway`
                is opened when the host has an agent channel and an
                :class:`HttpGateway` is used otherwise. A gateway passed in is
                not closed by :meth:`close`.
            event_bus: Optional shared event bus.
            slots: Optional slot registry shared with other engines.

        Returns:
            A ready engine. Call :meth:`load` to fetch existing records.
        """
        cfg = config or EngineConfig()
        caps = capabilities if capabilities is not None else detect_capabilities(cfg.agent)
        selector = TransportSelector(caps, cfg)
        owns_gateway = gateway is None
        if gateway is None:
            if selector.kind is TransportKind.IPC:
                sqlite = SqliteGateway(cfg.store)
                await sqlite.initialize()
                gateway = sqlite
            else:
                gateway = HttpGateway(cfg.http)
        engine = cls(
            document_path,
            gateway,
            selector,
            config=cfg,
            event_bus=event_bus,
            slots=slots,
            owns_resources=owns_gateway,
        )
        engine._logger.info("engine_created", transport=str(selector.kind))
        return engine

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        document_path: str,
        *,
        config: EngineConfig | None = None,
        capabilities: HostCapabilities | None = None,
        gateway: PersistenceGateway | None = None,
        event_bus: EventBus | None = None,
        slots: SlotRegistry | None = None,
    ) -> AsyncGenerator[AgentSessionEngine, None]:
        """
        Create an engine and use it as an async context manager.

        All parameters are identical to :meth:`create`. The engine is closed
        (in-flight stream awaited, resources released) when the block exits,
        even on exception.
        """
        engine = await cls.create(
            document_path,
            config=config,
            capabilities=capabilities,
            gateway=gateway,
            event_bus=event_bus,
            slots=slots,
        )
        try:
            yield engine
        finally:
            await engine.close()

    # ── Reactive state ─────────────────────────────────────────────────────────

    @property
    def document_path(self) -> str:
        return self._document_path

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def transport_kind(self) -> TransportKind:
        return self._selector.kind

    @property
    def sessions(self) -> tuple[Session, ...]:
        return self._store.sessions

    @property
    def active_session_id(self) -> str | None:
        return self._store.active_session_id

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._store.messages

    @property
    def comments(self) -> tuple[Comment, ...]:
        return self._store.comments

    @property
    def changelogs(self) -> tuple[ChangelogEntry, ...]:
        return self._store.changelogs

    @property
    def stream_output(self) -> str:
        return self._store.stream_output

    @property
    def is_streaming(self) -> bool:
        return self._store.is_streaming

    @property
    def pending(self) -> PendingInvocation | None:
        """The invocation in flight, or ``None`` once it has been cancelled."""
        current = self._slot.current
        if current is None or current.cancelled:
            return None
        return current

    # ── Agent invocations ──────────────────────────────────────────────────────

    async def send_message(
        self,
        text: str,
        context: str | None = None,
        *,
        images: Sequence[ImageAttachment] | None = None,
    ) -> PendingInvocation:
        """
        Send a chat message. ``@``-references in ``text`` are forwarded to the agent.

        Raises:
            DispatchRejected: Blank text or an invocation already pending.
            TransientNetworkError: The gateway stayed unreachable.
            PersistenceRejected: The gateway refused the message.
        """
        refs = parse_refs([text])
        return await self._dispatch.dispatch_chat(
            text,
            context,
            images=images,
            refs=None if refs.is_empty else refs,
        )

    async def send_edit_batch(
        self, comments: Sequence[Comment] | None = None
    ) -> PendingInvocation:
        """
        Send comments as one edit batch. Defaults to every ``pending`` comment.

        Raises:
            DispatchRejected: Nothing to send, an applied comment, or an
                invocation already pending.
        """
        if comments is None:
            comments = [c for c in self._store.comments if c.status is CommentStatus.PENDING]
        return await self._dispatch.dispatch_edit_batch(comments)

    async def cancel(self) -> PendingInvocation:
        """
        Cancel the invocation in flight.

        Raises:
            NoPendingInvocation: If nothing is in flight.
        """
        return await self._cancellation.cancel()

    async def wait_for_pending(self) -> None:
        """Block until the in-flight invocation's stream has been fully reconciled."""
        await self._dispatch.wait_for_pending()

    # ── Sessions ───────────────────────────────────────────────────────────────

    async def load(self) -> None:
        """Fetch sessions, comments and changelog, and open the most recent session."""
        sessions = await self.load_sessions()
        await self.select_session(sessions[0].id if sessions else None)
        await self.load_comments()
        await self.load_changelogs()

    async def load_sessions(self) -> list[Session]:
        sessions = await with_retry(
            lambda: self._gateway.list_sessions(self._document_path),
            self._config.retry,
            name="list_sessions",
        )
        self._store.set_sessions(sessions)
        return sessions

    async def select_session(self, session_id: str | None) -> None:
        """Make ``session_id`` active and load its messages. ``None`` starts fresh."""
        messages: list[Message] = []
        if session_id is not None:
            messages = await with_retry(
                lambda: self._gateway.list_messages(session_id),
                self._config.retry,
                name="list_messages",
            )
        self._store.select_session(session_id, messages)

    async def new_session(self) -> None:
        """Clear the conversation; the next message creates a new session."""
        await self.select_session(None)

    async def delete_session(self, session_id: str) -> None:
        await with_retry(
            lambda: self._gateway.delete_session(session_id),
            self._config.retry,
            name="delete_session",
        )
        self._store.remove_session(session_id)

    # ── Comments and changelog ─────────────────────────────────────────────────

    async def add_comment(self, selected_text: str, instruction: str) -> Comment:
        comment = await with_retry(
            lambda: self._gateway.create_comment(
                self._document_path, selected_text, instruction, line_hint_for(selected_text)
            ),
            self._config.retry,
            name="create_comment",
        )
        self._store.upsert_comment(comment)
        return comment

    async def remove_comment(self, comment_id: str) -> None:
        await with_retry(
            lambda: self._gateway.delete_comment(comment_id),
            self._config.retry,
            name="delete_comment",
        )
        self._store.remove_comment(comment_id)

    async def load_comments(self) -> list[Comment]:
        comments = await with_retry(
            lambda: self._gateway.list_comments(self._document_path),
            self._config.retry,
            name="list_comments",
        )
        self._store.set_comments(comments)
        return comments

    async def load_changelogs(self) -> list[ChangelogEntry]:
        changelogs = await with_retry(
            lambda: self._gateway.list_changelogs(self._document_path),
            self._config.retry,
            name="list_changelogs",
        )
        self._store.set_changelogs(changelogs)
        return changelogs

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Wait for the in-flight stream, then release transport and gateway resources."""
        await self.wait_for_pending()
        await self._selector.aclose()
        if self._owns_resources:
            await self._gateway.close()
        self._logger.info("engine_closed")

    async def __aenter__(self) -> AgentSessionEngine:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
