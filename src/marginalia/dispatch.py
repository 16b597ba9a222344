"""Dispatch of chat messages and edit-comment batches to the agent."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence

import structlog

from marginalia.agent.prompts import build_edit_prompt
from marginalia.agent.refs import parse_refs
from marginalia.cancel import CANCELLED_SUMMARY
from marginalia.errors import DispatchRejected, MarginaliaError
from marginalia.events.bus import EngineEvent, EventBus
from marginalia.events.payloads import InvocationPayload
from marginalia.invocation import InvocationSlot, InvocationState, PendingInvocation
from marginalia.models.config import EngineConfig
from marginalia.models.entities import (
    ChangelogStatus,
    Comment,
    CommentStatus,
    make_id,
    require_persisted,
)
from marginalia.models.signals import (
    AgentRefs,
    AgentRequest,
    ChatRequest,
    EditComment,
    EditRequest,
    HistoryEntry,
    ImageAttachment,
    Increment,
    InvocationKind,
)
from marginalia.reconcile import CompletionReconciler
from marginalia.retry import with_retry
from marginalia.state import SessionStore
from marginalia.store.gateway import PersistenceGateway
from marginalia.transport.selector import TransportSelector
from marginalia.transport.stream import StreamReader


class DispatchEngine:
    """
    Starts agent invocations for one document.

    Each dispatch claims the document's slot synchronously, before its first
    await, then records the request durably and only afterwards invokes the
    agent. A persistence failure aborts the dispatch: optimistic state is
    rolled back, the slot is released and the exception reaches the caller.
    If the user cancels while a setup call is in flight, the slot stays
    claimed until that call settles; the dispatch then releases it and
    returns without invoking the agent.

    The stream of each started invocation is consumed by a background pump
    task that feeds the :class:`~marginalia.reconcile.CompletionReconciler`.
    """

    def __init__(
        self,
        store: SessionStore,
        gateway: PersistenceGateway,
        slot: InvocationSlot,
        selector: TransportSelector,
        reconciler: CompletionReconciler,
        event_bus: EventBus,
        config: EngineConfig,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._slot = slot
        self._selector = selector
        self._reconciler = reconciler
        self._bus = event_bus
        self._config = config
        self._pump_task: asyncio.Task[None] | None = None
        self._logger = structlog.get_logger("marginalia.dispatch").bind(
            document_path=store.document_path
        )

    # ── Chat ───────────────────────────────────────────────────────────────────

    async def dispatch_chat(
        self,
        message: str,
        context_selection: str | None = None,
        *,
        images: Sequence[ImageAttachment] | None = None,
        refs: AgentRefs | None = None,
    ) -> PendingInvocation:
        """
        Send a chat message with the full prior history of the active session.

        Returns:
            The invocation, once the agent has been started (or once setup
            stopped because the user cancelled).

        Raises:
            DispatchRejected: Blank message or an invocation already pending.
            TransientNetworkError: The gateway stayed unreachable.
            PersistenceRejected: The gateway refused the user message.
        """
        if not message.strip():
            raise DispatchRejected("Message is empty")
        invocation = self._slot.acquire(InvocationKind.CHAT)
        invocation.session_id = self._store.active_session_id
        history = [
            HistoryEntry(role=m.role, content=m.content)
            for m in self._store.messages
            if m.is_persisted
        ]
        optimistic = self._store.add_optimistic_message(message, context_selection)
        self._store.begin_streaming(invocation)
        self._logger.info("chat_dispatching", invocation_id=invocation.invocation_id)

        try:
            persisted = await with_retry(
                lambda: self._gateway.append_message(
                    self._store.document_path,
                    invocation.session_id,
                    "user",
                    message,
                    context_selection=context_selection,
                ),
                self._config.retry,
                name="append_user_message",
            )
        except BaseException as exc:
            self._store.discard_optimistic(optimistic.id.value)
            self._abort(invocation, exc)
            raise

        self._store.confirm_message(optimistic.id.value, persisted)
        if invocation.session_id is None and persisted.session_id is not None:
            self._store.adopt_session(persisted.session_id)
        invocation.session_id = persisted.session_id
        if invocation.cancelled:
            self._release_cancelled(invocation)
            self._logger.info("chat_cancelled_during_setup", invocation_id=invocation.invocation_id)
            return invocation

        request = ChatRequest(
            message=message,
            document_path=self._store.document_path,
            session_id=invocation.session_id,
            context_selection=context_selection,
            history=history,
            model=self._config.model,
            refs=refs,
            images=list(images or []),
        )
        await self._start(invocation, request)
        return invocation

    # ── Edit batch ─────────────────────────────────────────────────────────────

    async def dispatch_edit_batch(self, comments: Sequence[Comment]) -> PendingInvocation:
        """
        Send a batch of comments as one edit invocation.

        A ``running`` changelog entry is created and every comment is marked
        ``sent`` under one shared request id before the agent is invoked.

        Raises:
            DispatchRejected: Empty batch, an applied or unsaved comment, or an
                invocation already pending.
            TransientNetworkError: The gateway stayed unreachable.
            PersistenceRejected: The gateway refused a write.
        """
        if not comments:
            raise DispatchRejected("No comments to send")
        comment_ids: list[str] = []
        for comment in comments:
            try:
                comment_ids.append(require_persisted(comment.id))
            except ValueError as exc:
                raise DispatchRejected(str(exc)) from exc
            if comment.status is CommentStatus.APPLIED:
                raise DispatchRejected(f"Comment {comment.id.value!r} is already applied")

        invocation = self._slot.acquire(InvocationKind.EDIT)
        invocation.request_id = make_id("req")
        invocation.comment_ids = comment_ids
        self._store.begin_streaming(invocation)
        log = self._logger.bind(
            invocation_id=invocation.invocation_id, request_id=invocation.request_id
        )
        log.info("edit_batch_dispatching", comments=len(comments))

        snapshot = json.dumps(
            [
                {
                    "id": comment.id.value,
                    "selected_text": comment.selected_text,
                    "instruction": comment.instruction,
                    "line_hint": comment.line_hint,
                    "status": str(comment.status),
                }
                for comment in comments
            ]
        )
        request_id = invocation.request_id
        try:
            changelog = await with_retry(
                lambda: self._gateway.create_changelog(
                    self._store.document_path, request_id, snapshot
                ),
                self._config.retry,
                name="create_changelog",
            )
            if invocation.cancelled:
                self._release_cancelled(invocation)
                await self._close_abandoned_changelog(changelog.id, CANCELLED_SUMMARY)
                log.info("edit_cancelled_during_setup")
                return invocation
            invocation.changelog_id = changelog.id
            self._store.upsert_changelog(changelog)

            for comment_id in comment_ids:
                updated = await with_retry(
                    lambda cid=comment_id: self._gateway.update_comment(
                        cid, CommentStatus.SENT, request_id
                    ),
                    self._config.retry,
                    name="mark_comment_sent",
                )
                self._store.upsert_comment(updated)
                if invocation.cancelled:
                    break
        except BaseException as exc:
            self._abort(invocation, exc)
            if invocation.changelog_id is not None and isinstance(exc, MarginaliaError):
                await self._close_abandoned_changelog(
                    invocation.changelog_id, f"Dispatch failed: {exc}"
                )
            raise

        if invocation.cancelled:
            self._release_cancelled(invocation)
            log.info("edit_cancelled_during_setup")
            return invocation

        edit_comments = [
            EditComment(selected_text=c.selected_text, instruction=c.instruction)
            for c in comments
        ]
        refs = parse_refs(c.instruction for c in comments)
        request = EditRequest(
            instruction=build_edit_prompt(self._store.document_path, edit_comments),
            file_path=self._store.document_path,
            request_id=request_id,
            comments=edit_comments,
            model=self._config.model,
            refs=None if refs.is_empty else refs,
        )
        await self._start(invocation, request)
        return invocation

    # ── Streaming ──────────────────────────────────────────────────────────────

    async def wait_for_pending(self) -> None:
        """Await the in-flight stream pump to natural completion, then clear it."""
        task = self._pump_task
        if task is not None and not task.done():
            try:
                await task
            except Exception as exc:
                self._logger.exception("stream_pump_failed", error=str(exc))
        self._pump_task = None

    async def _start(self, invocation: PendingInvocation, request: AgentRequest) -> None:
        transport = self._selector.create()
        reader = StreamReader(invocation.invocation_id, invocation.kind)
        reader.attach(transport)
        invocation.transport = self._selector.kind
        invocation.transport_handle = transport
        invocation.reader = reader
        invocation.state = InvocationState.STREAMING

        self._pump_task = asyncio.create_task(self._pump(invocation, reader))
        self._bus.publish(
            EngineEvent.INVOCATION_STARTED,
            InvocationPayload(
                invocation_id=invocation.invocation_id,
                kind=str(invocation.kind),
                document_path=invocation.document_path,
                transport=str(invocation.transport),
            ),
        )
        await transport.start(invocation, request)

    async def _pump(self, invocation: PendingInvocation, reader: StreamReader) -> None:
        """Feed the reconciler. A failure here ends the invocation as errored."""
        try:
            async for item in reader:
                if isinstance(item, Increment):
                    self._reconciler.apply_increment(invocation, item)
                else:
                    await self._reconciler.finish(invocation, item)
        except Exception as exc:
            self._logger.exception(
                "stream_pump_failed",
                invocation_id=invocation.invocation_id,
                kind=str(invocation.kind),
                error=str(exc),
            )
            reader.close()
            if self._slot.release_if_current(invocation.invocation_id) is not None:
                invocation.state = InvocationState.ERRORED
                self._bus.publish(
                    EngineEvent.INVOCATION_FAILED,
                    InvocationPayload(
                        invocation_id=invocation.invocation_id,
                        kind=str(invocation.kind),
                        document_path=invocation.document_path,
                        error=str(exc) or type(exc).__name__,
                    ),
                )
            self._store.finish_streaming(invocation)

    # ── Private Helpers ────────────────────────────────────────────────────────

    def _release_cancelled(self, invocation: PendingInvocation) -> None:
        """Free the slot a cancel left claimed while a setup call was in flight."""
        self._slot.release_if_current(invocation.invocation_id)

    def _abort(self, invocation: PendingInvocation, exc: BaseException) -> None:
        """Release the slot after a failed setup call."""
        if self._slot.release_if_current(invocation.invocation_id) is not None:
            if not invocation.cancelled:
                invocation.state = InvocationState.ERRORED
            self._store.finish_streaming(invocation)
        self._logger.warning(
            "dispatch_failed",
            invocation_id=invocation.invocation_id,
            kind=str(invocation.kind),
            error=str(exc) or type(exc).__name__,
        )

    async def _close_abandoned_changelog(self, changelog_id: str, summary: str) -> None:
        try:
            entry = await self._gateway.update_changelog(
                changelog_id, ChangelogStatus.ERROR, summary=summary
            )
        except Exception as exc:
            self._logger.warning(
                "abandoned_changelog_not_closed", changelog_id=changelog_id, error=str(exc)
            )
            return
        self._store.upsert_changelog(entry)
