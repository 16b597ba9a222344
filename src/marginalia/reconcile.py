"""Turns an invocation's terminal signal into persisted records and idle state."""

from __future__ import annotations

import structlog

from marginalia.events.bus import EngineEvent, EventBus
from marginalia.events.payloads import InvocationPayload
from marginalia.invocation import InvocationSlot, InvocationState, PendingInvocation
from marginalia.models.config import RetryConfig
from marginalia.models.entities import (
    ChangelogStatus,
    CommentStatus,
    LocalId,
    Message,
)
from marginalia.models.signals import (
    Increment,
    InvocationKind,
    TerminalOutcome,
    TerminalSignal,
)
from marginalia.retry import with_retry
from marginalia.state import SessionStore
from marginalia.store.gateway import PersistenceGateway

EDIT_SUCCESS_SUMMARY = "Changes applied"
NO_RESPONSE = "(No response)"


class CompletionReconciler:
    """
    Applies stream increments to the Session Store and consumes exactly one
    terminal signal per invocation.

    :meth:`finish` clears the document's slot before any other side effect.
    A terminal signal whose invocation is no longer the current one (already
    finished, or cancelled by the user) is logged and ignored, so duplicated
    or late signals can never add a second message.

    Write failures while finishing are logged and never raised: the store
    still returns to idle and the outcome event is still published.
    """

    def __init__(
        self,
        store: SessionStore,
        gateway: PersistenceGateway,
        slot: InvocationSlot,
        retry: RetryConfig,
        event_bus: EventBus,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._slot = slot
        self._retry = retry
        self._bus = event_bus
        self._logger = structlog.get_logger("marginalia.reconcile").bind(
            document_path=store.document_path
        )

    def apply_increment(self, invocation: PendingInvocation, increment: Increment) -> None:
        if invocation.cancelled or not self._slot.is_current(increment.invocation_id):
            return
        invocation.state = InvocationState.STREAMING
        invocation.last_snapshot = increment.content
        self._store.set_stream_output(increment.content, increment.invocation_id)

    async def finish(self, invocation: PendingInvocation, signal: TerminalSignal) -> None:
        if self._slot.release_if_current(signal.invocation_id) is None:
            self._logger.debug(
                "stale_terminal_ignored",
                invocation_id=signal.invocation_id,
                outcome=str(signal.outcome),
            )
            return

        log = self._logger.bind(invocation_id=signal.invocation_id, kind=str(signal.kind))
        if signal.outcome is TerminalOutcome.CANCELLED:
            invocation.state = InvocationState.CANCELLED
            self._store.finish_streaming(invocation)
            log.info("invocation_cancelled_by_transport")
            self._publish(EngineEvent.INVOCATION_CANCELLED, invocation)
            return

        try:
            if signal.kind is InvocationKind.CHAT:
                await self._finish_chat(invocation, signal)
            else:
                await self._finish_edit(invocation, signal)
        finally:
            self._store.finish_streaming(invocation)

        if signal.succeeded:
            invocation.state = InvocationState.COMPLETED
            log.info("invocation_completed")
            self._publish(EngineEvent.INVOCATION_COMPLETED, invocation)
        else:
            invocation.state = InvocationState.ERRORED
            log.warning("invocation_failed", error=signal.error)
            self._publish(EngineEvent.INVOCATION_FAILED, invocation, error=signal.error)

    # ── Chat ───────────────────────────────────────────────────────────────────

    async def _finish_chat(self, invocation: PendingInvocation, signal: TerminalSignal) -> None:
        if signal.succeeded:
            content = signal.content or invocation.last_snapshot or NO_RESPONSE
            is_error = False
        else:
            content = f"Error: {signal.error or 'Unknown error'}"
            is_error = True

        try:
            message = await with_retry(
                lambda: self._gateway.append_message(
                    invocation.document_path,
                    invocation.session_id,
                    "assistant",
                    content,
                    is_error=is_error,
                ),
                self._retry,
                name="append_assistant_message",
            )
        except Exception as exc:
            self._logger.error(
                "assistant_message_not_persisted",
                invocation_id=invocation.invocation_id,
                error=str(exc),
            )
            message = Message(
                id=LocalId.new(),
                session_id=invocation.session_id,
                role="assistant",
                content=content,
                is_error=is_error,
            )

        if self._store.active_session_id == invocation.session_id:
            self._store.append_message(message)

    # ── Edit ───────────────────────────────────────────────────────────────────

    async def _finish_edit(self, invocation: PendingInvocation, signal: TerminalSignal) -> None:
        stream_log = signal.content or invocation.last_snapshot
        if signal.succeeded:
            for comment_id in invocation.comment_ids:
                await self._mark_applied(comment_id)
            await self._close_changelog(
                invocation, ChangelogStatus.COMPLETED, stream_log, EDIT_SUCCESS_SUMMARY
            )
        else:
            await self._close_changelog(
                invocation,
                ChangelogStatus.ERROR,
                stream_log,
                signal.error or "Failed to apply changes",
            )

    async def _mark_applied(self, comment_id: str) -> None:
        try:
            comment = await with_retry(
                lambda: self._gateway.update_comment(comment_id, CommentStatus.APPLIED),
                self._retry,
                name="mark_comment_applied",
            )
        except Exception as exc:
            self._logger.error("comment_not_marked_applied", comment_id=comment_id, error=str(exc))
            return
        self._store.upsert_comment(comment)

    async def _close_changelog(
        self,
        invocation: PendingInvocation,
        status: ChangelogStatus,
        stream_log: str,
        summary: str,
    ) -> None:
        changelog_id = invocation.changelog_id
        if changelog_id is None:
            return
        try:
            entry = await with_retry(
                lambda: self._gateway.update_changelog(
                    changelog_id, status, stream_log=stream_log or None, summary=summary
                ),
                self._retry,
                name="close_changelog",
            )
        except Exception as exc:
            self._logger.error(
                "changelog_not_closed", changelog_id=changelog_id, error=str(exc)
            )
            return
        self._store.upsert_changelog(entry)

    def _publish(
        self, event: EngineEvent, invocation: PendingInvocation, error: str | None = None
    ) -> None:
        payload = InvocationPayload(
            invocation_id=invocation.invocation_id,
            kind=str(invocation.kind),
            document_path=invocation.document_path,
        )
        if invocation.transport is not None:
            payload["transport"] = str(invocation.transport)
        if error is not None:
            payload["error"] = error
        self._bus.publish(event, payload)
