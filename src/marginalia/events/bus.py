"""In-process pub/sub event bus through which the Session Store notifies the UI."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["EngineEvent", dict[str, Any]], None | Awaitable[None]]


class EngineEvent(StrEnum):
    """All event types published by Marginalia components.

    Typed payload definitions for each event live in
    :mod:`marginalia.events.payloads`.

    **Payload schemas by event:**

    ``SESSION_CREATED``, ``SESSION_SELECTED``, ``SESSION_DELETED``
        ``document_path: str``, ``session_id: str | None``

    ``MESSAGE_CREATED``, ``MESSAGE_CONFIRMED``, ``MESSAGE_DISCARDED``
        ``message_id: str``, ``role: str``, plus ``local_id`` on confirmation.

    ``COMMENT_CREATED``, ``COMMENT_UPDATED``, ``COMMENT_DELETED``
        ``comment_id: str``, ``status: str``

    ``CHANGELOG_UPDATED``
        ``changelog_id: str``, ``status: str``

    ``STREAM_UPDATED``
        ``invocation_id: int``, ``content: str`` (high frequency).

    ``INVOCATION_STARTED``, ``INVOCATION_COMPLETED``, ``INVOCATION_FAILED``,
    ``INVOCATION_CANCELLED``
        ``invocation_id: int``, ``kind: str``, ``document_path: str``,
        plus ``error`` on failure.
    """

    # Session navigation
    SESSION_CREATED = "session.created"
    SESSION_SELECTED = "session.selected"
    SESSION_DELETED = "session.deleted"

    # Messages
    MESSAGE_CREATED = "message.created"
    MESSAGE_CONFIRMED = "message.confirmed"
    MESSAGE_DISCARDED = "message.discarded"

    # Comments and changelog
    COMMENT_CREATED = "comment.created"
    COMMENT_UPDATED = "comment.updated"
    COMMENT_DELETED = "comment.deleted"
    CHANGELOG_UPDATED = "changelog.updated"

    # Streaming
    STREAM_UPDATED = "stream.updated"

    # Invocation lifecycle
    INVOCATION_STARTED = "invocation.started"
    INVOCATION_COMPLETED = "invocation.completed"
    INVOCATION_FAILED = "invocation.failed"
    INVOCATION_CANCELLED = "invocation.cancelled"


class EventBus:
    """
    Fan-out of Session Store changes to UI listeners.

    A handler receives ``(event, payload)``. Plain functions run inside
    :meth:`publish`, in the order they subscribed; coroutine functions are
    started as tasks on the running loop and not awaited. A handler that
    raises is logged and skipped, so a broken listener never interrupts the
    engine.

    Example::

        bus = EventBus()

        def on_stream(event, payload):
            render(payload["content"])

        unsubscribe = bus.subscribe(EngineEvent.STREAM_UPDATED, on_stream)
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._handlers: dict[EngineEvent, list[Handler]] = {}
        self._wildcard: list[Handler] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._logger = logger or structlog.get_logger("marginalia.events")

    def subscribe(self, event: EngineEvent, handler: Handler) -> Callable[[], None]:
        """
        Listen for one event type.

        Args:
            event: Event type to receive.
            handler: Sync or async callable taking ``(event, payload)``.

        Returns:
            A zero-argument callable that removes the handler.
        """
        self._handlers.setdefault(event, []).append(handler)
        return lambda: self.unsubscribe(event, handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Listen for every event type."""
        self._wildcard.append(handler)

    def unsubscribe(self, event: EngineEvent, handler: Handler) -> None:
        """Stop delivering ``event`` to ``handler``. Unknown handlers are ignored."""
        registered = self._handlers.get(event)
        if registered and handler in registered:
            registered.remove(handler)

    def publish(self, event: EngineEvent, payload: dict[str, Any]) -> None:
        """Deliver ``payload`` to the handlers of ``event``, then to wildcard handlers."""
        for handler in [*self._handlers.get(event, ()), *self._wildcard]:
            try:
                outcome = handler(event, payload)
            except Exception as exc:
                self._log_failure(event, handler, exc)
                continue
            if asyncio.iscoroutine(outcome):
                self._schedule(event, handler, outcome)

    def _schedule(self, event: EngineEvent, handler: Handler, coro: Any) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            # outside a loop
            coro.close()
            return
        self._tasks.add(task)

        def _done(t: asyncio.Task[None]) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                self._log_failure(event, handler, t.exception())

        task.add_done_callback(_done)

    def _log_failure(self, event: EngineEvent, handler: Handler, exc: BaseException | None) -> None:
        self._logger.error(
            "event_handler_error",
            event=str(event),
            handler=getattr(handler, "__qualname__", repr(handler)),
            error=str(exc),
        )
