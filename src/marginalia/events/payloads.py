"""Typed payload definitions for each EngineEvent.

Usage example::

    from marginalia.events.bus import EngineEvent
    from marginalia.events.payloads import StreamUpdatedPayload

    def on_stream(event: EngineEvent, payload: StreamUpdatedPayload) -> None:
        print(payload["content"])

    engine.event_bus.subscribe(EngineEvent.STREAM_UPDATED, on_stream)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import NotRequired, TypedDict

# ── Sessions ──────────────────────────────────────────────────────────────────


class SessionPayload(TypedDict):
    """Payload for ``SESSION_CREATED``, ``SESSION_SELECTED`` and ``SESSION_DELETED``."""

    document_path: str
    session_id: str | None
    """``None`` when the selection was reset to start a new session."""


# ── Messages ──────────────────────────────────────────────────────────────────


class MessagePayload(TypedDict):
    """Payload for ``MESSAGE_CREATED``, ``MESSAGE_CONFIRMED`` and ``MESSAGE_DISCARDED``."""

    message_id: str
    role: str
    local_id: NotRequired[str]
    """The optimistic id that was replaced. ``MESSAGE_CONFIRMED`` only."""
    is_error: NotRequired[bool]


# ── Comments and changelog ────────────────────────────────────────────────────


class CommentPayload(TypedDict):
    """Payload for ``COMMENT_CREATED``, ``COMMENT_UPDATED`` and ``COMMENT_DELETED``."""

    comment_id: str
    status: str
    request_id: NotRequired[str | None]


class ChangelogPayload(TypedDict):
    """Payload for ``CHANGELOG_UPDATED``."""

    changelog_id: str
    status: str


# ── Streaming ─────────────────────────────────────────────────────────────────


class StreamUpdatedPayload(TypedDict):
    """Payload for ``STREAM_UPDATED``. Content is the full accumulated snapshot."""

    invocation_id: int | None
    content: str


# ── Invocations ───────────────────────────────────────────────────────────────


class InvocationPayload(TypedDict):
    """Payload for the ``INVOCATION_*`` events."""

    invocation_id: int
    kind: str
    document_path: str
    transport: NotRequired[str]
    error: NotRequired[str]
