"""Persisted entity models: sessions, messages, comments, changelog entries."""

from __future__ import annotations

import time
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, Field
from ulid import ULID


def make_id(prefix: str) -> str:
    """
    Generate a ULID-based sortable identifier.

    Args:
        prefix: Short prefix for readability (e.g. ``"msg"``, ``"sess"``, ``"req"``).

    Returns:
        ID string in the format ``"{prefix}_{ulid}"``.
    """
    return f"{prefix}_{ULID()}"


def now_ms() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)


# ── Identity tags ──────────────────────────────────────────────────────────────


class LocalId(BaseModel):
    """An id generated on the client for an optimistic entry. Never persisted."""

    kind: Literal["local"] = "local"
    value: str

    @classmethod
    def new(cls) -> LocalId:
        return cls(value=make_id("tmp"))


class PersistedId(BaseModel):
    """An id assigned by the persistence gateway."""

    kind: Literal["persisted"] = "persisted"
    value: str


# Discriminated on ``kind``.
EntityId = Annotated[LocalId | PersistedId, Field(discriminator="kind")]


def require_persisted(entity_id: LocalId | PersistedId) -> str:
    """
    Return the raw value of a persisted id.

    Raises:
        ValueError: If ``entity_id`` is a local (optimistic) id.
    """
    if not isinstance(entity_id, PersistedId):
        raise ValueError(f"Local id {entity_id.value!r} cannot be used for a durable write")
    return entity_id.value


# ── Status enums ───────────────────────────────────────────────────────────────


class CommentStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    APPLIED = "applied"

    @property
    def rank(self) -> int:
        return _COMMENT_RANK[self]

    def can_become(self, target: CommentStatus) -> bool:
        """
        True if moving to ``target`` does not regress the lifecycle.

        ``sent → sent`` is allowed so a failed batch can be retried manually.
        ``applied`` only accepts ``applied``.
        """
        if self is CommentStatus.APPLIED:
            return target is CommentStatus.APPLIED
        return target.rank >= self.rank


_COMMENT_RANK = {
    CommentStatus.PENDING: 0,
    CommentStatus.SENT: 1,
    CommentStatus.APPLIED: 2,
}


class ChangelogStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not ChangelogStatus.RUNNING


# ── Entities ───────────────────────────────────────────────────────────────────


class Session(BaseModel):
    """A chat session scoped to one document."""

    id: str
    document_path: str
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class Message(BaseModel):
    """
    A chat message.

    ``id`` is a :class:`LocalId` while the message is optimistic and a
    :class:`PersistedId` once the gateway has stored it.
    """

    id: EntityId
    session_id: str | None = None
    """``None`` only for an optimistic message sent before a session exists."""
    role: Literal["user", "assistant"]
    content: str
    context_selection: str | None = None
    is_error: bool = False
    """True when ``content`` carries an agent failure rather than a reply."""
    created_at: int = Field(default_factory=now_ms)

    @property
    def is_persisted(self) -> bool:
        return isinstance(self.id, PersistedId)


class Comment(BaseModel):
    """An inline edit instruction anchored to a text selection."""

    id: EntityId
    document_path: str
    selected_text: str
    instruction: str
    line_hint: str = ""
    status: CommentStatus = CommentStatus.PENDING
    request_id: str | None = None
    """Shared by every comment dispatched in the same edit batch."""
    created_at: int = Field(default_factory=now_ms)

    @property
    def is_persisted(self) -> bool:
        return isinstance(self.id, PersistedId)


class ChangelogEntry(BaseModel):
    """The durable record of one edit-batch invocation."""

    id: str
    document_path: str
    request_id: str
    status: ChangelogStatus = ChangelogStatus.RUNNING
    summary: str | None = None
    stream_log: str | None = None
    comments_snapshot: str = "[]"
    """JSON array of the comments as they were when the batch was dispatched."""
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


def line_hint_for(selected_text: str, limit: int = 50) -> str:
    """Short preview of a selection used as a comment's location hint."""
    if len(selected_text) > limit:
        return selected_text[:limit] + "..."
    return selected_text
