"""The persistence gateway contract consumed by the engine."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from marginalia.models.entities import (
    ChangelogEntry,
    ChangelogStatus,
    Comment,
    CommentStatus,
    Message,
    Session,
)


@runtime_checkable
class PersistenceGateway(Protocol):
    """
    Durable store for sessions, messages, comments and changelog entries.

    Every method is a suspension point and may raise
    :class:`~marginalia.errors.TransientNetworkError` (retryable) or
    :class:`~marginalia.errors.PersistenceRejected` (not retryable).
    Returned entities always carry gateway-assigned ids and timestamps.
    """

    # ── Sessions ──────────────────────────────────────────────────────────────

    async def list_sessions(self, document_path: str) -> list[Session]:
        """Sessions for a document, most recently updated first."""
        ...

    async def delete_session(self, session_id: str) -> None: ...

    # ── Messages ──────────────────────────────────────────────────────────────

    async def append_message(
        self,
        document_path: str,
        session_id: str | None,
        role: str,
        content: str,
        *,
        context_selection: str | None = None,
        is_error: bool = False,
    ) -> Message:
        """
        Persist a message. When ``session_id`` is ``None`` a new session is
        created for ``document_path`` first; the returned message carries its id.
        """
        ...

    async def list_messages(self, session_id: str) -> list[Message]:
        """Messages of a session in chronological order."""
        ...

    # ── Comments ──────────────────────────────────────────────────────────────

    async def create_comment(
        self,
        document_path: str,
        selected_text: str,
        instruction: str,
        line_hint: str,
    ) -> Comment: ...

    async def list_comments(self, document_path: str) -> list[Comment]: ...

    async def update_comment(
        self,
        comment_id: str,
        status: CommentStatus,
        request_id: str | None = None,
    ) -> Comment:
        """
        Move a comment forward in its lifecycle.

        Raises:
            InvalidStatusTransition: If ``status`` would regress the comment.
        """
        ...

    async def delete_comment(self, comment_id: str) -> None: ...

    # ── Changelog ─────────────────────────────────────────────────────────────

    async def create_changelog(
        self,
        document_path: str,
        request_id: str,
        comments_snapshot: str,
    ) -> ChangelogEntry: ...

    async def update_changelog(
        self,
        changelog_id: str,
        status: ChangelogStatus,
        *,
        stream_log: str | None = None,
        summary: str | None = None,
    ) -> ChangelogEntry:
        """
        Finalize (or annotate) a changelog entry.

        Raises:
            InvalidStatusTransition: If the entry is already terminal.
        """
        ...

    async def list_changelogs(self, document_path: str) -> list[ChangelogEntry]: ...

    async def close(self) -> None: ...
