"""Client-held cache of conversation and edit state for one document."""

from __future__ import annotations

import structlog

from marginalia.events.bus import EngineEvent, EventBus
from marginalia.events.payloads import (
    ChangelogPayload,
    CommentPayload,
    MessagePayload,
    SessionPayload,
    StreamUpdatedPayload,
)
from marginalia.invocation import PendingInvocation
from marginalia.models.entities import (
    ChangelogEntry,
    Comment,
    LocalId,
    Message,
    Session,
)


def _id_value(entity: Message | Comment) -> str:
    return entity.id.value


class SessionStore:
    """
    Observable state the UI renders for one document.

    The UI only reads; the dispatch, reconcile and cancel components are the
    sole writers. Collection accessors return tuples so callers cannot mutate
    the cache behind the store's back. Every mutation publishes an
    :class:`~marginalia.events.bus.EngineEvent`.

    Optimistic messages carry a :class:`LocalId` until :meth:`confirm_message`
    swaps in the persisted record. Each local id is confirmed at most once.
    """

    def __init__(self, document_path: str, event_bus: EventBus) -> None:
        self.document_path = document_path
        self._bus = event_bus
        self._sessions: list[Session] = []
        self._active_session_id: str | None = None
        self._messages: list[Message] = []
        self._comments: list[Comment] = []
        self._changelogs: list[ChangelogEntry] = []
        self._stream_output = ""
        self._is_streaming = False
        self._pending: PendingInvocation | None = None
        self._confirmed: set[str] = set()
        self._logger = structlog.get_logger("marginalia.state").bind(
            document_path=document_path
        )

    # ── Read accessors ─────────────────────────────────────────────────────────

    @property
    def sessions(self) -> tuple[Session, ...]:
        return tuple(self._sessions)

    @property
    def active_session_id(self) -> str | None:
        return self._active_session_id

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def comments(self) -> tuple[Comment, ...]:
        return tuple(self._comments)

    @property
    def changelogs(self) -> tuple[ChangelogEntry, ...]:
        return tuple(self._changelogs)

    @property
    def stream_output(self) -> str:
        return self._stream_output

    @property
    def is_streaming(self) -> bool:
        return self._is_streaming

    @property
    def pending(self) -> PendingInvocation | None:
        return self._pending

    def find_comment(self, comment_id: str) -> Comment | None:
        for comment in self._comments:
            if _id_value(comment) == comment_id:
                return comment
        return None

    # ── Sessions ───────────────────────────────────────────────────────────────

    def set_sessions(self, sessions: list[Session]) -> None:
        self._sessions = list(sessions)

    def select_session(self, session_id: str | None, messages: list[Message]) -> None:
        """Make ``session_id`` active (``None`` starts a fresh session) with its history."""
        self._active_session_id = session_id
        self._messages = list(messages)
        self._bus.publish(
            EngineEvent.SESSION_SELECTED,
            SessionPayload(document_path=self.document_path, session_id=session_id),
        )

    def adopt_session(self, session_id: str) -> None:
        """Record a session the gateway created on the first message of a conversation."""
        self._active_session_id = session_id
        if any(s.id == session_id for s in self._sessions):
            return
        self._sessions.insert(0, Session(id=session_id, document_path=self.document_path))
        self._bus.publish(
            EngineEvent.SESSION_CREATED,
            SessionPayload(document_path=self.document_path, session_id=session_id),
        )

    def remove_session(self, session_id: str) -> None:
        self._sessions = [s for s in self._sessions if s.id != session_id]
        if self._active_session_id == session_id:
            self._active_session_id = None
            self._messages = []
        self._bus.publish(
            EngineEvent.SESSION_DELETED,
            SessionPayload(document_path=self.document_path, session_id=session_id),
        )

    # ── Messages ───────────────────────────────────────────────────────────────

    def add_optimistic_message(
        self, content: str, context_selection: str | None = None
    ) -> Message:
        message = Message(
            id=LocalId.new(),
            session_id=self._active_session_id,
            role="user",
            content=content,
            context_selection=context_selection,
        )
        self._messages.append(message)
        self._bus.publish(
            EngineEvent.MESSAGE_CREATED,
            MessagePayload(message_id=message.id.value, role=message.role),
        )
        return message

    def confirm_message(self, local_id: str, persisted: Message) -> bool:
        """
        Replace the optimistic message ``local_id`` with its persisted record.

        Returns:
            ``False`` (and changes nothing) if ``local_id`` was already
            confirmed or is no longer in the store.
        """
        if local_id in self._confirmed:
            return False
        for index, message in enumerate(self._messages):
            if isinstance(message.id, LocalId) and message.id.value == local_id:
                self._messages[index] = persisted
                self._confirmed.add(local_id)
                self._bus.publish(
                    EngineEvent.MESSAGE_CONFIRMED,
                    MessagePayload(
                        message_id=persisted.id.value, role=persisted.role, local_id=local_id
                    ),
                )
                return True
        return False

    def discard_optimistic(self, local_id: str) -> None:
        before = len(self._messages)
        self._messages = [
            m
            for m in self._messages
            if not (isinstance(m.id, LocalId) and m.id.value == local_id)
        ]
        if len(self._messages) != before:
            self._bus.publish(
                EngineEvent.MESSAGE_DISCARDED, MessagePayload(message_id=local_id, role="user")
            )

    def append_message(self, message: Message) -> None:
        self._messages.append(message)
        self._bus.publish(
            EngineEvent.MESSAGE_CREATED,
            MessagePayload(
                message_id=message.id.value, role=message.role, is_error=message.is_error
            ),
        )

    # ── Streaming ──────────────────────────────────────────────────────────────

    def begin_streaming(self, invocation: PendingInvocation) -> None:
        self._pending = invocation
        self._stream_output = ""
        self._is_streaming = True

    def set_stream_output(self, content: str, invocation_id: int | None = None) -> None:
        if content == self._stream_output:
            return
        self._stream_output = content
        self._bus.publish(
            EngineEvent.STREAM_UPDATED,
            StreamUpdatedPayload(invocation_id=invocation_id, content=content),
        )

    def finish_streaming(self, invocation: PendingInvocation | None = None) -> None:
        """
        Return to idle: no pending handle, empty buffer, not streaming.

        With ``invocation`` given, does nothing unless it is still the pending one.
        """
        if invocation is not None and self._pending is not invocation:
            return
        self._pending = None
        self._is_streaming = False
        self.set_stream_output("")

    # ── Comments ───────────────────────────────────────────────────────────────

    def set_comments(self, comments: list[Comment]) -> None:
        self._comments = list(comments)

    def upsert_comment(self, comment: Comment) -> None:
        comment_id = _id_value(comment)
        for index, existing in enumerate(self._comments):
            if _id_value(existing) == comment_id:
                self._comments[index] = comment
                self._bus.publish(
                    EngineEvent.COMMENT_UPDATED,
                    CommentPayload(
                        comment_id=comment_id,
                        status=str(comment.status),
                        request_id=comment.request_id,
                    ),
                )
                return
        self._comments.append(comment)
        self._bus.publish(
            EngineEvent.COMMENT_CREATED,
            CommentPayload(comment_id=comment_id, status=str(comment.status)),
        )

    def remove_comment(self, comment_id: str) -> None:
        removed = self.find_comment(comment_id)
        if removed is None:
            return
        self._comments = [c for c in self._comments if _id_value(c) != comment_id]
        self._bus.publish(
            EngineEvent.COMMENT_DELETED,
            CommentPayload(comment_id=comment_id, status=str(removed.status)),
        )

    # ── Changelog ──────────────────────────────────────────────────────────────

    def set_changelogs(self, changelogs: list[ChangelogEntry]) -> None:
        self._changelogs = list(changelogs)

    def upsert_changelog(self, entry: ChangelogEntry) -> None:
        for index, existing in enumerate(self._changelogs):
            if existing.id == entry.id:
                self._changelogs[index] = entry
                break
        else:
            self._changelogs.insert(0, entry)
        self._bus.publish(
            EngineEvent.CHANGELOG_UPDATED,
            ChangelogPayload(changelog_id=entry.id, status=str(entry.status)),
        )
