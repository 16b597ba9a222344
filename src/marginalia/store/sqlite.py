"""SQLite-backed persistence gateway for desktop hosts."""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import aiosqlite
import structlog

from marginalia.errors import (
    InvalidStatusTransition,
    MarginaliaError,
    NotFoundError,
    PersistenceRejected,
    TransientNetworkError,
)
from marginalia.models.config import StoreConfig
from marginalia.models.entities import (
    ChangelogEntry,
    ChangelogStatus,
    Comment,
    CommentStatus,
    Message,
    PersistedId,
    Session,
    make_id,
    now_ms,
)


F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

_CONTENTION_MARKERS = ("locked", "busy")


def _driver_errors(method: F) -> F:
    """
    Re-raise driver failures as gateway errors.

    A locked or busy database is :class:`TransientNetworkError` (the retry
    policy applies); any other ``aiosqlite.Error`` is
    :class:`PersistenceRejected`.
    """

    @functools.wraps(method)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await method(*args, **kwargs)
        except aiosqlite.OperationalError as exc:
            if any(marker in str(exc).lower() for marker in _CONTENTION_MARKERS):
                raise TransientNetworkError(f"{method.__name__}: {exc}") from exc
            raise PersistenceRejected(f"{method.__name__}: {exc}") from exc
        except aiosqlite.Error as exc:
            raise PersistenceRejected(f"{method.__name__}: {exc}") from exc

    return wrapper  # type: ignore[return-value]


class SqliteGateway:
    """
    Local durable store implementing
    :class:`~marginalia.store.gateway.PersistenceGateway`.

    Every write runs in its own transaction. Status columns are guarded in
    SQL-adjacent Python so a comment can never regress and a changelog entry
    can never leave a terminal status.

    Usage::

        gateway = SqliteGateway(StoreConfig(db_path="~/.marginalia/app.db"))
        await gateway.initialize()
        try:
            msg = await gateway.append_message("/notes/a.md", None, "user", "Hi")
        finally:
            await gateway.close()
    """

    def __init__(self, config: StoreConfig) -> None:
        self._config = config
        self._db_path = str(Path(config.db_path).expanduser())
        self._conn: aiosqlite.Connection | None = None
        self._logger = structlog.get_logger("marginalia.store")

    async def initialize(self) -> None:
        """
        Open the database connection and apply the schema.

        Raises:
            aiosqlite.Error: If the database cannot be opened or the schema fails.
        """
        if self._conn is not None:
            return
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(self._db_path, timeout=self._config.connection_timeout)
        try:
            conn.row_factory = aiosqlite.Row
            if self._config.wal_mode:
                await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA foreign_keys=ON")
            await conn.execute("PRAGMA synchronous=NORMAL")

            schema = (Path(__file__).parent / "schema.sql").read_text()
            await conn.executescript(schema)
            await conn.commit()
        except Exception:
            await conn.close()
            raise

        self._conn = conn
        self._logger.info("store_initialized", db_path=self._db_path)

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._conn is None:
            return
        await self._conn.close()
        self._conn = None

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise MarginaliaError("Store is not initialized. Call initialize() first.")
        return self._conn

    # ── Sessions ───────────────────────────────────────────────────────────────

    @_driver_errors
    async def list_sessions(self, document_path: str) -> list[Session]:
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM sessions WHERE document_path = ?"
            " ORDER BY updated_at DESC, rowid DESC",
            (document_path,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_session(r) for r in rows]

    @_driver_errors
    async def delete_session(self, session_id: str) -> None:
        """Delete a session and, by cascade, its messages."""
        conn = self._conn_or_raise()
        result = await conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        await conn.commit()
        if result.rowcount == 0:
            raise NotFoundError("Session", session_id)

    async def _create_session(self, document_path: str, now: int) -> str:
        conn = self._conn_or_raise()
        session_id = make_id("sess")
        await conn.execute(
            "INSERT INTO sessions (id, document_path, created_at, updated_at)"
            " VALUES (?, ?, ?, ?)",
            (session_id, document_path, now, now),
        )
        self._logger.info("session_created", session_id=session_id, document_path=document_path)
        return session_id

    # ── Messages ───────────────────────────────────────────────────────────────

    @_driver_errors
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
        Persist a message, creating the session first when ``session_id`` is ``None``.

        Raises:
            NotFoundError: If ``session_id`` is given but does not exist.
        """
        conn = self._conn_or_raise()
        now = now_ms()
        message_id = make_id("msg")
        try:
            if session_id is None:
                session_id = await self._create_session(document_path, now)
            else:
                result = await conn.execute(
                    "UPDATE sessions SET updated_at = ? WHERE id = ?", (now, session_id)
                )
                if result.rowcount == 0:
                    raise NotFoundError("Session", session_id)
            await conn.execute(
                """
                INSERT INTO messages
                    (id, session_id, role, content, context_selection, is_error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (message_id, session_id, role, content, context_selection, int(is_error), now),
            )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise

        return Message(
            id=PersistedId(value=message_id),
            session_id=session_id,
            role=role,  # type: ignore[arg-type]
            content=content,
            context_selection=context_selection,
            is_error=is_error,
            created_at=now,
        )

    @_driver_errors
    async def list_messages(self, session_id: str) -> list[Message]:
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM messages WHERE session_id = ? ORDER BY created_at ASC, rowid ASC",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_message(r) for r in rows]

    # ── Comments ───────────────────────────────────────────────────────────────

    @_driver_errors
    async def create_comment(
        self,
        document_path: str,
        selected_text: str,
        instruction: str,
        line_hint: str,
    ) -> Comment:
        conn = self._conn_or_raise()
        comment_id = make_id("cmt")
        now = now_ms()
        await conn.execute(
            """
            INSERT INTO comments
                (id, document_path, selected_text, instruction, line_hint, status, created_at)
            VALUES (?, ?, ?, ?, ?, 'pending', ?)
            """,
            (comment_id, document_path, selected_text, instruction, line_hint, now),
        )
        await conn.commit()
        return Comment(
            id=PersistedId(value=comment_id),
            document_path=document_path,
            selected_text=selected_text,
            instruction=instruction,
            line_hint=line_hint,
            created_at=now,
        )

    @_driver_errors
    async def list_comments(self, document_path: str) -> list[Comment]:
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM comments WHERE document_path = ? ORDER BY created_at ASC, rowid ASC",
            (document_path,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_comment(r) for r in rows]

    @_driver_errors
    async def get_comment(self, comment_id: str) -> Comment:
        conn = self._conn_or_raise()
        async with conn.execute("SELECT * FROM comments WHERE id = ?", (comment_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError("Comment", comment_id)
        return self._row_to_comment(row)

    @_driver_errors
    async def update_comment(
        self,
        comment_id: str,
        status: CommentStatus,
        request_id: str | None = None,
    ) -> Comment:
        """
        Raises:
            NotFoundError: If the comment does not exist.
            InvalidStatusTransition: If ``status`` would regress the comment.
        """
        conn = self._conn_or_raise()
        current = await self.get_comment(comment_id)
        if not current.status.can_become(status):
            raise InvalidStatusTransition("Comment", str(current.status), str(status))

        new_request_id = request_id if request_id is not None else current.request_id
        await conn.execute(
            "UPDATE comments SET status = ?, request_id = ? WHERE id = ?",
            (str(status), new_request_id, comment_id),
        )
        await conn.commit()
        return current.model_copy(update={"status": status, "request_id": new_request_id})

    @_driver_errors
    async def delete_comment(self, comment_id: str) -> None:
        conn = self._conn_or_raise()
        result = await conn.execute("DELETE FROM comments WHERE id = ?", (comment_id,))
        await conn.commit()
        if result.rowcount == 0:
            raise NotFoundError("Comment", comment_id)

    # ── Changelog ──────────────────────────────────────────────────────────────

    @_driver_errors
    async def create_changelog(
        self,
        document_path: str,
        request_id: str,
        comments_snapshot: str,
    ) -> ChangelogEntry:
        conn = self._conn_or_raise()
        entry = ChangelogEntry(
            id=make_id("chg"),
            document_path=document_path,
            request_id=request_id,
            comments_snapshot=comments_snapshot,
        )
        await conn.execute(
            """
            INSERT INTO changelogs
                (id, document_path, request_id, status, comments_snapshot, created_at, updated_at)
            VALUES (?, ?, ?, 'running', ?, ?, ?)
            """,
            (
                entry.id,
                document_path,
                request_id,
                comments_snapshot,
                entry.created_at,
                entry.updated_at,
            ),
        )
        await conn.commit()
        return entry

    @_driver_errors
    async def get_changelog(self, changelog_id: str) -> ChangelogEntry:
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM changelogs WHERE id = ?", (changelog_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError("ChangelogEntry", changelog_id)
        return self._row_to_changelog(row)

    @_driver_errors
    async def update_changelog(
        self,
        changelog_id: str,
        status: ChangelogStatus,
        *,
        stream_log: str | None = None,
        summary: str | None = None,
    ) -> ChangelogEntry:
        """
        Raises:
            NotFoundError: If the entry does not exist.
            InvalidStatusTransition: If the entry is already completed or errored.
        """
        conn = self._conn_or_raise()
        current = await self.get_changelog(changelog_id)
        if current.status.is_terminal:
            raise InvalidStatusTransition("ChangelogEntry", str(current.status), str(status))

        set_clauses = ["status = ?", "updated_at = ?"]
        now = now_ms()
        params: list[Any] = [str(status), now]
        if stream_log is not None:
            set_clauses.append("stream_log = ?")
            params.append(stream_log)
        if summary is not None:
            set_clauses.append("summary = ?")
            params.append(summary)
        params.append(changelog_id)

        await conn.execute(
            f"UPDATE changelogs SET {', '.join(set_clauses)} WHERE id = ?",
            params,
        )
        await conn.commit()
        return current.model_copy(
            update={
                "status": status,
                "updated_at": now,
                "stream_log": stream_log if stream_log is not None else current.stream_log,
                "summary": summary if summary is not None else current.summary,
            }
        )

    @_driver_errors
    async def list_changelogs(self, document_path: str) -> list[ChangelogEntry]:
        """Changelog entries for a document, newest first."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM changelogs WHERE document_path = ?"
            " ORDER BY created_at DESC, rowid DESC",
            (document_path,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_changelog(r) for r in rows]

    # ── Private Helpers ────────────────────────────────────────────────────────

    def _row_to_session(self, row: aiosqlite.Row) -> Session:
        return Session(
            id=row["id"],
            document_path=row["document_path"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        return Message(
            id=PersistedId(value=row["id"]),
            session_id=row["session_id"],
            role=row["role"],
            content=row["content"],
            context_selection=row["context_selection"],
            is_error=bool(row["is_error"]),
            created_at=row["created_at"],
        )

    def _row_to_comment(self, row: aiosqlite.Row) -> Comment:
        return Comment(
            id=PersistedId(value=row["id"]),
            document_path=row["document_path"],
            selected_text=row["selected_text"],
            instruction=row["instruction"],
            line_hint=row["line_hint"] or "",
            status=CommentStatus(row["status"]),
            request_id=row["request_id"],
            created_at=row["created_at"],
        )

    def _row_to_changelog(self, row: aiosqlite.Row) -> ChangelogEntry:
        return ChangelogEntry(
            id=row["id"],
            document_path=row["document_path"],
            request_id=row["request_id"],
            status=ChangelogStatus(row["status"]),
            summary=row["summary"],
            stream_log=row["stream_log"],
            comments_snapshot=row["comments_snapshot"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
