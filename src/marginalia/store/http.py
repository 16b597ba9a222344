"""REST persistence gateway used when the engine runs inside a served application."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from marginalia.errors import PersistenceRejected
from marginalia.http_client import request_json
from marginalia.models.config import HttpConfig
from marginalia.models.entities import (
    ChangelogEntry,
    ChangelogStatus,
    Comment,
    CommentStatus,
    Message,
    PersistedId,
    Session,
    now_ms,
)


class HttpGateway:
    """
    :class:`~marginalia.store.gateway.PersistenceGateway` backed by the
    application's ``/api/chat``, ``/api/comments`` and ``/api/changelogs`` routes.

    Ids returned by the server may be integers; they are normalized to strings.

    Args:
        config: Base URL and request timeout.
        client: Optional pre-built client (tests pass one with a
            ``httpx.MockTransport``). A client passed in is not closed by
            :meth:`close`.
    """

    def __init__(self, config: HttpConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url, timeout=config.timeout
        )
        self._logger = structlog.get_logger("marginalia.store.http")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ── Sessions ───────────────────────────────────────────────────────────────

    async def list_sessions(self, document_path: str) -> list[Session]:
        data = await request_json(
            self._client, "GET", "/api/chat", params={"document_path": document_path}
        )
        return [_to_session(s, document_path) for s in data.get("sessions", [])]

    async def delete_session(self, session_id: str) -> None:
        await request_json(
            self._client, "DELETE", "/api/chat", entity="Session", params={"id": session_id}
        )

    # ── Messages ───────────────────────────────────────────────────────────────

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
        data = await request_json(
            self._client,
            "POST",
            "/api/chat",
            entity="Session",
            json={
                "document_path": document_path,
                "session_id": session_id,
                "role": role,
                "content": content,
                "context_selection": context_selection,
                "is_error": is_error,
            },
        )
        _require_success(data, "append_message")
        raw = data.get("message")
        resolved_session = data.get("session_id", session_id)
        if not isinstance(raw, dict) or resolved_session is None:
            raise PersistenceRejected("append_message: response is missing the stored message")
        if session_id is None:
            self._logger.info(
                "session_created", session_id=str(resolved_session), document_path=document_path
            )
        return Message(
            id=PersistedId(value=str(raw["id"])),
            session_id=str(resolved_session),
            role=raw.get("role", role),
            content=raw.get("content", content),
            context_selection=raw.get("context_selection", context_selection),
            is_error=bool(raw.get("is_error", is_error)),
            created_at=raw.get("created_at") or now_ms(),
        )

    async def list_messages(self, session_id: str) -> list[Message]:
        data = await request_json(
            self._client, "GET", "/api/chat", params={"session_id": session_id}
        )
        return [_to_message(m, session_id) for m in data.get("messages", [])]

    # ── Comments ───────────────────────────────────────────────────────────────

    async def create_comment(
        self,
        document_path: str,
        selected_text: str,
        instruction: str,
        line_hint: str,
    ) -> Comment:
        data = await request_json(
            self._client,
            "POST",
            "/api/comments",
            json={
                "document_path": document_path,
                "selected_text": selected_text,
                "instruction": instruction,
                "line_hint": line_hint,
            },
        )
        return _to_comment(_require_record(data, "comment"))

    async def list_comments(self, document_path: str) -> list[Comment]:
        data = await request_json(
            self._client, "GET", "/api/comments", params={"document_path": document_path}
        )
        return [_to_comment(c) for c in data.get("comments", [])]

    async def update_comment(
        self,
        comment_id: str,
        status: CommentStatus,
        request_id: str | None = None,
    ) -> Comment:
        body: dict[str, Any] = {"id": comment_id, "status": str(status)}
        if request_id is not None:
            body["request_id"] = request_id
        data = await request_json(
            self._client, "PATCH", "/api/comments", entity="Comment", json=body
        )
        return _to_comment(_require_record(data, "comment"))

    async def delete_comment(self, comment_id: str) -> None:
        await request_json(
            self._client, "DELETE", "/api/comments", entity="Comment", params={"id": comment_id}
        )

    # ── Changelog ──────────────────────────────────────────────────────────────

    async def create_changelog(
        self,
        document_path: str,
        request_id: str,
        comments_snapshot: str,
    ) -> ChangelogEntry:
        data = await request_json(
            self._client,
            "POST",
            "/api/changelogs",
            json={
                "document_path": document_path,
                "request_id": request_id,
                "comments_snapshot": comments_snapshot,
            },
        )
        return _to_changelog(_require_record(data, "changelog"))

    async def update_changelog(
        self,
        changelog_id: str,
        status: ChangelogStatus,
        *,
        stream_log: str | None = None,
        summary: str | None = None,
    ) -> ChangelogEntry:
        body: dict[str, Any] = {"id": changelog_id, "status": str(status)}
        if stream_log is not None:
            body["stream_log"] = stream_log
        if summary is not None:
            body["summary"] = summary
        data = await request_json(
            self._client, "PATCH", "/api/changelogs", entity="ChangelogEntry", json=body
        )
        return _to_changelog(_require_record(data, "changelog"))

    async def list_changelogs(self, document_path: str) -> list[ChangelogEntry]:
        data = await request_json(
            self._client, "GET", "/api/changelogs", params={"document_path": document_path}
        )
        return [_to_changelog(c) for c in data.get("changelogs", [])]


# ── Response decoding ──────────────────────────────────────────────────────────


def _require_success(data: dict[str, Any], operation: str) -> None:
    if data.get("success") is False:
        raise PersistenceRejected(f"{operation}: {data.get('error') or 'rejected by server'}")


def _require_record(data: dict[str, Any], key: str) -> dict[str, Any]:
    _require_success(data, key)
    record = data.get(key)
    if not isinstance(record, dict):
        raise PersistenceRejected(f"response is missing {key!r}")
    return record


def _to_session(raw: dict[str, Any], document_path: str) -> Session:
    created = raw.get("created_at") or now_ms()
    return Session(
        id=str(raw["id"]),
        document_path=raw.get("document_path", document_path),
        created_at=created,
        updated_at=raw.get("updated_at") or created,
    )


def _to_message(raw: dict[str, Any], session_id: str) -> Message:
    return Message(
        id=PersistedId(value=str(raw["id"])),
        session_id=str(raw.get("session_id", session_id)),
        role=raw["role"],
        content=raw["content"],
        context_selection=raw.get("context_selection"),
        is_error=bool(raw.get("is_error", False)),
        created_at=raw.get("created_at") or now_ms(),
    )


def _to_comment(raw: dict[str, Any]) -> Comment:
    return Comment(
        id=PersistedId(value=str(raw["id"])),
        document_path=raw["document_path"],
        selected_text=raw["selected_text"],
        instruction=raw["instruction"],
        line_hint=raw.get("line_hint") or "",
        status=CommentStatus(raw.get("status", "pending")),
        request_id=raw.get("request_id"),
        created_at=raw.get("created_at") or now_ms(),
    )


def _to_changelog(raw: dict[str, Any]) -> ChangelogEntry:
    created = raw.get("created_at") or now_ms()
    return ChangelogEntry(
        id=str(raw["id"]),
        document_path=raw["document_path"],
        request_id=raw["request_id"],
        status=ChangelogStatus(raw.get("status", "running")),
        summary=raw.get("summary"),
        stream_log=raw.get("stream_log"),
        comments_snapshot=raw.get("comments_snapshot") or "[]",
        created_at=created,
        updated_at=raw.get("updated_at") or created,
    )
