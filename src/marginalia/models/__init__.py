"""Marginalia data models."""

from marginalia.models.config import (
    AgentConfig,
    EndpointConfig,
    EngineConfig,
    HttpConfig,
    PollConfig,
    RetryConfig,
    StoreConfig,
)
from marginalia.models.entities import (
    ChangelogEntry,
    ChangelogStatus,
    Comment,
    CommentStatus,
    EntityId,
    LocalId,
    Message,
    PersistedId,
    Session,
    line_hint_for,
    make_id,
    now_ms,
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
    TerminalOutcome,
    TerminalSignal,
    TransportKind,
)

__all__ = [
    # Config
    "AgentConfig",
    "EndpointConfig",
    "EngineConfig",
    "HttpConfig",
    "PollConfig",
    "RetryConfig",
    "StoreConfig",
    # Entities
    "ChangelogEntry",
    "ChangelogStatus",
    "Comment",
    "CommentStatus",
    "EntityId",
    "LocalId",
    "Message",
    "PersistedId",
    "Session",
    "line_hint_for",
    "make_id",
    "now_ms",
    "require_persisted",
    # Requests and signals
    "AgentRefs",
    "AgentRequest",
    "ChatRequest",
    "EditComment",
    "EditRequest",
    "HistoryEntry",
    "ImageAttachment",
    "Increment",
    "InvocationKind",
    "TerminalOutcome",
    "TerminalSignal",
    "TransportKind",
]
