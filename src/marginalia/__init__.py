"""
Marginalia: chat and inline-edit sessions with an external AI agent.

Quick start::

    from marginalia import AgentSessionEngine

    async with AgentSessionEngine.open("notes/a.md") as engine:
        await engine.load()
        await engine.send_message("Summarize section 2")
        await engine.wait_for_pending()
        print(engine.messages[-1].content)
"""

from marginalia.engine import AgentSessionEngine
from marginalia.errors import (
    AgentError,
    DispatchRejected,
    InvalidStatusTransition,
    MarginaliaError,
    NoPendingInvocation,
    NotFoundError,
    PersistenceRejected,
    TransientNetworkError,
)
from marginalia.events.bus import EngineEvent, EventBus
from marginalia.invocation import InvocationState, PendingInvocation, SlotRegistry
from marginalia.models.config import (
    AgentConfig,
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
    LocalId,
    Message,
    PersistedId,
    Session,
)
from marginalia.models.signals import InvocationKind, TerminalOutcome, TransportKind
from marginalia.store import HttpGateway, PersistenceGateway, SqliteGateway
from marginalia.transport import HostCapabilities, TransportSelector

__version__ = "0.1.0"

__all__ = [
    # Entry point
    "AgentSessionEngine",
    # Errors
    "AgentError",
    "DispatchRejected",
    "InvalidStatusTransition",
    "MarginaliaError",
    "NoPendingInvocation",
    "NotFoundError",
    "PersistenceRejected",
    "TransientNetworkError",
    # Events
    "EngineEvent",
    "EventBus",
    # Invocations
    "InvocationKind",
    "InvocationState",
    "PendingInvocation",
    "SlotRegistry",
    "TerminalOutcome",
    "TransportKind",
    # Config
    "AgentConfig",
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
    "LocalId",
    "Message",
    "PersistedId",
    "Session",
    # Collaborators
    "HostCapabilities",
    "HttpGateway",
    "PersistenceGateway",
    "SqliteGateway",
    "TransportSelector",
]
