"""Marginalia event bus."""

from marginalia.events.bus import EngineEvent, EventBus, Handler
from marginalia.events.payloads import (
    ChangelogPayload,
    CommentPayload,
    InvocationPayload,
    MessagePayload,
    SessionPayload,
    StreamUpdatedPayload,
)

__all__ = [
    "ChangelogPayload",
    "CommentPayload",
    "EngineEvent",
    "EventBus",
    "Handler",
    "InvocationPayload",
    "MessagePayload",
    "SessionPayload",
    "StreamUpdatedPayload",
]
