"""Channel-style agent contract used by the IPC transport."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol, runtime_checkable

from pydantic import BaseModel

from marginalia.models.signals import ChatRequest, EditRequest, InvocationKind


class ChannelStream(BaseModel):
    """Push event carrying the accumulated output of the running ``type`` invocation."""

    type: InvocationKind
    content: str
    document_path: str | None = None
    """Document the run belongs to. ``None`` when the host does not say."""


class ChannelComplete(BaseModel):
    """Push event sent once when the running ``type`` invocation ends."""

    type: InvocationKind
    success: bool
    content: str = ""
    error: str | None = None
    document_path: str | None = None


StreamListener = Callable[[ChannelStream], None]
CompleteListener = Callable[[ChannelComplete], None]


@runtime_checkable
class AgentChannel(Protocol):
    """
    A host-provided channel to a locally running agent.

    Events are not tagged with an invocation id: at most one invocation of
    each kind runs per document, and the consumer attributes events by
    ``type`` and, when the channel reports it, ``document_path``. A channel
    that leaves ``document_path`` unset must not be shared between engines
    for different documents.
    """

    async def send_chat(self, request: ChatRequest) -> None:
        """Start a chat invocation. Returns once the agent is running."""
        ...

    async def send_edit(self, request: EditRequest) -> None:
        """Start an edit invocation. Returns once the agent is running."""
        ...

    async def cancel(self, document_path: str | None = None) -> None:
        """Terminate the running invocations of ``document_path``, or all of them."""
        ...

    def on_stream(self, listener: StreamListener) -> Callable[[], None]:
        """Subscribe to stream events. Returns an unsubscribe callable."""
        ...

    def on_complete(self, listener: CompleteListener) -> Callable[[], None]:
        """Subscribe to completion events. Returns an unsubscribe callable."""
        ...
