"""Push-based transport over a host :class:`~marginalia.agent.channel.AgentChannel`."""

from __future__ import annotations

from collections.abc import Callable

from marginalia.agent.channel import AgentChannel, ChannelComplete, ChannelStream
from marginalia.invocation import PendingInvocation
from marginalia.models.signals import (
    AgentRequest,
    ChatRequest,
    TerminalOutcome,
    TransportKind,
)
from marginalia.transport.base import Transport


class IpcTransport(Transport):
    """
    Subscribes to the channel's stream and completion events for the lifetime
    of one invocation and tags them with its invocation id.

    Events another document's run reports on a shared channel are ignored.
    Listeners are removed the moment a terminal signal is produced or the
    invocation is cancelled, so a late completion from a killed process never
    reaches the reader.
    """

    kind = TransportKind.IPC

    def __init__(self, channel: AgentChannel) -> None:
        super().__init__()
        self._channel = channel
        self._unsubscribers: list[Callable[[], None]] = []
        self._cancel_requested = False

    async def start(self, invocation: PendingInvocation, request: AgentRequest) -> None:
        self._invocation = invocation
        self._unsubscribers = [
            self._channel.on_stream(self._handle_stream),
            self._channel.on_complete(self._handle_complete),
        ]
        self._logger.info(
            "agent_invoked", invocation_id=invocation.invocation_id, kind=str(invocation.kind)
        )
        try:
            if isinstance(request, ChatRequest):
                await self._channel.send_chat(request)
            else:
                await self._channel.send_edit(request)
        except Exception as exc:
            self._logger.warning(
                "agent_start_failed", invocation_id=invocation.invocation_id, error=str(exc)
            )
            self._emit_terminal(TerminalOutcome.ERROR, error=str(exc) or type(exc).__name__)
            return
        if self._cancel_requested:
            # cancelled while the agent was starting
            await self._channel.cancel(invocation.document_path)

    async def cancel(self) -> None:
        if self._terminated:
            return
        self._terminated = True
        self._release()
        self._cancel_requested = True
        if self._invocation is not None:
            await self._channel.cancel(self._invocation.document_path)

    def _owns(self, event: ChannelStream | ChannelComplete) -> bool:
        invocation = self._invocation
        if invocation is None or event.type != invocation.kind:
            return False
        return event.document_path is None or event.document_path == invocation.document_path

    def _handle_stream(self, event: ChannelStream) -> None:
        if not self._owns(event):
            return
        self._emit_increment(event.content)

    def _handle_complete(self, event: ChannelComplete) -> None:
        if not self._owns(event):
            return
        if event.success:
            self._emit_terminal(TerminalOutcome.SUCCESS, content=event.content)
        else:
            self._emit_terminal(
                TerminalOutcome.ERROR,
                content=event.content,
                error=event.error or "Agent failed",
            )

    def _release(self) -> None:
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()
