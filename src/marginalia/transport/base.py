"""Transport contract shared by the IPC and HTTP agent transports."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import ClassVar

import structlog

from marginalia.invocation import PendingInvocation
from marginalia.models.signals import (
    AgentRequest,
    Increment,
    TerminalOutcome,
    TerminalSignal,
    TransportKind,
)

IncrementCallback = Callable[[Increment], None]
TerminalCallback = Callable[[TerminalSignal], None]


class Transport(ABC):
    """
    Carries one agent invocation from start to its terminal signal.

    A transport instance serves a single invocation. Subclasses report
    progress through :meth:`_emit_increment` and finish through
    :meth:`_emit_terminal`, which fires at most once; anything emitted after
    it is dropped. A failure to start the agent is reported as an ``ERROR``
    terminal signal rather than raised.
    """

    kind: ClassVar[TransportKind]

    def __init__(self) -> None:
        self._increment_callbacks: list[IncrementCallback] = []
        self._terminal_callbacks: list[TerminalCallback] = []
        self._invocation: PendingInvocation | None = None
        self._terminated = False
        self._logger = structlog.get_logger(f"marginalia.transport.{self.kind}")

    def on_increment(self, callback: IncrementCallback) -> None:
        self._increment_callbacks.append(callback)

    def on_terminal(self, callback: TerminalCallback) -> None:
        self._terminal_callbacks.append(callback)

    @property
    def terminated(self) -> bool:
        return self._terminated

    @abstractmethod
    async def start(self, invocation: PendingInvocation, request: AgentRequest) -> None:
        """Invoke the agent for ``invocation``. Returns once the agent has been started."""

    @abstractmethod
    async def cancel(self) -> None:
        """Stop tracking the invocation and ask the agent to stop. Idempotent."""

    def _emit_increment(self, content: str) -> None:
        if self._terminated or self._invocation is None:
            return
        increment = Increment(invocation_id=self._invocation.invocation_id, content=content)
        for callback in list(self._increment_callbacks):
            callback(increment)

    def _emit_terminal(
        self,
        outcome: TerminalOutcome,
        *,
        content: str = "",
        error: str | None = None,
    ) -> None:
        if self._terminated or self._invocation is None:
            return
        self._terminated = True
        self._release()
        signal = TerminalSignal(
            invocation_id=self._invocation.invocation_id,
            kind=self._invocation.kind,
            outcome=outcome,
            content=content,
            error=error,
        )
        self._logger.info(
            "agent_terminal",
            invocation_id=signal.invocation_id,
            kind=str(signal.kind),
            outcome=str(outcome),
        )
        for callback in list(self._terminal_callbacks):
            callback(signal)

    def _release(self) -> None:
        """Drop transport-side subscriptions. Called once, when the invocation ends."""
