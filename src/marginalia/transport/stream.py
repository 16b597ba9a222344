"""Transport-independent view of one invocation's output."""

from __future__ import annotations

import asyncio

import structlog

from marginalia.models.signals import (
    Increment,
    InvocationKind,
    TerminalOutcome,
    TerminalSignal,
)
from marginalia.transport.base import Transport

StreamItem = Increment | TerminalSignal


class StreamReader:
    """
    Async iterator over one invocation's accumulated-content snapshots,
    ended by exactly one :class:`TerminalSignal`.

    Signals for other invocation ids, repeated identical snapshots and
    anything arriving after the terminal signal are dropped, whatever the
    transport delivered.

    Example::

        reader = StreamReader(invocation.invocation_id, invocation.kind)
        reader.attach(transport)
        await transport.start(invocation, request)
        async for item in reader:
            if isinstance(item, Increment):
                render(item.content)
            else:
                finish(item)
    """

    def __init__(self, invocation_id: int, kind: InvocationKind) -> None:
        self.invocation_id = invocation_id
        self.kind = kind
        self._queue: asyncio.Queue[StreamItem] = asyncio.Queue()
        self._last_content: str | None = None
        self._terminal_seen = False
        self._exhausted = False
        self._logger = structlog.get_logger("marginalia.stream").bind(
            invocation_id=invocation_id
        )

    def attach(self, transport: Transport) -> None:
        transport.on_increment(self.feed_increment)
        transport.on_terminal(self.feed_terminal)

    @property
    def finished(self) -> bool:
        return self._terminal_seen

    def feed_increment(self, increment: Increment) -> None:
        if self._terminal_seen:
            return
        if increment.invocation_id != self.invocation_id:
            self._logger.debug("foreign_increment_dropped", other=increment.invocation_id)
            return
        if increment.content == self._last_content:
            return
        self._last_content = increment.content
        self._queue.put_nowait(increment)

    def feed_terminal(self, signal: TerminalSignal) -> None:
        if self._terminal_seen:
            self._logger.debug("late_terminal_dropped", outcome=str(signal.outcome))
            return
        if signal.invocation_id != self.invocation_id:
            self._logger.debug("foreign_terminal_dropped", other=signal.invocation_id)
            return
        self._terminal_seen = True
        self._queue.put_nowait(signal)

    def close(self) -> None:
        """End the stream with a ``CANCELLED`` terminal if it has not ended yet."""
        self.feed_terminal(
            TerminalSignal(
                invocation_id=self.invocation_id,
                kind=self.kind,
                outcome=TerminalOutcome.CANCELLED,
            )
        )

    def __aiter__(self) -> StreamReader:
        return self

    async def __anext__(self) -> StreamItem:
        if self._exhausted:
            raise StopAsyncIteration
        item = await self._queue.get()
        if isinstance(item, TerminalSignal):
            self._exhausted = True
        return item
