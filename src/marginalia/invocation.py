"""The per-document pending-invocation slot."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from marginalia.errors import DispatchRejected
from marginalia.models.entities import now_ms
from marginalia.models.signals import InvocationKind, TransportKind

if TYPE_CHECKING:
    from marginalia.transport.base import Transport
    from marginalia.transport.stream import StreamReader


class InvocationState(StrEnum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self in (
            InvocationState.COMPLETED,
            InvocationState.ERRORED,
            InvocationState.CANCELLED,
        )


@dataclass
class PendingInvocation:
    """
    Handle for the one agent invocation in flight for a document.

    Never persisted. ``invocation_id`` is unique per process and strictly
    increasing, so a stale signal is detected by id inequality alone.
    """

    invocation_id: int
    kind: InvocationKind
    document_path: str
    transport: TransportKind | None = None
    started_at: int = field(default_factory=now_ms)
    state: InvocationState = InvocationState.DISPATCHING
    cancelled: bool = False
    session_id: str | None = None
    request_id: str | None = None
    changelog_id: str | None = None
    comment_ids: list[str] = field(default_factory=list)
    last_snapshot: str = ""
    """Most recent accumulated stream content seen for this invocation."""
    transport_handle: Transport | None = field(default=None, repr=False)
    reader: StreamReader | None = field(default=None, repr=False)


class InvocationSlot:
    """
    Holds at most one :class:`PendingInvocation` for a document.

    :meth:`acquire` is synchronous so two dispatches racing within the same
    event loop can never both pass the busy check.
    """

    def __init__(self, document_path: str, ids: itertools.count[int]) -> None:
        self.document_path = document_path
        self._ids = ids
        self._current: PendingInvocation | None = None
        self._logger = structlog.get_logger("marginalia.invocation").bind(
            document_path=document_path
        )

    @property
    def current(self) -> PendingInvocation | None:
        return self._current

    @property
    def is_busy(self) -> bool:
        return self._current is not None

    def acquire(self, kind: InvocationKind) -> PendingInvocation:
        """
        Claim the slot for a new invocation.

        Raises:
            DispatchRejected: If an invocation is already pending.
        """
        if self._current is not None:
            raise DispatchRejected(
                f"An agent invocation ({self._current.kind}) is already pending for "
                f"{self.document_path!r}"
            )
        invocation = PendingInvocation(
            invocation_id=next(self._ids),
            kind=kind,
            document_path=self.document_path,
        )
        self._current = invocation
        self._logger.debug(
            "slot_acquired", invocation_id=invocation.invocation_id, kind=str(kind)
        )
        return invocation

    def is_current(self, invocation_id: int) -> bool:
        return self._current is not None and self._current.invocation_id == invocation_id

    def release_if_current(self, invocation_id: int) -> PendingInvocation | None:
        """
        Clear the slot if it still holds ``invocation_id``.

        Returns:
            The released invocation, or ``None`` if the id was stale.
        """
        if not self.is_current(invocation_id):
            return None
        invocation = self._current
        self._current = None
        self._logger.debug("slot_released", invocation_id=invocation_id)
        return invocation


class SlotRegistry:
    """
    One :class:`InvocationSlot` per document path.

    Share a single registry between engines that may touch the same document
    so the busy check holds across them.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._slots: dict[str, InvocationSlot] = {}

    def slot_for(self, document_path: str) -> InvocationSlot:
        slot = self._slots.get(document_path)
        if slot is None:
            slot = InvocationSlot(document_path, self._ids)
            self._slots[document_path] = slot
        return slot
