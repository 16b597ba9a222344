"""User-initiated cancellation of the pending invocation."""

from __future__ import annotations

import structlog

from marginalia.errors import NoPendingInvocation
from marginalia.events.bus import EngineEvent, EventBus
from marginalia.events.payloads import InvocationPayload
from marginalia.invocation import InvocationSlot, InvocationState, PendingInvocation
from marginalia.models.config import RetryConfig
from marginalia.models.entities import ChangelogStatus
from marginalia.models.signals import InvocationKind
from marginalia.retry import with_retry
from marginalia.state import SessionStore
from marginalia.store.gateway import PersistenceGateway

CANCELLED_SUMMARY = "Cancelled by user"


class CancellationController:
    """
    Ends the pending invocation on the user's request.

    Local state goes idle synchronously, before the first await: the stream
    reader is closed and the store stops streaming. A streaming invocation
    gives up its slot at once. One still dispatching keeps the slot until its
    in-flight setup call settles, and the dispatch releases it then, so a
    second dispatch cannot overlap that write. Transport teardown and the
    changelog update follow. Whatever the agent produces afterwards is
    dropped by the reconciler's staleness check.
    """

    def __init__(
        self,
        store: SessionStore,
        gateway: PersistenceGateway,
        slot: InvocationSlot,
        retry: RetryConfig,
        event_bus: EventBus,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._slot = slot
        self._retry = retry
        self._bus = event_bus
        self._logger = structlog.get_logger("marginalia.cancel").bind(
            document_path=store.document_path
        )

    async def cancel(self) -> PendingInvocation:
        """
        Cancel the invocation in flight for this document.

        Returns:
            The cancelled invocation.

        Raises:
            NoPendingInvocation: If nothing is in flight.
        """
        invocation = self._slot.current
        if invocation is None or invocation.cancelled:
            raise NoPendingInvocation(f"Nothing to cancel for {self._store.document_path!r}")

        settling = invocation.state is InvocationState.DISPATCHING
        invocation.cancelled = True
        invocation.state = InvocationState.CANCELLED
        if not settling:
            self._slot.release_if_current(invocation.invocation_id)
        if invocation.reader is not None:
            invocation.reader.close()
        self._store.finish_streaming(invocation)
        self._logger.info(
            "invocation_cancelled",
            invocation_id=invocation.invocation_id,
            kind=str(invocation.kind),
        )
        payload = InvocationPayload(
            invocation_id=invocation.invocation_id,
            kind=str(invocation.kind),
            document_path=invocation.document_path,
        )
        if invocation.transport is not None:
            payload["transport"] = str(invocation.transport)
        self._bus.publish(EngineEvent.INVOCATION_CANCELLED, payload)

        if invocation.transport_handle is not None:
            await invocation.transport_handle.cancel()
        if invocation.kind is InvocationKind.EDIT and invocation.changelog_id is not None:
            await self._close_changelog(invocation, invocation.changelog_id)
        return invocation

    async def _close_changelog(self, invocation: PendingInvocation, changelog_id: str) -> None:
        try:
            entry = await with_retry(
                lambda: self._gateway.update_changelog(
                    changelog_id,
                    ChangelogStatus.ERROR,
                    stream_log=invocation.last_snapshot or None,
                    summary=CANCELLED_SUMMARY,
                ),
                self._retry,
                name="cancel_changelog",
            )
        except Exception as exc:
            self._logger.warning(
                "cancelled_changelog_not_closed", changelog_id=changelog_id, error=str(exc)
            )
            return
        self._store.upsert_changelog(entry)
