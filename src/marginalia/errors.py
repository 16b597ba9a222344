"""Exception hierarchy for Marginalia.

There is no cancellation error: a user cancel ends an invocation with
:attr:`~marginalia.models.signals.TerminalOutcome.CANCELLED`, not an exception.
"""

from __future__ import annotations


class MarginaliaError(Exception):
    """Base class for all Marginalia errors."""


class TransientNetworkError(MarginaliaError):
    """A connection-level failure, server error or locked database that may succeed on retry."""


class PersistenceRejected(MarginaliaError):
    """The persistence gateway refused the write. Never retried."""


class NotFoundError(PersistenceRejected):
    """Raised when a referenced record does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} not found: {entity_id!r}")
        self.entity = entity
        self.entity_id = entity_id


class InvalidStatusTransition(PersistenceRejected):
    """Raised when a status update would regress a monotonic lifecycle."""

    def __init__(self, entity: str, current: str, requested: str) -> None:
        super().__init__(f"{entity} status cannot move from {current!r} to {requested!r}")
        self.entity = entity
        self.current = current
        self.requested = requested


class AgentError(MarginaliaError):
    """The agent (or the endpoint fronting it) reported a failure."""


class DispatchRejected(MarginaliaError):
    """A dispatch was refused before any side effect took place."""


class NoPendingInvocation(MarginaliaError):
    """Raised by ``cancel()`` when nothing is in flight for the document."""
