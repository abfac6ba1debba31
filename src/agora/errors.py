"""Error taxonomy for the transaction and dispute engines.

Engines raise these exceptions. The service layer recovers them at the
action boundary and returns them as typed results, so callers receive
the error kind plus enough context (current status, required role) to
render an actionable message.

Nothing here is retried automatically. ConflictRaceError tells the
caller to re-read current state and try again.
"""

from __future__ import annotations

import enum
from typing import Any, Iterable, Optional


class ErrorKind(str, enum.Enum):
    """Stable identifiers for each failure class."""
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    ALREADY_DISPUTED = "already_disputed"
    DISPUTE_CLOSED = "dispute_closed"
    VALIDATION_ERROR = "validation_error"
    CONFLICT_RACE = "conflict_race"
    INTERNAL_ERROR = "internal_error"


class MarketplaceError(Exception):
    """Base class for all domain failures."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class UnauthorizedError(MarketplaceError):
    """The actor lacks the role required for the action."""

    kind = ErrorKind.UNAUTHORIZED

    def __init__(
        self,
        message: str,
        actor_id: Optional[str] = None,
        actor_role: Optional[str] = None,
        required_roles: Iterable[str] = (),
        **context: Any,
    ) -> None:
        super().__init__(
            message,
            actor_id=actor_id,
            actor_role=actor_role,
            required_roles=sorted(required_roles),
            **context,
        )


class NotFoundError(MarketplaceError):
    """A referenced transaction, milestone, application or dispute is absent."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} not found: {entity_id}", entity=entity, entity_id=entity_id)


class InvalidTransitionError(MarketplaceError):
    """The requested state is not reachable from the current one."""

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, current: str, requested: str, reason: str) -> None:
        super().__init__(
            f"Invalid transition: {current} → {requested}: {reason}",
            current=current,
            requested=requested,
            reason=reason,
        )


class AlreadyDisputedError(MarketplaceError):
    """The transaction already has a dispute that is not CLOSED."""

    kind = ErrorKind.ALREADY_DISPUTED

    def __init__(self, transaction_id: str, dispute_id: str, status: str) -> None:
        super().__init__(
            f"Transaction {transaction_id} already has an open dispute "
            f"{dispute_id} (status: {status})",
            transaction_id=transaction_id,
            dispute_id=dispute_id,
            status=status,
        )


class DisputeClosedError(MarketplaceError):
    """The dispute is CLOSED and accepts no further mutation."""

    kind = ErrorKind.DISPUTE_CLOSED

    def __init__(self, dispute_id: str) -> None:
        super().__init__(f"Dispute {dispute_id} is closed", dispute_id=dispute_id)


class ValidationError(MarketplaceError):
    """A required field is missing or malformed."""

    kind = ErrorKind.VALIDATION_ERROR

    def __init__(self, message: str, field_name: Optional[str] = None) -> None:
        super().__init__(message, field=field_name)


class ConflictRaceError(MarketplaceError):
    """A concurrent mutation won the optimistic compare-and-set."""

    kind = ErrorKind.CONFLICT_RACE

    def __init__(self, entity: str, entity_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Concurrent update on {entity} {entity_id}: "
            f"expected version {expected}, found {actual}",
            entity=entity,
            entity_id=entity_id,
            expected_version=expected,
            actual_version=actual,
        )


class InternalError(MarketplaceError):
    """Wraps storage or collaborator faults without leaking their details."""

    kind = ErrorKind.INTERNAL_ERROR
