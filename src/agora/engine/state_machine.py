"""Transaction state machine — enforces the exact transition rules.

Transitions are fail-closed: any (from, to) pair not listed is rejected,
and a listed pair is only available to the roles recorded against it.
The machine is pure: it raises on a rejected transition and never
mutates the transaction. Applying the change is the engine's job.
"""

from __future__ import annotations

from typing import Optional

from agora.errors import InvalidTransitionError, UnauthorizedError
from agora.models.identity import Role
from agora.models.transaction import Transaction, TransactionKind, TransactionStatus


_PAYER = Role.CLIENT_OR_BUYER
_PERFORMER = Role.FREELANCER_OR_SELLER

# Legal transitions: (from_status, to_status) -> roles allowed
_TRANSITIONS: dict[tuple[TransactionStatus, TransactionStatus], frozenset[Role]] = {
    (TransactionStatus.OPEN, TransactionStatus.IN_PROGRESS): frozenset({_PERFORMER, Role.SYSTEM}),
    (TransactionStatus.IN_PROGRESS, TransactionStatus.PENDING_COMPLETION): frozenset({_PERFORMER}),
    (TransactionStatus.PENDING_COMPLETION, TransactionStatus.COMPLETED): frozenset({_PAYER}),
    # Revision request
    (TransactionStatus.PENDING_COMPLETION, TransactionStatus.IN_PROGRESS): frozenset({_PAYER}),
    # Cancel from any active state
    (TransactionStatus.OPEN, TransactionStatus.CANCELLED): frozenset({_PAYER, Role.SYSTEM}),
    (TransactionStatus.IN_PROGRESS, TransactionStatus.CANCELLED): frozenset({_PAYER, Role.SYSTEM}),
    (TransactionStatus.PENDING_COMPLETION, TransactionStatus.CANCELLED): frozenset({_PAYER, Role.SYSTEM}),
}


class TransactionStateMachine:
    """Validates transaction lifecycle transitions.

    Checks run in a fixed order:
    1. An unrelated actor is rejected before anything is revealed.
    2. The (from, to) edge must exist.
    3. The actor's role must be allowed on that edge.
    4. Leaving OPEN requires a bound counterparty.
    5. A gig order only starts on the payment system's confirmation.
    """

    @staticmethod
    def allowed_roles(
        current: TransactionStatus, target: TransactionStatus,
    ) -> Optional[frozenset[Role]]:
        return _TRANSITIONS.get((current, target))

    @staticmethod
    def targets_from(current: TransactionStatus) -> list[TransactionStatus]:
        return [to for (frm, to) in _TRANSITIONS if frm == current]

    def validate(
        self,
        transaction: Transaction,
        target: TransactionStatus,
        role: Role,
        actor_id: str,
    ) -> None:
        if role == Role.UNRELATED or role == Role.MEDIATOR:
            raise UnauthorizedError(
                f"Actor {actor_id} is not a party to {transaction.transaction_id}",
                actor_id=actor_id,
                actor_role=role.value,
                required_roles=(_PAYER.value, _PERFORMER.value),
            )

        allowed = self.allowed_roles(transaction.status, target)
        if allowed is None:
            raise InvalidTransitionError(
                transaction.status.value,
                target.value,
                f"no transition from {transaction.status.value} to {target.value}",
            )

        if role not in allowed:
            raise UnauthorizedError(
                f"Role {role.value} cannot move {transaction.transaction_id} "
                f"to {target.value}",
                actor_id=actor_id,
                actor_role=role.value,
                required_roles=(r.value for r in allowed),
            )

        if (
            transaction.status == TransactionStatus.OPEN
            and target != TransactionStatus.CANCELLED
            and transaction.counterparty_id is None
        ):
            raise InvalidTransitionError(
                transaction.status.value,
                target.value,
                "no counterparty bound",
            )

        if (
            transaction.kind == TransactionKind.GIG_ORDER
            and transaction.status == TransactionStatus.OPEN
            and target == TransactionStatus.IN_PROGRESS
            and role != Role.SYSTEM
        ):
            raise InvalidTransitionError(
                transaction.status.value,
                target.value,
                "awaiting payment confirmation",
            )
