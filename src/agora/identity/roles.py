"""Role resolver — who is this actor with respect to this transaction?

Pure functions over already-fetched records. No storage access, no side
effects. Used as the guard at the entry of every mutating operation.

Mediator is a global capability read from the identity record. It is
only reported when the actor is not a party: an actor can be the buyer
on one transaction and the mediator of another transaction's dispute,
but never both on the same one.
"""

from __future__ import annotations

from typing import Optional

from agora.models.dispute import Dispute
from agora.models.identity import SYSTEM_ACTOR_ID, ActorIdentity, Role
from agora.models.transaction import Transaction


PARTY_ROLES = frozenset({Role.CLIENT_OR_BUYER, Role.FREELANCER_OR_SELLER})


def resolve_transaction_role(actor_id: str, transaction: Transaction) -> Role:
    """Resolve an actor's role on a transaction."""
    if actor_id == SYSTEM_ACTOR_ID:
        return Role.SYSTEM
    if actor_id == transaction.client_id:
        return Role.CLIENT_OR_BUYER
    if transaction.counterparty_id is not None and actor_id == transaction.counterparty_id:
        return Role.FREELANCER_OR_SELLER
    return Role.UNRELATED


def resolve_dispute_role(
    actor_id: str,
    dispute: Dispute,
    transaction: Transaction,
    identity: Optional[ActorIdentity] = None,
) -> Role:
    """Resolve an actor's role on a dispute.

    Parties keep their transaction role. Anyone else carrying the
    mediator flag (or already assigned to this dispute) is MEDIATOR.
    """
    role = resolve_transaction_role(actor_id, transaction)
    if role != Role.UNRELATED:
        return role
    if dispute.mediator_id == actor_id:
        return Role.MEDIATOR
    if identity is not None and identity.is_mediator:
        return Role.MEDIATOR
    return Role.UNRELATED


def is_party(role: Role) -> bool:
    return role in PARTY_ROLES


def is_assigned_mediator(actor_id: str, dispute: Dispute) -> bool:
    return dispute.mediator_id is not None and dispute.mediator_id == actor_id


def describe_parties(dispute: Dispute, transaction: Transaction) -> list[dict[str, str]]:
    """Display labels for everyone involved in a dispute.

    Buyer and Seller carry an "(Initiator)" suffix when they opened the
    dispute. The mediator is listed once assigned.
    """
    parties: list[dict[str, str]] = []
    for actor_id, label in (
        (transaction.client_id, "Buyer"),
        (transaction.counterparty_id, "Seller"),
    ):
        if actor_id is None:
            continue
        if actor_id == dispute.initiator_id:
            label = f"{label} (Initiator)"
        parties.append({"actor_id": actor_id, "role": label})
    if dispute.mediator_id is not None:
        parties.append({"actor_id": dispute.mediator_id, "role": "Mediator"})
    return parties
