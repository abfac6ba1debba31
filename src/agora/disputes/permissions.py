"""Dispute permission table.

Dispute statuses are not a strict graph: any allowed actor may set any
status in their allowed set. What an actor may set depends on their
role and on whether a mediator has been assigned yet.
"""

from __future__ import annotations

from agora.identity.roles import is_party
from agora.models.dispute import DisputeStatus
from agora.models.identity import Role


PARTY_SETTABLE: frozenset[DisputeStatus] = frozenset({
    DisputeStatus.OPENED,
    DisputeStatus.UNDER_REVIEW,
})

MEDIATOR_SETTABLE: frozenset[DisputeStatus] = frozenset(DisputeStatus)


def settable_statuses(
    role: Role,
    is_assigned_mediator: bool,
    mediator_assigned: bool,
) -> frozenset[DisputeStatus]:
    """Statuses an actor may set on a dispute that is not CLOSED.

    Parties lose their say once a mediator takes the dispute. A
    flagged mediator who is not the assigned one may set nothing.
    """
    if role == Role.MEDIATOR and is_assigned_mediator:
        return MEDIATOR_SETTABLE
    if is_party(role) and not mediator_assigned:
        return PARTY_SETTABLE
    return frozenset()
