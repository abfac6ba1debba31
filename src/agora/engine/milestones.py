"""Milestone sub-machine.

Milestones move PENDING → IN_PROGRESS → PENDING_COMPLETION → COMPLETED.
Who may take the last step depends on the transaction kind's
MilestonePolicy:

- requires_approval=True: the performing party asks, the paying party
  approves (or sends the milestone back to IN_PROGRESS).
- requires_approval=False: the performing party may also complete a
  milestone directly from any non-terminal state.

Milestone changes never touch the owning transaction's status.
"""

from __future__ import annotations

from agora.config import MilestonePolicy
from agora.errors import InvalidTransitionError, UnauthorizedError, ValidationError
from agora.models.identity import Role
from agora.models.transaction import Milestone, MilestoneStatus


_PAYER = Role.CLIENT_OR_BUYER
_PERFORMER = Role.FREELANCER_OR_SELLER

_APPROVAL_TRANSITIONS: dict[tuple[MilestoneStatus, MilestoneStatus], frozenset[Role]] = {
    (MilestoneStatus.PENDING, MilestoneStatus.IN_PROGRESS): frozenset({_PERFORMER}),
    (MilestoneStatus.IN_PROGRESS, MilestoneStatus.PENDING_COMPLETION): frozenset({_PERFORMER}),
    (MilestoneStatus.PENDING_COMPLETION, MilestoneStatus.COMPLETED): frozenset({_PAYER}),
    (MilestoneStatus.PENDING_COMPLETION, MilestoneStatus.IN_PROGRESS): frozenset({_PAYER}),
}

_DIRECT_COMPLETION: dict[tuple[MilestoneStatus, MilestoneStatus], frozenset[Role]] = {
    (MilestoneStatus.PENDING, MilestoneStatus.COMPLETED): frozenset({_PERFORMER}),
    (MilestoneStatus.IN_PROGRESS, MilestoneStatus.COMPLETED): frozenset({_PERFORMER}),
    (MilestoneStatus.PENDING_COMPLETION, MilestoneStatus.COMPLETED): frozenset({_PAYER, _PERFORMER}),
}


def transitions_for(
    policy: MilestonePolicy,
) -> dict[tuple[MilestoneStatus, MilestoneStatus], frozenset[Role]]:
    """Return the milestone transition table under a policy."""
    table = dict(_APPROVAL_TRANSITIONS)
    if not policy.requires_approval:
        table.update(_DIRECT_COMPLETION)
    return table


class MilestoneStateMachine:
    """Validates and applies milestone transitions for one policy."""

    def __init__(self, policy: MilestonePolicy) -> None:
        self._policy = policy
        self._transitions = transitions_for(policy)

    @property
    def policy(self) -> MilestonePolicy:
        return self._policy

    def validate(self, milestone: Milestone, target: MilestoneStatus, role: Role) -> None:
        allowed = self._transitions.get((milestone.status, target))
        if allowed is None:
            raise InvalidTransitionError(
                milestone.status.value,
                target.value,
                f"milestone {milestone.milestone_id} cannot move "
                f"from {milestone.status.value} to {target.value}",
            )
        if role not in allowed:
            raise UnauthorizedError(
                f"Role {role.value} cannot move milestone "
                f"{milestone.milestone_id} to {target.value}",
                actor_role=role.value,
                required_roles=(r.value for r in allowed),
            )

    @staticmethod
    def apply(milestone: Milestone, target: MilestoneStatus) -> None:
        milestone.status = target
        if target == MilestoneStatus.COMPLETED:
            milestone.progress_percent = 100


def validate_percent(percent: int, field_name: str = "progress_percent") -> None:
    if isinstance(percent, bool) or not isinstance(percent, int):
        raise ValidationError(f"{field_name} must be an integer", field_name=field_name)
    if not 0 <= percent <= 100:
        raise ValidationError(
            f"{field_name} must be in [0, 100], got {percent}", field_name=field_name,
        )
