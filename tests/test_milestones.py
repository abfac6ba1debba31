"""Tests for the milestone sub-machine and per-kind approval policy."""

import pytest

from agora.config import MilestonePolicy
from agora.engine.milestones import MilestoneStateMachine, validate_percent
from agora.errors import InvalidTransitionError, UnauthorizedError, ValidationError
from agora.models.identity import Role
from agora.models.transaction import Milestone, MilestoneStatus


PAYER = Role.CLIENT_OR_BUYER
PERFORMER = Role.FREELANCER_OR_SELLER


def _make_milestone(status: MilestoneStatus = MilestoneStatus.PENDING) -> Milestone:
    return Milestone(
        milestone_id="ms-1",
        transaction_id="txn-1",
        title="Wireframes",
        description="",
        created_by="seller-1",
        status=status,
        progress_percent=40,
    )


@pytest.fixture
def approval() -> MilestoneStateMachine:
    return MilestoneStateMachine(MilestonePolicy(requires_approval=True))


@pytest.fixture
def direct() -> MilestoneStateMachine:
    return MilestoneStateMachine(MilestonePolicy(requires_approval=False))


class TestApprovalPolicy:
    def test_performer_walks_to_pending_completion(self, approval) -> None:
        ms = _make_milestone()
        approval.validate(ms, MilestoneStatus.IN_PROGRESS, PERFORMER)
        approval.apply(ms, MilestoneStatus.IN_PROGRESS)
        approval.validate(ms, MilestoneStatus.PENDING_COMPLETION, PERFORMER)

    def test_payer_approves(self, approval) -> None:
        ms = _make_milestone(MilestoneStatus.PENDING_COMPLETION)
        approval.validate(ms, MilestoneStatus.COMPLETED, PAYER)
        approval.apply(ms, MilestoneStatus.COMPLETED)
        assert ms.status == MilestoneStatus.COMPLETED
        assert ms.progress_percent == 100

    def test_payer_requests_revision(self, approval) -> None:
        ms = _make_milestone(MilestoneStatus.PENDING_COMPLETION)
        approval.validate(ms, MilestoneStatus.IN_PROGRESS, PAYER)

    def test_performer_cannot_self_approve(self, approval) -> None:
        ms = _make_milestone(MilestoneStatus.PENDING_COMPLETION)
        with pytest.raises(UnauthorizedError):
            approval.validate(ms, MilestoneStatus.COMPLETED, PERFORMER)

    def test_no_direct_completion(self, approval) -> None:
        ms = _make_milestone(MilestoneStatus.IN_PROGRESS)
        with pytest.raises(InvalidTransitionError):
            approval.validate(ms, MilestoneStatus.COMPLETED, PERFORMER)

    def test_payer_cannot_start(self, approval) -> None:
        with pytest.raises(UnauthorizedError):
            approval.validate(_make_milestone(), MilestoneStatus.IN_PROGRESS, PAYER)


class TestDirectPolicy:
    @pytest.mark.parametrize("start", [
        MilestoneStatus.PENDING,
        MilestoneStatus.IN_PROGRESS,
        MilestoneStatus.PENDING_COMPLETION,
    ])
    def test_performer_completes_directly(self, direct, start) -> None:
        direct.validate(_make_milestone(start), MilestoneStatus.COMPLETED, PERFORMER)

    def test_completed_is_terminal(self, direct) -> None:
        ms = _make_milestone(MilestoneStatus.COMPLETED)
        for target in MilestoneStatus:
            with pytest.raises(InvalidTransitionError):
                direct.validate(ms, target, PERFORMER)

    def test_no_reentry_to_pending(self, direct) -> None:
        with pytest.raises(InvalidTransitionError):
            direct.validate(
                _make_milestone(MilestoneStatus.IN_PROGRESS), MilestoneStatus.PENDING, PERFORMER,
            )


class TestPercentValidation:
    @pytest.mark.parametrize("value", [0, 25, 100])
    def test_in_range(self, value) -> None:
        validate_percent(value)

    @pytest.mark.parametrize("value", [-1, 101, True, "50", 12.5])
    def test_rejected(self, value) -> None:
        with pytest.raises(ValidationError):
            validate_percent(value)
