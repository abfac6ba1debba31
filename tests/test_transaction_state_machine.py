"""Tests for the transaction state machine — edges, roles and guard order."""

import pytest
from decimal import Decimal

from agora.engine.state_machine import TransactionStateMachine
from agora.errors import ErrorKind, InvalidTransitionError, UnauthorizedError
from agora.models.identity import Role
from agora.models.transaction import Transaction, TransactionKind, TransactionStatus


PAYER = Role.CLIENT_OR_BUYER
PERFORMER = Role.FREELANCER_OR_SELLER


def _make_txn(
    status: TransactionStatus = TransactionStatus.OPEN,
    counterparty: str | None = "seller-1",
    kind: TransactionKind = TransactionKind.GIG_ORDER,
) -> Transaction:
    return Transaction(
        transaction_id="txn-1",
        kind=kind,
        client_id="buyer-1",
        counterparty_id=counterparty,
        budget=Decimal("100"),
        status=status,
    )


@pytest.fixture
def machine() -> TransactionStateMachine:
    return TransactionStateMachine()


class TestValidTransitions:
    @pytest.mark.parametrize("current,target,role", [
        (TransactionStatus.OPEN, TransactionStatus.IN_PROGRESS, PERFORMER),
        (TransactionStatus.OPEN, TransactionStatus.IN_PROGRESS, Role.SYSTEM),
        (TransactionStatus.IN_PROGRESS, TransactionStatus.PENDING_COMPLETION, PERFORMER),
        (TransactionStatus.PENDING_COMPLETION, TransactionStatus.COMPLETED, PAYER),
        (TransactionStatus.PENDING_COMPLETION, TransactionStatus.IN_PROGRESS, PAYER),
        (TransactionStatus.OPEN, TransactionStatus.CANCELLED, PAYER),
        (TransactionStatus.IN_PROGRESS, TransactionStatus.CANCELLED, PAYER),
        (TransactionStatus.PENDING_COMPLETION, TransactionStatus.CANCELLED, Role.SYSTEM),
    ])
    def test_allowed(self, machine, current, target, role) -> None:
        machine.validate(_make_txn(current, kind=TransactionKind.JOB), target, role, "someone")

    def test_cancel_open_job_without_counterparty(self, machine) -> None:
        txn = _make_txn(TransactionStatus.OPEN, counterparty=None)
        machine.validate(txn, TransactionStatus.CANCELLED, PAYER, "buyer-1")


class TestRejectedTransitions:
    def test_missing_edge_is_invalid_transition(self, machine) -> None:
        txn = _make_txn(TransactionStatus.IN_PROGRESS)
        with pytest.raises(InvalidTransitionError) as exc:
            machine.validate(txn, TransactionStatus.COMPLETED, PAYER, "buyer-1")
        assert exc.value.kind == ErrorKind.INVALID_TRANSITION
        assert exc.value.context["current"] == "in_progress"
        assert exc.value.context["requested"] == "completed"

    def test_terminal_states_have_no_exits(self, machine) -> None:
        for terminal in (TransactionStatus.COMPLETED, TransactionStatus.CANCELLED):
            assert machine.targets_from(terminal) == []
            for target in TransactionStatus:
                with pytest.raises((InvalidTransitionError, UnauthorizedError)):
                    machine.validate(_make_txn(terminal), target, PAYER, "buyer-1")

    def test_wrong_role_is_unauthorized(self, machine) -> None:
        txn = _make_txn(TransactionStatus.PENDING_COMPLETION)
        with pytest.raises(UnauthorizedError) as exc:
            machine.validate(txn, TransactionStatus.COMPLETED, PERFORMER, "seller-1")
        assert exc.value.context["required_roles"] == ["client_or_buyer"]

    def test_unrelated_checked_before_edge(self, machine) -> None:
        """An outsider gets Unauthorized even for a nonexistent edge."""
        txn = _make_txn(TransactionStatus.COMPLETED)
        with pytest.raises(UnauthorizedError):
            machine.validate(txn, TransactionStatus.OPEN, Role.UNRELATED, "stranger")

    def test_leaving_open_requires_counterparty(self, machine) -> None:
        txn = _make_txn(TransactionStatus.OPEN, counterparty=None)
        with pytest.raises(InvalidTransitionError) as exc:
            machine.validate(txn, TransactionStatus.IN_PROGRESS, Role.SYSTEM, "system")
        assert "counterparty" in exc.value.context["reason"]

    def test_performer_cannot_cancel(self, machine) -> None:
        with pytest.raises(UnauthorizedError):
            machine.validate(
                _make_txn(TransactionStatus.IN_PROGRESS),
                TransactionStatus.CANCELLED, PERFORMER, "seller-1",
            )


class TestGigOrderStart:
    def test_seller_cannot_start_unpaid_order(self, machine) -> None:
        with pytest.raises(InvalidTransitionError) as exc:
            machine.validate(_make_txn(), TransactionStatus.IN_PROGRESS, PERFORMER, "seller-1")
        assert exc.value.context["reason"] == "awaiting payment confirmation"

    def test_payment_system_starts_order(self, machine) -> None:
        machine.validate(_make_txn(), TransactionStatus.IN_PROGRESS, Role.SYSTEM, "system")
