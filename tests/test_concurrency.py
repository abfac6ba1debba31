"""Concurrent mutations of one aggregate are linearised: exactly one racer
wins and the losers fail with a typed error, never a partial write."""

import threading

import pytest

from agora.disputes.engine import DisputeEngine
from agora.engine.transactions import TransactionEngine
from agora.errors import (
    AlreadyDisputedError,
    ConflictRaceError,
    InvalidTransitionError,
    MarketplaceError,
)
from agora.identity.directory import ActorDirectory
from agora.models.identity import ActorIdentity
from agora.models.transaction import ApplicationStatus, TransactionStatus
from agora.persistence.event_log import EventKind
from agora.persistence.gateway import InMemoryGateway


def _race(*calls) -> tuple[list, list[MarketplaceError]]:
    """Start every call behind a barrier; collect results and domain errors."""
    barrier = threading.Barrier(len(calls))
    results: list = []
    errors: list[MarketplaceError] = []
    guard = threading.Lock()

    def run(call) -> None:
        barrier.wait()
        try:
            value = call()
        except MarketplaceError as exc:
            with guard:
                errors.append(exc)
        else:
            with guard:
                results.append(value)

    threads = [threading.Thread(target=run, args=(c,)) for c in calls]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return results, errors


@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest.fixture
def directory() -> ActorDirectory:
    d = ActorDirectory()
    for actor_id in ("client-1", "buyer-1", "seller-1", *[f"free-{i}" for i in range(6)]):
        d.register(ActorIdentity(actor_id))
    d.register(ActorIdentity("med-1", is_mediator=True))
    return d


@pytest.fixture
def engine(gateway, directory) -> TransactionEngine:
    return TransactionEngine(gateway, directory)


def _pending_completion(engine: TransactionEngine):
    order = engine.place_order("buyer-1", "seller-1", "gig-1", "40", "Voice-over")
    engine.confirm_payment("system", order.transaction_id, "pay-1")
    return engine.request_completion("seller-1", order.transaction_id)


class TestCompletionRace:
    def test_double_approve(self, engine, gateway) -> None:
        txn = _pending_completion(engine)
        tid = txn.transaction_id
        results, errors = _race(
            lambda: engine.approve_completion("buyer-1", tid),
            lambda: engine.approve_completion("buyer-1", tid),
        )
        assert len(results) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], (ConflictRaceError, InvalidTransitionError))
        assert gateway.get_transaction(tid).status == TransactionStatus.COMPLETED
        completed = [
            e for e in gateway.events(EventKind.TRANSACTION_STATUS_CHANGED)
            if e.payload.get("to") == TransactionStatus.COMPLETED.value
        ]
        assert len(completed) == 1

    def test_approve_against_reject(self, engine, gateway) -> None:
        tid = _pending_completion(engine).transaction_id
        results, errors = _race(
            lambda: engine.approve_completion("buyer-1", tid),
            lambda: engine.reject_completion("buyer-1", tid),
        )
        assert len(results) == 1
        assert len(errors) == 1
        assert gateway.get_transaction(tid).status == results[0].status


class TestAcceptanceRace:
    def test_one_application_wins(self, engine, gateway) -> None:
        job = engine.post_job("client-1", "Data cleaning", "", "300")
        apps = [
            engine.apply_to_job(f"free-{i}", job.transaction_id, "I can help", "280")
            for i in range(6)
        ]
        results, errors = _race(*[
            (lambda a=a: engine.accept_application("client-1", a.application_id))
            for a in apps
        ])
        assert len(results) == 1
        assert len(errors) == 5
        stored = gateway.list_applications(job_id=job.transaction_id)
        accepted = [a for a in stored if a.status == ApplicationStatus.ACCEPTED]
        assert len(accepted) == 1
        assert all(
            a.status == ApplicationStatus.REJECTED for a in stored if a not in accepted
        )
        assert gateway.get_transaction(job.transaction_id).counterparty_id == accepted[0].freelancer_id


class TestDisputeRace:
    def test_one_open_dispute(self, engine, gateway, directory) -> None:
        disputes = DisputeEngine(gateway, directory)
        order = engine.place_order("buyer-1", "seller-1", "gig-1", "40", "Voice-over")
        tid = order.transaction_id
        results, errors = _race(
            lambda: disputes.open_dispute("buyer-1", tid, "Late"),
            lambda: disputes.open_dispute("seller-1", tid, "Unpaid"),
        )
        assert len(results) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], AlreadyDisputedError)
        assert len(gateway.list_disputes(transaction_id=tid)) == 1

    def test_thread_sequence_is_gapless(self, engine, gateway, directory) -> None:
        disputes = DisputeEngine(gateway, directory)
        order = engine.place_order("buyer-1", "seller-1", "gig-1", "40", "Voice-over")
        dispute = disputes.open_dispute("buyer-1", order.transaction_id, "Late")
        senders = ["buyer-1", "seller-1"] * 4
        results, errors = _race(*[
            (lambda s=s, i=i: disputes.post_message(s, dispute.dispute_id, f"message {i}"))
            for i, s in enumerate(senders)
        ])
        assert errors == []
        sequences = [m.sequence for m in gateway.list_messages(dispute.dispute_id)]
        assert sequences == list(range(1, len(senders) + 1))
