"""Tests for the persistence gateway, the JSON snapshot store, the event
log and the actor directory.

Covers:
- Optimistic compare-and-set on aggregate versions
- Atomic commit of state and events (rollback on flush failure)
- Snapshot round-trip across a restart
- Event log integrity checks on recovery
"""

import json
import pytest
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from agora.disputes.engine import DisputeEngine
from agora.engine.transactions import TransactionEngine
from agora.errors import ConflictRaceError
from agora.identity.directory import ActorDirectory
from agora.models.dispute import DisputeStatus
from agora.models.identity import ActorIdentity
from agora.models.transaction import Transaction, TransactionKind, TransactionStatus
from agora.persistence.event_log import EventKind, EventLog, EventRecord
from agora.persistence.gateway import ChangeSet, InMemoryGateway
from agora.persistence.state_store import FileGateway


def _now() -> datetime:
    return datetime(2026, 2, 10, 9, 30, tzinfo=timezone.utc)


def _make_txn(txn_id: str = "txn-1") -> Transaction:
    return Transaction(
        transaction_id=txn_id,
        kind=TransactionKind.JOB,
        client_id="client-1",
        budget=Decimal("250.50"),
        title="Landing page",
        created_utc=_now(),
    )


def _make_event(event_id: str = "evt-1", subject: str = "txn-1") -> EventRecord:
    return EventRecord.create(
        event_id=event_id,
        event_kind=EventKind.TRANSACTION_CREATED,
        actor_id="client-1",
        subject_id=subject,
        recipients=["client-1"],
        payload={"budget": "250.50"},
        timestamp_utc=_now(),
    )


def _directory() -> ActorDirectory:
    d = ActorDirectory()
    for actor_id in ("buyer-1", "seller-1"):
        d.register(ActorIdentity(actor_id))
    d.register(ActorIdentity("med-1", is_mediator=True))
    return d


class _FailingFileGateway(FileGateway):
    """Flush raises once armed."""

    fail = False

    def _flush(self) -> None:
        if self.fail:
            raise OSError("disk full")
        super()._flush()


# ===================================================================
# Compare-and-set
# ===================================================================

class TestCompareAndSet:
    def test_commit_bumps_version(self) -> None:
        gateway = InMemoryGateway()
        txn = _make_txn()
        gateway.commit(ChangeSet(transactions=[txn], events=[_make_event()]))
        assert txn.version == 1
        assert gateway.get_transaction("txn-1").version == 1
        assert len(gateway.events()) == 1

    def test_stale_version_writes_nothing(self) -> None:
        gateway = InMemoryGateway()
        gateway.commit(ChangeSet(transactions=[_make_txn()]))

        first = gateway.get_transaction("txn-1")
        second = gateway.get_transaction("txn-1")
        first.status = TransactionStatus.CANCELLED
        gateway.commit(ChangeSet(transactions=[first]))

        second.title = "Stale edit"
        with pytest.raises(ConflictRaceError) as exc:
            gateway.commit(ChangeSet(transactions=[second], events=[_make_event("evt-2")]))
        assert exc.value.context["expected_version"] == 1
        assert exc.value.context["actual_version"] == 2
        stored = gateway.get_transaction("txn-1")
        assert stored.title == "Landing page"
        assert stored.status == TransactionStatus.CANCELLED
        assert gateway.events() == []
        assert second.version == 1

    def test_duplicate_create_rejected(self) -> None:
        gateway = InMemoryGateway()
        gateway.commit(ChangeSet(transactions=[_make_txn()]))
        with pytest.raises(ConflictRaceError):
            gateway.commit(ChangeSet(transactions=[_make_txn()]))

    def test_reads_are_detached(self) -> None:
        gateway = InMemoryGateway()
        gateway.commit(ChangeSet(transactions=[_make_txn()]))
        copy = gateway.get_transaction("txn-1")
        copy.title = "Changed locally"
        assert gateway.get_transaction("txn-1").title == "Landing page"


# ===================================================================
# File snapshot
# ===================================================================

class TestFileGateway:
    def test_state_survives_restart(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        gateway = FileGateway(path)
        directory = _directory()
        transactions = TransactionEngine(gateway, directory)
        disputes = DisputeEngine(gateway, directory)

        order = transactions.place_order("buyer-1", "seller-1", "gig-7", "80.00", "Logo")
        transactions.confirm_payment("system", order.transaction_id, "pay-1")
        milestone = transactions.add_milestone("seller-1", order.transaction_id, "Sketches")
        dispute = disputes.open_dispute("buyer-1", order.transaction_id, "Wrong colours")
        disputes.assign_mediator("med-1", dispute.dispute_id)
        disputes.upload_evidence("buyer-1", dispute.dispute_id, ["blob://brief.pdf"])
        disputes.post_message("seller-1", dispute.dispute_id, "I followed the brief")

        reloaded = FileGateway(path)
        txn = reloaded.get_transaction(order.transaction_id)
        assert txn.status == TransactionStatus.IN_PROGRESS
        assert txn.budget == Decimal("80.00")
        assert txn.payment_reference == "pay-1"
        assert txn.version == 2
        assert [m.milestone_id for m in reloaded.list_milestones(order.transaction_id)] == [
            milestone.milestone_id,
        ]
        stored = reloaded.get_dispute(dispute.dispute_id)
        assert stored.mediator_id == "med-1"
        assert stored.status == DisputeStatus.OPENED
        assert stored.created_utc == dispute.created_utc
        assert reloaded.find_open_dispute(order.transaction_id).dispute_id == dispute.dispute_id
        assert reloaded.list_evidence(dispute.dispute_id)[0].file_refs == ("blob://brief.pdf",)
        assert reloaded.list_messages(dispute.dispute_id)[0].sequence == 1
        assert len(reloaded.events()) == len(gateway.events())

    def test_engine_continues_after_restart(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        directory = _directory()
        order = TransactionEngine(FileGateway(path), directory).place_order(
            "buyer-1", "seller-1", "gig-7", "80", "Logo",
        )
        engine = TransactionEngine(FileGateway(path), directory)
        running = engine.confirm_payment("system", order.transaction_id, "pay-1")
        assert running.status == TransactionStatus.IN_PROGRESS

    def test_flush_failure_rolls_back(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        gateway = _FailingFileGateway(path)
        gateway.commit(ChangeSet(transactions=[_make_txn()], events=[_make_event()]))

        pending = gateway.get_transaction("txn-1")
        pending.status = TransactionStatus.CANCELLED
        gateway.fail = True
        with pytest.raises(OSError):
            gateway.commit(ChangeSet(
                transactions=[pending, _make_txn("txn-2")],
                events=[_make_event("evt-2")],
            ))

        assert gateway.get_transaction("txn-1").status == TransactionStatus.OPEN
        assert gateway.get_transaction("txn-2") is None
        assert [e.event_id for e in gateway.events()] == ["evt-1"]
        assert pending.version == 1
        assert FileGateway(path).get_transaction("txn-2") is None

    def test_stale_instance_cannot_overwrite(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        directory = _directory()
        setup = TransactionEngine(FileGateway(path), directory)
        order = setup.place_order("buyer-1", "seller-1", "gig-7", "80", "Logo")
        setup.confirm_payment("system", order.transaction_id, "pay-1")
        setup.request_completion("seller-1", order.transaction_id)

        first = TransactionEngine(FileGateway(path), directory)
        second = TransactionEngine(FileGateway(path), directory)
        done = first.approve_completion("buyer-1", order.transaction_id)
        assert done.status == TransactionStatus.COMPLETED
        with pytest.raises(ConflictRaceError):
            second.cancel("buyer-1", order.transaction_id)

        on_disk = FileGateway(path).get_transaction(order.transaction_id)
        assert on_disk.status == TransactionStatus.COMPLETED
        assert on_disk.version == 4

    def test_instances_see_each_others_commits(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        a = FileGateway(path)
        b = FileGateway(path)
        a.commit(ChangeSet(transactions=[_make_txn("txn-1")], events=[_make_event("evt-1")]))
        b.commit(ChangeSet(transactions=[_make_txn("txn-2")], events=[_make_event("evt-2", "txn-2")]))
        merged = FileGateway(path)
        assert merged.get_transaction("txn-1") is not None
        assert merged.get_transaction("txn-2") is not None
        assert [e.event_id for e in merged.events()] == ["evt-1", "evt-2"]

    def test_unknown_format_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"format_version": 99}), encoding="utf-8")
        with pytest.raises(ValueError, match="Unsupported snapshot format"):
            FileGateway(path)

    def test_no_temp_file_left(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        FileGateway(path).commit(ChangeSet(transactions=[_make_txn()]))
        assert path.exists()
        assert not path.with_suffix(".tmp").exists()


# ===================================================================
# Event log
# ===================================================================

class TestEventLog:
    def test_append_and_recover(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(path)
        log.append(_make_event("evt-1"))
        log.append(_make_event("evt-2", subject="txn-2"))

        recovered = EventLog(path)
        assert recovered.count == 2
        assert recovered.last_event.event_id == "evt-2"
        assert [e.event_id for e in recovered.events_for("txn-2")] == ["evt-2"]

    def test_duplicate_append_rejected(self) -> None:
        log = EventLog()
        log.append(_make_event())
        with pytest.raises(ValueError, match="Duplicate event ID"):
            log.append(_make_event())
        assert log.count == 1

    def test_tampered_record_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        EventLog(path).append(_make_event())
        record = json.loads(path.read_text(encoding="utf-8"))
        record["payload"]["budget"] = "1.00"
        path.write_text(json.dumps(record) + "\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Integrity check failed"):
            EventLog(path)

    def test_duplicate_on_recovery_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        line = json.dumps(_make_event().to_dict())
        path.write_text(line + "\n" + line + "\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Duplicate event ID on recovery"):
            EventLog(path)

    def test_hash_is_deterministic(self) -> None:
        assert _make_event().event_hash == _make_event().event_hash
        assert _make_event().event_hash != _make_event("evt-9").event_hash


# ===================================================================
# Actor directory
# ===================================================================

class TestActorDirectory:
    def test_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "actors.json"
        directory = ActorDirectory(path)
        directory.register(ActorIdentity("alice", display_name="Alice"))
        directory.register(ActorIdentity("med-1", is_mediator=True))

        reloaded = ActorDirectory(path)
        assert reloaded.count == 2
        assert reloaded.get("alice").display_name == "Alice"
        assert reloaded.is_mediator("med-1")
        assert [m.actor_id for m in reloaded.mediators()] == ["med-1"]

    @pytest.mark.parametrize("actor_id", ["", "   ", "system"])
    def test_rejects_blank_and_reserved(self, actor_id) -> None:
        with pytest.raises(ValueError):
            ActorDirectory().register(ActorIdentity(actor_id))
