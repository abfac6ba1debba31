"""Persistence gateway — the storage interface the engines operate against.

The engines never touch a concrete store. They read detached copies,
validate, and hand back a ChangeSet that the gateway commits atomically:
all versioned aggregates, appended evidence/messages, and the events
describing the change land together or not at all.

Linearisation per aggregate is provided two ways:
- lock(key): a re-entrant lock keyed by aggregate id. Engines hold it
  while they re-read, re-validate and commit (closes check-then-act).
- commit(): optimistic compare-and-set on each aggregate's version.
  A stale version raises ConflictRaceError and nothing is written.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Protocol

from agora.errors import ConflictRaceError
from agora.models.dispute import Dispute, DisputeStatus, Evidence, MediationMessage
from agora.models.transaction import (
    Application,
    ApplicationStatus,
    Milestone,
    Transaction,
    TransactionStatus,
)
from agora.persistence.event_log import EventKind, EventRecord

logger = logging.getLogger(__name__)


@dataclass
class ChangeSet:
    """Everything one mutating operation writes."""
    transactions: list[Transaction] = field(default_factory=list)
    applications: list[Application] = field(default_factory=list)
    milestones: list[Milestone] = field(default_factory=list)
    disputes: list[Dispute] = field(default_factory=list)
    evidence: list[Evidence] = field(default_factory=list)
    messages: list[MediationMessage] = field(default_factory=list)
    events: list[EventRecord] = field(default_factory=list)

    def versioned(self) -> list[Any]:
        return [*self.transactions, *self.applications, *self.milestones, *self.disputes]


class PersistenceGateway(Protocol):
    """Protocol for marketplace persistence backends."""

    def lock(self, key: str) -> Any:
        """Context manager serialising mutations of one aggregate."""
        ...

    def commit(self, changes: ChangeSet) -> None:
        """Atomically apply a change set. Raises ConflictRaceError."""
        ...

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        ...

    def list_transactions(
        self,
        party_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
    ) -> list[Transaction]:
        ...

    def get_application(self, application_id: str) -> Optional[Application]:
        ...

    def list_applications(
        self,
        job_id: Optional[str] = None,
        freelancer_id: Optional[str] = None,
        status: Optional[ApplicationStatus] = None,
    ) -> list[Application]:
        ...

    def get_milestone(self, milestone_id: str) -> Optional[Milestone]:
        ...

    def list_milestones(self, transaction_id: str) -> list[Milestone]:
        ...

    def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        ...

    def list_disputes(
        self,
        transaction_id: Optional[str] = None,
        mediator_id: Optional[str] = None,
    ) -> list[Dispute]:
        ...

    def find_open_dispute(self, transaction_id: str) -> Optional[Dispute]:
        ...

    def list_evidence(self, dispute_id: str) -> list[Evidence]:
        ...

    def list_messages(self, dispute_id: str) -> list[MediationMessage]:
        ...

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        ...


class InMemoryGateway:
    """Thread-safe in-memory gateway for tests and local development.

    Getters return deep copies: a caller mutating what it read cannot
    affect stored state until it commits.
    """

    def __init__(self) -> None:
        self._transactions: dict[str, Transaction] = {}
        self._applications: dict[str, Application] = {}
        self._milestones: dict[str, Milestone] = {}
        self._disputes: dict[str, Dispute] = {}
        self._evidence: dict[str, list[Evidence]] = {}
        self._messages: dict[str, list[MediationMessage]] = {}
        self._events: list[EventRecord] = []
        self._commit_lock = threading.RLock()
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Concurrency
    # ------------------------------------------------------------------

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._locks_guard:
            aggregate_lock = self._locks.setdefault(key, threading.RLock())
        with aggregate_lock:
            yield

    def commit(self, changes: ChangeSet) -> None:
        with self._commit_lock:
            self._verify(changes)
            previous = self._capture()
            self._apply(changes)
            try:
                self._flush()
            except OSError:
                logger.error("Flush failed, rolling back %d events", len(changes.events))
                self._restore(previous)
                raise
            for item in changes.versioned():
                item.version += 1

    def _verify(self, changes: ChangeSet) -> None:
        tables: list[tuple[str, dict[str, Any], list[Any], str]] = [
            ("transaction", self._transactions, changes.transactions, "transaction_id"),
            ("application", self._applications, changes.applications, "application_id"),
            ("milestone", self._milestones, changes.milestones, "milestone_id"),
            ("dispute", self._disputes, changes.disputes, "dispute_id"),
        ]
        for entity, table, items, id_attr in tables:
            for item in items:
                item_id = getattr(item, id_attr)
                stored = table.get(item_id)
                actual = stored.version if stored is not None else 0
                if stored is None and item.version != 0:
                    raise ConflictRaceError(entity, item_id, item.version, actual)
                if stored is not None and stored.version != item.version:
                    raise ConflictRaceError(entity, item_id, item.version, actual)
                if stored is not None and item.version == 0:
                    raise ConflictRaceError(entity, item_id, 0, actual)

        for ev in changes.evidence:
            existing = self._evidence.get(ev.dispute_id, [])
            if any(e.evidence_id == ev.evidence_id for e in existing):
                raise ConflictRaceError("evidence", ev.evidence_id, 0, 1)

        next_sequence: dict[str, int] = {}
        for msg in changes.messages:
            expected = next_sequence.get(
                msg.dispute_id, len(self._messages.get(msg.dispute_id, [])) + 1,
            )
            if msg.sequence != expected:
                raise ConflictRaceError("message sequence", msg.dispute_id, expected, msg.sequence)
            next_sequence[msg.dispute_id] = expected + 1

    def _apply(self, changes: ChangeSet) -> None:
        for txn in changes.transactions:
            self._transactions[txn.transaction_id] = self._stored(txn)
        for app in changes.applications:
            self._applications[app.application_id] = self._stored(app)
        for ms in changes.milestones:
            self._milestones[ms.milestone_id] = self._stored(ms)
        for dispute in changes.disputes:
            self._disputes[dispute.dispute_id] = self._stored(dispute)
        for ev in changes.evidence:
            self._evidence.setdefault(ev.dispute_id, []).append(ev)
        for msg in changes.messages:
            self._messages.setdefault(msg.dispute_id, []).append(msg)
        self._events.extend(changes.events)

    @staticmethod
    def _stored(item: Any) -> Any:
        stored = copy.deepcopy(item)
        stored.version = item.version + 1
        return stored

    def _capture(self) -> Optional[dict[str, Any]]:
        """Snapshot internal tables before apply. None when no flush can fail."""
        return None

    def _restore(self, previous: Optional[dict[str, Any]]) -> None:
        if previous is None:
            return
        self._transactions = previous["transactions"]
        self._applications = previous["applications"]
        self._milestones = previous["milestones"]
        self._disputes = previous["disputes"]
        self._evidence = previous["evidence"]
        self._messages = previous["messages"]
        self._events = previous["events"]

    def _flush(self) -> None:
        """Make applied state durable. In-memory: nothing to do."""

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self._commit_lock:
            return copy.deepcopy(self._transactions.get(transaction_id))

    def list_transactions(
        self,
        party_id: Optional[str] = None,
        status: Optional[TransactionStatus] = None,
    ) -> list[Transaction]:
        with self._commit_lock:
            txns = list(self._transactions.values())
            if party_id is not None:
                txns = [t for t in txns if party_id in t.parties()]
            if status is not None:
                txns = [t for t in txns if t.status == status]
            return copy.deepcopy(txns)

    def get_application(self, application_id: str) -> Optional[Application]:
        with self._commit_lock:
            return copy.deepcopy(self._applications.get(application_id))

    def list_applications(
        self,
        job_id: Optional[str] = None,
        freelancer_id: Optional[str] = None,
        status: Optional[ApplicationStatus] = None,
    ) -> list[Application]:
        with self._commit_lock:
            apps = list(self._applications.values())
            if job_id is not None:
                apps = [a for a in apps if a.job_id == job_id]
            if freelancer_id is not None:
                apps = [a for a in apps if a.freelancer_id == freelancer_id]
            if status is not None:
                apps = [a for a in apps if a.status == status]
            return copy.deepcopy(apps)

    def get_milestone(self, milestone_id: str) -> Optional[Milestone]:
        with self._commit_lock:
            return copy.deepcopy(self._milestones.get(milestone_id))

    def list_milestones(self, transaction_id: str) -> list[Milestone]:
        with self._commit_lock:
            return copy.deepcopy([
                m for m in self._milestones.values() if m.transaction_id == transaction_id
            ])

    def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        with self._commit_lock:
            return copy.deepcopy(self._disputes.get(dispute_id))

    def list_disputes(
        self,
        transaction_id: Optional[str] = None,
        mediator_id: Optional[str] = None,
    ) -> list[Dispute]:
        with self._commit_lock:
            disputes = list(self._disputes.values())
            if transaction_id is not None:
                disputes = [d for d in disputes if d.transaction_id == transaction_id]
            if mediator_id is not None:
                disputes = [d for d in disputes if d.mediator_id == mediator_id]
            return copy.deepcopy(disputes)

    def find_open_dispute(self, transaction_id: str) -> Optional[Dispute]:
        with self._commit_lock:
            for d in self._disputes.values():
                if d.transaction_id == transaction_id and d.status != DisputeStatus.CLOSED:
                    return copy.deepcopy(d)
            return None

    def list_evidence(self, dispute_id: str) -> list[Evidence]:
        with self._commit_lock:
            return list(self._evidence.get(dispute_id, []))

    def list_messages(self, dispute_id: str) -> list[MediationMessage]:
        with self._commit_lock:
            return sorted(self._messages.get(dispute_id, []), key=lambda m: m.sequence)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        with self._commit_lock:
            if kind is None:
                return list(self._events)
            return [e for e in self._events if e.event_kind == kind]
