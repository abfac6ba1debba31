"""State store — JSON codecs and a file-backed persistence gateway.

FileGateway keeps the InMemoryGateway semantics and writes a full JSON
snapshot after every commit. The snapshot is written to a temporary
file and moved into place with os.replace, so a crash never leaves a
half-written state file. A failed write rolls the in-memory tables back
and re-raises, keeping the commit all-or-nothing.

Several processes may share one state file. Each commit holds an
exclusive lock on a sidecar `.lock` file and reloads the snapshot
before the version check, so a writer holding stale copies gets a
ConflictRaceError instead of overwriting newer state.

The codec functions are also the wire shape the service layer returns.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, Optional

from agora.models.dispute import Dispute, DisputeStatus, Evidence, MediationMessage
from agora.models.transaction import (
    Application,
    ApplicationStatus,
    Milestone,
    MilestoneStatus,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from agora.persistence.event_log import EventRecord
from agora.persistence.gateway import ChangeSet, InMemoryGateway

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT_VERSION = 1


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@contextmanager
def _exclusive(path: Path) -> Iterator[None]:
    """Hold an OS-level lock on a sidecar of path for the duration."""
    lock_path = path.with_suffix(path.suffix + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


# ----------------------------------------------------------------------
# Codecs
# ----------------------------------------------------------------------

def transaction_to_dict(txn: Transaction) -> dict[str, Any]:
    return {
        "transaction_id": txn.transaction_id,
        "kind": txn.kind.value,
        "client_id": txn.client_id,
        "counterparty_id": txn.counterparty_id,
        "status": txn.status.value,
        "budget": str(txn.budget),
        "title": txn.title,
        "description": txn.description,
        "gig_id": txn.gig_id,
        "progress_percent": txn.progress_percent,
        "payment_reference": txn.payment_reference,
        "created_utc": _ts(txn.created_utc),
        "status_changed_utc": _ts(txn.status_changed_utc),
        "version": txn.version,
    }


def transaction_from_dict(data: dict[str, Any]) -> Transaction:
    return Transaction(
        transaction_id=data["transaction_id"],
        kind=TransactionKind(data["kind"]),
        client_id=data["client_id"],
        counterparty_id=data.get("counterparty_id"),
        status=TransactionStatus(data["status"]),
        budget=Decimal(data["budget"]),
        title=data.get("title", ""),
        description=data.get("description", ""),
        gig_id=data.get("gig_id"),
        progress_percent=data.get("progress_percent"),
        payment_reference=data.get("payment_reference"),
        created_utc=_parse_ts(data.get("created_utc")),
        status_changed_utc=_parse_ts(data.get("status_changed_utc")),
        version=data.get("version", 0),
    )


def application_to_dict(app: Application) -> dict[str, Any]:
    return {
        "application_id": app.application_id,
        "job_id": app.job_id,
        "freelancer_id": app.freelancer_id,
        "proposal": app.proposal,
        "bid_amount": str(app.bid_amount),
        "timeline": app.timeline,
        "status": app.status.value,
        "submitted_utc": _ts(app.submitted_utc),
        "decided_utc": _ts(app.decided_utc),
        "version": app.version,
    }


def application_from_dict(data: dict[str, Any]) -> Application:
    return Application(
        application_id=data["application_id"],
        job_id=data["job_id"],
        freelancer_id=data["freelancer_id"],
        proposal=data["proposal"],
        bid_amount=Decimal(data["bid_amount"]),
        timeline=data.get("timeline", ""),
        status=ApplicationStatus(data["status"]),
        submitted_utc=_parse_ts(data.get("submitted_utc")),
        decided_utc=_parse_ts(data.get("decided_utc")),
        version=data.get("version", 0),
    )


def milestone_to_dict(ms: Milestone) -> dict[str, Any]:
    return {
        "milestone_id": ms.milestone_id,
        "transaction_id": ms.transaction_id,
        "title": ms.title,
        "description": ms.description,
        "created_by": ms.created_by,
        "status": ms.status.value,
        "progress_percent": ms.progress_percent,
        "created_utc": _ts(ms.created_utc),
        "updated_utc": _ts(ms.updated_utc),
        "version": ms.version,
    }


def milestone_from_dict(data: dict[str, Any]) -> Milestone:
    return Milestone(
        milestone_id=data["milestone_id"],
        transaction_id=data["transaction_id"],
        title=data["title"],
        description=data["description"],
        created_by=data["created_by"],
        status=MilestoneStatus(data["status"]),
        progress_percent=data.get("progress_percent", 0),
        created_utc=_parse_ts(data.get("created_utc")),
        updated_utc=_parse_ts(data.get("updated_utc")),
        version=data.get("version", 0),
    )


def dispute_to_dict(dispute: Dispute) -> dict[str, Any]:
    return {
        "dispute_id": dispute.dispute_id,
        "transaction_id": dispute.transaction_id,
        "initiator_id": dispute.initiator_id,
        "reason": dispute.reason,
        "description": dispute.description,
        "status": dispute.status.value,
        "mediator_id": dispute.mediator_id,
        "resolution": dispute.resolution,
        "created_utc": _ts(dispute.created_utc),
        "updated_utc": _ts(dispute.updated_utc),
        "resolved_utc": _ts(dispute.resolved_utc),
        "closed_utc": _ts(dispute.closed_utc),
        "version": dispute.version,
    }


def dispute_from_dict(data: dict[str, Any]) -> Dispute:
    return Dispute(
        dispute_id=data["dispute_id"],
        transaction_id=data["transaction_id"],
        initiator_id=data["initiator_id"],
        reason=data["reason"],
        description=data.get("description", ""),
        status=DisputeStatus(data["status"]),
        mediator_id=data.get("mediator_id"),
        resolution=data.get("resolution"),
        created_utc=_parse_ts(data.get("created_utc")),
        updated_utc=_parse_ts(data.get("updated_utc")),
        resolved_utc=_parse_ts(data.get("resolved_utc")),
        closed_utc=_parse_ts(data.get("closed_utc")),
        version=data.get("version", 0),
    )


def evidence_to_dict(ev: Evidence) -> dict[str, Any]:
    return {
        "evidence_id": ev.evidence_id,
        "dispute_id": ev.dispute_id,
        "uploader_id": ev.uploader_id,
        "file_refs": list(ev.file_refs),
        "note": ev.note,
        "uploaded_utc": _ts(ev.uploaded_utc),
    }


def evidence_from_dict(data: dict[str, Any]) -> Evidence:
    return Evidence(
        evidence_id=data["evidence_id"],
        dispute_id=data["dispute_id"],
        uploader_id=data["uploader_id"],
        file_refs=tuple(data.get("file_refs", [])),
        note=data.get("note", ""),
        uploaded_utc=_parse_ts(data.get("uploaded_utc")),
    )


def message_to_dict(msg: MediationMessage) -> dict[str, Any]:
    return {
        "message_id": msg.message_id,
        "dispute_id": msg.dispute_id,
        "sender_id": msg.sender_id,
        "text": msg.text,
        "sequence": msg.sequence,
        "sent_utc": _ts(msg.sent_utc),
    }


def message_from_dict(data: dict[str, Any]) -> MediationMessage:
    return MediationMessage(
        message_id=data["message_id"],
        dispute_id=data["dispute_id"],
        sender_id=data["sender_id"],
        text=data["text"],
        sequence=data["sequence"],
        sent_utc=_parse_ts(data.get("sent_utc")),
    )


# ----------------------------------------------------------------------
# File-backed gateway
# ----------------------------------------------------------------------

class FileGateway(InMemoryGateway):
    """Gateway persisted as one JSON snapshot file.

    Usage:
        gateway = FileGateway(data_dir / "state.json")
        # ... engines commit through it; state survives restarts ...
        gateway2 = FileGateway(data_dir / "state.json")
    """

    def __init__(self, storage_path: Path) -> None:
        super().__init__()
        self._storage_path = storage_path
        if storage_path.exists():
            self._load()

    def commit(self, changes: ChangeSet) -> None:
        with self._commit_lock, _exclusive(self._storage_path):
            self._reload()
            super().commit(changes)

    def _reload(self) -> None:
        """Replace the in-memory tables with what is on disk now."""
        self._transactions = {}
        self._applications = {}
        self._milestones = {}
        self._disputes = {}
        self._evidence = {}
        self._messages = {}
        self._events = []
        if self._storage_path.exists():
            self._load()

    def _capture(self) -> Optional[dict[str, Any]]:
        return {
            "transactions": dict(self._transactions),
            "applications": dict(self._applications),
            "milestones": dict(self._milestones),
            "disputes": dict(self._disputes),
            "evidence": {k: list(v) for k, v in self._evidence.items()},
            "messages": {k: list(v) for k, v in self._messages.items()},
            "events": list(self._events),
        }

    def _flush(self) -> None:
        snapshot = {
            "format_version": SNAPSHOT_FORMAT_VERSION,
            "transactions": [transaction_to_dict(t) for t in self._transactions.values()],
            "applications": [application_to_dict(a) for a in self._applications.values()],
            "milestones": [milestone_to_dict(m) for m in self._milestones.values()],
            "disputes": [dispute_to_dict(d) for d in self._disputes.values()],
            "evidence": [
                evidence_to_dict(e) for items in self._evidence.values() for e in items
            ],
            "messages": [
                message_to_dict(m) for items in self._messages.values() for m in items
            ],
            "events": [e.to_dict() for e in self._events],
        }
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._storage_path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(snapshot, f, indent=2, sort_keys=True, ensure_ascii=False)
        os.replace(tmp_path, self._storage_path)

    def _load(self) -> None:
        with self._storage_path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        version = data.get("format_version")
        if version != SNAPSHOT_FORMAT_VERSION:
            raise ValueError(
                f"Unsupported snapshot format {version} in {self._storage_path}"
            )
        for item in data.get("transactions", []):
            txn = transaction_from_dict(item)
            self._transactions[txn.transaction_id] = txn
        for item in data.get("applications", []):
            app = application_from_dict(item)
            self._applications[app.application_id] = app
        for item in data.get("milestones", []):
            ms = milestone_from_dict(item)
            self._milestones[ms.milestone_id] = ms
        for item in data.get("disputes", []):
            dispute = dispute_from_dict(item)
            self._disputes[dispute.dispute_id] = dispute
        for item in data.get("evidence", []):
            ev = evidence_from_dict(item)
            self._evidence.setdefault(ev.dispute_id, []).append(ev)
        for item in data.get("messages", []):
            msg = message_from_dict(item)
            self._messages.setdefault(msg.dispute_id, []).append(msg)
        self._events = [EventRecord.from_dict(item) for item in data.get("events", [])]
        logger.debug(
            "Loaded %d transactions and %d disputes from %s",
            len(self._transactions), len(self._disputes), self._storage_path,
        )
