"""Marketplace events and the append-only JSONL log that stores them.

An event is written in the same commit as the state change it
describes and is never edited afterwards. Each record carries a SHA-256
digest of its own body, so a reloaded log (or snapshot) can prove that
nobody rewrote history on disk.

Recipients are the transaction parties, plus the mediator once a
dispute has one.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional


_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class EventKind(str, enum.Enum):
    """What happened."""
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_STATUS_CHANGED = "transaction_status_changed"
    TRANSACTION_PROGRESS_UPDATED = "transaction_progress_updated"
    PAYMENT_CONFIRMED = "payment_confirmed"
    APPLICATION_SUBMITTED = "application_submitted"
    APPLICATION_STATUS_CHANGED = "application_status_changed"
    MILESTONE_ADDED = "milestone_added"
    MILESTONE_UPDATED = "milestone_updated"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_MEDIATOR_ASSIGNED = "dispute_mediator_assigned"
    DISPUTE_STATUS_CHANGED = "dispute_status_changed"
    DISPUTE_RESOLVED = "dispute_resolved"
    EVIDENCE_UPLOADED = "evidence_uploaded"
    MEDIATION_MESSAGE_POSTED = "mediation_message_posted"


def _digest(body: dict[str, Any]) -> str:
    encoded = json.dumps(body, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return "sha256:" + hashlib.sha256(encoded).hexdigest()


@dataclass(frozen=True)
class EventRecord:
    """One immutable domain event.

    subject_id names the transaction or dispute the event is about.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    subject_id: str
    recipients: tuple[str, ...]
    payload: dict[str, Any]
    event_hash: str

    @classmethod
    def create(
        cls,
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        subject_id: str,
        recipients: Iterable[Optional[str]],
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Build a record and seal it. Blank and repeated recipients are dropped."""
        stamp = (timestamp_utc or datetime.now(timezone.utc)).strftime(_TIMESTAMP_FORMAT)
        unsealed = cls(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=stamp,
            actor_id=actor_id,
            subject_id=subject_id,
            recipients=tuple(dict.fromkeys(r for r in recipients if r)),
            payload=payload,
            event_hash="",
        )
        return unsealed._sealed()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventRecord:
        """Rebuild a stored record.

        Raises ValueError when the stored digest does not match the body.
        """
        record = cls(
            event_id=data["event_id"],
            event_kind=EventKind(data["event_kind"]),
            timestamp_utc=data["timestamp_utc"],
            actor_id=data["actor_id"],
            subject_id=data["subject_id"],
            recipients=tuple(data["recipients"]),
            payload=data["payload"],
            event_hash=data["event_hash"],
        )
        expected = _digest(record.body())
        if record.event_hash != expected:
            raise ValueError(
                f"Integrity check failed: event {record.event_id} "
                f"stored hash {record.event_hash} != computed {expected}"
            )
        return record

    def body(self) -> dict[str, Any]:
        """The hashed portion of the record."""
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "subject_id": self.subject_id,
            "recipients": list(self.recipients),
            "payload": self.payload,
        }

    def to_dict(self) -> dict[str, Any]:
        return {**self.body(), "event_hash": self.event_hash}

    def _sealed(self) -> EventRecord:
        return replace(self, event_hash=_digest(self.body()))


class EventLog:
    """Append-only event store, optionally mirrored to a JSONL file.

    Reloading a file re-verifies every digest and rejects repeated ids.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._seen: set[str] = set()
        self._storage_path = storage_path
        self._lock = threading.Lock()
        if storage_path is not None and storage_path.exists():
            self._replay(storage_path)

    def append(self, event: EventRecord) -> None:
        """Raises ValueError if the event id was already recorded."""
        with self._lock:
            if event.event_id in self._seen:
                raise ValueError(f"Duplicate event ID: {event.event_id}")
            if self._storage_path is not None:
                with self._storage_path.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False))
                    f.write("\n")
            self._remember(event)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        return [e for e in self._events if kind is None or e.event_kind == kind]

    def events_for(self, subject_id: str) -> list[EventRecord]:
        return [e for e in self._events if e.subject_id == subject_id]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _remember(self, event: EventRecord) -> None:
        self._events.append(event)
        self._seen.add(event.event_id)

    def _replay(self, path: Path) -> None:
        with path.open("r", encoding="utf-8") as f:
            for line_num, raw in enumerate(f, 1):
                if not raw.strip():
                    continue
                try:
                    event = EventRecord.from_dict(json.loads(raw))
                except ValueError as e:
                    raise ValueError(f"{path}:{line_num}: {e}") from e
                if event.event_id in self._seen:
                    raise ValueError(
                        f"Duplicate event ID on recovery ({path}:{line_num}): {event.event_id}"
                    )
                self._remember(event)
