"""Dispute models — disputes, evidence, and the mediation thread.

A dispute is an escalation record tied to one transaction. A transaction
may hold at most one dispute that is not CLOSED, but accumulates a
history of closed ones.

Dispute statuses are an enumerated, role-gated set rather than a strict
graph: OPENED, UNDER_REVIEW, MEDIATION, RESOLVED, CLOSED. The listed
order is advisory. CLOSED is terminal.

Evidence and mediation messages are append-only and immutable.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


class DisputeStatus(str, enum.Enum):
    """Status of a dispute. Order is advisory only."""
    OPENED = "opened"
    UNDER_REVIEW = "under_review"
    MEDIATION = "mediation"
    RESOLVED = "resolved"
    CLOSED = "closed"


class DisputeView(str, enum.Enum):
    """Listing views offered by the dispute centre."""
    ALL = "all"
    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"
    RESOLVED = "resolved"


@dataclass
class Dispute:
    """An escalation record against one transaction."""
    dispute_id: str
    transaction_id: str
    initiator_id: str
    reason: str
    description: str = ""
    status: DisputeStatus = DisputeStatus.OPENED
    mediator_id: Optional[str] = None
    resolution: Optional[str] = None
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None
    resolved_utc: Optional[datetime] = None
    closed_utc: Optional[datetime] = None
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.status != DisputeStatus.CLOSED

    def matches_view(self, view: DisputeView) -> bool:
        if view == DisputeView.UNASSIGNED:
            return self.mediator_id is None
        if view == DisputeView.ASSIGNED:
            return self.mediator_id is not None and self.status not in (
                DisputeStatus.RESOLVED, DisputeStatus.CLOSED,
            )
        if view == DisputeView.RESOLVED:
            return self.status in (DisputeStatus.RESOLVED, DisputeStatus.CLOSED)
        return True


@dataclass(frozen=True)
class Evidence:
    """Opaque file references uploaded by a transaction party."""
    evidence_id: str
    dispute_id: str
    uploader_id: str
    file_refs: tuple[str, ...] = field(default_factory=tuple)
    note: str = ""
    uploaded_utc: Optional[datetime] = None


@dataclass(frozen=True)
class MediationMessage:
    """A single entry in a dispute's three-party thread.

    sequence is monotonically increasing per dispute and defines the
    display order.
    """
    message_id: str
    dispute_id: str
    sender_id: str
    text: str
    sequence: int
    sent_utc: Optional[datetime] = None
