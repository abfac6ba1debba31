"""Transaction models — jobs, gig orders, milestones, and applications.

A Transaction unifies the two engagement kinds of the marketplace:
- JOB: posted by a client, freelancers apply, one application is accepted.
- GIG_ORDER: placed by a buyer against a seller's gig; the seller is
  known from the start, work begins once payment is confirmed.

Transaction lifecycle: OPEN → IN_PROGRESS → PENDING_COMPLETION → COMPLETED
                       OPEN / IN_PROGRESS / PENDING_COMPLETION → CANCELLED
Milestone lifecycle:   PENDING → IN_PROGRESS → (PENDING_COMPLETION) → COMPLETED
Application lifecycle: PENDING → ACCEPTED / REJECTED

Transactions are never deleted. Terminal states are retained for audit
and dispute eligibility.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


class TransactionKind(str, enum.Enum):
    """The two engagement kinds sharing one lifecycle."""
    JOB = "job"
    GIG_ORDER = "gig_order"


class TransactionStatus(str, enum.Enum):
    """Lifecycle status of a transaction."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    PENDING_COMPLETION = "pending_completion"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MilestoneStatus(str, enum.Enum):
    """Lifecycle status of a milestone."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PENDING_COMPLETION = "pending_completion"
    COMPLETED = "completed"


class ApplicationStatus(str, enum.Enum):
    """Lifecycle status of a job application."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.CANCELLED,
})


@dataclass
class Transaction:
    """A job engagement or a gig order.

    client_id is always the paying party. counterparty_id is the
    performing party and stays None on a job until an application
    is accepted.
    """
    transaction_id: str
    kind: TransactionKind
    client_id: str
    budget: Decimal
    title: str = ""
    description: str = ""
    counterparty_id: Optional[str] = None
    status: TransactionStatus = TransactionStatus.OPEN
    gig_id: Optional[str] = None
    progress_percent: Optional[int] = None
    payment_reference: Optional[str] = None
    created_utc: Optional[datetime] = None
    status_changed_utc: Optional[datetime] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def parties(self) -> tuple[str, ...]:
        """Return the bound party ids (payer first)."""
        if self.counterparty_id is None:
            return (self.client_id,)
        return (self.client_id, self.counterparty_id)


@dataclass
class Milestone:
    """A unit of progress owned by exactly one transaction."""
    milestone_id: str
    transaction_id: str
    title: str
    description: str
    created_by: str
    status: MilestoneStatus = MilestoneStatus.PENDING
    progress_percent: int = 0
    created_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None
    version: int = 0


@dataclass
class Application:
    """A freelancer's application to an open job."""
    application_id: str
    job_id: str
    freelancer_id: str
    proposal: str
    bid_amount: Decimal
    timeline: str = ""
    status: ApplicationStatus = ApplicationStatus.PENDING
    submitted_utc: Optional[datetime] = None
    decided_utc: Optional[datetime] = None
    version: int = 0
