"""Derived overall progress of a transaction.

A pure function of the transaction status, its milestones, and any
explicit progress the performer reported. Never stored.
"""

from __future__ import annotations

from typing import Iterable, Optional

from agora.config import MarketplacePolicy
from agora.models.transaction import Milestone, Transaction, TransactionStatus


def milestone_average(milestones: Iterable[Milestone]) -> Optional[int]:
    """Rounded mean milestone progress, or None without milestones."""
    values = [m.progress_percent for m in milestones]
    if not values:
        return None
    return round(sum(values) / len(values))


def overall_progress(
    transaction: Transaction,
    milestones: Iterable[Milestone],
    policy: Optional[MarketplacePolicy] = None,
) -> int:
    policy = policy or MarketplacePolicy.defaults()
    average = milestone_average(milestones)
    status = transaction.status

    if status == TransactionStatus.COMPLETED:
        return 100
    if status == TransactionStatus.OPEN:
        return 0
    if status == TransactionStatus.PENDING_COMPLETION:
        floor = policy.pending_completion_progress
        return max(floor, average) if average is not None else floor
    if average is not None:
        return average
    if transaction.progress_percent is not None:
        return transaction.progress_percent
    if status == TransactionStatus.IN_PROGRESS:
        return policy.in_progress_baseline_progress
    return 0
