"""Core data models for Agora."""

from agora.models.dispute import (
    Dispute,
    DisputeStatus,
    DisputeView,
    Evidence,
    MediationMessage,
)
from agora.models.identity import SYSTEM_ACTOR_ID, ActorIdentity, Role
from agora.models.transaction import (
    Application,
    ApplicationStatus,
    Milestone,
    MilestoneStatus,
    Transaction,
    TransactionKind,
    TransactionStatus,
)

__all__ = [
    "ActorIdentity",
    "Application",
    "ApplicationStatus",
    "Dispute",
    "DisputeStatus",
    "DisputeView",
    "Evidence",
    "MediationMessage",
    "Milestone",
    "MilestoneStatus",
    "Role",
    "SYSTEM_ACTOR_ID",
    "Transaction",
    "TransactionKind",
    "TransactionStatus",
]
