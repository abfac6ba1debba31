"""Dispute lifecycle: permissions and the engine."""

from agora.disputes.engine import DisputeDetail, DisputeEngine
from agora.disputes.permissions import settable_statuses

__all__ = ["DisputeDetail", "DisputeEngine", "settable_statuses"]
