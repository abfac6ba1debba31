"""Transaction lifecycle: state machines, progress, and the engine."""

from agora.engine.milestones import MilestoneStateMachine
from agora.engine.progress import overall_progress
from agora.engine.state_machine import TransactionStateMachine
from agora.engine.transactions import TransactionEngine

__all__ = [
    "MilestoneStateMachine",
    "TransactionEngine",
    "TransactionStateMachine",
    "overall_progress",
]
