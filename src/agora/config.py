"""Marketplace policy — the tunable rules injected into the engines.

Policy lives in config/marketplace_policy.json. Environment variables
(optionally from a .env file) override selected keys:

    AGORA_CONFIG_DIR               directory holding marketplace_policy.json
    AGORA_DATA_DIR                 CLI persistence directory
    AGORA_FREEZE_ON_OPEN_DISPUTE   "true"/"false"

The milestone approval asymmetry between jobs and gig orders is a
per-kind MilestonePolicy value, not a conditional inside the engine.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from agora.models.transaction import TransactionKind


POLICY_FILENAME = "marketplace_policy.json"
DEFAULT_CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"
DEFAULT_DATA_DIR = Path(__file__).resolve().parents[2] / "data"

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class MilestonePolicy:
    """How milestones of one transaction kind reach COMPLETED.

    requires_approval=True: the performing party requests completion
    and the paying party approves it.
    requires_approval=False: the performing party may complete directly.
    """
    requires_approval: bool


@dataclass(frozen=True)
class MarketplacePolicy:
    """Resolved policy values for the transaction and dispute engines."""
    in_progress_baseline_progress: int = 25
    pending_completion_progress: int = 95
    start_on_accept: bool = True
    freeze_on_open_dispute: bool = False
    milestone_policies: dict[TransactionKind, MilestonePolicy] = field(
        default_factory=lambda: {
            TransactionKind.JOB: MilestonePolicy(requires_approval=False),
            TransactionKind.GIG_ORDER: MilestonePolicy(requires_approval=True),
        }
    )

    @classmethod
    def defaults(cls) -> MarketplacePolicy:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MarketplacePolicy:
        """Build a policy from the JSON document shape."""
        txn = data.get("transaction", {})
        base = cls()
        policies = dict(base.milestone_policies)
        for kind_value, entry in data.get("milestone_policy", {}).items():
            kind = TransactionKind(kind_value)
            policies[kind] = MilestonePolicy(
                requires_approval=bool(entry["requires_approval"]),
            )
        return cls(
            in_progress_baseline_progress=int(
                txn.get("in_progress_baseline_progress", base.in_progress_baseline_progress)
            ),
            pending_completion_progress=int(
                txn.get("pending_completion_progress", base.pending_completion_progress)
            ),
            start_on_accept=bool(txn.get("start_on_accept", base.start_on_accept)),
            freeze_on_open_dispute=bool(
                txn.get("freeze_on_open_dispute", base.freeze_on_open_dispute)
            ),
            milestone_policies=policies,
        )

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> MarketplacePolicy:
        """Load policy from a config directory.

        Raises FileNotFoundError if the policy file is missing.
        """
        path = config_dir / POLICY_FILENAME
        with path.open("r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> MarketplacePolicy:
        """Load policy from AGORA_CONFIG_DIR, then apply env overrides."""
        load_dotenv(env_file)
        config_dir = Path(os.getenv("AGORA_CONFIG_DIR", str(DEFAULT_CONFIG_DIR)))
        policy = cls.from_config_dir(config_dir) if (config_dir / POLICY_FILENAME).exists() else cls()
        return policy.with_env_overrides()

    def with_env_overrides(self) -> MarketplacePolicy:
        raw = os.getenv("AGORA_FREEZE_ON_OPEN_DISPUTE")
        if raw is None:
            return self
        return replace(self, freeze_on_open_dispute=raw.strip().lower() in _TRUE_VALUES)

    def milestone_policy(self, kind: TransactionKind) -> MilestonePolicy:
        return self.milestone_policies[kind]

    def validate(self) -> list[str]:
        """Check policy invariants. Returns errors (empty = OK)."""
        errors: list[str] = []
        for name in ("in_progress_baseline_progress", "pending_completion_progress"):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                errors.append(f"{name} must be in [0, 100], got {value}")
        if self.in_progress_baseline_progress >= self.pending_completion_progress:
            errors.append(
                "in_progress_baseline_progress must be below pending_completion_progress"
            )
        if self.pending_completion_progress >= 100:
            errors.append("pending_completion_progress must leave room below COMPLETED (100)")
        for kind in TransactionKind:
            if kind not in self.milestone_policies:
                errors.append(f"missing milestone policy for {kind.value}")
        return errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction": {
                "in_progress_baseline_progress": self.in_progress_baseline_progress,
                "pending_completion_progress": self.pending_completion_progress,
                "start_on_accept": self.start_on_accept,
                "freeze_on_open_dispute": self.freeze_on_open_dispute,
            },
            "milestone_policy": {
                kind.value: {"requires_approval": p.requires_approval}
                for kind, p in self.milestone_policies.items()
            },
        }


def data_dir_from_env() -> Path:
    load_dotenv()
    return Path(os.getenv("AGORA_DATA_DIR", str(DEFAULT_DATA_DIR)))
