"""Tests for marketplace policy loading and validation."""

import json
import os

import pytest
from pathlib import Path

from agora.config import MarketplacePolicy, MilestonePolicy, data_dir_from_env
from agora.models.transaction import TransactionKind


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


class TestPolicyLoading:
    def test_repo_config_matches_defaults(self) -> None:
        assert MarketplacePolicy.from_config_dir(CONFIG_DIR) == MarketplacePolicy.defaults()

    def test_defaults(self) -> None:
        policy = MarketplacePolicy.defaults()
        assert policy.in_progress_baseline_progress == 25
        assert policy.pending_completion_progress == 95
        assert policy.start_on_accept is True
        assert policy.freeze_on_open_dispute is False
        assert policy.milestone_policy(TransactionKind.JOB).requires_approval is False
        assert policy.milestone_policy(TransactionKind.GIG_ORDER).requires_approval is True

    def test_partial_document_keeps_defaults(self, tmp_path: Path) -> None:
        (tmp_path / "marketplace_policy.json").write_text(json.dumps({
            "transaction": {"pending_completion_progress": 90},
            "milestone_policy": {"job": {"requires_approval": True}},
        }), encoding="utf-8")
        policy = MarketplacePolicy.from_config_dir(tmp_path)
        assert policy.pending_completion_progress == 90
        assert policy.in_progress_baseline_progress == 25
        assert policy.milestone_policy(TransactionKind.JOB) == MilestonePolicy(requires_approval=True)
        assert policy.milestone_policy(TransactionKind.GIG_ORDER).requires_approval is True

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            MarketplacePolicy.from_config_dir(tmp_path)

    def test_to_dict_round_trip(self) -> None:
        policy = MarketplacePolicy(freeze_on_open_dispute=True, pending_completion_progress=80)
        assert MarketplacePolicy.from_dict(policy.to_dict()) == policy


class TestEnvironmentOverrides:
    def test_freeze_flag(self, monkeypatch) -> None:
        monkeypatch.setenv("AGORA_CONFIG_DIR", str(CONFIG_DIR))
        monkeypatch.setenv("AGORA_FREEZE_ON_OPEN_DISPUTE", "true")
        assert MarketplacePolicy.from_env().freeze_on_open_dispute is True

    @pytest.mark.parametrize("raw", ["false", "0", "off", "nonsense"])
    def test_freeze_flag_off(self, monkeypatch, raw) -> None:
        monkeypatch.setenv("AGORA_FREEZE_ON_OPEN_DISPUTE", raw)
        policy = MarketplacePolicy(freeze_on_open_dispute=True).with_env_overrides()
        assert policy.freeze_on_open_dispute is False

    def test_unset_leaves_policy(self, monkeypatch) -> None:
        monkeypatch.delenv("AGORA_FREEZE_ON_OPEN_DISPUTE", raising=False)
        policy = MarketplacePolicy(freeze_on_open_dispute=True)
        assert policy.with_env_overrides() is policy

    def test_missing_config_dir_falls_back(self, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.setenv("AGORA_CONFIG_DIR", str(tmp_path / "nowhere"))
        monkeypatch.delenv("AGORA_FREEZE_ON_OPEN_DISPUTE", raising=False)
        assert MarketplacePolicy.from_env() == MarketplacePolicy.defaults()

    def test_env_file(self, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.delenv("AGORA_FREEZE_ON_OPEN_DISPUTE", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text(
            f"AGORA_CONFIG_DIR={CONFIG_DIR}\nAGORA_FREEZE_ON_OPEN_DISPUTE=yes\n",
            encoding="utf-8",
        )
        try:
            assert MarketplacePolicy.from_env(env_file).freeze_on_open_dispute is True
        finally:
            os.environ.pop("AGORA_FREEZE_ON_OPEN_DISPUTE", None)
            os.environ.pop("AGORA_CONFIG_DIR", None)

    def test_data_dir(self, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.setenv("AGORA_DATA_DIR", str(tmp_path))
        assert data_dir_from_env() == tmp_path


class TestPolicyValidation:
    def test_defaults_valid(self) -> None:
        assert MarketplacePolicy.defaults().validate() == []

    def test_out_of_range(self) -> None:
        errors = MarketplacePolicy(in_progress_baseline_progress=-1).validate()
        assert any("in_progress_baseline_progress must be in [0, 100]" in e for e in errors)

    def test_baseline_above_floor(self) -> None:
        errors = MarketplacePolicy(in_progress_baseline_progress=95).validate()
        assert any("below pending_completion_progress" in e for e in errors)

    def test_floor_must_leave_room(self) -> None:
        errors = MarketplacePolicy(pending_completion_progress=100).validate()
        assert any("room below COMPLETED" in e for e in errors)

    def test_missing_kind(self) -> None:
        policy = MarketplacePolicy(milestone_policies={
            TransactionKind.JOB: MilestonePolicy(requires_approval=False),
        })
        assert policy.validate() == ["missing milestone policy for gig_order"]
