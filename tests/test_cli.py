"""Tests for the Agora CLI — proves parsing and end-to-end dispatch
against file-backed state."""

import json

import pytest
from pathlib import Path

from agora.cli import build_parser, main


class TestCLIParsing:
    def test_status_command(self) -> None:
        args = build_parser().parse_args(["status"])
        assert args.command == "status"
        assert args.data is None

    def test_register_actor_command(self) -> None:
        args = build_parser().parse_args(["register-actor", "--id", "mia", "--mediator"])
        assert args.command == "register-actor"
        assert args.id == "mia"
        assert args.mediator is True

    def test_global_options(self, tmp_path: Path) -> None:
        args = build_parser().parse_args([
            "--data", str(tmp_path), "--log-level", "DEBUG",
            "post-job", "--actor", "alice", "--title", "Logo", "--budget", "300",
        ])
        assert args.data == tmp_path
        assert args.budget == "300"
        assert args.description == ""

    def test_repeatable_evidence(self) -> None:
        args = build_parser().parse_args([
            "upload-evidence", "--actor", "alice", "--dispute", "dsp-1",
            "--file", "blob://a", "--file", "blob://b",
        ])
        assert args.file == ["blob://a", "blob://b"]

    def test_list_disputes_view_choices(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["list-disputes", "--actor", "mia", "--view", "archived"])


def _run(data: Path, capsys, *argv: str) -> tuple[int, dict]:
    code = main(["--data", str(data), *argv])
    out = capsys.readouterr().out
    return code, (json.loads(out) if code == 0 and out.strip().startswith("{") else {})


class TestCLIExecution:
    def test_no_command_shows_help(self, capsys) -> None:
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out

    def test_status_runs(self, tmp_path: Path, capsys) -> None:
        code, data = _run(tmp_path, capsys, "status")
        assert code == 0
        assert data["actors"] == 0

    def test_order_and_dispute_e2e(self, tmp_path: Path, capsys) -> None:
        for argv in (
            ("register-actor", "--id", "alice"),
            ("register-actor", "--id", "bob"),
            ("register-actor", "--id", "mia", "--mediator"),
        ):
            assert _run(tmp_path, capsys, *argv)[0] == 0

        code, data = _run(
            tmp_path, capsys,
            "place-order", "--actor", "alice", "--seller", "bob",
            "--gig", "gig-1", "--price", "75.50", "--title", "Jingle",
        )
        assert code == 0
        txn_id = data["transaction"]["transaction_id"]
        assert data["transaction"]["budget"] == "75.50"

        code, data = _run(
            tmp_path, capsys,
            "confirm-payment", "--transaction", txn_id, "--reference", "pay-1",
        )
        assert data["transaction"]["status"] == "in_progress"

        code, data = _run(
            tmp_path, capsys,
            "open-dispute", "--actor", "alice", "--transaction", txn_id, "--reason", "Off key",
        )
        dispute_id = data["dispute"]["dispute_id"]
        assert _run(tmp_path, capsys, "assign-mediator", "--actor", "mia", "--dispute", dispute_id)[0] == 0

        code, data = _run(tmp_path, capsys, "list-disputes", "--actor", "mia", "--view", "assigned")
        assert [d["dispute_id"] for d in data["disputes"]] == [dispute_id]

        code, data = _run(tmp_path, capsys, "show-dispute", "--actor", "bob", "--dispute", dispute_id)
        assert data["parties"][0] == {"actor_id": "alice", "role": "Buyer (Initiator)"}

        assert (tmp_path / "state.json").exists()
        assert (tmp_path / "notifications.jsonl").exists()
        code, _ = _run(tmp_path, capsys, "check-invariants")
        assert code == 0

    def test_failure_reports_kind(self, tmp_path: Path, capsys) -> None:
        main(["--data", str(tmp_path), "register-actor", "--id", "alice"])
        capsys.readouterr()
        code = main([
            "--data", str(tmp_path),
            "post-job", "--actor", "alice", "--title", "Logo", "--budget", "-5",
        ])
        assert code == 1
        assert "Failed [validation_error]" in capsys.readouterr().err

    def test_update_milestone_needs_a_change(self, tmp_path: Path, capsys) -> None:
        code = main([
            "--data", str(tmp_path),
            "update-milestone", "--actor", "bob", "--milestone", "ms-1",
        ])
        assert code == 1

    def test_refused_status_keeps_progress(self, tmp_path: Path, capsys) -> None:
        for actor_id in ("alice", "bob"):
            _run(tmp_path, capsys, "register-actor", "--id", actor_id)
        _, data = _run(
            tmp_path, capsys,
            "place-order", "--actor", "alice", "--seller", "bob", "--gig", "gig-1", "--price", "60",
        )
        txn_id = data["transaction"]["transaction_id"]
        _run(tmp_path, capsys, "confirm-payment", "--transaction", txn_id, "--reference", "pay-1")
        _, data = _run(
            tmp_path, capsys,
            "add-milestone", "--actor", "bob", "--transaction", txn_id, "--title", "Mix",
        )
        milestone_id = data["milestone"]["milestone_id"]

        code = main([
            "--data", str(tmp_path),
            "update-milestone", "--actor", "bob", "--milestone", milestone_id,
            "--progress", "50", "--status", "completed",
        ])
        assert code == 1
        assert "Failed [invalid_transition]" in capsys.readouterr().err

        _, data = _run(tmp_path, capsys, "show-transaction", "--actor", "alice", "--transaction", txn_id)
        assert data["milestones"][0]["progress_percent"] == 0
        assert data["milestones"][0]["status"] == "pending"

        code, data = _run(
            tmp_path, capsys,
            "update-milestone", "--actor", "bob", "--milestone", milestone_id,
            "--progress", "30", "--status", "in_progress",
        )
        assert code == 0
        assert data["milestone"]["progress_percent"] == 30
        assert data["milestone"]["status"] == "in_progress"

    def test_corrupt_state_fails_cleanly(self, tmp_path: Path, capsys) -> None:
        (tmp_path / "state.json").write_text("{\"format_version\": 42}", encoding="utf-8")
        code = main(["--data", str(tmp_path), "status"])
        assert code == 1
        assert "Unsupported snapshot format" in capsys.readouterr().err
