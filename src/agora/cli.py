"""Agora CLI — operator command line for the marketplace core.

Every command runs against the file-backed state under --data (default
$AGORA_DATA_DIR or ./data). --actor stands in for the identity an
authenticating transport would supply.

Usage:
    agora register-actor --id alice
    agora register-actor --id mia --mediator
    agora post-job --actor alice --title "Logo" --budget 300
    agora apply --actor bob --job txn-... --proposal "Vector work" --bid 250
    agora accept-application --actor alice --application app-...
    agora open-dispute --actor alice --transaction txn-... --reason "Late"
    agora list-disputes --actor mia --view unassigned
    agora check-invariants
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from agora.config import MarketplacePolicy, data_dir_from_env
from agora.events.emitter import EventLogEmitter
from agora.identity.directory import ActorDirectory
from agora.models.identity import SYSTEM_ACTOR_ID
from agora.persistence.event_log import EventLog
from agora.persistence.state_store import FileGateway
from agora.service import MarketplaceService, ServiceResult

logger = logging.getLogger(__name__)


def _policy(config_dir: Optional[Path]) -> MarketplacePolicy:
    if config_dir is None:
        return MarketplacePolicy.from_env()
    return MarketplacePolicy.from_config_dir(config_dir).with_env_overrides()


def _make_service(args: argparse.Namespace) -> MarketplaceService:
    """Create a MarketplaceService with durable persistence."""
    data_dir: Path = args.data or data_dir_from_env()
    data_dir.mkdir(parents=True, exist_ok=True)
    return MarketplaceService(
        FileGateway(data_dir / "state.json"),
        ActorDirectory(storage_path=data_dir / "actors.json"),
        emitter=EventLogEmitter(EventLog(storage_path=data_dir / "notifications.jsonl")),
        policy=_policy(args.config),
    )


def _emit(result: ServiceResult) -> int:
    if result.success:
        print(json.dumps(result.data, indent=2, sort_keys=True, default=str))
        return 0
    print(f"Failed [{result.error_kind}]: {'; '.join(result.errors)}", file=sys.stderr)
    if result.context:
        print(json.dumps(result.context, sort_keys=True, default=str), file=sys.stderr)
    return 1


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args)
    print(json.dumps(service.status(), indent=2, sort_keys=True))
    return 0


def cmd_check_invariants(args: argparse.Namespace) -> int:
    service = _make_service(args)
    errors = service.check_invariants()
    if errors:
        for err in errors:
            print(f"FAIL: {err}", file=sys.stderr)
        return 1
    print("All invariant checks passed.")
    return 0


def cmd_register_actor(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.register_actor(args.id, args.name or "", args.mediator))


def cmd_post_job(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.post_job(args.actor, args.title, args.description, args.budget))


def cmd_place_order(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.place_order(
        args.actor, args.seller, args.gig, args.price, args.title, args.description,
    ))


def cmd_confirm_payment(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.confirm_payment(SYSTEM_ACTOR_ID, args.transaction, args.reference))


def cmd_apply(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.apply_to_job(
        args.actor, args.job, args.proposal, args.bid, args.timeline,
    ))


def cmd_accept_application(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.accept_application(args.actor, args.application))


def cmd_reject_application(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.reject_application(args.actor, args.application))


def cmd_start_work(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.start_work(args.actor, args.transaction))


def cmd_request_completion(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.request_completion(args.actor, args.transaction))


def cmd_approve_completion(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.approve_completion(args.actor, args.transaction))


def cmd_reject_completion(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.reject_completion(args.actor, args.transaction))


def cmd_cancel(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.cancel(args.actor, args.transaction))


def cmd_update_progress(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.update_progress(args.actor, args.transaction, args.percent))


def cmd_add_milestone(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.add_milestone(
        args.actor, args.transaction, args.title, args.description,
    ))


def cmd_update_milestone(args: argparse.Namespace) -> int:
    if args.status is None and args.progress is None:
        print("Failed: give --status and/or --progress", file=sys.stderr)
        return 1
    service = _make_service(args)
    return _emit(service.update_milestone(
        args.actor, args.milestone, status=args.status, percent=args.progress,
    ))


def cmd_open_dispute(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.open_dispute(
        args.actor, args.transaction, args.reason, args.description,
    ))


def cmd_assign_mediator(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.assign_mediator(args.actor, args.dispute, args.mediator))


def cmd_set_dispute_status(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.update_dispute_status(args.actor, args.dispute, args.status))


def cmd_resolve_dispute(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.resolve_dispute(args.actor, args.dispute, args.resolution))


def cmd_upload_evidence(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.upload_evidence(args.actor, args.dispute, args.file, args.note))


def cmd_post_message(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.post_message(args.actor, args.dispute, args.text))


def cmd_list_disputes(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.list_disputes(args.actor, args.role, args.view))


def cmd_show_transaction(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.get_transaction(args.actor, args.transaction))


def cmd_show_dispute(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _emit(service.get_dispute(args.actor, args.dispute))


def _actor(p: argparse.ArgumentParser) -> None:
    p.add_argument("--actor", required=True, help="Authenticated actor ID")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agora",
        description="Marketplace transaction and dispute engine",
    )
    parser.add_argument(
        "--config", type=Path, default=None,
        help="Config directory (default: $AGORA_CONFIG_DIR or ./config)",
    )
    parser.add_argument(
        "--data", type=Path, default=None,
        help="Data directory (default: $AGORA_DATA_DIR or ./data)",
    )
    parser.add_argument(
        "--log-level", default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", help="Show system status")
    sub.add_parser("check-invariants", help="Check policy and state invariants")

    p = sub.add_parser("register-actor", help="Register or update an actor")
    p.add_argument("--id", required=True, help="Actor ID")
    p.add_argument("--name", help="Display name")
    p.add_argument("--mediator", action="store_true", help="Grant mediator capability")

    p = sub.add_parser("post-job", help="Post a job")
    _actor(p)
    p.add_argument("--title", required=True)
    p.add_argument("--description", default="")
    p.add_argument("--budget", required=True, help="Budget (Decimal)")

    p = sub.add_parser("place-order", help="Place a gig order")
    _actor(p)
    p.add_argument("--seller", required=True)
    p.add_argument("--gig", required=True, help="Gig ID")
    p.add_argument("--price", required=True, help="Price (Decimal)")
    p.add_argument("--title", default="")
    p.add_argument("--description", default="")

    p = sub.add_parser("confirm-payment", help="Record a payment confirmation (system)")
    p.add_argument("--transaction", required=True)
    p.add_argument("--reference", required=True, help="Payment reference")

    p = sub.add_parser("apply", help="Apply to a job")
    _actor(p)
    p.add_argument("--job", required=True)
    p.add_argument("--proposal", required=True)
    p.add_argument("--bid", required=True, help="Bid amount (Decimal)")
    p.add_argument("--timeline", default="")

    for name, text in (
        ("accept-application", "Accept an application"),
        ("reject-application", "Reject an application"),
    ):
        p = sub.add_parser(name, help=text)
        _actor(p)
        p.add_argument("--application", required=True)

    for name, text in (
        ("start-work", "Start work on a bound transaction"),
        ("request-completion", "Request completion"),
        ("approve-completion", "Approve completion"),
        ("reject-completion", "Send back for revision"),
        ("cancel", "Cancel a transaction"),
        ("show-transaction", "Show a transaction"),
    ):
        p = sub.add_parser(name, help=text)
        _actor(p)
        p.add_argument("--transaction", required=True)

    p = sub.add_parser("update-progress", help="Report explicit progress")
    _actor(p)
    p.add_argument("--transaction", required=True)
    p.add_argument("--percent", type=int, required=True)

    p = sub.add_parser("add-milestone", help="Add a milestone")
    _actor(p)
    p.add_argument("--transaction", required=True)
    p.add_argument("--title", required=True)
    p.add_argument("--description", default="")

    p = sub.add_parser("update-milestone", help="Change milestone status and/or progress")
    _actor(p)
    p.add_argument("--milestone", required=True)
    p.add_argument("--status", help="pending | in_progress | pending_completion | completed")
    p.add_argument("--progress", type=int)

    p = sub.add_parser("open-dispute", help="Open a dispute")
    _actor(p)
    p.add_argument("--transaction", required=True)
    p.add_argument("--reason", required=True)
    p.add_argument("--description", default="")

    p = sub.add_parser("assign-mediator", help="Assign a mediator (default: yourself)")
    _actor(p)
    p.add_argument("--dispute", required=True)
    p.add_argument("--mediator", help="Mediator ID")

    p = sub.add_parser("set-dispute-status", help="Set dispute status")
    _actor(p)
    p.add_argument("--dispute", required=True)
    p.add_argument("--status", required=True)

    p = sub.add_parser("resolve-dispute", help="Record a resolution")
    _actor(p)
    p.add_argument("--dispute", required=True)
    p.add_argument("--resolution", required=True)

    p = sub.add_parser("upload-evidence", help="Attach evidence references")
    _actor(p)
    p.add_argument("--dispute", required=True)
    p.add_argument("--file", action="append", default=[], help="Blob reference (repeatable)")
    p.add_argument("--note", default="")

    p = sub.add_parser("post-message", help="Post to the mediation thread")
    _actor(p)
    p.add_argument("--dispute", required=True)
    p.add_argument("--text", required=True)

    p = sub.add_parser("list-disputes", help="List disputes visible to you")
    _actor(p)
    p.add_argument("--role", help="client_or_buyer | freelancer_or_seller | mediator")
    p.add_argument("--view", default="all", choices=["all", "unassigned", "assigned", "resolved"])

    p = sub.add_parser("show-dispute", help="Show a dispute")
    _actor(p)
    p.add_argument("--dispute", required=True)

    return parser


COMMANDS = {
    "status": cmd_status,
    "check-invariants": cmd_check_invariants,
    "register-actor": cmd_register_actor,
    "post-job": cmd_post_job,
    "place-order": cmd_place_order,
    "confirm-payment": cmd_confirm_payment,
    "apply": cmd_apply,
    "accept-application": cmd_accept_application,
    "reject-application": cmd_reject_application,
    "start-work": cmd_start_work,
    "request-completion": cmd_request_completion,
    "approve-completion": cmd_approve_completion,
    "reject-completion": cmd_reject_completion,
    "cancel": cmd_cancel,
    "update-progress": cmd_update_progress,
    "add-milestone": cmd_add_milestone,
    "update-milestone": cmd_update_milestone,
    "open-dispute": cmd_open_dispute,
    "assign-mediator": cmd_assign_mediator,
    "set-dispute-status": cmd_set_dispute_status,
    "resolve-dispute": cmd_resolve_dispute,
    "upload-evidence": cmd_upload_evidence,
    "post-message": cmd_post_message,
    "list-disputes": cmd_list_disputes,
    "show-transaction": cmd_show_transaction,
    "show-dispute": cmd_show_dispute,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    handler = COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    try:
        return handler(args)
    except (OSError, ValueError) as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Failed: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
