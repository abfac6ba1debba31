"""Agora service — the action surface over both engines.

This is the primary interface for programmatic access to the
marketplace core. It orchestrates:
- Transaction lifecycle (jobs, gig orders, applications, milestones)
- Dispute lifecycle (mediation, evidence, thread, resolution)
- Identity registration (actors and the mediator capability)

Every action returns a ServiceResult. Engines raise typed errors; this
layer is the one place they are recovered, logged and mapped to an
error kind plus context the caller can render. Storage faults are
wrapped as internal errors without leaking their details.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, TypeVar

from agora.config import MarketplacePolicy
from agora.disputes.engine import DisputeDetail, DisputeEngine
from agora.engine.progress import overall_progress
from agora.engine.transactions import TransactionEngine
from agora.errors import InternalError, MarketplaceError, ValidationError
from agora.events.emitter import EventEmitter
from agora.identity.directory import ActorDirectory
from agora.models.dispute import Dispute, DisputeStatus, DisputeView
from agora.models.identity import ActorIdentity, Role
from agora.models.transaction import (
    ApplicationStatus,
    MilestoneStatus,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from agora.persistence.gateway import PersistenceGateway
from agora.persistence.state_store import (
    application_to_dict,
    dispute_to_dict,
    evidence_to_dict,
    message_to_dict,
    milestone_to_dict,
    transaction_to_dict,
)

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=enum.Enum)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)


def parse_enum(enum_cls: type[E], value: Any, field_name: str) -> E:
    """Accept an enum member, its value, or its name (any case)."""
    if isinstance(value, enum_cls):
        return value
    text = str(value).strip()
    for member in enum_cls:
        if text.lower() in (str(member.value).lower(), member.name.lower()):
            return member
    choices = ", ".join(str(m.value) for m in enum_cls)
    raise ValidationError(
        f"{field_name} must be one of [{choices}], got {value!r}", field_name=field_name,
    )


class MarketplaceService:
    """Unified marketplace facade.

    Usage:
        service = MarketplaceService(InMemoryGateway(), ActorDirectory())
        service.register_actor("client-1")
        result = service.post_job("client-1", "Logo", "Vector logo", "300")
        job_id = result.data["transaction"]["transaction_id"]
        result = service.apply_to_job("free-1", job_id, "Proposal", "250")
        result = service.accept_application("client-1", result.data["application"]["application_id"])

    Persistence:
        service = MarketplaceService(FileGateway(path), ActorDirectory(actors_path))
        # State is committed on each mutation and loaded on construction.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        directory: ActorDirectory,
        emitter: Optional[EventEmitter] = None,
        policy: Optional[MarketplacePolicy] = None,
    ) -> None:
        self._gateway = gateway
        self._directory = directory
        self._policy = policy or MarketplacePolicy.defaults()
        self._transactions = TransactionEngine(gateway, directory, emitter, self._policy)
        self._disputes = DisputeEngine(gateway, directory, emitter)

    @property
    def policy(self) -> MarketplacePolicy:
        return self._policy

    @property
    def transactions(self) -> TransactionEngine:
        return self._transactions

    @property
    def disputes(self) -> DisputeEngine:
        return self._disputes

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def register_actor(
        self,
        actor_id: str,
        display_name: str = "",
        is_mediator: bool = False,
    ) -> ServiceResult:
        def _register() -> dict[str, Any]:
            try:
                identity = self._directory.register(ActorIdentity(
                    actor_id=actor_id or "",
                    display_name=display_name,
                    is_mediator=is_mediator,
                ))
            except ValueError as e:
                raise ValidationError(str(e), field_name="actor_id") from e
            return {"actor": {
                "actor_id": identity.actor_id,
                "display_name": identity.display_name,
                "is_mediator": identity.is_mediator,
            }}
        return self._run("register_actor", _register)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def post_job(
        self,
        client_id: str,
        title: str,
        description: str,
        budget: Any,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run("post_job", lambda: self._transaction_data(
            self._transactions.post_job(client_id, title, description, budget, now=now),
        ))

    def place_order(
        self,
        buyer_id: str,
        seller_id: str,
        gig_id: str,
        price: Any,
        title: str = "",
        description: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run("place_order", lambda: self._transaction_data(
            self._transactions.place_order(
                buyer_id, seller_id, gig_id, price, title, description, now=now,
            ),
        ))

    def confirm_payment(
        self,
        actor_id: str,
        transaction_id: str,
        payment_reference: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run("confirm_payment", lambda: self._transaction_data(
            self._transactions.confirm_payment(actor_id, transaction_id, payment_reference, now=now),
        ))

    def apply_to_job(
        self,
        freelancer_id: str,
        job_id: str,
        proposal: str,
        bid_amount: Any,
        timeline: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _apply() -> dict[str, Any]:
            app = self._transactions.apply_to_job(
                freelancer_id, job_id, proposal, bid_amount, timeline, now=now,
            )
            return {"application": application_to_dict(app)}
        return self._run("apply_to_job", _apply)

    def accept_application(
        self, client_id: str, application_id: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _accept() -> dict[str, Any]:
            job = self._transactions.accept_application(client_id, application_id, now=now)
            data = self._transaction_data(job)
            data["applications"] = [
                application_to_dict(a)
                for a in self._gateway.list_applications(job_id=job.transaction_id)
            ]
            return data
        return self._run("accept_application", _accept)

    def reject_application(
        self, client_id: str, application_id: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run("reject_application", lambda: {
            "application": application_to_dict(
                self._transactions.reject_application(client_id, application_id, now=now),
            ),
        })

    def start_work(self, actor_id: str, transaction_id: str, now: Optional[datetime] = None) -> ServiceResult:
        return self._run("start_work", lambda: self._transaction_data(
            self._transactions.start_work(actor_id, transaction_id, now=now),
        ))

    def request_completion(
        self, actor_id: str, transaction_id: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run("request_completion", lambda: self._transaction_data(
            self._transactions.request_completion(actor_id, transaction_id, now=now),
        ))

    def approve_completion(
        self, actor_id: str, transaction_id: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run("approve_completion", lambda: self._transaction_data(
            self._transactions.approve_completion(actor_id, transaction_id, now=now),
        ))

    def reject_completion(
        self, actor_id: str, transaction_id: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run("reject_completion", lambda: self._transaction_data(
            self._transactions.reject_completion(actor_id, transaction_id, now=now),
        ))

    def cancel(self, actor_id: str, transaction_id: str, now: Optional[datetime] = None) -> ServiceResult:
        return self._run("cancel", lambda: self._transaction_data(
            self._transactions.cancel(actor_id, transaction_id, now=now),
        ))

    def update_progress(
        self, actor_id: str, transaction_id: str, percent: int, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run("update_progress", lambda: self._transaction_data(
            self._transactions.update_progress(actor_id, transaction_id, percent, now=now),
        ))

    def add_milestone(
        self,
        actor_id: str,
        transaction_id: str,
        title: str,
        description: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run("add_milestone", lambda: {
            "milestone": milestone_to_dict(
                self._transactions.add_milestone(actor_id, transaction_id, title, description, now=now),
            ),
        })

    def update_milestone_status(
        self, actor_id: str, milestone_id: str, status: Any, now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _update() -> dict[str, Any]:
            target = parse_enum(MilestoneStatus, status, "status")
            milestone = self._transactions.update_milestone_status(
                actor_id, milestone_id, target, now=now,
            )
            return self._milestone_data(milestone.transaction_id, milestone_to_dict(milestone))
        return self._run("update_milestone_status", _update)

    def update_milestone(
        self,
        actor_id: str,
        milestone_id: str,
        status: Any = None,
        percent: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Status and progress together; nothing is stored if either is refused."""
        def _update() -> dict[str, Any]:
            target = parse_enum(MilestoneStatus, status, "status") if status is not None else None
            milestone = self._transactions.update_milestone(
                actor_id, milestone_id, target=target, percent=percent, now=now,
            )
            return self._milestone_data(milestone.transaction_id, milestone_to_dict(milestone))
        return self._run("update_milestone", _update)

    def update_milestone_progress(
        self, actor_id: str, milestone_id: str, percent: int, now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _update() -> dict[str, Any]:
            milestone = self._transactions.update_milestone_progress(
                actor_id, milestone_id, percent, now=now,
            )
            return self._milestone_data(milestone.transaction_id, milestone_to_dict(milestone))
        return self._run("update_milestone_progress", _update)

    def get_transaction(self, actor_id: str, transaction_id: str) -> ServiceResult:
        def _get() -> dict[str, Any]:
            txn = self._transactions.get_transaction(actor_id, transaction_id)
            data = self._transaction_data(txn)
            data["milestones"] = [
                milestone_to_dict(m)
                for m in self._transactions.list_milestones(actor_id, transaction_id)
            ]
            data["applications"] = [
                application_to_dict(a)
                for a in self._transactions.list_applications(actor_id, transaction_id)
            ]
            return data
        return self._run("get_transaction", _get)

    def list_transactions(
        self, actor_id: str, role: Any = None, status: Any = None,
    ) -> ServiceResult:
        def _list() -> dict[str, Any]:
            txns = self._transactions.list_transactions_for_actor(
                actor_id,
                role=parse_enum(Role, role, "role") if role is not None else None,
                status=parse_enum(TransactionStatus, status, "status") if status is not None else None,
            )
            return {"transactions": [self._transaction_data(t)["transaction"] for t in txns]}
        return self._run("list_transactions", _list)

    def list_applications(self, actor_id: str, job_id: str, status: Any = None) -> ServiceResult:
        def _list() -> dict[str, Any]:
            apps = self._transactions.list_applications(actor_id, job_id)
            if status is not None:
                wanted = parse_enum(ApplicationStatus, status, "status")
                apps = [a for a in apps if a.status == wanted]
            return {"applications": [application_to_dict(a) for a in apps]}
        return self._run("list_applications", _list)

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def open_dispute(
        self,
        actor_id: str,
        transaction_id: str,
        reason: str,
        description: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run("open_dispute", lambda: self._dispute_data(
            actor_id,
            self._disputes.open_dispute(actor_id, transaction_id, reason, description, now=now),
        ))

    def assign_mediator(
        self,
        actor_id: str,
        dispute_id: str,
        mediator_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run("assign_mediator", lambda: self._dispute_data(
            actor_id,
            self._disputes.assign_mediator(actor_id, dispute_id, mediator_id, now=now),
        ))

    def update_dispute_status(
        self, actor_id: str, dispute_id: str, status: Any, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run("update_dispute_status", lambda: self._dispute_data(
            actor_id,
            self._disputes.update_status(
                actor_id, dispute_id, parse_enum(DisputeStatus, status, "status"), now=now,
            ),
        ))

    def resolve_dispute(
        self, actor_id: str, dispute_id: str, resolution: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run("resolve_dispute", lambda: self._dispute_data(
            actor_id,
            self._disputes.resolve(actor_id, dispute_id, resolution, now=now),
        ))

    def upload_evidence(
        self,
        actor_id: str,
        dispute_id: str,
        file_refs: Iterable[str],
        note: str = "",
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run("upload_evidence", lambda: {
            "evidence": evidence_to_dict(
                self._disputes.upload_evidence(actor_id, dispute_id, file_refs, note, now=now),
            ),
        })

    def post_message(
        self, actor_id: str, dispute_id: str, text: str, now: Optional[datetime] = None,
    ) -> ServiceResult:
        return self._run("post_message", lambda: {
            "message": message_to_dict(
                self._disputes.post_message(actor_id, dispute_id, text, now=now),
            ),
        })

    def list_disputes(
        self, actor_id: str, role_filter: Any = None, view: Any = DisputeView.ALL,
    ) -> ServiceResult:
        def _list() -> dict[str, Any]:
            disputes = self._disputes.list_disputes_for_actor(
                actor_id,
                role_filter=parse_enum(Role, role_filter, "role") if role_filter is not None else None,
                view=parse_enum(DisputeView, view, "view"),
            )
            return {"disputes": [dispute_to_dict(d) for d in disputes]}
        return self._run("list_disputes", _list)

    def get_dispute(self, actor_id: str, dispute_id: str) -> ServiceResult:
        return self._run("get_dispute", lambda: self._detail_data(
            self._disputes.get_dispute(actor_id, dispute_id),
        ))

    def list_messages(self, actor_id: str, dispute_id: str) -> ServiceResult:
        return self._run("list_messages", lambda: {
            "messages": [
                message_to_dict(m) for m in self._disputes.list_messages(actor_id, dispute_id)
            ],
        })

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Counts by status for operator output."""
        txns = self._gateway.list_transactions()
        disputes = self._gateway.list_disputes()
        return {
            "actors": self._directory.count,
            "mediators": len(self._directory.mediators()),
            "transactions": {
                s.value: sum(1 for t in txns if t.status == s) for s in TransactionStatus
            },
            "disputes": {
                s.value: sum(1 for d in disputes if d.status == s) for s in DisputeStatus
            },
            "events": len(self._gateway.events()),
            "policy": self._policy.to_dict(),
        }

    def check_invariants(self) -> list[str]:
        """Check policy and stored-state invariants. Returns errors (empty = OK)."""
        errors = list(self._policy.validate())
        open_disputes: dict[str, list[Dispute]] = {}
        for dispute in self._gateway.list_disputes():
            if dispute.is_open:
                open_disputes.setdefault(dispute.transaction_id, []).append(dispute)
            if self._gateway.get_transaction(dispute.transaction_id) is None:
                errors.append(f"{dispute.dispute_id}: missing transaction {dispute.transaction_id}")
        for txn_id, items in open_disputes.items():
            if len(items) > 1:
                errors.append(f"{txn_id}: {len(items)} disputes are not closed")

        for txn in self._gateway.list_transactions():
            unbound_ok = (TransactionStatus.OPEN, TransactionStatus.CANCELLED)
            if txn.status not in unbound_ok and txn.counterparty_id is None:
                errors.append(f"{txn.transaction_id}: {txn.status.value} without counterparty")
            started = txn.status not in unbound_ok
            if started and txn.kind == TransactionKind.GIG_ORDER and txn.payment_reference is None:
                errors.append(f"{txn.transaction_id}: gig order {txn.status.value} without payment")
            accepted = self._gateway.list_applications(
                job_id=txn.transaction_id, status=ApplicationStatus.ACCEPTED,
            )
            if len(accepted) > 1:
                errors.append(f"{txn.transaction_id}: {len(accepted)} accepted applications")
            if accepted and accepted[0].freelancer_id != txn.counterparty_id:
                errors.append(
                    f"{txn.transaction_id}: counterparty does not match accepted application"
                )
        return errors

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run(self, action: str, operation: Callable[[], dict[str, Any]]) -> ServiceResult:
        try:
            data = operation()
        except MarketplaceError as e:
            self._drain_warnings()
            logger.info("%s rejected (%s): %s", action, e.kind.value, e.message)
            return ServiceResult(
                success=False,
                errors=[e.message],
                error_kind=e.kind.value,
                context=dict(e.context),
            )
        except OSError:
            self._drain_warnings()
            logger.exception("%s failed on storage", action)
            err = InternalError(f"Storage failure during {action}")
            return ServiceResult(success=False, errors=[err.message], error_kind=err.kind.value)

        warnings = self._drain_warnings()
        if warnings:
            data["warning"] = warnings[0]
        return ServiceResult(success=True, data=data)

    def _drain_warnings(self) -> list[str]:
        return self._transactions.drain_warnings() + self._disputes.drain_warnings()

    def _transaction_data(self, txn: Transaction) -> dict[str, Any]:
        record = transaction_to_dict(txn)
        milestones = self._gateway.list_milestones(txn.transaction_id)
        record["milestones"] = [milestone_to_dict(m) for m in milestones]
        record["overall_progress"] = overall_progress(
            txn, milestones, self._policy,
        )
        return {"transaction": record}

    def _milestone_data(self, transaction_id: str, milestone: dict[str, Any]) -> dict[str, Any]:
        data: dict[str, Any] = {"milestone": milestone}
        txn = self._gateway.get_transaction(transaction_id)
        if txn is not None:
            data["overall_progress"] = overall_progress(
                txn, self._gateway.list_milestones(transaction_id), self._policy,
            )
        return data

    def _dispute_data(self, actor_id: str, dispute: Dispute) -> dict[str, Any]:
        """The dispute with its evidence and thread, as the acting actor sees them."""
        return self._detail_data(self._disputes.get_dispute(actor_id, dispute.dispute_id))

    @staticmethod
    def _detail_data(detail: DisputeDetail) -> dict[str, Any]:
        data: dict[str, Any] = {
            "dispute": dispute_to_dict(detail.dispute),
            "transaction": transaction_to_dict(detail.transaction),
            "parties": detail.parties,
            "evidence": [evidence_to_dict(e) for e in detail.evidence],
            "viewer_role": detail.viewer_role.value,
        }
        if detail.messages is not None:
            data["messages"] = [message_to_dict(m) for m in detail.messages]
        return data
