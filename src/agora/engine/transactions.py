"""Transaction lifecycle engine — jobs, gig orders, applications, milestones.

Every mutating operation follows the same shape:
1. Take the per-transaction lock from the gateway.
2. Re-read the transaction (and any child record) inside the lock.
3. Resolve the actor's role and validate against the state machine.
4. Mutate the detached copies and commit them with one event each.

Validation failures raise before anything is committed, so a rejected
call never leaves partial state behind. Commit conflicts surface as
ConflictRaceError and are never retried here.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from agora.config import MarketplacePolicy
from agora.engine.milestones import MilestoneStateMachine, validate_percent
from agora.engine.outbox import Outbox
from agora.engine.progress import overall_progress
from agora.engine.state_machine import TransactionStateMachine
from agora.errors import (
    InvalidTransitionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from agora.events.emitter import EventEmitter
from agora.identity.directory import IdentityProvider
from agora.identity.roles import resolve_transaction_role
from agora.models.identity import SYSTEM_ACTOR_ID, Role
from agora.models.transaction import (
    Application,
    ApplicationStatus,
    Milestone,
    MilestoneStatus,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from agora.persistence.event_log import EventKind, EventRecord
from agora.persistence.gateway import ChangeSet, PersistenceGateway

logger = logging.getLogger(__name__)


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def require_text(value: Optional[str], field_name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field_name} must not be blank", field_name=field_name)
    return str(value).strip()


def positive_amount(value: Any, field_name: str) -> Decimal:
    """Parse a money amount. Floats go through str() to avoid binary noise."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} is not a number: {value!r}", field_name=field_name)
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field_name} must be positive, got {value}", field_name=field_name)
    return amount


def _txn_lock(transaction_id: str) -> str:
    return f"transaction:{transaction_id}"


class TransactionEngine:
    """Owns the transaction lifecycle and its child records.

    Usage:
        engine = TransactionEngine(gateway, directory, emitter, policy)
        job = engine.post_job("client-1", "Logo", "Vector logo", "300")
        app = engine.apply_to_job("free-1", job.transaction_id, "I can", "250")
        engine.accept_application("client-1", app.application_id)
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        identity: IdentityProvider,
        emitter: Optional[EventEmitter] = None,
        policy: Optional[MarketplacePolicy] = None,
    ) -> None:
        self._gateway = gateway
        self._identity = identity
        self._policy = policy or MarketplacePolicy.defaults()
        self._outbox = Outbox(gateway, emitter)
        self._machine = TransactionStateMachine()

    @property
    def policy(self) -> MarketplacePolicy:
        return self._policy

    def drain_warnings(self) -> list[str]:
        return self._outbox.drain_warnings()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def post_job(
        self,
        client_id: str,
        title: str,
        description: str,
        budget: Any,
        now: Optional[datetime] = None,
    ) -> Transaction:
        """Post a job. It stays OPEN with no counterparty until an
        application is accepted."""
        client_id = self._require_actor(client_id, "client_id")
        txn = Transaction(
            transaction_id=f"txn-{uuid.uuid4().hex[:12]}",
            kind=TransactionKind.JOB,
            client_id=client_id,
            budget=positive_amount(budget, "budget"),
            title=require_text(title, "title"),
            description=description or "",
            status=TransactionStatus.OPEN,
            created_utc=_now(now),
            status_changed_utc=_now(now),
        )
        self._create(txn, now)
        return txn

    def place_order(
        self,
        buyer_id: str,
        seller_id: str,
        gig_id: str,
        price: Any,
        title: str = "",
        description: str = "",
        now: Optional[datetime] = None,
    ) -> Transaction:
        """Place a gig order. The seller is bound immediately; work starts
        once the payment collaborator confirms payment."""
        buyer_id = self._require_actor(buyer_id, "buyer_id")
        seller_id = self._require_actor(seller_id, "seller_id")
        if buyer_id == seller_id:
            raise ValidationError("Buyer cannot order their own gig", field_name="seller_id")
        txn = Transaction(
            transaction_id=f"txn-{uuid.uuid4().hex[:12]}",
            kind=TransactionKind.GIG_ORDER,
            client_id=buyer_id,
            counterparty_id=seller_id,
            budget=positive_amount(price, "price"),
            title=title or "",
            description=description or "",
            gig_id=require_text(gig_id, "gig_id"),
            status=TransactionStatus.OPEN,
            created_utc=_now(now),
            status_changed_utc=_now(now),
        )
        self._create(txn, now)
        return txn

    def _create(self, txn: Transaction, now: Optional[datetime]) -> None:
        event = self._outbox.event(
            EventKind.TRANSACTION_CREATED,
            txn.client_id,
            txn.transaction_id,
            txn.parties(),
            {"kind": txn.kind.value, "budget": str(txn.budget), "gig_id": txn.gig_id},
            _now(now),
        )
        self._outbox.commit(ChangeSet(transactions=[txn], events=[event]))
        logger.debug("Created %s %s", txn.kind.value, txn.transaction_id)

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    def confirm_payment(
        self,
        actor_id: str,
        transaction_id: str,
        payment_reference: str,
        now: Optional[datetime] = None,
    ) -> Transaction:
        """Record the payment collaborator's confirmation.

        Gig orders move OPEN → IN_PROGRESS. Jobs only record the
        reference. Re-delivery of the same reference is a no-op.
        """
        reference = require_text(payment_reference, "payment_reference")
        with self._gateway.lock(_txn_lock(transaction_id)):
            txn = self._load(transaction_id)
            role = resolve_transaction_role(actor_id, txn)
            if role != Role.SYSTEM:
                raise UnauthorizedError(
                    "Only the payment system can confirm payment",
                    actor_id=actor_id,
                    actor_role=role.value,
                    required_roles=(Role.SYSTEM.value,),
                )
            if txn.payment_reference == reference:
                return txn
            if txn.payment_reference is not None:
                raise InvalidTransitionError(
                    txn.status.value, "payment_confirmed",
                    f"payment already confirmed with {txn.payment_reference}",
                )

            at = _now(now)
            events = [
                self._outbox.event(
                    EventKind.PAYMENT_CONFIRMED, actor_id, transaction_id,
                    txn.parties(), {"payment_reference": reference}, at,
                ),
            ]
            if txn.kind == TransactionKind.GIG_ORDER:
                self._machine.validate(txn, TransactionStatus.IN_PROGRESS, role, actor_id)
                events.append(self._status_event(txn, TransactionStatus.IN_PROGRESS, actor_id, at))
                self._set_status(txn, TransactionStatus.IN_PROGRESS, at)
            elif txn.is_terminal:
                raise InvalidTransitionError(
                    txn.status.value, "payment_confirmed", "transaction is terminal",
                )
            txn.payment_reference = reference
            self._outbox.commit(ChangeSet(transactions=[txn], events=events))
            return txn

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def apply_to_job(
        self,
        freelancer_id: str,
        job_id: str,
        proposal: str,
        bid_amount: Any,
        timeline: str = "",
        now: Optional[datetime] = None,
    ) -> Application:
        freelancer_id = self._require_actor(freelancer_id, "freelancer_id")
        with self._gateway.lock(_txn_lock(job_id)):
            job = self._load(job_id)
            if job.kind != TransactionKind.JOB:
                raise ValidationError(f"{job_id} is not a job", field_name="job_id")
            if freelancer_id == job.client_id:
                raise UnauthorizedError(
                    "Clients cannot apply to their own job",
                    actor_id=freelancer_id,
                    actor_role=Role.CLIENT_OR_BUYER.value,
                    required_roles=(Role.UNRELATED.value,),
                )
            if job.status != TransactionStatus.OPEN or job.counterparty_id is not None:
                raise InvalidTransitionError(
                    job.status.value, "application", "job is not accepting applications",
                )
            text = require_text(proposal, "proposal")
            amount = positive_amount(bid_amount, "bid_amount")
            pending = self._gateway.list_applications(
                job_id=job_id, freelancer_id=freelancer_id, status=ApplicationStatus.PENDING,
            )
            if pending:
                raise ValidationError(
                    f"{freelancer_id} already has a pending application on {job_id}",
                    field_name="freelancer_id",
                )

            at = _now(now)
            app = Application(
                application_id=f"app-{uuid.uuid4().hex[:12]}",
                job_id=job_id,
                freelancer_id=freelancer_id,
                proposal=text,
                bid_amount=amount,
                timeline=timeline or "",
                submitted_utc=at,
            )
            event = self._outbox.event(
                EventKind.APPLICATION_SUBMITTED, freelancer_id, job_id,
                (job.client_id, freelancer_id),
                {"application_id": app.application_id, "bid_amount": str(amount)},
                at,
            )
            self._outbox.commit(ChangeSet(applications=[app], events=[event]))
            return app

    def accept_application(
        self,
        client_id: str,
        application_id: str,
        now: Optional[datetime] = None,
    ) -> Transaction:
        """Accept one application and reject every sibling still PENDING.

        The acceptance, the cascade, the counterparty binding and (by
        policy) the start of work commit together.
        """
        job_id = self._load_application(application_id).job_id
        with self._gateway.lock(_txn_lock(job_id)):
            app = self._load_application(application_id)
            job = self._load(job_id)
            self._require_client(client_id, job)
            if app.status != ApplicationStatus.PENDING:
                raise InvalidTransitionError(
                    app.status.value, ApplicationStatus.ACCEPTED.value,
                    "application already decided",
                )
            if job.status != TransactionStatus.OPEN or job.counterparty_id is not None:
                raise InvalidTransitionError(
                    job.status.value, ApplicationStatus.ACCEPTED.value,
                    "job already has a counterparty",
                )
            self._check_freeze(job, Role.CLIENT_OR_BUYER)

            at = _now(now)
            app.status = ApplicationStatus.ACCEPTED
            app.decided_utc = at
            job.counterparty_id = app.freelancer_id

            siblings = [
                s for s in self._gateway.list_applications(
                    job_id=job_id, status=ApplicationStatus.PENDING,
                )
                if s.application_id != application_id
            ]
            for sibling in siblings:
                sibling.status = ApplicationStatus.REJECTED
                sibling.decided_utc = at

            events = [self._application_event(app, job, client_id, at)]
            events.extend(self._application_event(s, job, client_id, at) for s in siblings)

            if self._policy.start_on_accept:
                self._machine.validate(job, TransactionStatus.IN_PROGRESS, Role.SYSTEM, SYSTEM_ACTOR_ID)
                events.append(
                    self._status_event(job, TransactionStatus.IN_PROGRESS, SYSTEM_ACTOR_ID, at)
                )
                self._set_status(job, TransactionStatus.IN_PROGRESS, at)

            self._outbox.commit(ChangeSet(
                transactions=[job], applications=[app, *siblings], events=events,
            ))
            logger.debug(
                "Accepted %s on %s, rejected %d siblings",
                application_id, job_id, len(siblings),
            )
            return job

    def reject_application(
        self,
        client_id: str,
        application_id: str,
        now: Optional[datetime] = None,
    ) -> Application:
        job_id = self._load_application(application_id).job_id
        with self._gateway.lock(_txn_lock(job_id)):
            app = self._load_application(application_id)
            job = self._load(job_id)
            self._require_client(client_id, job)
            if app.status != ApplicationStatus.PENDING:
                raise InvalidTransitionError(
                    app.status.value, ApplicationStatus.REJECTED.value,
                    "application already decided",
                )
            self._check_freeze(job, Role.CLIENT_OR_BUYER)
            at = _now(now)
            app.status = ApplicationStatus.REJECTED
            app.decided_utc = at
            event = self._application_event(app, job, client_id, at)
            self._outbox.commit(ChangeSet(applications=[app], events=[event]))
            return app

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def start_work(self, actor_id: str, transaction_id: str, now: Optional[datetime] = None) -> Transaction:
        return self._transition(
            actor_id, transaction_id, TransactionStatus.IN_PROGRESS,
            expected_from={TransactionStatus.OPEN}, now=now,
        )

    def request_completion(
        self, actor_id: str, transaction_id: str, now: Optional[datetime] = None,
    ) -> Transaction:
        return self._transition(
            actor_id, transaction_id, TransactionStatus.PENDING_COMPLETION, now=now,
        )

    def approve_completion(
        self, actor_id: str, transaction_id: str, now: Optional[datetime] = None,
    ) -> Transaction:
        return self._transition(actor_id, transaction_id, TransactionStatus.COMPLETED, now=now)

    def reject_completion(
        self, actor_id: str, transaction_id: str, now: Optional[datetime] = None,
    ) -> Transaction:
        """Send a completion request back for revision."""
        return self._transition(
            actor_id, transaction_id, TransactionStatus.IN_PROGRESS,
            expected_from={TransactionStatus.PENDING_COMPLETION}, now=now,
        )

    def cancel(self, actor_id: str, transaction_id: str, now: Optional[datetime] = None) -> Transaction:
        return self._transition(actor_id, transaction_id, TransactionStatus.CANCELLED, now=now)

    def _transition(
        self,
        actor_id: str,
        transaction_id: str,
        target: TransactionStatus,
        expected_from: Optional[set[TransactionStatus]] = None,
        now: Optional[datetime] = None,
    ) -> Transaction:
        with self._gateway.lock(_txn_lock(transaction_id)):
            txn = self._load(transaction_id)
            role = resolve_transaction_role(actor_id, txn)
            if role == Role.UNRELATED:
                # Reported before the edge check so outsiders learn nothing.
                self._machine.validate(txn, target, role, actor_id)
            if expected_from is not None and txn.status not in expected_from:
                raise InvalidTransitionError(
                    txn.status.value, target.value,
                    f"expected one of {sorted(s.value for s in expected_from)}",
                )
            self._machine.validate(txn, target, role, actor_id)
            self._check_freeze(txn, role)

            at = _now(now)
            event = self._status_event(txn, target, actor_id, at)
            self._set_status(txn, target, at)
            self._outbox.commit(ChangeSet(transactions=[txn], events=[event]))
            logger.debug("%s: %s by %s", transaction_id, target.value, actor_id)
            return txn

    def update_progress(
        self,
        actor_id: str,
        transaction_id: str,
        percent: int,
        now: Optional[datetime] = None,
    ) -> Transaction:
        """Record explicit progress reported by the performing party."""
        validate_percent(percent)
        with self._gateway.lock(_txn_lock(transaction_id)):
            txn = self._load(transaction_id)
            role = self._require_performer(actor_id, txn)
            if txn.status != TransactionStatus.IN_PROGRESS:
                raise InvalidTransitionError(
                    txn.status.value, txn.status.value,
                    "progress can only be reported while in progress",
                )
            self._check_freeze(txn, role)
            txn.progress_percent = percent
            at = _now(now)
            milestones = self._gateway.list_milestones(transaction_id)
            event = self._outbox.event(
                EventKind.TRANSACTION_PROGRESS_UPDATED, actor_id, transaction_id,
                txn.parties(),
                {
                    "progress_percent": percent,
                    "overall_progress": overall_progress(txn, milestones, self._policy),
                },
                at,
            )
            self._outbox.commit(ChangeSet(transactions=[txn], events=[event]))
            return txn

    # ------------------------------------------------------------------
    # Milestones
    # ------------------------------------------------------------------

    def add_milestone(
        self,
        actor_id: str,
        transaction_id: str,
        title: str,
        description: str = "",
        now: Optional[datetime] = None,
    ) -> Milestone:
        with self._gateway.lock(_txn_lock(transaction_id)):
            txn = self._load(transaction_id)
            role = self._require_performer(actor_id, txn)
            if txn.status not in (TransactionStatus.IN_PROGRESS, TransactionStatus.PENDING_COMPLETION):
                raise InvalidTransitionError(
                    txn.status.value, MilestoneStatus.PENDING.value,
                    "milestones can only be added to work in progress",
                )
            text = require_text(title, "title")
            self._check_freeze(txn, role)
            at = _now(now)
            milestone = Milestone(
                milestone_id=f"ms-{uuid.uuid4().hex[:12]}",
                transaction_id=transaction_id,
                title=text,
                description=description or "",
                created_by=actor_id,
                created_utc=at,
                updated_utc=at,
            )
            event = self._outbox.event(
                EventKind.MILESTONE_ADDED, actor_id, transaction_id, txn.parties(),
                {"milestone_id": milestone.milestone_id, "title": text},
                at,
            )
            self._outbox.commit(ChangeSet(milestones=[milestone], events=[event]))
            return milestone

    def update_milestone_status(
        self,
        actor_id: str,
        milestone_id: str,
        target: MilestoneStatus,
        now: Optional[datetime] = None,
    ) -> Milestone:
        return self.update_milestone(actor_id, milestone_id, target=target, now=now)

    def update_milestone_progress(
        self,
        actor_id: str,
        milestone_id: str,
        percent: int,
        now: Optional[datetime] = None,
    ) -> Milestone:
        return self.update_milestone(actor_id, milestone_id, percent=percent, now=now)

    def update_milestone(
        self,
        actor_id: str,
        milestone_id: str,
        target: Optional[MilestoneStatus] = None,
        percent: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Milestone:
        """Change a milestone's progress and/or status in one commit.

        Both changes are checked before either is applied, so a rejected
        status leaves the progress untouched. Progress belongs to the
        performing party; any party may move the status within the
        kind's milestone policy.
        """
        if target is None and percent is None:
            raise ValidationError("Give a status or a progress value", field_name="status")
        if percent is not None:
            validate_percent(percent)
        transaction_id = self._load_milestone(milestone_id).transaction_id
        with self._gateway.lock(_txn_lock(transaction_id)):
            milestone = self._load_milestone(milestone_id)
            txn = self._load(transaction_id)
            if percent is not None:
                role = self._require_performer(actor_id, txn)
                if txn.is_terminal or milestone.status == MilestoneStatus.COMPLETED:
                    raise InvalidTransitionError(
                        milestone.status.value, milestone.status.value,
                        "progress is fixed once the milestone or transaction is finished",
                    )
            else:
                role = self._require_party(actor_id, txn)

            machine = MilestoneStateMachine(self._policy.milestone_policy(txn.kind))
            if target is not None:
                if txn.is_terminal:
                    raise InvalidTransitionError(
                        milestone.status.value, target.value,
                        f"transaction is {txn.status.value}",
                    )
                try:
                    machine.validate(milestone, target, role)
                except UnauthorizedError as e:
                    e.context["actor_id"] = actor_id
                    raise
            self._check_freeze(txn, role)

            at = _now(now)
            changes: dict[str, Any] = {}
            if percent is not None:
                milestone.progress_percent = percent
                changes["progress_percent"] = percent
            if target is not None:
                changes.update({"from": milestone.status.value, "to": target.value})
                machine.apply(milestone, target)
            milestone.updated_utc = at
            event = self._milestone_event(milestone, txn, actor_id, at, changes)
            self._outbox.commit(ChangeSet(milestones=[milestone], events=[event]))
            return milestone

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_transaction(self, actor_id: str, transaction_id: str) -> Transaction:
        txn = self._load(transaction_id)
        self._require_viewer(actor_id, txn)
        return txn

    def list_transactions_for_actor(
        self,
        actor_id: str,
        role: Optional[Role] = None,
        status: Optional[TransactionStatus] = None,
    ) -> list[Transaction]:
        txns = self._gateway.list_transactions(party_id=actor_id, status=status)
        if role is not None:
            txns = [t for t in txns if resolve_transaction_role(actor_id, t) == role]
        return sorted(txns, key=lambda t: (t.created_utc is None, t.created_utc))

    def list_applications(self, actor_id: str, job_id: str) -> list[Application]:
        """Clients see every application on their job; anyone else only
        their own."""
        job = self._load(job_id)
        if resolve_transaction_role(actor_id, job) in (Role.CLIENT_OR_BUYER, Role.SYSTEM):
            return self._gateway.list_applications(job_id=job_id)
        return self._gateway.list_applications(job_id=job_id, freelancer_id=actor_id)

    def list_milestones(self, actor_id: str, transaction_id: str) -> list[Milestone]:
        txn = self._load(transaction_id)
        self._require_viewer(actor_id, txn)
        milestones = self._gateway.list_milestones(transaction_id)
        return sorted(milestones, key=lambda m: (m.created_utc is None, m.created_utc))

    def overall_progress(self, actor_id: str, transaction_id: str) -> int:
        txn = self._load(transaction_id)
        self._require_viewer(actor_id, txn)
        return overall_progress(txn, self._gateway.list_milestones(transaction_id), self._policy)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _load(self, transaction_id: str) -> Transaction:
        txn = self._gateway.get_transaction(transaction_id)
        if txn is None:
            raise NotFoundError("transaction", transaction_id)
        return txn

    def _load_application(self, application_id: str) -> Application:
        app = self._gateway.get_application(application_id)
        if app is None:
            raise NotFoundError("application", application_id)
        return app

    def _load_milestone(self, milestone_id: str) -> Milestone:
        milestone = self._gateway.get_milestone(milestone_id)
        if milestone is None:
            raise NotFoundError("milestone", milestone_id)
        return milestone

    @staticmethod
    def _require_actor(actor_id: Optional[str], field_name: str) -> str:
        actor_id = require_text(actor_id, field_name)
        if actor_id == SYSTEM_ACTOR_ID:
            raise ValidationError(f"{field_name} cannot be the system actor", field_name=field_name)
        return actor_id

    @staticmethod
    def _require_party(actor_id: str, txn: Transaction) -> Role:
        role = resolve_transaction_role(actor_id, txn)
        if role not in (Role.CLIENT_OR_BUYER, Role.FREELANCER_OR_SELLER):
            raise UnauthorizedError(
                f"Actor {actor_id} is not a party to {txn.transaction_id}",
                actor_id=actor_id,
                actor_role=role.value,
                required_roles=(Role.CLIENT_OR_BUYER.value, Role.FREELANCER_OR_SELLER.value),
            )
        return role

    def _require_client(self, actor_id: str, txn: Transaction) -> Role:
        role = resolve_transaction_role(actor_id, txn)
        if role != Role.CLIENT_OR_BUYER:
            raise UnauthorizedError(
                f"Only the client of {txn.transaction_id} can decide applications",
                actor_id=actor_id,
                actor_role=role.value,
                required_roles=(Role.CLIENT_OR_BUYER.value,),
            )
        return role

    def _require_performer(self, actor_id: str, txn: Transaction) -> Role:
        role = resolve_transaction_role(actor_id, txn)
        if role != Role.FREELANCER_OR_SELLER:
            raise UnauthorizedError(
                f"Only the performing party of {txn.transaction_id} can do this",
                actor_id=actor_id,
                actor_role=role.value,
                required_roles=(Role.FREELANCER_OR_SELLER.value,),
            )
        return role

    def _require_viewer(self, actor_id: str, txn: Transaction) -> None:
        """Parties, the system and mediators may view any transaction.
        Open jobs without a counterparty are public."""
        role = resolve_transaction_role(actor_id, txn)
        if role != Role.UNRELATED:
            return
        if txn.kind == TransactionKind.JOB and txn.status == TransactionStatus.OPEN:
            return
        identity = self._identity.get(actor_id)
        if identity is not None and identity.is_mediator:
            return
        raise UnauthorizedError(
            f"Actor {actor_id} cannot view {txn.transaction_id}",
            actor_id=actor_id,
            actor_role=role.value,
            required_roles=(
                Role.CLIENT_OR_BUYER.value, Role.FREELANCER_OR_SELLER.value, Role.MEDIATOR.value,
            ),
        )

    def _check_freeze(self, txn: Transaction, role: Role) -> None:
        if not self._policy.freeze_on_open_dispute or role == Role.SYSTEM:
            return
        dispute = self._gateway.find_open_dispute(txn.transaction_id)
        if dispute is not None:
            raise InvalidTransitionError(
                txn.status.value, txn.status.value,
                f"transaction is frozen by open dispute {dispute.dispute_id}",
            )

    @staticmethod
    def _set_status(txn: Transaction, target: TransactionStatus, at: datetime) -> None:
        txn.status = target
        txn.status_changed_utc = at

    def _status_event(
        self, txn: Transaction, target: TransactionStatus, actor_id: str, at: datetime,
    ) -> EventRecord:
        return self._outbox.event(
            EventKind.TRANSACTION_STATUS_CHANGED, actor_id, txn.transaction_id,
            txn.parties(),
            {"kind": txn.kind.value, "from": txn.status.value, "to": target.value},
            at,
        )

    def _application_event(
        self, app: Application, job: Transaction, actor_id: str, at: datetime,
    ) -> EventRecord:
        return self._outbox.event(
            EventKind.APPLICATION_STATUS_CHANGED, actor_id, job.transaction_id,
            (job.client_id, app.freelancer_id),
            {"application_id": app.application_id, "status": app.status.value},
            at,
        )

    def _milestone_event(
        self,
        milestone: Milestone,
        txn: Transaction,
        actor_id: str,
        at: datetime,
        changes: dict[str, Any],
    ) -> EventRecord:
        payload = {"milestone_id": milestone.milestone_id, "status": milestone.status.value}
        payload.update(changes)
        return self._outbox.event(
            EventKind.MILESTONE_UPDATED, actor_id, txn.transaction_id, txn.parties(), payload, at,
        )

