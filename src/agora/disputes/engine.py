"""Dispute lifecycle engine — escalation, mediation, evidence, resolution.

A dispute sits beside its transaction and never mutates it. The
resolution text a mediator records is advisory: money movement is the
payment collaborator's business.

Every mutation takes the per-dispute lock, re-reads the dispute and
checks CLOSED first. A closed dispute accepts nothing, whoever asks.
Opening a dispute takes a per-transaction ledger lock instead, which
serialises the "at most one non-CLOSED dispute" check with its commit.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from agora.disputes.permissions import settable_statuses
from agora.engine.outbox import Outbox
from agora.engine.transactions import require_text
from agora.errors import (
    AlreadyDisputedError,
    DisputeClosedError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from agora.events.emitter import EventEmitter
from agora.identity.directory import IdentityProvider
from agora.identity.roles import (
    describe_parties,
    is_assigned_mediator,
    is_party,
    resolve_dispute_role,
    resolve_transaction_role,
)
from agora.models.dispute import (
    Dispute,
    DisputeStatus,
    DisputeView,
    Evidence,
    MediationMessage,
)
from agora.models.identity import Role
from agora.models.transaction import Transaction
from agora.persistence.event_log import EventKind
from agora.persistence.gateway import ChangeSet, PersistenceGateway

logger = logging.getLogger(__name__)

_PARTY_ROLES = (Role.CLIENT_OR_BUYER.value, Role.FREELANCER_OR_SELLER.value)


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


@dataclass
class DisputeDetail:
    """A dispute as seen by one actor.

    messages is None when the viewer is not allowed to read the thread.
    """
    dispute: Dispute
    transaction: Transaction
    parties: list[dict[str, str]]
    evidence: list[Evidence]
    messages: Optional[list[MediationMessage]]
    viewer_role: Role


class DisputeEngine:
    """Owns disputes, their evidence and the mediation thread.

    Usage:
        engine = DisputeEngine(gateway, directory, emitter)
        dispute = engine.open_dispute("buyer-1", txn_id, "Late delivery")
        engine.assign_mediator("med-1", dispute.dispute_id)
        engine.resolve("med-1", dispute.dispute_id, "Partial refund advised")
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        identity: IdentityProvider,
        emitter: Optional[EventEmitter] = None,
    ) -> None:
        self._gateway = gateway
        self._identity = identity
        self._outbox = Outbox(gateway, emitter)

    def drain_warnings(self) -> list[str]:
        return self._outbox.drain_warnings()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def open_dispute(
        self,
        actor_id: str,
        transaction_id: str,
        reason: str,
        description: str = "",
        now: Optional[datetime] = None,
    ) -> Dispute:
        """Open a dispute on a transaction the actor is a party to.

        Raises AlreadyDisputedError if a non-CLOSED dispute exists.
        """
        with self._gateway.lock(f"dispute_ledger:{transaction_id}"):
            txn = self._load_transaction(transaction_id)
            role = resolve_transaction_role(actor_id, txn)
            if not is_party(role):
                raise UnauthorizedError(
                    f"Only parties to {transaction_id} can open a dispute",
                    actor_id=actor_id,
                    actor_role=role.value,
                    required_roles=_PARTY_ROLES,
                )
            text = require_text(reason, "reason")
            if txn.counterparty_id is None:
                raise ValidationError(
                    f"{transaction_id} has no counterparty to dispute with",
                    field_name="transaction_id",
                )
            existing = self._gateway.find_open_dispute(transaction_id)
            if existing is not None:
                raise AlreadyDisputedError(
                    transaction_id, existing.dispute_id, existing.status.value,
                )

            at = _now(now)
            dispute = Dispute(
                dispute_id=f"dsp-{uuid.uuid4().hex[:12]}",
                transaction_id=transaction_id,
                initiator_id=actor_id,
                reason=text,
                description=description or "",
                created_utc=at,
                updated_utc=at,
            )
            event = self._event(
                EventKind.DISPUTE_OPENED, actor_id, dispute, txn,
                {"transaction_id": transaction_id, "reason": text}, at,
            )
            self._outbox.commit(ChangeSet(disputes=[dispute], events=[event]))
            logger.info("Dispute %s opened on %s by %s", dispute.dispute_id, transaction_id, actor_id)
            return dispute

    def assign_mediator(
        self,
        actor_id: str,
        dispute_id: str,
        mediator_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dispute:
        """Assign a mediator. Defaults to the calling mediator.

        Re-assigning the current mediator is a no-op. Only the current
        mediator may hand the dispute to someone else.
        """
        assignee = (mediator_id or actor_id).strip()
        with self._gateway.lock(_dispute_lock(dispute_id)):
            dispute = self._load_open(dispute_id)
            txn = self._load_transaction(dispute.transaction_id)

            caller_role = resolve_dispute_role(actor_id, dispute, txn, self._identity.get(actor_id))
            if caller_role != Role.MEDIATOR or not self._is_flagged(actor_id):
                raise UnauthorizedError(
                    "Only mediators can assign mediators",
                    actor_id=actor_id,
                    actor_role=caller_role.value,
                    required_roles=(Role.MEDIATOR.value,),
                )
            if not self._is_flagged(assignee):
                raise ValidationError(
                    f"{assignee} is not a mediator", field_name="mediator_id",
                )
            if resolve_transaction_role(assignee, txn) != Role.UNRELATED:
                raise ValidationError(
                    f"{assignee} is a party to {txn.transaction_id} and cannot mediate it",
                    field_name="mediator_id",
                )
            if dispute.mediator_id == assignee:
                return dispute
            if dispute.mediator_id is not None and dispute.mediator_id != actor_id:
                raise UnauthorizedError(
                    f"Dispute {dispute_id} is already assigned to {dispute.mediator_id}",
                    actor_id=actor_id,
                    actor_role=caller_role.value,
                    required_roles=(Role.MEDIATOR.value,),
                    assigned_mediator=dispute.mediator_id,
                )

            at = _now(now)
            previous = dispute.mediator_id
            dispute.mediator_id = assignee
            dispute.updated_utc = at
            event = self._event(
                EventKind.DISPUTE_MEDIATOR_ASSIGNED, actor_id, dispute, txn,
                {"mediator_id": assignee, "previous_mediator_id": previous}, at,
                extra_recipients=(previous,),
            )
            self._outbox.commit(ChangeSet(disputes=[dispute], events=[event]))
            return dispute

    def update_status(
        self,
        actor_id: str,
        dispute_id: str,
        target: DisputeStatus,
        now: Optional[datetime] = None,
    ) -> Dispute:
        with self._gateway.lock(_dispute_lock(dispute_id)):
            dispute = self._load_open(dispute_id)
            txn = self._load_transaction(dispute.transaction_id)
            role = resolve_dispute_role(actor_id, dispute, txn, self._identity.get(actor_id))
            allowed = settable_statuses(
                role,
                is_assigned_mediator(actor_id, dispute),
                dispute.mediator_id is not None,
            )
            if target not in allowed:
                raise UnauthorizedError(
                    f"Role {role.value} cannot set dispute {dispute_id} to {target.value}",
                    actor_id=actor_id,
                    actor_role=role.value,
                    required_roles=self._roles_for(target, dispute),
                    allowed_statuses=sorted(s.value for s in allowed),
                )
            if dispute.status == target:
                return dispute

            at = _now(now)
            previous = dispute.status
            dispute.status = target
            dispute.updated_utc = at
            if target == DisputeStatus.RESOLVED:
                dispute.resolved_utc = at
            elif target == DisputeStatus.CLOSED:
                dispute.closed_utc = at
            event = self._event(
                EventKind.DISPUTE_STATUS_CHANGED, actor_id, dispute, txn,
                {"from": previous.value, "to": target.value}, at,
            )
            self._outbox.commit(ChangeSet(disputes=[dispute], events=[event]))
            return dispute

    def resolve(
        self,
        actor_id: str,
        dispute_id: str,
        resolution: str,
        now: Optional[datetime] = None,
    ) -> Dispute:
        """Record the mediator's resolution and mark the dispute RESOLVED.

        The transaction is left untouched.
        """
        with self._gateway.lock(_dispute_lock(dispute_id)):
            dispute = self._load_open(dispute_id)
            txn = self._load_transaction(dispute.transaction_id)
            if not is_assigned_mediator(actor_id, dispute):
                role = resolve_dispute_role(actor_id, dispute, txn, self._identity.get(actor_id))
                raise UnauthorizedError(
                    f"Only the assigned mediator can resolve {dispute_id}",
                    actor_id=actor_id,
                    actor_role=role.value,
                    required_roles=(Role.MEDIATOR.value,),
                )
            text = require_text(resolution, "resolution")

            at = _now(now)
            previous = dispute.status
            dispute.resolution = text
            dispute.status = DisputeStatus.RESOLVED
            dispute.resolved_utc = at
            dispute.updated_utc = at
            event = self._event(
                EventKind.DISPUTE_RESOLVED, actor_id, dispute, txn,
                {"from": previous.value, "resolution": text}, at,
            )
            self._outbox.commit(ChangeSet(disputes=[dispute], events=[event]))
            logger.info("Dispute %s resolved by %s", dispute_id, actor_id)
            return dispute

    def upload_evidence(
        self,
        actor_id: str,
        dispute_id: str,
        file_refs: Iterable[str],
        note: str = "",
        now: Optional[datetime] = None,
    ) -> Evidence:
        """Attach opaque blob references. Parties only."""
        with self._gateway.lock(_dispute_lock(dispute_id)):
            dispute = self._load_open(dispute_id)
            txn = self._load_transaction(dispute.transaction_id)
            role = resolve_transaction_role(actor_id, txn)
            if not is_party(role):
                raise UnauthorizedError(
                    f"Only parties can upload evidence to {dispute_id}",
                    actor_id=actor_id,
                    actor_role=role.value,
                    required_roles=_PARTY_ROLES,
                )
            refs = tuple(file_refs or ())
            if not refs or any(not str(r).strip() for r in refs):
                raise ValidationError(
                    "file_refs must be a non-empty list of references", field_name="file_refs",
                )

            at = _now(now)
            evidence = Evidence(
                evidence_id=f"evd-{uuid.uuid4().hex[:12]}",
                dispute_id=dispute_id,
                uploader_id=actor_id,
                file_refs=tuple(str(r).strip() for r in refs),
                note=note or "",
                uploaded_utc=at,
            )
            event = self._event(
                EventKind.EVIDENCE_UPLOADED, actor_id, dispute, txn,
                {"evidence_id": evidence.evidence_id, "file_count": len(refs)}, at,
            )
            self._outbox.commit(ChangeSet(evidence=[evidence], events=[event]))
            return evidence

    def post_message(
        self,
        actor_id: str,
        dispute_id: str,
        text: str,
        now: Optional[datetime] = None,
    ) -> MediationMessage:
        with self._gateway.lock(_dispute_lock(dispute_id)):
            dispute = self._load_open(dispute_id)
            txn = self._load_transaction(dispute.transaction_id)
            self._require_thread_member(actor_id, dispute, txn)
            body = require_text(text, "text")

            at = _now(now)
            message = MediationMessage(
                message_id=f"msg-{uuid.uuid4().hex[:12]}",
                dispute_id=dispute_id,
                sender_id=actor_id,
                text=body,
                sequence=len(self._gateway.list_messages(dispute_id)) + 1,
                sent_utc=at,
            )
            event = self._event(
                EventKind.MEDIATION_MESSAGE_POSTED, actor_id, dispute, txn,
                {"message_id": message.message_id, "sequence": message.sequence}, at,
            )
            self._outbox.commit(ChangeSet(messages=[message], events=[event]))
            return message

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_disputes_for_actor(
        self,
        actor_id: str,
        role_filter: Optional[Role] = None,
        view: DisputeView = DisputeView.ALL,
    ) -> list[Dispute]:
        """Disputes visible to an actor.

        Without role_filter, parties see their own disputes and flagged
        mediators see every dispute. role_filter=MEDIATOR narrows to the
        disputes assigned to the actor.
        """
        identity = self._identity.get(actor_id)
        visible: list[Dispute] = []
        for dispute in self._gateway.list_disputes():
            txn = self._gateway.get_transaction(dispute.transaction_id)
            if txn is None:
                logger.warning(
                    "Dispute %s references missing transaction %s",
                    dispute.dispute_id, dispute.transaction_id,
                )
                continue
            role = resolve_dispute_role(actor_id, dispute, txn, identity)
            if role_filter is not None:
                if role_filter == Role.MEDIATOR:
                    if not is_assigned_mediator(actor_id, dispute):
                        continue
                elif role != role_filter:
                    continue
            elif not (is_party(role) or role == Role.MEDIATOR):
                continue
            if dispute.matches_view(view):
                visible.append(dispute)
        return sorted(visible, key=lambda d: (d.created_utc is None, d.created_utc))

    def get_dispute(self, actor_id: str, dispute_id: str) -> DisputeDetail:
        dispute = self._load(dispute_id)
        txn = self._load_transaction(dispute.transaction_id)
        role = resolve_dispute_role(actor_id, dispute, txn, self._identity.get(actor_id))
        if not (is_party(role) or role == Role.MEDIATOR):
            raise UnauthorizedError(
                f"Actor {actor_id} cannot view dispute {dispute_id}",
                actor_id=actor_id,
                actor_role=role.value,
                required_roles=(*_PARTY_ROLES, Role.MEDIATOR.value),
            )
        in_thread = is_party(role) or is_assigned_mediator(actor_id, dispute)
        return DisputeDetail(
            dispute=dispute,
            transaction=txn,
            parties=describe_parties(dispute, txn),
            evidence=self._gateway.list_evidence(dispute_id),
            messages=self._gateway.list_messages(dispute_id) if in_thread else None,
            viewer_role=role,
        )

    def list_messages(self, actor_id: str, dispute_id: str) -> list[MediationMessage]:
        dispute = self._load(dispute_id)
        txn = self._load_transaction(dispute.transaction_id)
        self._require_thread_member(actor_id, dispute, txn)
        return self._gateway.list_messages(dispute_id)

    def describe_parties(self, dispute_id: str) -> list[dict[str, str]]:
        dispute = self._load(dispute_id)
        return describe_parties(dispute, self._load_transaction(dispute.transaction_id))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _load(self, dispute_id: str) -> Dispute:
        dispute = self._gateway.get_dispute(dispute_id)
        if dispute is None:
            raise NotFoundError("dispute", dispute_id)
        return dispute

    def _load_open(self, dispute_id: str) -> Dispute:
        dispute = self._load(dispute_id)
        if dispute.status == DisputeStatus.CLOSED:
            raise DisputeClosedError(dispute_id)
        return dispute

    def _load_transaction(self, transaction_id: str) -> Transaction:
        txn = self._gateway.get_transaction(transaction_id)
        if txn is None:
            raise NotFoundError("transaction", transaction_id)
        return txn

    def _is_flagged(self, actor_id: str) -> bool:
        identity = self._identity.get(actor_id)
        return identity is not None and identity.is_mediator

    @staticmethod
    def _require_thread_member(actor_id: str, dispute: Dispute, txn: Transaction) -> None:
        role = resolve_transaction_role(actor_id, txn)
        if is_party(role) or is_assigned_mediator(actor_id, dispute):
            return
        raise UnauthorizedError(
            f"Only parties and the assigned mediator can use the thread of {dispute.dispute_id}",
            actor_id=actor_id,
            actor_role=role.value,
            required_roles=(*_PARTY_ROLES, Role.MEDIATOR.value),
        )

    @staticmethod
    def _roles_for(target: DisputeStatus, dispute: Dispute) -> tuple[str, ...]:
        if target in (DisputeStatus.OPENED, DisputeStatus.UNDER_REVIEW) and dispute.mediator_id is None:
            return (*_PARTY_ROLES, Role.MEDIATOR.value)
        return (Role.MEDIATOR.value,)

    def _event(
        self,
        kind: EventKind,
        actor_id: str,
        dispute: Dispute,
        txn: Transaction,
        payload: dict,
        at: datetime,
        extra_recipients: Iterable[Optional[str]] = (),
    ):
        recipients = [*txn.parties(), dispute.mediator_id, *extra_recipients]
        return self._outbox.event(kind, actor_id, dispute.dispute_id, recipients, payload, at)


def _dispute_lock(dispute_id: str) -> str:
    return f"dispute:{dispute_id}"
