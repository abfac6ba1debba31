"""Commit-then-publish helper shared by the engines."""

from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Any, Iterable, Optional

from agora.events.emitter import EventEmitter, NullEmitter, fan_out
from agora.persistence.event_log import EventKind, EventRecord
from agora.persistence.gateway import ChangeSet, PersistenceGateway


class Outbox:
    """Commits a change set with its events, then fans the events out.

    Fan-out warnings are kept per thread so concurrent callers sharing
    one engine only ever drain their own.
    """

    def __init__(self, gateway: PersistenceGateway, emitter: Optional[EventEmitter] = None) -> None:
        self._gateway = gateway
        self._emitter = emitter or NullEmitter()
        self._local = threading.local()

    @staticmethod
    def event(
        kind: EventKind,
        actor_id: str,
        subject_id: str,
        recipients: Iterable[Optional[str]],
        payload: dict[str, Any],
        now: datetime,
    ) -> EventRecord:
        return EventRecord.create(
            event_id=f"evt-{uuid.uuid4().hex[:12]}",
            event_kind=kind,
            actor_id=actor_id,
            subject_id=subject_id,
            recipients=[r for r in recipients if r],
            payload=payload,
            timestamp_utc=now,
        )

    def commit(self, changes: ChangeSet) -> None:
        self._gateway.commit(changes)
        warning = fan_out(self._emitter, changes.events)
        if warning:
            self._warnings().append(warning)

    def drain_warnings(self) -> list[str]:
        warnings = self._warnings()
        drained = list(warnings)
        warnings.clear()
        return drained

    def _warnings(self) -> list[str]:
        if not hasattr(self._local, "warnings"):
            self._local.warnings = []
        return self._local.warnings
