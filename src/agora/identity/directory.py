"""Actor directory — the authenticated-identity interface.

The engines never authenticate anyone. They receive an actor id that
the transport layer has already authenticated and look up the identity
record behind it, chiefly for the global mediator capability flag.

ActorDirectory is the in-process implementation. It can optionally be
backed by a JSON file so the CLI keeps actors between invocations.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Optional, Protocol

from agora.models.identity import SYSTEM_ACTOR_ID, ActorIdentity

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    """Read-only identity lookup consumed by the engines."""

    def get(self, actor_id: str) -> Optional[ActorIdentity]:
        """Return the identity record, or None for unknown actors."""
        ...


class ActorDirectory:
    """Registry of known actors.

    Thread-safe. Registration replaces an existing record with the
    same id, which is how mediator capability is granted or revoked.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._actors: dict[str, ActorIdentity] = {}
        self._lock = threading.Lock()
        self._storage_path = storage_path
        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def register(self, identity: ActorIdentity) -> ActorIdentity:
        """Register or update an actor.

        Raises ValueError for blank ids or the reserved system id.
        """
        canonical_id = identity.actor_id.strip()
        if not canonical_id:
            raise ValueError("Cannot register actor with blank ID")
        if canonical_id == SYSTEM_ACTOR_ID:
            raise ValueError(f"Actor ID is reserved: {SYSTEM_ACTOR_ID}")
        identity.actor_id = canonical_id
        with self._lock:
            self._actors[canonical_id] = identity
            if self._storage_path:
                self._write_file()
        return identity

    def get(self, actor_id: str) -> Optional[ActorIdentity]:
        return self._actors.get(actor_id.strip())

    def is_mediator(self, actor_id: str) -> bool:
        identity = self.get(actor_id)
        return identity is not None and identity.is_mediator

    def mediators(self) -> list[ActorIdentity]:
        return [a for a in self._actors.values() if a.is_mediator]

    @property
    def count(self) -> int:
        return len(self._actors)

    def _write_file(self) -> None:
        records = [
            {
                "actor_id": a.actor_id,
                "display_name": a.display_name,
                "is_mediator": a.is_mediator,
            }
            for a in sorted(self._actors.values(), key=lambda a: a.actor_id)
        ]
        tmp_path = self._storage_path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump({"actors": records}, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self._storage_path)

    def _load_from_file(self, path: Path) -> None:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        for record in data.get("actors", []):
            identity = ActorIdentity(
                actor_id=record["actor_id"],
                display_name=record.get("display_name", ""),
                is_mediator=bool(record.get("is_mediator", False)),
            )
            self._actors[identity.actor_id] = identity
        logger.debug("Loaded %d actors from %s", len(self._actors), path)
