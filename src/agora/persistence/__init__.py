"""Persistence — gateway interface, in-memory and file stores, event log."""

from agora.persistence.event_log import EventKind, EventLog, EventRecord
from agora.persistence.gateway import ChangeSet, InMemoryGateway, PersistenceGateway
from agora.persistence.state_store import FileGateway

__all__ = [
    "ChangeSet",
    "EventKind",
    "EventLog",
    "EventRecord",
    "FileGateway",
    "InMemoryGateway",
    "PersistenceGateway",
]
