"""Notification emitter — fans committed events out to their recipients.

Publishing happens after the commit that recorded the event. A failing
transport therefore cannot undo the state change: fan_out logs the
failure and hands back a warning string for the caller's result.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable, Optional, Protocol

from agora.persistence.event_log import EventLog, EventRecord

logger = logging.getLogger(__name__)

Subscriber = Callable[[EventRecord], None]


class EventEmitter(Protocol):
    """Transport for committed events."""

    def publish(self, event: EventRecord) -> None:
        ...


class NullEmitter:
    """Drops every event. The default when nobody listens."""

    def publish(self, event: EventRecord) -> None:
        return None


class EventLogEmitter:
    """Appends events to a JSONL-backed EventLog.

    Used by the CLI so notifications survive between invocations.
    """

    def __init__(self, event_log: EventLog) -> None:
        self._log = event_log

    @property
    def log(self) -> EventLog:
        return self._log

    def publish(self, event: EventRecord) -> None:
        self._log.append(event)


class SubscriberEmitter:
    """In-process fan-out to callbacks registered per actor.

    Each recipient of an event gets the event once, in registration
    order. Callbacks registered with subscribe_all() see every event.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._global: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, actor_id: str, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.setdefault(actor_id, []).append(callback)

    def subscribe_all(self, callback: Subscriber) -> None:
        with self._lock:
            self._global.append(callback)

    def unsubscribe(self, actor_id: str) -> None:
        with self._lock:
            self._subscribers.pop(actor_id, None)

    def publish(self, event: EventRecord) -> None:
        with self._lock:
            targets = [cb for r in event.recipients for cb in self._subscribers.get(r, [])]
            targets.extend(self._global)
        for callback in targets:
            callback(event)


def fan_out(emitter: EventEmitter, events: Iterable[EventRecord]) -> Optional[str]:
    """Publish committed events. Returns a warning on transport failure.

    Every event is attempted even after a failure.
    """
    warning: Optional[str] = None
    for event in events:
        try:
            emitter.publish(event)
        except (OSError, RuntimeError, ValueError) as e:
            logger.warning(
                "Notification fan-out failed for %s (%s): %s",
                event.event_id, event.event_kind.value, e,
            )
            if warning is None:
                warning = f"State committed but notification failed: {e}"
    return warning
