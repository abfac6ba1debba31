"""Event fan-out."""

from agora.events.emitter import (
    EventEmitter,
    EventLogEmitter,
    NullEmitter,
    SubscriberEmitter,
    fan_out,
)

__all__ = [
    "EventEmitter",
    "EventLogEmitter",
    "NullEmitter",
    "SubscriberEmitter",
    "fan_out",
]
