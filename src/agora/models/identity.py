"""Identity models — authenticated actors and computed roles."""

from __future__ import annotations

import enum
from dataclasses import dataclass


SYSTEM_ACTOR_ID = "system"


class Role(str, enum.Enum):
    """An actor's role with respect to one transaction or dispute.

    Never stored. Derived per request by the role resolver.
    SYSTEM is reserved for platform automation such as payment
    confirmation callbacks.
    """
    CLIENT_OR_BUYER = "client_or_buyer"
    FREELANCER_OR_SELLER = "freelancer_or_seller"
    MEDIATOR = "mediator"
    UNRELATED = "unrelated"
    SYSTEM = "system"


@dataclass
class ActorIdentity:
    """The identity record behind an authenticated actor.

    is_mediator is a global capability, orthogonal to any
    transaction-specific role.
    """
    actor_id: str
    display_name: str = ""
    is_mediator: bool = False
