"""Identity and role resolution."""

from agora.identity.directory import ActorDirectory, IdentityProvider
from agora.identity.roles import (
    describe_parties,
    is_assigned_mediator,
    is_party,
    resolve_dispute_role,
    resolve_transaction_role,
)

__all__ = [
    "ActorDirectory",
    "IdentityProvider",
    "describe_parties",
    "is_assigned_mediator",
    "is_party",
    "resolve_dispute_role",
    "resolve_transaction_role",
]
