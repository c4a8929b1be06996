"""Repository layer for member and subscription state."""

from membersync.repositories.subscription_store import (
    SubscriptionStore,
    check_invariants,
)

__all__ = [
    "SubscriptionStore",
    "check_invariants",
]
