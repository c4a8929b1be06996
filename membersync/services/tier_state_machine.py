"""
Tier/grace state machine.

Pure transition logic: given the current tier and an intent, produce the next
tier, the grace deadline (if any) and the role intents to issue. No I/O and no
clock reads; `now` is always supplied by the caller.

Transitions:
    free/paid/grace + activate|renew   -> paid   (grant role from free/paid; clear grace)
    paid            + cancel_to_grace  -> grace  (grace_ends_at = now + grace days)
    paid            + subscription_expired -> grace (same as cancel_to_grace)
    grace           + grace_expired    -> free   (revoke role; clear grace)

Every other (tier, intent) pair is a no-op, so re-applying an intent is safe.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from membersync.models.member import Tier


class Intent(str, Enum):
    """What an event or the sweep asks the state machine to do."""
    ACTIVATE = "activate"
    RENEW = "renew"
    MARK_PAST_DUE = "mark_past_due"
    CANCEL_TO_GRACE = "cancel_to_grace"
    TRIAL_ENDING = "trial_ending"
    # Sweep only
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    GRACE_EXPIRED = "grace_expired"


class RoleAction(str, Enum):
    GRANT = "grant"
    REVOKE = "revoke"


@dataclass(frozen=True)
class RoleIntent:
    """A role mutation the caller should issue after committing the tier."""
    action: RoleAction
    role_id: str


@dataclass
class TransitionResult:
    """Outcome of applying one intent to one tier."""
    previous_tier: str
    next_tier: str
    intent: Intent
    grace_ends_at: Optional[datetime] = None
    clear_grace: bool = False
    role_intents: List[RoleIntent] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.previous_tier != self.next_tier

    @property
    def started_grace(self) -> bool:
        return self.changed and self.next_tier == Tier.GRACE

    @property
    def reactivated(self) -> bool:
        """Renewal out of grace (as opposed to a fresh activation)."""
        return self.previous_tier == Tier.GRACE and self.next_tier == Tier.PAID


_ACTIVATING = (Intent.ACTIVATE, Intent.RENEW)
_LAPSING = (Intent.CANCEL_TO_GRACE, Intent.SUBSCRIPTION_EXPIRED)


def transition(
    current_tier: str,
    intent: Intent,
    now: datetime,
    grace_period_days: int = 7,
    paid_role_id: Optional[str] = None,
) -> TransitionResult:
    """
    Apply an intent to a tier.

    Args:
        current_tier: Member's persisted tier
        intent: Requested intent
        now: Wall-clock reference for grace deadlines
        grace_period_days: Length of the grace window
        paid_role_id: Role to grant/revoke; no role intents when None

    Returns:
        TransitionResult (no-op results have next_tier == previous_tier)

    Raises:
        ValueError: If current_tier is not a known tier
    """
    if current_tier not in Tier.ALL:
        raise ValueError(f"Unknown tier: {current_tier!r}")

    result = TransitionResult(
        previous_tier=current_tier,
        next_tier=current_tier,
        intent=intent,
    )

    if intent in _ACTIVATING:
        result.next_tier = Tier.PAID
        result.clear_grace = current_tier == Tier.GRACE
        # From grace the role was never revoked
        if current_tier != Tier.GRACE and paid_role_id:
            result.role_intents.append(RoleIntent(RoleAction.GRANT, paid_role_id))
        return result

    if intent in _LAPSING and current_tier == Tier.PAID:
        result.next_tier = Tier.GRACE
        result.grace_ends_at = now + timedelta(days=grace_period_days)
        return result

    if intent == Intent.GRACE_EXPIRED and current_tier == Tier.GRACE:
        result.next_tier = Tier.FREE
        result.clear_grace = True
        if paid_role_id:
            result.role_intents.append(RoleIntent(RoleAction.REVOKE, paid_role_id))
        return result

    return result
