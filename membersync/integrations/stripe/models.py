"""
Data models for billing provider (Stripe) payloads.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def from_epoch(value: Any) -> Optional[datetime]:
    """Convert a Stripe unix timestamp to an aware UTC datetime."""
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _price_id(obj: Dict[str, Any]) -> Optional[str]:
    items = (obj.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id")


@dataclass
class SubscriptionData:
    """Authoritative subscription details as reported by the billing provider."""
    external_subscription_id: str
    customer_id: Optional[str]
    status: str
    price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancel_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubscriptionData":
        """
        Build from a Stripe subscription object (dict or StripeObject).

        Newer API versions moved period boundaries onto subscription items;
        fall back to the first item when the top-level fields are absent.
        """
        items = (data.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        period_start = data.get("current_period_start") or first_item.get("current_period_start")
        period_end = data.get("current_period_end") or first_item.get("current_period_end")

        return cls(
            external_subscription_id=data.get("id", ""),
            customer_id=data.get("customer"),
            status=data.get("status", ""),
            price_id=_price_id(data),
            current_period_start=from_epoch(period_start),
            current_period_end=from_epoch(period_end),
            trial_start=from_epoch(data.get("trial_start")),
            trial_end=from_epoch(data.get("trial_end")),
            cancel_at=from_epoch(data.get("cancel_at")),
            cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
            canceled_at=from_epoch(data.get("canceled_at")),
        )


@dataclass
class VerifiedEvent:
    """A webhook event whose signature has been verified."""
    id: str
    type: str
    payload: Dict[str, Any]
