"""
Stripe billing client.

Read-only lookups used by the event dispatcher to resolve authoritative
subscription details that an event only references by id.
"""

import logging
from typing import Any, Dict, List

import stripe

from membersync.integrations.stripe.exceptions import BillingClientError
from membersync.integrations.stripe.models import SubscriptionData

logger = logging.getLogger(__name__)


def _as_dict(obj: Any) -> Dict[str, Any]:
    """Plain dict from a StripeObject (or a dict in tests)."""
    if isinstance(obj, dict) and not hasattr(obj, "to_dict_recursive"):
        return obj
    for attr in ("to_dict_recursive", "to_dict"):
        convert = getattr(obj, attr, None)
        if callable(convert):
            return convert()
    return dict(obj)


class StripeBillingClient:
    """
    Thin wrapper over the stripe library.

    SECURITY: API key must be stored securely and never logged.
    """

    def __init__(self, api_key: str):
        if not api_key:
            raise ValueError("Stripe API key is required (STRIPE_SECRET_KEY)")
        self.api_key = api_key

    def _wrap(self, operation: str, error: stripe.StripeError) -> BillingClientError:
        logger.error(
            "Stripe API error",
            extra={
                "operation": operation,
                "status_code": getattr(error, "http_status", None),
                "code": getattr(error, "code", None),
            },
        )
        return BillingClientError(
            message=f"Stripe {operation} failed: {error.user_message or error}",
            status_code=getattr(error, "http_status", None),
            code=getattr(error, "code", None),
        )

    def list_subscriptions(self, customer_id: str) -> List[SubscriptionData]:
        """
        All subscriptions for a customer, newest first.

        Raises:
            BillingClientError: On any Stripe API failure
        """
        try:
            result = stripe.Subscription.list(
                customer=customer_id,
                status="all",
                limit=100,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            raise self._wrap("list_subscriptions", e)

        data = _as_dict(result).get("data") or []
        subscriptions = [SubscriptionData.from_dict(_as_dict(item)) for item in data]
        logger.info(
            "Listed customer subscriptions",
            extra={"customer_id": customer_id, "count": len(subscriptions)},
        )
        return subscriptions

    def get_subscription(self, subscription_id: str) -> SubscriptionData:
        """
        Current state of one subscription.

        Raises:
            BillingClientError: On any Stripe API failure
        """
        try:
            subscription = stripe.Subscription.retrieve(
                subscription_id,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            raise self._wrap("get_subscription", e)
        return SubscriptionData.from_dict(_as_dict(subscription))
