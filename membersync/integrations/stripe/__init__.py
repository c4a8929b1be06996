"""
Stripe integration: billing lookups and webhook authenticity.
"""

from membersync.integrations.stripe.billing_client import StripeBillingClient
from membersync.integrations.stripe.exceptions import (
    BillingClientError,
    SignatureVerificationError,
)
from membersync.integrations.stripe.models import SubscriptionData, VerifiedEvent
from membersync.integrations.stripe.signature import StripeSignatureVerifier

__all__ = [
    "StripeBillingClient",
    "StripeSignatureVerifier",
    "BillingClientError",
    "SignatureVerificationError",
    "SubscriptionData",
    "VerifiedEvent",
]
