"""
Webhook signature verification.

Fails closed: anything that is not a correctly signed, parseable event is
rejected before it reaches the ingestion gate.
"""

import json
import logging
from typing import Union

import stripe

from membersync.integrations.stripe.exceptions import SignatureVerificationError
from membersync.integrations.stripe.models import VerifiedEvent

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


class StripeSignatureVerifier:
    """Verifies the Stripe-Signature header against the endpoint secret."""

    def __init__(self, webhook_secret: str, tolerance: int = DEFAULT_TOLERANCE_SECONDS):
        if not webhook_secret:
            raise ValueError("Stripe webhook secret is required (STRIPE_WEBHOOK_SECRET)")
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def verify(self, raw_body: Union[bytes, str], signature_header: str) -> VerifiedEvent:
        """
        Verify and parse a webhook delivery.

        Args:
            raw_body: Exact request body bytes
            signature_header: Value of the Stripe-Signature header

        Returns:
            VerifiedEvent with id, type and the raw event payload

        Raises:
            SignatureVerificationError: On a missing/invalid signature or body
        """
        if not signature_header:
            logger.warning("Webhook missing signature header")
            raise SignatureVerificationError("Missing Stripe-Signature header")

        if isinstance(raw_body, bytes):
            body_text = raw_body.decode("utf-8", errors="replace")
        else:
            body_text = raw_body

        try:
            stripe.Webhook.construct_event(
                body_text,
                signature_header,
                self.webhook_secret,
                tolerance=self.tolerance,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed", extra={"error": str(e)})
            raise SignatureVerificationError(str(e))
        except ValueError as e:
            logger.warning("Webhook body is not valid JSON", extra={"error": str(e)})
            raise SignatureVerificationError(f"Invalid payload: {e}")

        payload = json.loads(body_text)
        event_id = payload.get("id")
        event_type = payload.get("type")
        if not event_id or not event_type:
            raise SignatureVerificationError("Event is missing id or type")

        return VerifiedEvent(id=event_id, type=event_type, payload=payload)
