"""
Stripe webhook endpoint.

SECURITY: Every delivery MUST pass signature verification before it
reaches the ingestion gate. Unverified bodies are rejected with 400.

Response contract with the provider:
- 200: acknowledged (applied now, or already applied earlier)
- 400: signature or body invalid
- 500: not applied; the provider's redelivery will retry it
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from membersync.api.dependencies import get_components
from membersync.app_state import Components
from membersync.integrations.stripe.exceptions import SignatureVerificationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    applied: bool = False


@router.post("/stripe", response_model=WebhookResponse)
async def handle_stripe_webhook(
    request: Request,
    components: Components = Depends(get_components),
):
    """
    Verify, then ingest one billing event.

    Ingestion blocks until the tier commit and any role-sync retries finish,
    so it runs in the threadpool rather than on the event loop.
    """
    if components.verifier is None:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification not configured",
        )

    body = await request.body()
    signature = request.headers.get("Stripe-Signature", "")

    try:
        event = components.verifier.verify(body, signature)
    except SignatureVerificationError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook signature verification failed",
        )

    logger.info(
        "Stripe webhook received",
        extra={"event_id": event.id, "event_type": event.type},
    )

    result = await run_in_threadpool(
        components.gate.ingest, event.id, event.type, event.payload
    )

    if not result.acknowledged:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "received": True,
                "applied": False,
                "error": result.error.to_dict() if result.error else None,
            },
        )

    return WebhookResponse(received=True, applied=result.applied)
