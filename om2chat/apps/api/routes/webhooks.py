from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request, status

from om2chat.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from om2chat.core.errors import BillingError
from om2chat.services.billing import stripe_client
from om2chat.services.billing.webhooks import dispatch_event


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)


@router.post("/stripe")
async def stripe_webhook(request: Request) -> dict:
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "MISSING_SIGNATURE", "message": "Missing stripe-signature header"},
        )
    payload = await request.body()
    try:
        event = stripe_client.verify_webhook(payload, signature)
    except stripe_client.WebhookSignatureError as exc:
        logger.warning("stripe_webhook_signature_invalid")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_SIGNATURE", "message": "Invalid signature"},
        ) from exc
    except BillingError as exc:
        logger.error("stripe_webhook_unconfigured", exc_info=exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "BILLING_NOT_CONFIGURED", "message": "Webhook handling is not configured"},
        ) from exc

    logger.info("stripe_webhook_received type=%s event_id=%s", event.get("type"), event.get("id"))
    # Handler failures never turn into non-2xx responses; Stripe would retry forever.
    await dispatch_event(event)
    return {"received": True}
