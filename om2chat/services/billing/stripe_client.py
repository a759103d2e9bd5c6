from __future__ import annotations

import asyncio
import json
from typing import Any

import stripe

from om2chat.core.config import get_settings
from om2chat.core.errors import BillingError


class WebhookSignatureError(BillingError):
    """Stripe signature header did not verify against the payload."""


def _configure() -> None:
    settings = get_settings()
    if not settings.stripe_secret_key:
        raise BillingError("STRIPE_SECRET_KEY is not configured")
    stripe.api_key = settings.stripe_secret_key


def verify_webhook(payload: bytes, signature: str) -> dict[str, Any]:
    """Verify the ``stripe-signature`` header and return the decoded event."""
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        raise BillingError("STRIPE_WEBHOOK_SECRET is not configured")
    try:
        stripe.Webhook.construct_event(payload, signature, settings.stripe_webhook_secret)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        raise WebhookSignatureError("Invalid Stripe signature") from exc
    # Work on plain dicts once the signature has been checked.
    return json.loads(payload)


def _retrieve_customer_sync(customer_id: str) -> dict[str, Any]:
    _configure()
    customer = stripe.Customer.retrieve(customer_id)
    return {
        "id": customer_id,
        "email": getattr(customer, "email", None),
        "name": getattr(customer, "name", None),
    }


async def retrieve_customer(customer_id: str) -> dict[str, Any]:
    # The Stripe SDK is synchronous; keep its network calls off the event loop.
    try:
        return await asyncio.to_thread(_retrieve_customer_sync, customer_id)
    except stripe.StripeError as exc:
        raise BillingError("Stripe customer lookup failed") from exc


def _cancel_subscription_sync(subscription_id: str) -> None:
    _configure()
    stripe.Subscription.cancel(subscription_id)


async def cancel_subscription(subscription_id: str) -> None:
    try:
        await asyncio.to_thread(_cancel_subscription_sync, subscription_id)
    except stripe.StripeError as exc:
        raise BillingError("Stripe subscription cancellation failed") from exc
