from __future__ import annotations

import logging

import httpx

from om2chat.core.config import get_settings
from om2chat.core.errors import EmailDeliveryError


logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


async def send_email(*, to: str, subject: str, html: str) -> None:
    settings = get_settings()
    if not settings.resend_api_key:
        raise EmailDeliveryError("RESEND_API_KEY is not configured")
    payload = {"from": settings.email_from, "to": [to], "subject": subject, "html": html}
    headers = {"Authorization": f"Bearer {settings.resend_api_key}"}
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(RESEND_API_URL, json=payload, headers=headers)
    except httpx.HTTPError as exc:
        raise EmailDeliveryError("Email request failed") from exc
    if response.status_code >= 400:
        raise EmailDeliveryError(f"Email provider error: {response.status_code}")


def _reset_link(raw_token: str, *, setup: bool) -> str:
    base = get_settings().app_base_url.rstrip("/")
    path = "set-password" if setup else "reset-password"
    return f"{base}/{path}?token={raw_token}"


async def send_password_reset_email(email: str, raw_token: str) -> bool:
    # Delivery is best effort; the caller's response never depends on it.
    link = _reset_link(raw_token, setup=False)
    html = (
        "<p>We received a request to reset your om2chat password.</p>"
        f'<p><a href="{link}">Reset your password</a>. This link expires in one hour.</p>'
        "<p>If you did not request this, you can ignore this email.</p>"
    )
    try:
        await send_email(to=email, subject="Reset your om2chat password", html=html)
    except EmailDeliveryError as exc:
        logger.warning("password_reset_email_failed", exc_info=exc)
        return False
    return True


async def send_account_setup_email(email: str, raw_token: str) -> bool:
    link = _reset_link(raw_token, setup=True)
    html = (
        "<p>Thanks for subscribing to om2chat.</p>"
        f'<p><a href="{link}">Set your password</a> to finish creating your account.</p>'
    )
    try:
        await send_email(to=email, subject="Finish setting up your om2chat account", html=html)
    except EmailDeliveryError as exc:
        logger.warning("account_setup_email_failed", exc_info=exc)
        return False
    return True
