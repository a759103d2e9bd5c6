from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from fastapi import HTTPException, status

from om2chat.core.config import get_settings
from om2chat.domain.models import Broker


TIER_GUEST = "guest"
TIER_FREE_TRIAL = "free_trial"
TIER_INDIVIDUAL = "individual"
TIER_TEAM = "team"
TIER_ENTERPRISE = "enterprise"

WINDOW_MS_MINUTE = 60 * 1000
WINDOW_MS_DAY = 24 * 60 * 60 * 1000
AUTH_WINDOW_MS = 15 * 60 * 1000
AUTH_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class TierLimits:
    # Per-minute request ceilings plus a per-day chat message quota.
    chat_per_minute: int
    upload_per_minute: int
    api_per_minute: int
    messages_per_day: int


TIER_LIMITS: dict[str, TierLimits] = {
    TIER_FREE_TRIAL: TierLimits(chat_per_minute=20, upload_per_minute=3, api_per_minute=50, messages_per_day=50),
    TIER_INDIVIDUAL: TierLimits(chat_per_minute=50, upload_per_minute=10, api_per_minute=100, messages_per_day=200),
    TIER_TEAM: TierLimits(chat_per_minute=100, upload_per_minute=20, api_per_minute=200, messages_per_day=500),
    TIER_ENTERPRISE: TierLimits(chat_per_minute=200, upload_per_minute=50, api_per_minute=500, messages_per_day=1000),
    TIER_GUEST: TierLimits(chat_per_minute=20, upload_per_minute=1, api_per_minute=30, messages_per_day=50),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on read; treat naive timestamps as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def rate_limit_tier(broker: Broker | None) -> str:
    if broker is None:
        return TIER_GUEST
    if broker.subscription_status == "trial":
        return TIER_FREE_TRIAL
    if broker.subscription_tier in TIER_LIMITS:
        return broker.subscription_tier
    return TIER_INDIVIDUAL


def limits_for(broker: Broker | None) -> TierLimits:
    return TIER_LIMITS[rate_limit_tier(broker)]


def document_limit(broker: Broker) -> int:
    settings = get_settings()
    if broker.subscription_status == "trial":
        return settings.doc_limit_trial
    if broker.subscription_tier in {TIER_TEAM, TIER_ENTERPRISE}:
        return settings.doc_limit_team
    if broker.subscription_tier == TIER_INDIVIDUAL:
        return settings.doc_limit_individual
    return settings.doc_limit_trial


def check_trial_status(broker: Broker, *, now: datetime | None = None) -> tuple[bool, str]:
    """Return ``(allowed, reason)`` for the broker's subscription state.

    Reasons: ``active``, ``trial``, ``past_due``, ``trial_expired``,
    ``payment_required``.
    """
    current = now or _utc_now()
    state = broker.subscription_status
    if state == "active":
        return True, "active"
    if state == "past_due":
        # Grace period: Stripe keeps retrying the invoice.
        return True, "past_due"
    if state == "trial":
        ends_at = as_utc(broker.trial_ends_at)
        if ends_at is not None and ends_at < current:
            return False, "trial_expired"
        return True, "trial"
    return False, "payment_required"


def require_active_subscription(broker: Broker) -> None:
    allowed, reason = check_trial_status(broker)
    if allowed:
        return
    if reason == "trial_expired":
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"code": "TRIAL_EXPIRED", "message": "Free trial has ended"},
        )
    raise HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={"code": "PAYMENT_REQUIRED", "message": "An active subscription is required"},
    )
