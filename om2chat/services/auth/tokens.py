from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib
import secrets
from typing import Any

import jwt

from om2chat.core.config import get_settings
from om2chat.domain.models import Broker


SESSION_TOKEN_TYPE = "broker"
_ALGORITHM = "HS256"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def session_claims(broker: Broker) -> dict[str, Any]:
    # Session payload mirrors the broker row fields the UI and middleware read.
    trial_ends_at = broker.trial_ends_at.isoformat() if broker.trial_ends_at else None
    return {
        "id": broker.id,
        "email": broker.email,
        "type": SESSION_TOKEN_TYPE,
        "first_name": broker.first_name,
        "last_name": broker.last_name,
        "company_name": broker.company_name,
        "subscription_tier": broker.subscription_tier,
        "subscription_status": broker.subscription_status,
        "trial_ends_at": trial_ends_at,
        "logo_url": broker.logo_url,
        "team_id": broker.team_id,
        "is_team_admin": bool(broker.is_team_admin),
    }


def issue_session_token(broker: Broker) -> str:
    settings = get_settings()
    now = _utc_now()
    payload = {
        **session_claims(broker),
        "sub": broker.id,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=settings.auth_session_ttl_hours)).timestamp()),
    }
    return jwt.encode(payload, settings.auth_secret, algorithm=_ALGORITHM)


def decode_session_token(token: str) -> dict[str, Any] | None:
    try:
        payload = jwt.decode(token, get_settings().auth_secret, algorithms=[_ALGORITHM])
    except jwt.PyJWTError:
        return None
    if payload.get("type") != SESSION_TOKEN_TYPE or not payload.get("sub"):
        return None
    return payload


def hash_reset_token(raw_token: str) -> str:
    # Use SHA-256 for deterministic, non-reversible token storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_reset_token() -> tuple[str, str, datetime]:
    settings = get_settings()
    raw_token = secrets.token_urlsafe(32)
    expires_at = _utc_now() + timedelta(minutes=settings.reset_token_ttl_minutes)
    return raw_token, hash_reset_token(raw_token), expires_at
