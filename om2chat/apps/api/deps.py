from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.core.config import get_settings
from om2chat.domain.models import Broker
from om2chat.persistence.db import get_session
from om2chat.persistence.repos import brokers as brokers_repo
from om2chat.services.auth.tokens import decode_session_token
from om2chat.services.entitlements import require_active_subscription


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _session_token(request: Request) -> str | None:
    # Bearer header first for API clients, then the browser session cookie.
    header_value = request.headers.get("Authorization")
    if header_value:
        parts = header_value.split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]
    return request.cookies.get(get_settings().auth_cookie_name)


async def get_optional_broker(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Broker | None:
    token = _session_token(request)
    if not token:
        return None
    claims = decode_session_token(token)
    if claims is None:
        return None
    # Always reload the row so status changes from webhooks apply immediately.
    return await brokers_repo.get_broker(db, claims["sub"])


async def get_current_broker(
    broker: Broker | None = Depends(get_optional_broker),
) -> Broker:
    if broker is None:
        raise _auth_error("Authentication required")
    return broker


async def get_active_broker(
    broker: Broker = Depends(get_current_broker),
) -> Broker:
    # Expired trials and unpaid accounts are gated before any product feature.
    require_active_subscription(broker)
    return broker


# auto_error is off so an unconfigured admin account reports 403 before any 401.
_admin_basic = HTTPBasic(auto_error=False)


def require_admin(credentials: HTTPBasicCredentials | None = Depends(_admin_basic)) -> str:
    """Check HTTP Basic credentials against the configured admin account."""
    settings = get_settings()
    if not settings.admin_email or not settings.admin_password:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "ADMIN_DISABLED", "message": "Admin access is not configured"},
        )
    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": "Admin credentials required"},
        headers={"WWW-Authenticate": "Basic"},
    )
    if credentials is None:
        raise unauthorized
    email_ok = hmac.compare_digest(
        credentials.username.lower().encode(), settings.admin_email.lower().encode()
    )
    password_ok = hmac.compare_digest(credentials.password.encode(), settings.admin_password.encode())
    if not (email_ok and password_ok):
        raise unauthorized
    return credentials.username
