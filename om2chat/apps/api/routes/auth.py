from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.apps.api.deps import get_current_broker, get_db
from om2chat.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from om2chat.apps.api.rate_limit import enforce_auth_rate_limit
from om2chat.core.config import get_settings
from om2chat.domain.models import Broker
from om2chat.services.auth import actions
from om2chat.services.auth.tokens import session_claims
from om2chat.services.entitlements import as_utc, check_trial_status


router = APIRouter(prefix="/auth", tags=["auth"], responses=DEFAULT_ERROR_RESPONSES)


def set_session_cookie(response: Response, token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        settings.auth_cookie_name,
        token,
        max_age=settings.auth_session_ttl_hours * 3600,
        httponly=True,
        samesite="lax",
        secure=settings.app_base_url.startswith("https://"),
    )


def _result_payload(result: actions.ActionResult) -> dict[str, Any]:
    payload: dict[str, Any] = {"status": result.status}
    if result.token:
        payload["token"] = result.token
    if result.broker is not None:
        payload["broker"] = session_claims(result.broker)
    return payload


@router.post("/register")
async def register(
    request: Request,
    response: Response,
    payload: dict[str, Any] = Body(default_factory=dict),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await enforce_auth_rate_limit(request)
    result = await actions.register(db, payload)
    if result.token:
        set_session_cookie(response, result.token)
    return _result_payload(result)


@router.post("/login")
async def login(
    request: Request,
    response: Response,
    payload: dict[str, Any] = Body(default_factory=dict),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await enforce_auth_rate_limit(request)
    result = await actions.login(db, payload)
    if result.token:
        set_session_cookie(response, result.token)
    return _result_payload(result)


@router.post("/logout")
async def logout(response: Response) -> dict:
    response.delete_cookie(get_settings().auth_cookie_name)
    return {"status": actions.STATUS_SUCCESS}


@router.get("/session")
async def get_session_info(broker: Broker = Depends(get_current_broker)) -> dict:
    return {"user": session_claims(broker)}


@router.get("/check-trial")
async def check_trial(broker: Broker = Depends(get_current_broker)) -> dict:
    is_valid, reason = check_trial_status(broker)
    trial_ends_at = as_utc(broker.trial_ends_at)
    return {
        "isValid": is_valid,
        "reason": reason,
        "subscriptionStatus": broker.subscription_status,
        "trialEndsAt": trial_ends_at.isoformat() if trial_ends_at else None,
    }


@router.post("/forgot-password")
async def forgot_password(
    request: Request,
    payload: dict[str, Any] = Body(default_factory=dict),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await enforce_auth_rate_limit(request)
    email = str(payload.get("email") or "").strip()
    if not email:
        return {"status": actions.STATUS_INVALID_DATA}
    result = await actions.request_password_reset(db, email)
    return {"status": result.status}


@router.post("/set-password")
async def set_password(
    request: Request,
    payload: dict[str, Any] = Body(default_factory=dict),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await enforce_auth_rate_limit(request)
    result = await actions.reset_password(db, payload)
    return {"status": result.status}


@router.post("/change-password")
async def change_password(
    payload: dict[str, Any] = Body(default_factory=dict),
    broker: Broker = Depends(get_current_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await actions.change_password(db, broker, payload)
    return {"status": result.status}
