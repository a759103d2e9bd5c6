from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from om2chat.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from om2chat.core.config import get_settings
from om2chat.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    ok: bool
    status: str
    checks: dict[str, bool]


async def _database_reachable() -> bool:
    try:
        async with SessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("health_database_unreachable", exc_info=exc)
        return False
    return True


@router.get("/health", response_model=HealthResponse)
async def health() -> JSONResponse:
    settings = get_settings()
    # Integration flags report configuration only; no external calls are made.
    checks = {
        "database": await _database_reachable(),
        "openai": bool(settings.openai_api_key),
        "redisUrl": bool(settings.redis_url),
        "kvRest": bool(settings.kv_rest_api_url and settings.kv_rest_api_token),
        "stripeSecret": bool(settings.stripe_secret_key),
        "stripeWebhook": bool(settings.stripe_webhook_secret),
        "resend": bool(settings.resend_api_key),
    }
    ok = checks["database"]
    payload = HealthResponse(ok=ok, status="ok" if ok else "degraded", checks=checks)
    return JSONResponse(content=payload.model_dump(), status_code=200 if ok else 503)
