from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.apps.api.deps import get_db, get_optional_broker
from om2chat.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from om2chat.domain.models import Broker, ErrorLog


logger = logging.getLogger(__name__)

router = APIRouter(tags=["operations"], responses=DEFAULT_ERROR_RESPONSES)

_SEVERITIES = {"debug", "info", "warning", "error", "critical"}


class ErrorReport(BaseModel):
    error: str = Field(min_length=1, max_length=5000)
    stack: str | None = Field(default=None, max_length=20000)
    componentStack: str | None = Field(default=None, max_length=20000)
    url: str | None = Field(default=None, max_length=2000)
    severity: str = "error"
    context: dict[str, Any] | None = None


@router.post("/error-log")
async def log_client_error(
    payload: ErrorReport,
    request: Request,
    broker: Broker | None = Depends(get_optional_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    severity = payload.severity if payload.severity in _SEVERITIES else "error"
    context = dict(payload.context or {})
    if payload.componentStack:
        context["component_stack"] = payload.componentStack
    broker_id = broker.id if broker else None
    logger.info("client_error_reported broker_id=%s severity=%s", broker_id or "anonymous", severity)
    try:
        db.add(
            ErrorLog(
                id=str(uuid4()),
                message=payload.error,
                stack=payload.stack,
                url=payload.url,
                user_agent=request.headers.get("user-agent"),
                broker_id=broker_id,
                severity=severity,
                context=context,
            )
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("client_error_store_failed", exc_info=exc)
        return {"success": False}
    return {"success": True}
