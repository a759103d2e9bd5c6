from __future__ import annotations

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.apps.api.deps import get_current_broker, get_db
from om2chat.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from om2chat.core.config import get_settings
from om2chat.domain.models import Broker
from om2chat.services.billing.cancellation import cancel_subscription


router = APIRouter(prefix="/stripe", tags=["billing"], responses=DEFAULT_ERROR_RESPONSES)


@router.post("/cancel-subscription")
async def cancel(
    response: Response,
    broker: Broker = Depends(get_current_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Cancellation is allowed for past-due and expired accounts too.
    report = await cancel_subscription(db, broker)
    response.delete_cookie(get_settings().auth_cookie_name)
    return {
        "success": True,
        "message": "Subscription cancelled and account data deleted",
        "deleted": report,
    }
