from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.apps.api.deps import get_current_broker, get_db
from om2chat.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from om2chat.domain.models import Broker
from om2chat.persistence.repos import brokers as brokers_repo
from om2chat.services.auth.tokens import session_claims


router = APIRouter(tags=["profile"], responses=DEFAULT_ERROR_RESPONSES)


class ProfileUpdate(BaseModel):
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    company_name: str = Field(min_length=1, max_length=100)
    phone: str | None = Field(default=None, max_length=50)


@router.put("/profile")
async def update_profile(
    payload: ProfileUpdate,
    broker: Broker = Depends(get_current_broker),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await brokers_repo.update_broker(db, broker.id, **payload.model_dump(exclude_unset=True))
    await db.commit()
    await db.refresh(broker)
    return {"message": "Profile updated successfully", "user": session_claims(broker)}
