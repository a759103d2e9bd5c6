from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.domain.models import BannedEmail, Broker


def normalize_email(email: str) -> str:
    return email.strip().lower()


async def get_broker(session: AsyncSession, broker_id: str) -> Broker | None:
    result = await session.execute(select(Broker).where(Broker.id == broker_id))
    return result.scalar_one_or_none()


async def get_broker_by_email(session: AsyncSession, email: str) -> Broker | None:
    result = await session.execute(select(Broker).where(Broker.email == normalize_email(email)))
    return result.scalar_one_or_none()


async def get_broker_by_reset_token(
    session: AsyncSession, token: str, *, now: datetime
) -> Broker | None:
    # Expired tokens behave exactly like unknown ones.
    result = await session.execute(
        select(Broker).where(Broker.reset_token == token, Broker.reset_token_expires > now)
    )
    return result.scalar_one_or_none()


async def create_broker(
    session: AsyncSession,
    *,
    email: str,
    password_hash: str | None,
    first_name: str = "",
    last_name: str = "",
    company_name: str | None = None,
    phone: str | None = None,
    subscription_tier: str = "individual",
    subscription_status: str = "trial",
    trial_ends_at: datetime | None = None,
    stripe_customer_id: str | None = None,
    stripe_subscription_id: str | None = None,
) -> Broker:
    broker = Broker(
        id=str(uuid4()),
        email=normalize_email(email),
        password_hash=password_hash,
        first_name=first_name,
        last_name=last_name,
        company_name=company_name,
        phone=phone,
        subscription_tier=subscription_tier,
        subscription_status=subscription_status,
        trial_ends_at=trial_ends_at,
        stripe_customer_id=stripe_customer_id,
        stripe_subscription_id=stripe_subscription_id,
        document_count=0,
        is_team_admin=False,
    )
    session.add(broker)
    await session.flush()
    return broker


async def update_broker(session: AsyncSession, broker_id: str, **values: Any) -> None:
    if not values:
        return
    await session.execute(update(Broker).where(Broker.id == broker_id).values(**values))


async def set_reset_token(
    session: AsyncSession, broker_id: str, *, token: str, expires_at: datetime
) -> None:
    await update_broker(session, broker_id, reset_token=token, reset_token_expires=expires_at)


async def set_password_and_clear_token(
    session: AsyncSession, broker_id: str, *, password_hash: str
) -> None:
    # Clearing the token in the same statement makes reset tokens single-use.
    await update_broker(
        session,
        broker_id,
        password_hash=password_hash,
        reset_token=None,
        reset_token_expires=None,
    )


async def is_email_banned(session: AsyncSession, email: str) -> bool:
    result = await session.execute(
        select(BannedEmail.email).where(BannedEmail.email == normalize_email(email))
    )
    return result.scalar_one_or_none() is not None


async def ban_email(session: AsyncSession, email: str, *, reason: str) -> None:
    normalized = normalize_email(email)
    if await is_email_banned(session, normalized):
        return
    session.add(BannedEmail(email=normalized, reason=reason))


async def adjust_document_count(session: AsyncSession, broker_id: str, delta: int) -> None:
    # Adjust in SQL so concurrent uploads do not overwrite each other's counts.
    await session.execute(
        update(Broker)
        .where(Broker.id == broker_id)
        .values(document_count=Broker.document_count + delta)
    )
