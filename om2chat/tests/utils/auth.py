from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from om2chat.domain.models import Broker
from om2chat.persistence.db import SessionLocal
from om2chat.persistence.repos import brokers as brokers_repo
from om2chat.services.auth.passwords import hash_password
from om2chat.services.auth.tokens import issue_session_token


TEST_PASSWORD = "correct-horse"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def create_test_broker(
    *,
    email: str | None = None,
    subscription_status: str = "active",
    subscription_tier: str = "individual",
    trial_ends_at: datetime | None = None,
    stripe_customer_id: str | None = None,
    stripe_subscription_id: str | None = None,
    password: str = TEST_PASSWORD,
) -> tuple[Broker, dict[str, str]]:
    # Provision a broker row plus bearer headers for integration tests.
    async with SessionLocal() as session:
        broker = await brokers_repo.create_broker(
            session,
            email=email or f"broker-{uuid4().hex[:8]}@example.com",
            password_hash=hash_password(password),
            first_name="Test",
            last_name="Broker",
            company_name="Test Realty",
            subscription_tier=subscription_tier,
            subscription_status=subscription_status,
            trial_ends_at=trial_ends_at,
            stripe_customer_id=stripe_customer_id,
            stripe_subscription_id=stripe_subscription_id,
        )
        await session.commit()
    headers = {"Authorization": f"Bearer {issue_session_token(broker)}"}
    return broker, headers


async def create_trial_broker(*, expired: bool = False) -> tuple[Broker, dict[str, str]]:
    offset = timedelta(days=-1) if expired else timedelta(days=7)
    return await create_test_broker(
        subscription_status="trial",
        subscription_tier="individual",
        trial_ends_at=_utc_now() + offset,
    )
