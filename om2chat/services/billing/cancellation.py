from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.core.errors import BillingError
from om2chat.domain.models import Broker
from om2chat.persistence.repos import brokers as brokers_repo
from om2chat.services.billing import stripe_client
from om2chat.services.cleanup import delete_broker_data


logger = logging.getLogger(__name__)


async def cancel_subscription(session: AsyncSession, broker: Broker) -> dict[str, Any]:
    """Cancel the broker's Stripe subscription and delete the account.

    Team members cannot cancel the team's subscription. After Stripe confirms,
    the email is barred from a new trial and every owned row is removed.
    """
    # Rollbacks below expire ``broker``; read everything needed up front.
    broker_id = broker.id
    email = broker.email
    team_id = broker.team_id
    is_team_admin = bool(broker.is_team_admin)
    subscription_id = broker.stripe_subscription_id

    if team_id and not is_team_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "TEAM_ADMIN_REQUIRED", "message": "Only the team admin can cancel the subscription"},
        )
    if not subscription_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "NO_SUBSCRIPTION", "message": "No active subscription found"},
        )

    try:
        await stripe_client.cancel_subscription(subscription_id)
    except BillingError as exc:
        logger.warning("subscription_cancel_failed broker_id=%s", broker_id, exc_info=exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "BILLING_ERROR", "message": "Failed to cancel subscription"},
        ) from exc

    try:
        await brokers_repo.ban_email(session, email, reason="subscription_cancelled")
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("ban_email_failed broker_id=%s", broker_id, exc_info=exc)

    report = await delete_broker_data(
        session, broker_id, team_id=team_id, is_team_admin=is_team_admin
    )
    logger.info("broker_cancelled broker_id=%s report=%s", broker_id, report)
    return report
