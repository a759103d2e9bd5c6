from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.core.errors import Om2ChatError
from om2chat.domain.models import Broker, SubscriptionEvent
from om2chat.persistence.db import SessionLocal
from om2chat.persistence.repos import brokers as brokers_repo
from om2chat.persistence.repos import teams as teams_repo
from om2chat.services.auth.actions import issue_setup_token
from om2chat.services.billing import stripe_client
from om2chat.services.email import send_account_setup_email


logger = logging.getLogger(__name__)

# Stripe subscription.status -> broker.subscription_status
_STRIPE_STATUS_MAP = {
    "active": "active",
    "trialing": "active",
    "canceled": "cancelled",
    "past_due": "past_due",
}


def _plan_type(obj: dict[str, Any]) -> str:
    metadata = obj.get("metadata") or {}
    return metadata.get("plan_type") or "individual"


def _from_epoch(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


async def _record_event(event: dict[str, Any], broker_id: str | None) -> None:
    # Recorded for investigation only; duplicate deliveries are processed again.
    try:
        async with SessionLocal() as session:
            session.add(
                SubscriptionEvent(
                    id=str(uuid4()),
                    broker_id=broker_id,
                    stripe_event_id=str(event.get("id") or ""),
                    event_type=str(event.get("type") or ""),
                    data=(event.get("data") or {}).get("object") or {},
                )
            )
            await session.commit()
    except SQLAlchemyError as exc:
        logger.warning("subscription_event_record_failed event_id=%s", event.get("id"), exc_info=exc)


async def _broker_for_customer(session: AsyncSession, customer_id: str | None) -> Broker | None:
    if not customer_id:
        return None
    customer = await stripe_client.retrieve_customer(customer_id)
    email = customer.get("email")
    if not email:
        return None
    return await brokers_repo.get_broker_by_email(session, email)


async def _ensure_team(session: AsyncSession, broker: Broker) -> None:
    team = await teams_repo.get_team_for_admin(session, broker.id)
    if team is None:
        name = broker.company_name or f"{broker.first_name or 'Team'}'s Team"
        await teams_repo.create_team(session, name=name, admin_broker_id=broker.id)
    await brokers_repo.update_broker(session, broker.id, is_team_admin=True, subscription_tier="team")


async def _create_guest_broker(session: AsyncSession, subscription: dict[str, Any]) -> Broker | None:
    customer = await stripe_client.retrieve_customer(subscription.get("customer"))
    email = customer.get("email")
    if not email:
        logger.warning("guest_checkout_without_email subscription_id=%s", subscription.get("id"))
        return None
    name_parts = (customer.get("name") or "").split()
    broker = await brokers_repo.create_broker(
        session,
        email=email,
        password_hash=None,
        first_name=name_parts[0] if name_parts else "",
        last_name=" ".join(name_parts[1:]),
        subscription_tier=_plan_type(subscription),
        subscription_status="active",
        trial_ends_at=None,
        stripe_customer_id=subscription.get("customer"),
        stripe_subscription_id=subscription.get("id"),
    )
    raw_token = await issue_setup_token(session, broker)
    await session.commit()
    await send_account_setup_email(broker.email, raw_token)
    logger.info("guest_broker_created broker_id=%s", broker.id)
    return broker


async def handle_checkout_completed(session: AsyncSession, obj: dict[str, Any]) -> str | None:
    # Subscription events carry the state change; checkout completion is informational.
    logger.info("checkout_completed session_id=%s", obj.get("id"))
    return None


async def handle_subscription_created(session: AsyncSession, subscription: dict[str, Any]) -> str | None:
    metadata = subscription.get("metadata") or {}
    broker: Broker | None
    if metadata.get("pre_checkout") == "true" and metadata.get("user_id"):
        broker = await brokers_repo.get_broker(session, metadata["user_id"])
        if broker is None:
            logger.warning("pre_checkout_broker_missing user_id=%s", metadata["user_id"])
            return None
    else:
        broker = await _broker_for_customer(session, subscription.get("customer"))

    if broker is None:
        created = await _create_guest_broker(session, subscription)
        return created.id if created else None

    if not broker.password_hash:
        raw_token = await issue_setup_token(session, broker)
        await session.commit()
        await send_account_setup_email(broker.email, raw_token)

    plan = _plan_type(subscription)
    await brokers_repo.update_broker(
        session,
        broker.id,
        stripe_customer_id=subscription.get("customer"),
        stripe_subscription_id=subscription.get("id"),
        subscription_status="active",
        subscription_tier=plan,
        trial_ends_at=None,
    )
    if plan == "team":
        await _ensure_team(session, broker)
    await session.commit()
    return broker.id


async def handle_subscription_updated(session: AsyncSession, subscription: dict[str, Any]) -> str | None:
    broker = await _broker_for_customer(session, subscription.get("customer"))
    if broker is None:
        logger.info("subscription_update_unknown_broker subscription_id=%s", subscription.get("id"))
        return None
    status = _STRIPE_STATUS_MAP.get(subscription.get("status") or "", "active")
    plan = _plan_type(subscription)
    await brokers_repo.update_broker(
        session,
        broker.id,
        stripe_customer_id=subscription.get("customer"),
        stripe_subscription_id=subscription.get("id"),
        subscription_status=status,
        subscription_tier=plan,
        trial_ends_at=_from_epoch(subscription.get("trial_end")),
    )
    if plan == "team" and status == "active":
        await _ensure_team(session, broker)
    await session.commit()
    return broker.id


async def handle_subscription_deleted(session: AsyncSession, subscription: dict[str, Any]) -> str | None:
    broker = await _broker_for_customer(session, subscription.get("customer"))
    if broker is None:
        return None
    await brokers_repo.update_broker(
        session,
        broker.id,
        subscription_status="cancelled",
        subscription_tier="individual",
    )
    await session.commit()
    return broker.id


async def handle_payment_succeeded(session: AsyncSession, invoice: dict[str, Any]) -> str | None:
    broker = await _broker_for_customer(session, invoice.get("customer"))
    if broker is None:
        return None
    await brokers_repo.update_broker(session, broker.id, subscription_status="active")
    await session.commit()
    return broker.id


async def handle_payment_failed(session: AsyncSession, invoice: dict[str, Any]) -> str | None:
    broker = await _broker_for_customer(session, invoice.get("customer"))
    if broker is None:
        return None
    await brokers_repo.update_broker(session, broker.id, subscription_status="past_due")
    await session.commit()
    return broker.id


async def handle_trial_will_end(session: AsyncSession, subscription: dict[str, Any]) -> str | None:
    broker = await _broker_for_customer(session, subscription.get("customer"))
    if broker is not None:
        logger.info("trial_will_end broker_id=%s", broker.id)
        return broker.id
    return None


async def handle_customer_deleted(session: AsyncSession, customer: dict[str, Any]) -> str | None:
    # Broker data is kept; cancellation is what removes accounts.
    logger.info("stripe_customer_deleted customer_id=%s", customer.get("id"))
    return None


EVENT_HANDLERS: dict[str, Callable[[AsyncSession, dict[str, Any]], Awaitable[str | None]]] = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.created": handle_subscription_created,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_payment_succeeded,
    "invoice.payment_failed": handle_payment_failed,
    "customer.subscription.trial_will_end": handle_trial_will_end,
    "customer.deleted": handle_customer_deleted,
}


async def dispatch_event(event: dict[str, Any]) -> bool:
    """Run the handler for ``event`` in its own session.

    Handler failures are logged and swallowed so Stripe still receives a 2xx;
    returns ``False`` for unhandled types or failed handlers.
    """
    event_type = event.get("type") or ""
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info("stripe_event_unhandled type=%s", event_type)
        await _record_event(event, None)
        return False

    obj = (event.get("data") or {}).get("object") or {}
    broker_id: str | None = None
    ok = True
    try:
        async with SessionLocal() as session:
            broker_id = await handler(session, obj)
    except (Om2ChatError, SQLAlchemyError) as exc:
        ok = False
        logger.warning("stripe_event_failed type=%s event_id=%s", event_type, event.get("id"), exc_info=exc)
    await _record_event(event, broker_id)
    return ok
