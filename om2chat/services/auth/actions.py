from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from pydantic import BaseModel, EmailStr, Field, ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.core.config import get_settings
from om2chat.domain.models import Broker
from om2chat.persistence.repos import brokers as brokers_repo
from om2chat.services.auth.passwords import (
    MIN_PASSWORD_LENGTH,
    burn_dummy_compare,
    hash_password,
    verify_password,
)
from om2chat.services.auth.tokens import generate_reset_token, hash_reset_token, issue_session_token
from om2chat.services.email import send_password_reset_email


logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_INVALID_DATA = "invalid_data"
STATUS_USER_EXISTS = "user_exists"
STATUS_INVALID_CREDENTIALS = "invalid_credentials"
STATUS_INVALID_TOKEN = "invalid_token"
STATUS_TRIAL_UNAVAILABLE = "trial_unavailable"


class RegisterInput(BaseModel):
    email: EmailStr
    password: str = Field(min_length=MIN_PASSWORD_LENGTH)
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    company_name: str | None = None
    phone: str | None = None


class LoginInput(BaseModel):
    email: EmailStr
    password: str = Field(min_length=MIN_PASSWORD_LENGTH)


class ResetPasswordInput(BaseModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=MIN_PASSWORD_LENGTH)


class ChangePasswordInput(BaseModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=MIN_PASSWORD_LENGTH)


@dataclass(frozen=True)
class ActionResult:
    status: str
    broker: Broker | None = None
    token: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def register(session: AsyncSession, data: dict[str, Any]) -> ActionResult:
    try:
        payload = RegisterInput.model_validate(data)
    except ValidationError:
        return ActionResult(STATUS_INVALID_DATA)

    if await brokers_repo.get_broker_by_email(session, payload.email) is not None:
        return ActionResult(STATUS_USER_EXISTS)
    # Emails from cancelled accounts cannot start a second free trial.
    if await brokers_repo.is_email_banned(session, payload.email):
        return ActionResult(STATUS_TRIAL_UNAVAILABLE)

    settings = get_settings()
    try:
        broker = await brokers_repo.create_broker(
            session,
            email=payload.email,
            password_hash=hash_password(payload.password),
            first_name=payload.first_name.strip(),
            last_name=payload.last_name.strip(),
            company_name=payload.company_name,
            phone=payload.phone,
            subscription_status="trial",
            trial_ends_at=_utc_now() + timedelta(days=settings.trial_days),
        )
        await session.commit()
    except IntegrityError:
        # Concurrent registration won the unique email constraint.
        await session.rollback()
        return ActionResult(STATUS_USER_EXISTS)
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("register_failed", exc_info=exc)
        return ActionResult(STATUS_FAILED)

    logger.info("broker_registered broker_id=%s", broker.id)
    return ActionResult(STATUS_SUCCESS, broker=broker, token=issue_session_token(broker))


async def login(session: AsyncSession, data: dict[str, Any]) -> ActionResult:
    try:
        payload = LoginInput.model_validate(data)
    except ValidationError:
        return ActionResult(STATUS_INVALID_DATA)

    broker = await brokers_repo.get_broker_by_email(session, payload.email)
    if broker is None or not broker.password_hash:
        burn_dummy_compare(payload.password)
        return ActionResult(STATUS_INVALID_CREDENTIALS)
    if not verify_password(payload.password, broker.password_hash):
        return ActionResult(STATUS_INVALID_CREDENTIALS)
    return ActionResult(STATUS_SUCCESS, broker=broker, token=issue_session_token(broker))


async def request_password_reset(session: AsyncSession, email: str) -> ActionResult:
    # Always report success so the endpoint cannot be used to enumerate accounts.
    broker = await brokers_repo.get_broker_by_email(session, email) if email else None
    if broker is None:
        return ActionResult(STATUS_SUCCESS)
    raw_token, token_hash, expires_at = generate_reset_token()
    try:
        await brokers_repo.set_reset_token(session, broker.id, token=token_hash, expires_at=expires_at)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("reset_token_store_failed broker_id=%s", broker.id, exc_info=exc)
        return ActionResult(STATUS_FAILED)
    await send_password_reset_email(broker.email, raw_token)
    return ActionResult(STATUS_SUCCESS)


async def issue_setup_token(session: AsyncSession, broker: Broker) -> str:
    """Store a fresh reset token for ``broker`` and return the raw value."""
    raw_token, token_hash, expires_at = generate_reset_token()
    await brokers_repo.set_reset_token(session, broker.id, token=token_hash, expires_at=expires_at)
    return raw_token


async def reset_password(session: AsyncSession, data: dict[str, Any]) -> ActionResult:
    try:
        payload = ResetPasswordInput.model_validate(data)
    except ValidationError:
        return ActionResult(STATUS_INVALID_DATA)

    broker = await brokers_repo.get_broker_by_reset_token(
        session, hash_reset_token(payload.token), now=_utc_now()
    )
    if broker is None:
        return ActionResult(STATUS_INVALID_TOKEN)
    try:
        await brokers_repo.set_password_and_clear_token(
            session, broker.id, password_hash=hash_password(payload.password)
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("reset_password_failed broker_id=%s", broker.id, exc_info=exc)
        return ActionResult(STATUS_FAILED)
    return ActionResult(STATUS_SUCCESS)


async def change_password(session: AsyncSession, broker: Broker, data: dict[str, Any]) -> ActionResult:
    try:
        payload = ChangePasswordInput.model_validate(data)
    except ValidationError:
        return ActionResult(STATUS_INVALID_DATA)
    if not verify_password(payload.current_password, broker.password_hash):
        return ActionResult(STATUS_INVALID_CREDENTIALS)
    try:
        await brokers_repo.set_password_and_clear_token(
            session, broker.id, password_hash=hash_password(payload.new_password)
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("change_password_failed broker_id=%s", broker.id, exc_info=exc)
        return ActionResult(STATUS_FAILED)
    return ActionResult(STATUS_SUCCESS)
