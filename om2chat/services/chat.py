from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import time
from typing import Any, AsyncIterator
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from om2chat.core.errors import Om2ChatError
from om2chat.domain.models import DocumentMetadata
from om2chat.persistence.db import SessionLocal
from om2chat.persistence.repos import chat_histories as chat_repo
from om2chat.persistence.repos import client_sessions as sessions_repo
from om2chat.services.analytics import EVENT_CHAT_MESSAGE, track_event


logger = logging.getLogger(__name__)

GENERIC_SYSTEM_PROMPT = "You are a helpful AI assistant."
DOCUMENT_CONTEXT_SEPARATOR = "\n---\n"
PUBLIC_CONTEXT_SEPARATOR = "\n\n"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_document_chat_id(chat_id: Any) -> bool:
    # Only canonical UUIDs address a document; anything else is a generic chat.
    if not isinstance(chat_id, str) or not chat_id:
        return False
    try:
        return str(UUID(chat_id)) == chat_id.lower()
    except ValueError:
        return False


def extract_user_text(message: dict[str, Any] | None) -> str:
    if not isinstance(message, dict):
        return ""
    parts = message.get("parts") or []
    texts = [
        part.get("text", "")
        for part in parts
        if isinstance(part, dict) and part.get("type") == "text" and part.get("text")
    ]
    return "\n".join(texts).strip()


def build_context(chunks: list[dict], *, separator: str = DOCUMENT_CONTEXT_SEPARATOR) -> str:
    return separator.join(chunk["content"] for chunk in chunks if chunk.get("content"))


def build_metadata_context(document: DocumentMetadata) -> str:
    # Used when a document has no embedded chunks yet.
    created = document.created_at.isoformat() if document.created_at else "unknown"
    lines = [
        f"Document title: {document.title}",
        f"Document ID: {document.id}",
        f"Created: {created}",
    ]
    if document.url:
        lines.append(f"Source URL: {document.url}")
    lines.append(
        "Note: the text of this document has not been processed yet, so only its metadata is available."
    )
    return "\n".join(lines)


def build_document_system_prompt(title: str, context: str) -> str:
    return (
        f'You are a helpful assistant for the document "{title}". '
        "Use the provided context to answer questions accurately. "
        "If the information isn't in the context, say so.\n\n"
        f"Context:\n{context}"
    )


def build_public_system_prompt(title: str, context: str) -> str:
    return (
        f'You are a helpful assistant answering questions from a prospective client about "{title}". '
        "Answer only from the context below and say so when the answer is not in it.\n\n"
        f"Context:\n{context}"
    )


def new_message_id() -> str:
    return f"msg_{int(time.time() * 1000)}"


def sse_frame(payload: dict[str, Any] | str) -> str:
    if isinstance(payload, str):
        return f"data: {payload}\n\n"
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"data: {data}\n\n"


async def persist_exchange(
    *,
    document_id: str | None,
    broker_id: str | None,
    client_session_id: str | None,
    public_link_id: str | None,
    user_text: str,
    assistant_text: str,
    event_data: dict[str, Any] | None = None,
) -> None:
    """Store both sides of a completed exchange and bump session counters.

    Runs after the response has been produced; failures are logged only.
    """
    try:
        async with SessionLocal() as session:
            await chat_repo.add_message(
                session,
                document_id=document_id,
                broker_id=broker_id,
                client_session_id=client_session_id,
                role="user",
                content=user_text,
            )
            await chat_repo.add_message(
                session,
                document_id=document_id,
                broker_id=broker_id,
                client_session_id=client_session_id,
                role="assistant",
                content=assistant_text,
            )
            if client_session_id:
                await sessions_repo.record_activity(
                    session, client_session_id, messages=2, at=_utc_now()
                )
            await session.commit()
    except SQLAlchemyError as exc:
        logger.warning("chat_persist_failed document_id=%s", document_id, exc_info=exc)

    if broker_id:
        await track_event(
            event_type=EVENT_CHAT_MESSAGE,
            broker_id=broker_id,
            public_link_id=public_link_id,
            client_session_id=client_session_id,
            event_data={"document_id": document_id, **(event_data or {})},
        )


async def reframe_stream(
    deltas: AsyncIterator[str],
    *,
    message_id: str,
    collected: list[str],
) -> AsyncIterator[str]:
    """Relay upstream text deltas as the front-end's step/text event frames.

    Every delta is appended to ``collected`` so the caller can persist the
    full reply once the stream has finished.
    """
    yield sse_frame({"type": "start-step"})
    yield sse_frame({"type": "text-start", "id": message_id})
    try:
        async for delta in deltas:
            collected.append(delta)
            yield sse_frame({"type": "text-delta", "id": message_id, "delta": delta})
    except Om2ChatError as exc:
        logger.warning("chat_stream_interrupted message_id=%s", message_id, exc_info=exc)
        yield sse_frame({"type": "error", "errorText": "The response was interrupted"})
        yield sse_frame("[DONE]")
        raise
    yield sse_frame({"type": "text-end", "id": message_id})
    yield sse_frame({"type": "finish-step"})
    yield sse_frame({"type": "finish"})
    yield sse_frame("[DONE]")


async def persist_message(
    *,
    document_id: str,
    broker_id: str | None,
    client_session_id: str | None,
    role: str,
    content: str,
) -> bool:
    try:
        async with SessionLocal() as session:
            await chat_repo.add_message(
                session,
                document_id=document_id,
                broker_id=broker_id,
                client_session_id=client_session_id,
                role=role,
                content=content,
            )
            await session.commit()
    except SQLAlchemyError as exc:
        logger.warning("chat_message_persist_failed document_id=%s role=%s", document_id, role, exc_info=exc)
        return False
    return True


async def touch_client_session(client_session_id: str, *, messages: int) -> None:
    try:
        async with SessionLocal() as session:
            await sessions_repo.record_activity(session, client_session_id, messages=messages, at=_utc_now())
            await session.commit()
    except SQLAlchemyError as exc:
        logger.warning("client_session_touch_failed session_id=%s", client_session_id, exc_info=exc)
