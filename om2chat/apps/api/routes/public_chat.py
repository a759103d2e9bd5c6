from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.apps.api.deps import get_db
from om2chat.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from om2chat.apps.api.rate_limit import BUCKET_CHAT, enforce_rate_limit
from om2chat.core.config import get_settings
from om2chat.core.errors import Om2ChatError
from om2chat.persistence.repos import client_sessions as sessions_repo
from om2chat.persistence.repos import documents as documents_repo
from om2chat.persistence.repos import public_links as links_repo
from om2chat.providers.embeddings.factory import get_embedding_provider
from om2chat.providers.llm.factory import get_llm_provider
from om2chat.services.analytics import EVENT_CHAT_MESSAGE, track_event
from om2chat.services.chat import (
    PUBLIC_CONTEXT_SEPARATOR,
    build_context,
    build_public_system_prompt,
    persist_message,
    touch_client_session,
)
from om2chat.services.entitlements import WINDOW_MS_MINUTE, limits_for
from om2chat.services.retrieval import search_chunks


logger = logging.getLogger(__name__)

router = APIRouter(tags=["public-chat"], responses=DEFAULT_ERROR_RESPONSES)


@router.post("/public-chat")
async def public_chat(
    request: Request,
    response: Response,
    payload: dict[str, Any] = Body(default_factory=dict),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Anonymous clients are throttled per IP with guest limits.
    await enforce_rate_limit(
        request=request,
        response=response,
        bucket=BUCKET_CHAT,
        max_requests=limits_for(None).chat_per_minute,
        window_ms=WINDOW_MS_MINUTE,
    )

    session_token = payload.get("session_token")
    message = payload.get("message")
    if not isinstance(session_token, str) or not session_token or not isinstance(message, str) or not message.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_REQUEST", "message": "Missing session_token or message"},
        )

    client_session = await sessions_repo.get_client_session_by_token(db, session_token)
    if client_session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "INVALID_SESSION", "message": "Invalid session token"},
        )
    link = await links_repo.get_public_link(db, client_session.public_link_id)
    if link is None or not link.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "LINK_INACTIVE", "message": "Public link not active"},
        )
    document = await documents_repo.get_document(db, link.document_id)
    if document is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "DOCUMENT_NOT_FOUND", "message": "Document not found"},
        )

    # Snapshot ids before further awaits touch the request session.
    document_id = document.id
    document_title = document.title
    broker_id = link.broker_id
    link_id = link.id
    client_session_id = client_session.id

    await persist_message(
        document_id=document_id,
        broker_id=broker_id,
        client_session_id=client_session_id,
        role="user",
        content=message,
    )
    await track_event(
        event_type=EVENT_CHAT_MESSAGE,
        broker_id=broker_id,
        public_link_id=link_id,
        client_session_id=client_session_id,
        event_data={"message_type": "user", "message_length": len(message)},
    )

    settings = get_settings()
    embedder = get_embedding_provider()
    provider = get_llm_provider()
    try:
        embedding = await embedder.embed(message)
        chunks = await search_chunks(
            db, embedding=embedding, file_id=document_id, top_k=settings.retrieval_top_k
        )
        context = build_context(chunks, separator=PUBLIC_CONTEXT_SEPARATOR)
        answer = await provider.complete(
            [
                {"role": "system", "content": build_public_system_prompt(document_title, context)},
                {"role": "user", "content": message},
            ],
            model=settings.openai_public_chat_model,
            max_tokens=settings.openai_public_max_tokens,
        )
    except Om2ChatError as exc:
        logger.warning("public_chat_failed link_id=%s", link_id, exc_info=exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "CHAT_FAILED", "message": "Failed to process chat message"},
        ) from exc
    finally:
        await embedder.aclose()
        await provider.aclose()

    await persist_message(
        document_id=document_id,
        broker_id=broker_id,
        client_session_id=client_session_id,
        role="assistant",
        content=answer,
    )
    await track_event(
        event_type=EVENT_CHAT_MESSAGE,
        broker_id=broker_id,
        public_link_id=link_id,
        client_session_id=client_session_id,
        event_data={
            "message_type": "assistant",
            "message_length": len(answer),
            "chunks_used": len(chunks),
        },
    )
    await touch_client_session(client_session_id, messages=2)

    return {"success": True, "response": answer, "chunks_used": len(chunks)}
