from __future__ import annotations

import logging
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.apps.api.deps import get_db, get_optional_broker
from om2chat.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from om2chat.apps.api.rate_limit import (
    BUCKET_CHAT,
    enforce_daily_message_limit,
    enforce_rate_limit,
)
from om2chat.core.config import get_settings
from om2chat.core.errors import EmbeddingError, Om2ChatError, ProviderError, RetrievalError
from om2chat.domain.models import Broker, ClientSession, DocumentMetadata, PublicLink
from om2chat.persistence.repos import client_sessions as sessions_repo
from om2chat.persistence.repos import documents as documents_repo
from om2chat.persistence.repos import public_links as links_repo
from om2chat.providers.embeddings.factory import get_embedding_provider
from om2chat.providers.llm.factory import get_llm_provider
from om2chat.services.chat import (
    GENERIC_SYSTEM_PROMPT,
    build_context,
    build_document_system_prompt,
    build_metadata_context,
    extract_user_text,
    is_document_chat_id,
    new_message_id,
    persist_exchange,
    reframe_stream,
)
from om2chat.services.entitlements import WINDOW_MS_MINUTE, limits_for, require_active_subscription
from om2chat.services.retrieval import search_chunks
from om2chat.services.teams import visible_owner_ids


logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"], responses=DEFAULT_ERROR_RESPONSES)

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Content-Type": "text/event-stream",
    "Connection": "keep-alive",
}


async def _resolve_public_session(
    db: AsyncSession, session_token: str | None
) -> tuple[ClientSession, PublicLink] | None:
    if not session_token:
        return None
    client_session = await sessions_repo.get_client_session_by_token(db, session_token)
    if client_session is None:
        return None
    link = await links_repo.get_public_link(db, client_session.public_link_id)
    if link is None or not link.is_active:
        return None
    return client_session, link


async def _load_document(
    db: AsyncSession,
    chat_id: str,
    *,
    broker: Broker | None,
    link: PublicLink | None,
) -> DocumentMetadata | None:
    document = await documents_repo.get_document(db, chat_id)
    if document is None:
        return None
    if link is not None:
        # A client session only ever reaches the document its link exposes.
        return document if document.id == link.document_id else None
    if broker is not None and document.broker_id in await visible_owner_ids(db, broker):
        return document
    return None


async def _document_context(db: AsyncSession, document: DocumentMetadata, query: str) -> str:
    # Render the fallback while the row is loaded; retrieval may touch the transaction.
    document_id = document.id
    metadata_context = build_metadata_context(document)
    embedder = get_embedding_provider()
    try:
        embedding = await embedder.embed(query)
        chunks = await search_chunks(
            db, embedding=embedding, file_id=document_id, top_k=get_settings().retrieval_top_k
        )
    except (EmbeddingError, RetrievalError) as exc:
        # Answer from metadata rather than failing the whole chat.
        logger.warning("chat_context_failed document_id=%s", document_id, exc_info=exc)
        return metadata_context
    finally:
        await embedder.aclose()
    logger.info("chat_context_built document_id=%s chunks=%s", document_id, len(chunks))
    if not chunks:
        return metadata_context
    return build_context(chunks)


@router.post("/chat")
async def chat(
    request: Request,
    response: Response,
    payload: dict[str, Any] = Body(default_factory=dict),
    broker: Broker | None = Depends(get_optional_broker),
    db: AsyncSession = Depends(get_db),
) -> StreamingResponse:
    limits = limits_for(broker)
    await enforce_rate_limit(
        request=request,
        response=response,
        bucket=BUCKET_CHAT,
        max_requests=limits.chat_per_minute,
        window_ms=WINDOW_MS_MINUTE,
        user_id=broker.id if broker else None,
    )

    public: tuple[ClientSession, PublicLink] | None = None
    if broker is None:
        public = await _resolve_public_session(db, payload.get("sessionToken"))
        if public is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"code": "AUTH_UNAUTHORIZED", "message": "Unauthorized"},
            )
    else:
        require_active_subscription(broker)
        await enforce_daily_message_limit(broker_id=broker.id, limit=limits.messages_per_day)

    user_text = extract_user_text(payload.get("message"))
    if not user_text:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_MESSAGE", "message": "No text content found"},
        )

    chat_id = payload.get("id")
    client_session, link = public if public else (None, None)
    # Capture plain values; the request session is closed once streaming starts.
    owner_broker_id = link.broker_id if link else (broker.id if broker else None)
    session_id = client_session.id if client_session else None
    link_id = link.id if link else None
    document_id: str | None = None
    system_prompt = GENERIC_SYSTEM_PROMPT
    if is_document_chat_id(chat_id):
        document = await _load_document(db, chat_id, broker=broker, link=link)
        if document is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"code": "DOCUMENT_NOT_FOUND", "message": "Document not found"},
            )
        document_id = document.id
        document_title = document.title
        context = await _document_context(db, document, user_text)
        system_prompt = build_document_system_prompt(document_title, context)
    elif public is not None:
        # Client sessions are scoped to one document; generic chat is broker only.
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "DOCUMENT_NOT_FOUND", "message": "Document not found"},
        )

    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_text},
    ]
    provider = get_llm_provider()
    try:
        deltas = await provider.open_stream(messages)
    except ProviderError as exc:
        await provider.aclose()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "PROVIDER_ERROR", "message": "OpenAI API error"},
        ) from exc
    except Om2ChatError:
        await provider.aclose()
        raise

    message_id = new_message_id()
    headers = dict(_SSE_HEADERS)
    headers.update({k: v for k, v in response.headers.items() if k.lower().startswith("x-ratelimit")})

    async def event_stream() -> AsyncGenerator[str, None]:
        collected: list[str] = []
        try:
            async for frame in reframe_stream(deltas, message_id=message_id, collected=collected):
                yield frame
        except Om2ChatError:
            # The error frame was already emitted; nothing complete to store.
            return
        finally:
            await provider.aclose()

        assistant_text = "".join(collected)
        if document_id and assistant_text:
            await persist_exchange(
                document_id=document_id,
                broker_id=owner_broker_id,
                client_session_id=session_id,
                public_link_id=link_id,
                user_text=user_text,
                assistant_text=assistant_text,
                event_data={
                    "message_count": 2,
                    "user_message_length": len(user_text),
                    "assistant_message_length": len(assistant_text),
                },
            )

    return StreamingResponse(event_stream(), headers=headers, media_type="text/event-stream")
