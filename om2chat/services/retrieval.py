from __future__ import annotations

import logging

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.core.config import EMBED_DIM
from om2chat.core.errors import RetrievalError
from om2chat.domain.models import DocumentChunk
from om2chat.persistence.db import is_postgres


logger = logging.getLogger(__name__)

_MATCH_DOCUMENTS_SQL = text(
    "SELECT id, content, chunk_index, similarity "
    "FROM match_documents(CAST(:query_embedding AS vector), :match_count, :file_id)"
)


def _vector_literal(embedding: list[float]) -> str:
    return "[" + ",".join(str(float(v)) for v in embedding) + "]"


async def _match_documents(
    session: AsyncSession, *, embedding: list[float], file_id: str, top_k: int
) -> list[dict]:
    result = await session.execute(
        _MATCH_DOCUMENTS_SQL,
        {"query_embedding": _vector_literal(embedding), "match_count": top_k, "file_id": file_id},
    )
    return [
        {
            "id": row.id,
            "content": row.content,
            "chunk_index": row.chunk_index,
            "similarity": float(row.similarity) if row.similarity is not None else None,
        }
        for row in result.all()
    ]


async def _first_chunks(session: AsyncSession, *, file_id: str, top_k: int) -> list[dict]:
    # Select plain columns so the vector column is never decoded.
    result = await session.execute(
        select(DocumentChunk.id, DocumentChunk.content, DocumentChunk.chunk_index)
        .where(DocumentChunk.file_id == file_id)
        .order_by(DocumentChunk.chunk_index.asc(), DocumentChunk.id.asc())
        .limit(top_k)
    )
    return [
        {"id": row.id, "content": row.content, "chunk_index": row.chunk_index, "similarity": None}
        for row in result.all()
    ]


async def search_chunks(
    session: AsyncSession,
    *,
    embedding: list[float],
    file_id: str,
    top_k: int = 5,
) -> list[dict]:
    """Return up to ``top_k`` chunks of one document, nearest first.

    Similarity ranking is delegated to the ``match_documents`` database
    function. When that function is unavailable the first chunks of the
    document in reading order are returned instead.
    """
    if len(embedding) != EMBED_DIM:
        raise RetrievalError("query embedding dimension mismatch")
    top_k = max(1, min(int(top_k), 20))

    if is_postgres():
        try:
            # Savepoint so a failed call leaves the caller's transaction and loaded rows intact.
            async with session.begin_nested():
                return await _match_documents(
                    session, embedding=embedding, file_id=file_id, top_k=top_k
                )
        except SQLAlchemyError as exc:
            logger.warning("match_documents_failed file_id=%s falling_back=true", file_id, exc_info=exc)

    try:
        return await _first_chunks(session, file_id=file_id, top_k=top_k)
    except SQLAlchemyError as exc:
        raise RetrievalError("chunk lookup failed") from exc
