from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.domain.models import DocumentChunk, DocumentMetadata


async def create_document(
    session: AsyncSession,
    *,
    title: str,
    url: str | None,
    broker_id: str,
) -> DocumentMetadata:
    # Document ids are UUIDs so chat ids can be recognized as document chats.
    doc = DocumentMetadata(id=str(uuid4()), title=title, url=url, broker_id=broker_id)
    session.add(doc)
    await session.flush()
    return doc


async def get_document(session: AsyncSession, document_id: str) -> DocumentMetadata | None:
    result = await session.execute(select(DocumentMetadata).where(DocumentMetadata.id == document_id))
    return result.scalar_one_or_none()


async def get_owned_document(
    session: AsyncSession, document_id: str, broker_id: str
) -> DocumentMetadata | None:
    # Return None for owner mismatch to keep 404 semantics.
    result = await session.execute(
        select(DocumentMetadata).where(
            DocumentMetadata.id == document_id,
            DocumentMetadata.broker_id == broker_id,
        )
    )
    return result.scalar_one_or_none()


async def list_documents(session: AsyncSession, broker_id: str) -> list[tuple[DocumentMetadata, int]]:
    chunk_counts = (
        select(DocumentChunk.file_id, func.count().label("chunk_count"))
        .group_by(DocumentChunk.file_id)
        .subquery()
    )
    result = await session.execute(
        select(DocumentMetadata, func.coalesce(chunk_counts.c.chunk_count, 0))
        .outerjoin(chunk_counts, chunk_counts.c.file_id == DocumentMetadata.id)
        .where(DocumentMetadata.broker_id == broker_id)
        .order_by(DocumentMetadata.created_at.desc(), DocumentMetadata.id)
    )
    return [(row[0], int(row[1])) for row in result.all()]


async def count_documents(session: AsyncSession, broker_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(DocumentMetadata).where(DocumentMetadata.broker_id == broker_id)
    )
    return int(result.scalar() or 0)


async def insert_chunk(
    session: AsyncSession,
    *,
    file_id: str,
    content: str,
    embedding: list[float],
    chunk_index: int,
    metadata_json: dict[str, Any],
) -> DocumentChunk:
    chunk = DocumentChunk(
        id=str(uuid4()),
        file_id=file_id,
        content=content,
        embedding=embedding,
        chunk_index=chunk_index,
        metadata_json=metadata_json,
    )
    session.add(chunk)
    return chunk


async def count_chunks(session: AsyncSession, file_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(DocumentChunk).where(DocumentChunk.file_id == file_id)
    )
    return int(result.scalar() or 0)


async def delete_chunks(session: AsyncSession, file_id: str) -> None:
    await session.execute(delete(DocumentChunk).where(DocumentChunk.file_id == file_id))
