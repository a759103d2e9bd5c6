from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from om2chat.core.config import get_settings
from om2chat.core.errors import DocumentFetchError, Om2ChatError
from om2chat.ingestion.chunking import chunk_text
from om2chat.persistence.repos import documents as documents_repo
from om2chat.providers.embeddings.base import EmbeddingProvider


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    total: int
    succeeded: int
    failed: int


class UploadTooLargeError(DocumentFetchError):
    """Remote document exceeds the upload ceiling."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def title_from_filename(filename: str | None) -> str:
    name = (filename or "").strip() or "Untitled document"
    if name.lower().endswith(".pdf"):
        name = name[: -len(".pdf")]
    return name or "Untitled document"


async def fetch_document_bytes(url: str, *, max_bytes: int) -> bytes:
    # Only http(s) sources are fetched; the ceiling is enforced while streaming.
    if not url.startswith(("http://", "https://")):
        raise DocumentFetchError("Document URL must be http(s)")
    chunks: list[bytes] = []
    received = 0
    try:
        async with httpx.AsyncClient(timeout=60.0, follow_redirects=True) as client:
            async with client.stream("GET", url) as response:
                if response.status_code >= 400:
                    raise DocumentFetchError(f"Document download failed: {response.status_code}")
                async for part in response.aiter_bytes():
                    received += len(part)
                    if received > max_bytes:
                        raise UploadTooLargeError("Document exceeds upload limit")
                    chunks.append(part)
    except httpx.HTTPError as exc:
        raise DocumentFetchError("Document download failed") from exc
    return b"".join(chunks)


async def ingest_text(
    session: AsyncSession,
    *,
    document_id: str,
    user_id: str,
    text: str,
    embedder: EmbeddingProvider,
) -> IngestResult:
    """Chunk, embed and store ``text`` one chunk at a time.

    Each chunk is committed on its own; a failed embedding or insert is
    counted and skipped, so partial ingestion is possible and not rolled back.
    """
    settings = get_settings()
    chunks = chunk_text(text, settings.chunk_max_chars)
    succeeded = 0
    failed = 0
    processed_at = _utc_now().isoformat()
    for index, content in enumerate(chunks):
        try:
            embedding = await embedder.embed(content)
            await documents_repo.insert_chunk(
                session,
                file_id=document_id,
                content=content,
                embedding=embedding,
                chunk_index=index,
                metadata_json={"user_id": user_id, "processed_at": processed_at},
            )
            await session.commit()
            succeeded += 1
        except (Om2ChatError, SQLAlchemyError) as exc:
            await session.rollback()
            failed += 1
            logger.warning(
                "chunk_ingest_failed document_id=%s chunk_index=%s", document_id, index, exc_info=exc
            )
    logger.info(
        "document_ingested document_id=%s chunks=%s failed=%s", document_id, succeeded, failed
    )
    return IngestResult(total=len(chunks), succeeded=succeeded, failed=failed)
