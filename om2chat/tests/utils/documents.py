from __future__ import annotations

from om2chat.ingestion.chunking import chunk_text
from om2chat.ingestion.embeddings import embed_text
from om2chat.persistence.db import SessionLocal
from om2chat.persistence.repos import brokers as brokers_repo
from om2chat.persistence.repos import documents as documents_repo


OM_TEXT = (
    "Riverside Plaza is a 120000 square foot retail center. "
    "The asking price is 18.5 million dollars. "
    "Net operating income is 1.2 million dollars per year. "
    "The property is 94 percent leased to national tenants."
)


async def create_test_document(
    broker_id: str, *, title: str = "Riverside Plaza OM", text: str = OM_TEXT, url: str | None = None
) -> str:
    # Seed a document with embedded chunks, bypassing PDF parsing.
    async with SessionLocal() as session:
        document = await documents_repo.create_document(session, title=title, url=url, broker_id=broker_id)
        for index, content in enumerate(chunk_text(text, 80)):
            await documents_repo.insert_chunk(
                session,
                file_id=document.id,
                content=content,
                embedding=embed_text(content),
                chunk_index=index,
                metadata_json={"user_id": broker_id},
            )
        await brokers_repo.adjust_document_count(session, broker_id, 1)
        await session.commit()
        return document.id
