from __future__ import annotations

from om2chat.ingestion.embeddings import embed_text


class FakeEmbeddingProvider:
    # Deterministic hashed vectors keep retrieval tests stable without network calls.
    async def embed(self, text: str) -> list[float]:
        return embed_text(text)

    async def aclose(self) -> None:
        return None
