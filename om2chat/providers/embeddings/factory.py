from __future__ import annotations

from om2chat.core.config import get_settings
from om2chat.providers.embeddings.base import EmbeddingProvider
from om2chat.providers.embeddings.fake import FakeEmbeddingProvider
from om2chat.providers.embeddings.openai_embeddings import OpenAIEmbeddingProvider


def get_embedding_provider() -> EmbeddingProvider:
    settings = get_settings()
    provider = (settings.embedding_provider or "openai").lower()

    if provider == "fake":
        return FakeEmbeddingProvider()
    return OpenAIEmbeddingProvider()
