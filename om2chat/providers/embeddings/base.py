from __future__ import annotations

from typing import Protocol


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> list[float]:
        ...

    async def aclose(self) -> None:
        ...
