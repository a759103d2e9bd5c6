from __future__ import annotations

import math

from om2chat.core.config import EMBED_DIM
from om2chat.ingestion.embeddings import embed_text


def test_embed_text_is_deterministic() -> None:
    vec1 = embed_text("Offering memorandum for 100 Main Street")
    vec2 = embed_text("Offering memorandum for 100 Main Street")

    assert vec1 == vec2
    assert len(vec1) == EMBED_DIM


def test_embed_text_is_unit_length() -> None:
    vec = embed_text("net operating income")
    assert math.isclose(math.sqrt(sum(v * v for v in vec)), 1.0, rel_tol=1e-9)


def test_embed_text_without_tokens_is_zero_vector() -> None:
    assert embed_text("!!!") == [0.0] * EMBED_DIM
