from __future__ import annotations

import re


# Default ceiling keeps each chunk comfortably inside the embedding model's input window.
CHUNK_MAX_CHARS = 1000

_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")


def split_sentences(text: str) -> list[str]:
    # Terminal punctuation is consumed by the split; blank fragments are dropped.
    return [part.strip() for part in _SENTENCE_SPLIT_RE.split(text) if part.strip()]


def chunk_text(text: str, max_chunk_size: int = CHUNK_MAX_CHARS) -> list[str]:
    """Greedily pack sentences into chunks of at most ``max_chunk_size`` characters.

    A single sentence longer than the ceiling still becomes its own chunk; the
    accumulator only decides where to break, it never splits inside a sentence.
    """
    chunks: list[str] = []
    current = ""
    for sentence in split_sentences(text):
        if current and len(current) + len(sentence) > max_chunk_size:
            chunks.append(current.strip())
            current = sentence
            continue
        current = f"{current} {sentence}" if current else sentence
    if current.strip():
        chunks.append(current.strip())
    return chunks
