from __future__ import annotations

from om2chat.ingestion.chunking import chunk_text, split_sentences


def test_split_sentences_drops_terminal_punctuation() -> None:
    assert split_sentences("First one. Second!  Third?? ") == ["First one", "Second", "Third"]


def test_chunk_text_one_sentence_per_chunk_when_ceiling_is_tiny() -> None:
    assert chunk_text("A. B. C.", max_chunk_size=1) == ["A", "B", "C"]


def test_chunk_text_packs_sentences_up_to_ceiling() -> None:
    text = "Cap rate is 6 percent. NOI is 1.2M. Built in 1998. Parking is 4 per 1000."
    chunks = chunk_text(text, max_chunk_size=40)

    assert all(len(chunk) <= 40 for chunk in chunks)
    assert chunks[0].startswith("Cap rate is 6 percent")
    assert len(chunks) > 1


def test_chunk_text_keeps_long_sentence_whole() -> None:
    sentence = "x" * 50
    assert chunk_text(f"{sentence}. short.", max_chunk_size=10) == [sentence, "short"]


def test_chunk_text_empty_input() -> None:
    assert chunk_text("   ") == []
    assert chunk_text("...") == []
