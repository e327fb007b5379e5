"""Tests for chunking.py"""

import pytest

from pants.core.chunking import Chunk, build_archive_text, chunk_text


class TestChunkText:
    def test_short_text_yields_one_chunk(self):
        chunks = chunk_text("Just a short note.", chunk_size=1500, overlap=300)
        assert chunks == [Chunk(content="Just a short note.", index=0)]

    def test_empty_text_yields_nothing(self):
        assert chunk_text("") == []
        assert chunk_text("   \n\n  ") == []

    def test_splits_at_paragraph_boundary(self):
        chunks = chunk_text("Paragraph one.\n\nParagraph two.", chunk_size=20, overlap=5)

        assert [c.index for c in chunks] == [0, 1]
        assert chunks[0].content == "Paragraph one."
        assert chunks[1].content.endswith("Paragraph two.")
        assert all(c.content == c.content.strip() for c in chunks)

    def test_prefers_sentence_end_in_second_half(self):
        text = "A" * 60 + ". " + "B" * 60
        chunks = chunk_text(text, chunk_size=100, overlap=0)
        assert chunks[0].content == "A" * 60 + "."

    def test_ignores_break_in_first_half(self):
        text = "Hi. " + "x" * 200
        chunks = chunk_text(text, chunk_size=100, overlap=0)
        assert len(chunks[0].content) == 100

    @pytest.mark.parametrize(
        "chunk_size,overlap",
        [(1, 1), (1, 0), (5, 5), (5, 50), (10, 3), (50, 10), (1500, 300)],
    )
    def test_indices_contiguous_and_terminates(self, chunk_size, overlap):
        text = ("word " * 20 + "\n\n" + "Sentence here. " * 5) * 3
        chunks = chunk_text(text, chunk_size=chunk_size, overlap=overlap)
        assert [c.index for c in chunks] == list(range(len(chunks)))
        assert all(c.content for c in chunks)

    def test_degenerate_overlap_terminates(self):
        text = "abcdefghij" * 10
        chunks = chunk_text(text, chunk_size=1, overlap=1)
        assert len(chunks) == 100
        assert "".join(c.content for c in chunks) == text

    def test_overlap_shares_text(self):
        text = "x" * 250
        chunks = chunk_text(text, chunk_size=100, overlap=20)
        assert len(chunks) == 3
        assert len(chunks[1].content) == 100

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            chunk_text("text", chunk_size=0)


def test_build_archive_text():
    assert build_archive_text("Title", "Desc", "Body") == "Title\n\nDesc\n\nBody"
    assert build_archive_text(None, None, "Body") == "\n\n\n\nBody"
