"""Unit tests for legal-aware chunking."""

import pytest

from ndaflow.pipeline.chunking import LegalChunker, TokenCounter
from tests.fakes import NDA_TEXT


@pytest.fixture
def chunker() -> LegalChunker:
    return LegalChunker()


class TestTokenCounter:
    """Test suite for the heuristic token estimate."""

    def test_empty_text_has_no_tokens(self):
        assert TokenCounter().count_tokens("") == 0

    def test_blends_character_and_word_estimates(self):
        # (18 / 4 + 4 * 1.3) / 2 * 1.1 = 5.3
        assert TokenCounter().count_tokens("one two three four") == 5


class TestLegalChunker:
    """Test suite for LegalChunker."""

    @pytest.mark.parametrize("text", ["", "   \n\n  "])
    def test_blank_text_yields_no_chunks(self, chunker, text):
        assert chunker.chunk(text) == []

    def test_numbered_sections_become_chunks(self, chunker):
        chunks = chunker.chunk(NDA_TEXT)

        assert [chunk.chunk_index for chunk in chunks] == [0, 1, 2, 3]
        assert [chunk.section_path for chunk in chunks] == [
            ["1. Confidentiality"],
            ["2. Term and Termination"],
            ["3. Governing Law"],
            ["4. Non-Solicitation"],
        ]
        assert all(chunk.chunk_type == "clause" for chunk in chunks)

    def test_positions_point_back_into_the_source(self, chunker):
        for chunk in chunker.chunk(NDA_TEXT):
            assert NDA_TEXT[chunk.start_position:chunk.end_position].strip() == chunk.content

    def test_long_section_is_split_under_token_ceiling(self):
        chunker = LegalChunker(max_tokens=60, min_tokens=10)
        body = " ".join(
            f"The Receiving Party shall protect item {n} with reasonable care." for n in range(30)
        )
        text = f"1. Obligations\n{body}\n"

        chunks = chunker.chunk(text)

        assert len(chunks) > 1
        assert all(chunk.token_count <= 60 for chunk in chunks)
        assert all(chunk.section_path == ["1. Obligations"] for chunk in chunks)
        assert chunks[-1].end_position == len(text)

    def test_small_subsections_merge_into_their_parent(self, chunker):
        text = "1. Confidentiality\n1.1 Scope\nShort text.\n1.2 Use\nShort text too.\n"

        chunks = chunker.chunk(text)

        assert len(chunks) == 1
        assert "1.2 Use" in chunks[0].content
        assert chunks[0].section_path == ["1. Confidentiality"]

    def test_recitals_are_typed(self, chunker):
        chunks = chunker.chunk("WHEREAS, the parties wish to explore a possible business relationship.")

        assert chunks[0].chunk_type == "recital"
