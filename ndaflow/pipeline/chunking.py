"""Legal-aware chunking of contract text.

Text is first split into sections at headings (numbered clauses, ``Section``
and ``ARTICLE`` markers, short all-caps lines). Sections that exceed the token
ceiling are split further at paragraph and then sentence boundaries, and
fragments under the floor are merged into their neighbour when both belong to
the same top-level section and chunk type.
"""

import re
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

HEADING_PATTERN = re.compile(
    r"^\s*(?:"
    r"(?:ARTICLE|Article)\s+[IVXLC\d]+\b.*"
    r"|(?:SECTION|Section)\s+\d+(?:\.\d+)*\b.*"
    r"|\d+(?:\.\d+)*\.?\s+[A-Z][^\n]{0,80}"
    r"|[A-Z][A-Z0-9 ,;&'\-]{3,60}"
    r")\s*$"
)
SECTION_NUMBER_PATTERN = re.compile(r"^\s*(?:ARTICLE|Article|SECTION|Section)?\s*([IVXLC\d]+(?:\.\d+)*)")
SENTENCE_BOUNDARY = re.compile(r"(?<=[.;:])\s+(?=[A-Z(])")

BOILERPLATE_MARKERS = (
    "in witness whereof",
    "counterparts",
    "signature",
    "entire agreement",
    "notices",
)
RECITAL_MARKERS = ("whereas", "recital")
DEFINITION_MARKERS = ("definitions", " means ", "shall mean")


class TokenCounter:
    """Heuristic token estimate blending character and word counts."""

    CHARS_PER_TOKEN = 4.0
    WORDS_PER_TOKEN_FACTOR = 1.3
    # Legal text carries more defined terms and citations than prose
    LEGAL_DOC_FACTOR = 1.1

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0

        base_estimate = len(text) / self.CHARS_PER_TOKEN
        word_based_estimate = len(text.split()) * self.WORDS_PER_TOKEN_FACTOR
        estimate = (base_estimate + word_based_estimate) / 2
        return max(1, int(estimate * self.LEGAL_DOC_FACTOR))


class TextChunk(BaseModel):
    chunk_index: int
    content: str
    section_path: List[str] = Field(default_factory=list)
    chunk_type: str = "clause"
    token_count: int = 0
    start_position: int = 0
    end_position: int = 0


class _Section(BaseModel):
    title: Optional[str]
    start: int
    end: int


class LegalChunker:
    """Split contract text into right-sized, section-aware chunks."""

    def __init__(
        self,
        max_tokens: int = 512,
        min_tokens: int = 50,
        token_counter: Optional[TokenCounter] = None,
    ):
        self.max_tokens = max_tokens
        self.min_tokens = min_tokens
        self.token_counter = token_counter or TokenCounter()

    def chunk(self, text: str) -> List[TextChunk]:
        """Chunk ``text``; returns an empty list for blank input."""
        if not text or not text.strip():
            return []

        pieces: List[Tuple[List[str], str, int, int]] = []
        top_title: Optional[str] = None
        for section in self._sections(text):
            if section.title and self._is_top_level(section.title):
                top_title = section.title
            path = [t for t in (top_title, section.title) if t]
            path = list(dict.fromkeys(path))
            for start, end in self._split_span(text, section.start, section.end):
                pieces.append((path, self._classify(text[start:end], section.title), start, end))

        merged = self._merge_small(text, pieces)

        chunks = [
            TextChunk(
                chunk_index=index,
                content=text[start:end].strip(),
                section_path=path,
                chunk_type=chunk_type,
                token_count=self.token_counter.count_tokens(text[start:end]),
                start_position=start,
                end_position=end,
            )
            for index, (path, chunk_type, start, end) in enumerate(merged)
        ]

        LOGGER.debug(
            "Chunked document",
            extra={"chunks": len(chunks), "characters": len(text)},
        )
        return chunks

    def _sections(self, text: str) -> List[_Section]:
        sections: List[_Section] = []
        current_title: Optional[str] = None
        current_start = 0
        offset = 0

        for line in text.splitlines(keepends=True):
            stripped = line.strip()
            if stripped and HEADING_PATTERN.match(stripped) and len(stripped) <= 100:
                if text[current_start:offset].strip():
                    sections.append(_Section(title=current_title, start=current_start, end=offset))
                current_title = stripped.rstrip(".:")
                current_start = offset
            offset += len(line)

        if text[current_start:].strip():
            sections.append(_Section(title=current_title, start=current_start, end=len(text)))
        return sections

    def _split_span(self, text: str, start: int, end: int) -> List[Tuple[int, int]]:
        """Split a span into pieces under ``max_tokens`` at natural boundaries."""
        if self.token_counter.count_tokens(text[start:end]) <= self.max_tokens:
            return [(start, end)]

        boundaries = self._boundaries(text, start, end, re.compile(r"\n\s*\n"))
        if len(boundaries) <= 2:
            boundaries = self._boundaries(text, start, end, SENTENCE_BOUNDARY)

        spans: List[Tuple[int, int]] = []
        span_start = boundaries[0]
        for previous, boundary in zip(boundaries, boundaries[1:]):
            if (
                previous > span_start
                and self.token_counter.count_tokens(text[span_start:boundary]) > self.max_tokens
            ):
                spans.append((span_start, previous))
                span_start = previous
        spans.append((span_start, end))

        # A single sentence longer than the ceiling is cut at word boundaries
        result: List[Tuple[int, int]] = []
        for span_start, span_end in spans:
            result.extend(self._hard_split(text, span_start, span_end))
        return result

    @staticmethod
    def _boundaries(text: str, start: int, end: int, pattern: re.Pattern) -> List[int]:
        cuts = [match.end() + start for match in pattern.finditer(text[start:end])]
        return [start] + [cut for cut in cuts if start < cut < end] + [end]

    def _hard_split(self, text: str, start: int, end: int) -> List[Tuple[int, int]]:
        if self.token_counter.count_tokens(text[start:end]) <= self.max_tokens:
            return [(start, end)]

        words = list(re.finditer(r"\S+\s*", text[start:end]))
        spans: List[Tuple[int, int]] = []
        span_start = start
        for word in words:
            word_end = start + word.end()
            if self.token_counter.count_tokens(text[span_start:word_end]) > self.max_tokens and word_end > span_start:
                cut = start + word.start()
                if cut > span_start:
                    spans.append((span_start, cut))
                    span_start = cut
        spans.append((span_start, end))
        return spans

    def _merge_small(
        self, text: str, pieces: List[Tuple[List[str], str, int, int]]
    ) -> List[Tuple[List[str], str, int, int]]:
        merged: List[Tuple[List[str], str, int, int]] = []
        for path, chunk_type, start, end in pieces:
            if merged:
                prev_path, prev_type, prev_start, prev_end = merged[-1]
                same_top = (prev_path[:1] == path[:1])
                too_small = self.token_counter.count_tokens(text[prev_start:prev_end]) < self.min_tokens
                fits = self.token_counter.count_tokens(text[prev_start:end]) <= self.max_tokens
                if too_small and same_top and prev_type == chunk_type and fits:
                    merged[-1] = (prev_path, prev_type, prev_start, end)
                    continue
            merged.append((path, chunk_type, start, end))
        return merged

    @staticmethod
    def _is_top_level(title: str) -> bool:
        match = SECTION_NUMBER_PATTERN.match(title)
        if not match:
            return True
        return "." not in match.group(1)

    @staticmethod
    def _classify(content: str, title: Optional[str]) -> str:
        lowered = f" {(title or '').lower()} {content.lower()} "
        if any(marker in lowered for marker in RECITAL_MARKERS):
            return "recital"
        if any(marker in lowered for marker in BOILERPLATE_MARKERS):
            return "boilerplate"
        if title and any(marker in title.lower() for marker in ("definition",)):
            return "definition"
        if any(marker in lowered for marker in DEFINITION_MARKERS[1:]) and title is None:
            return "definition"
        return "clause"
