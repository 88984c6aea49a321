"""Interfaces of the analytical collaborators the stages delegate to.

Stages own sequencing, batching and record shaping; everything that talks to
a model or reads the document goes through one of these protocols so it can be
swapped out, and replaced with fakes in tests.
"""

from typing import List, Literal, Optional, Protocol, Sequence, Tuple
from uuid import UUID

from pydantic import BaseModel, Field

from ndaflow.pipeline.usage import TokenUsage

RiskLevel = Literal["standard", "cautious", "aggressive", "unknown"]
GapStatus = Literal["missing", "weak"]
Importance = Literal["critical", "important", "optional"]

SCANNED_MIME_PREFIXES = ("image/",)
# Fewer extractable characters per page than this marks a PDF as image-only
MIN_CHARS_PER_PAGE = 50


class SourceDocument(BaseModel):
    document_id: UUID
    tenant_id: UUID
    file_name: str
    mime_type: Optional[str] = None
    file_url: Optional[str] = None
    page_count: int = 0
    text: str = ""
    is_scanned: bool = False

    @property
    def requires_ocr(self) -> bool:
        """Whether the source looks scanned or image-only."""
        if self.is_scanned:
            return True
        if self.mime_type and self.mime_type.startswith(SCANNED_MIME_PREFIXES):
            return True
        if self.mime_type == "application/pdf" and self.page_count > 0:
            return len(self.text.strip()) < MIN_CHARS_PER_PAGE * self.page_count
        return False


class OcrPage(BaseModel):
    page_number: int
    text: str
    confidence: float = Field(ge=0, le=100)


class ChunkInput(BaseModel):
    chunk_id: str
    chunk_index: int
    content: str
    section_path: List[str] = Field(default_factory=list)
    start_position: int = 0
    end_position: int = 0


class CategoryScore(BaseModel):
    category: str
    confidence: float = Field(ge=0, le=1)
    rationale: Optional[str] = None


class ChunkClassificationResult(BaseModel):
    chunk_index: int
    primary: CategoryScore
    secondary: List[CategoryScore] = Field(default_factory=list)


class ClauseInput(BaseModel):
    chunk_id: str
    chunk_index: int
    category: str
    clause_text: str
    confidence: float
    start_position: int = 0
    end_position: int = 0


class RiskAssessment(BaseModel):
    chunk_id: str
    category: str
    risk_level: RiskLevel
    explanation: str = ""
    citations: List[str] = Field(default_factory=list)
    negotiation_suggestion: Optional[str] = None


class GapFinding(BaseModel):
    category: str
    status: GapStatus
    importance: Importance
    explanation: str = ""
    suggested_language: Optional[str] = None


class DocumentSource(Protocol):
    async def load(self, tenant_id: UUID, document_id: UUID) -> SourceDocument:
        ...


class OcrEngine(Protocol):
    async def recognize(self, document: SourceDocument, page_numbers: Sequence[int]) -> List[OcrPage]:
        ...


class Embedder(Protocol):
    async def embed(self, texts: Sequence[str]) -> Tuple[List[List[float]], TokenUsage]:
        ...


class ClauseClassifier(Protocol):
    async def classify(
        self, chunks: Sequence[ChunkInput]
    ) -> Tuple[List[ChunkClassificationResult], TokenUsage]:
        ...


class RiskScorer(Protocol):
    async def score(
        self, clauses: Sequence[ClauseInput], perspective: str = "balanced"
    ) -> Tuple[List[RiskAssessment], TokenUsage]:
        ...


class GapAnalyst(Protocol):
    async def analyze(
        self, present_categories: Sequence[str], clauses: Sequence[ClauseInput]
    ) -> Tuple[List[GapFinding], TokenUsage]:
        ...
