"""In-memory stand-ins for the model providers, plus helpers to seed the database."""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ndaflow.core.exceptions import APIServerError
from ndaflow.database.models import AnalysisRun, Document
from ndaflow.pipeline.cancellation import CancellationController
from ndaflow.pipeline.chunking import LegalChunker
from ndaflow.pipeline.orchestrator import PipelineOrchestrator, RetrySettings
from ndaflow.pipeline.progress import ProgressBroker, ProgressEmitter
from ndaflow.pipeline.rate_limiter import ProviderRateLimiter, RateLimiterRegistry
from ndaflow.pipeline.stages import (
    ChunkStage,
    ClassifyStage,
    ExtractStage,
    FinalizeStage,
    GapStage,
    OcrStage,
    ScoreStage,
)
from ndaflow.pipeline.usage import TokenUsage
from ndaflow.providers.base import (
    CategoryScore,
    ChunkClassificationResult,
    ChunkInput,
    ClauseInput,
    GapFinding,
    OcrPage,
    RiskAssessment,
    SourceDocument,
)
from ndaflow.providers.database_source import DatabaseDocumentSource

SECTIONS = [
    "1. Confidentiality\n"
    "The Receiving Party shall keep all Confidential Information disclosed by the Disclosing Party in "
    "strict confidence and shall use it solely to evaluate the proposed business relationship between the "
    "parties, exercising at least a reasonable degree of care at all times.\n",
    "2. Term and Termination\n"
    "This Agreement takes effect on the Effective Date and continues for two years. Either party may "
    "terminate this Agreement for convenience by giving thirty days prior written notice to the other party "
    "at its registered address.\n",
    "3. Governing Law\n"
    "This Agreement is governed by the laws of the State of Delaware without regard to its conflict of laws "
    "provisions, and the parties submit to the exclusive jurisdiction of the state and federal courts "
    "located in Wilmington.\n",
    "4. Non-Solicitation\n"
    "During the term and for twelve months afterwards, neither party shall directly or indirectly solicit "
    "or hire any employee of the other party who was involved in the evaluation, except through general "
    "advertisements not targeted at such employees.\n",
]
NDA_TEXT = "\n".join(SECTIONS)

KEYWORD_CATEGORIES = (
    ("governed by the laws", "Governing Law"),
    ("terminate", "Termination For Convenience"),
    ("solicit", "No-Solicit Of Employees"),
    ("Confidential Information", "Parties"),
)

CallHook = Callable[[int], Awaitable[None]]


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


class CountingChunker(LegalChunker):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.calls = 0

    def chunk(self, text: str):
        self.calls += 1
        return super().chunk(text)


class FakeClassifier:
    """Keyword classifier. Raises a 503 for the first ``failures`` calls."""

    def __init__(self, failures: int = 0, before_call: Optional[CallHook] = None, delay: float = 0.0):
        self.failures = failures
        self.before_call = before_call
        self.delay = delay
        self.calls: List[List[int]] = []

    async def classify(self, chunks: Sequence[ChunkInput]):
        self.calls.append([chunk.chunk_index for chunk in chunks])
        if self.before_call is not None:
            await self.before_call(len(self.calls))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures > 0:
            self.failures -= 1
            raise APIServerError("Upstream returned 503")

        results = []
        for chunk in chunks:
            category = next(
                (name for keyword, name in KEYWORD_CATEGORIES if keyword in chunk.content),
                None,
            )
            if category is None:
                primary = CategoryScore(category="Uncategorized", confidence=0.2)
            else:
                primary = CategoryScore(category=category, confidence=0.9, rationale=f"Mentions {category}")
            results.append(ChunkClassificationResult(
                chunk_index=chunk.chunk_index,
                primary=primary,
                secondary=[CategoryScore(category="Effective Date", confidence=0.4)],
            ))
        return results, TokenUsage(input_tokens=100 * len(chunks), output_tokens=20 * len(chunks))


class FakeScorer:
    """Scores every clause standard, except that the receiving party sees risk everywhere."""

    def __init__(self):
        self.calls: List[List[str]] = []
        self.perspectives: List[str] = []

    async def score(self, clauses: Sequence[ClauseInput], perspective: str = "balanced"):
        self.calls.append([clause.category for clause in clauses])
        self.perspectives.append(perspective)
        assessments = [
            RiskAssessment(
                chunk_id=clause.chunk_id,
                category=clause.category,
                risk_level=self._level(clause, perspective),
                explanation="Compared against market NDA terms",
            )
            for clause in clauses
        ]
        return assessments, TokenUsage(input_tokens=50 * len(clauses), output_tokens=10 * len(clauses))

    @staticmethod
    def _level(clause: ClauseInput, perspective: str) -> str:
        if perspective == "receiving":
            return "aggressive"
        return "cautious" if clause.category == "No-Solicit Of Employees" else "standard"


class FakeGapAnalyst:
    def __init__(self):
        self.calls = 0

    async def analyze(self, present_categories: Sequence[str], clauses: Sequence[ClauseInput]):
        self.calls += 1
        findings = [
            GapFinding(
                category="Effective Date",
                status="missing",
                importance="critical",
                explanation="No explicit effective date clause",
            )
        ]
        return findings, TokenUsage(input_tokens=200, output_tokens=40)


class FakeEmbedder:
    def __init__(self, dimension: int = 4):
        self.dimension = dimension
        self.calls: List[int] = []

    async def embed(self, texts: Sequence[str]):
        self.calls.append(len(texts))
        vectors = [[0.1] * self.dimension for _ in texts]
        return vectors, TokenUsage(input_tokens=10 * len(texts))


class FakeOcrEngine:
    def __init__(self, pages: Dict[int, str], confidence: float = 92.0):
        self.pages = pages
        self.confidence = confidence
        self.calls: List[List[int]] = []

    async def recognize(self, document: SourceDocument, page_numbers: Sequence[int]):
        self.calls.append(list(page_numbers))
        return [
            OcrPage(page_number=number, text=self.pages.get(number, ""), confidence=self.confidence)
            for number in page_numbers
        ]


def build_pipeline(
    session_maker: async_sessionmaker[AsyncSession],
    classifier=None,
    scorer=None,
    analyst=None,
    embedder=None,
    ocr_engine=None,
    chunker: Optional[LegalChunker] = None,
    broker: Optional[ProgressBroker] = None,
    finalize_stage=None,
    classify_batch_size: int = 2,
    retry: Optional[RetrySettings] = None,
    step_timeout: float = 5.0,
    sleep=no_sleep,
    rate_limiters: Optional[RateLimiterRegistry] = None,
) -> PipelineOrchestrator:
    source = DatabaseDocumentSource(session_maker)
    stages = [
        ExtractStage(source),
        ChunkStage(chunker or CountingChunker(), embedder=embedder, embed_batch_size=2),
        ClassifyStage(classifier or FakeClassifier(), batch_size=classify_batch_size),
        ScoreStage(scorer or FakeScorer(), batch_size=3),
        GapStage(analyst or FakeGapAnalyst()),
        finalize_stage or FinalizeStage(),
    ]
    ocr_stage = OcrStage(source, ocr_engine, pages_per_step=2) if ocr_engine is not None else None
    if rate_limiters is None:
        rate_limiters = RateLimiterRegistry({
            provider: ProviderRateLimiter.per_minute(provider, 6000, burst=100)
            for provider in ("llm", "embeddings", "ocr")
        })
    return PipelineOrchestrator(
        session_maker=session_maker,
        stages=stages,
        rate_limiters=rate_limiters,
        progress=ProgressEmitter(session_maker, broker or ProgressBroker(), min_publish_interval=0),
        cancellation=CancellationController(session_maker),
        ocr_stage=ocr_stage,
        retry=retry or RetrySettings(max_attempts=3, initial_delay=0.01, max_delay=0.05),
        step_timeout=step_timeout,
        sleep=sleep,
    )


async def create_document(
    session_maker: async_sessionmaker[AsyncSession],
    tenant_id: Optional[UUID] = None,
    text: str = NDA_TEXT,
    is_scanned: bool = False,
    page_count: int = 1,
    mime_type: str = "application/pdf",
    file_url: Optional[str] = None,
) -> Document:
    async with session_maker() as session:
        document = Document(
            id=uuid4(),
            tenant_id=tenant_id or uuid4(),
            file_name="mutual-nda.pdf",
            file_url=file_url,
            mime_type=mime_type,
            page_count=page_count,
            raw_text=text,
            is_scanned=is_scanned,
        )
        session.add(document)
        await session.commit()
        return document


async def create_run(
    session_maker: async_sessionmaker[AsyncSession],
    document: Document,
    status: str = "pending",
    run_number: int = 1,
    created_at: Optional[datetime] = None,
    **fields,
) -> AnalysisRun:
    async with session_maker() as session:
        run = AnalysisRun(
            id=uuid4(),
            tenant_id=document.tenant_id,
            document_id=document.id,
            run_number=run_number,
            status=status,
            created_at=created_at or datetime.now(timezone.utc),
            **fields,
        )
        session.add(run)
        await session.commit()
        return run


class RecordingDispatcher:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.dispatched: List[UUID] = []
        self.rescored: List[Tuple[UUID, str]] = []

    async def dispatch(self, run: AnalysisRun) -> str:
        if self.fail:
            raise ConnectionError("Temporal server unreachable")
        self.dispatched.append(run.id)
        return f"analysis-{run.id}-{run.attempt}"

    async def dispatch_rescore(self, run: AnalysisRun) -> str:
        if self.fail:
            raise ConnectionError("Temporal server unreachable")
        self.rescored.append((run.id, run.perspective))
        return f"rescore-{run.id}-{run.rescore_generation}"
