"""Wiring of the default pipeline from settings.

The rate limiter registry and the progress broker are process-wide: every
orchestrator built in a process shares them, so concurrent runs draw from the
same provider buckets.
"""

from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ndaflow.core.config import Settings, settings as default_settings
from ndaflow.pipeline.cancellation import CancellationController
from ndaflow.pipeline.chunking import LegalChunker
from ndaflow.pipeline.orchestrator import PipelineOrchestrator, RetrySettings
from ndaflow.pipeline.progress import ProgressBroker, ProgressEmitter
from ndaflow.pipeline.rate_limiter import RateLimiterRegistry
from ndaflow.pipeline.stages import (
    ChunkStage,
    ClassifyStage,
    ExtractStage,
    FinalizeStage,
    GapStage,
    OcrStage,
    ScoreStage,
    Stage,
)
from ndaflow.providers.base import (
    ClauseClassifier,
    DocumentSource,
    Embedder,
    GapAnalyst,
    OcrEngine,
    RiskScorer,
)
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

_rate_limiters: Optional[RateLimiterRegistry] = None
_progress_broker: Optional[ProgressBroker] = None


def shared_rate_limiters(config: Optional[Settings] = None) -> RateLimiterRegistry:
    global _rate_limiters
    if _rate_limiters is None:
        _rate_limiters = RateLimiterRegistry.from_settings((config or default_settings).rate_limits)
    return _rate_limiters


def shared_progress_broker() -> ProgressBroker:
    global _progress_broker
    if _progress_broker is None:
        _progress_broker = ProgressBroker()
    return _progress_broker


def build_stages(
    source: DocumentSource,
    classifier: ClauseClassifier,
    scorer: RiskScorer,
    analyst: GapAnalyst,
    embedder: Optional[Embedder] = None,
    ocr_engine: Optional[OcrEngine] = None,
    config: Optional[Settings] = None,
) -> Tuple[List[Stage], Optional[Stage]]:
    """Build the ordered stage list and the optional OCR stage."""
    pipeline = (config or default_settings).pipeline
    stages: List[Stage] = [
        ExtractStage(source),
        ChunkStage(
            LegalChunker(max_tokens=pipeline.chunk_max_tokens, min_tokens=pipeline.chunk_min_tokens),
            embedder=embedder,
            embed_batch_size=pipeline.embed_batch_size,
            token_budget=pipeline.document_token_budget,
        ),
        ClassifyStage(
            classifier,
            batch_size=pipeline.classify_batch_size,
            max_concurrency=pipeline.classify_concurrency,
        ),
        ScoreStage(scorer, batch_size=pipeline.score_batch_size),
        GapStage(analyst),
        FinalizeStage(),
    ]
    ocr_stage = None
    if ocr_engine is not None:
        ocr_stage = OcrStage(source, ocr_engine, pages_per_step=pipeline.ocr_pages_per_step)
    return stages, ocr_stage


def build_orchestrator(
    session_maker: async_sessionmaker[AsyncSession],
    stages: List[Stage],
    ocr_stage: Optional[Stage] = None,
    rate_limiters: Optional[RateLimiterRegistry] = None,
    broker: Optional[ProgressBroker] = None,
    config: Optional[Settings] = None,
) -> PipelineOrchestrator:
    config = config or default_settings
    pipeline = config.pipeline
    return PipelineOrchestrator(
        session_maker=session_maker,
        stages=stages,
        ocr_stage=ocr_stage,
        rate_limiters=rate_limiters or shared_rate_limiters(config),
        progress=ProgressEmitter(
            session_maker,
            broker or shared_progress_broker(),
            min_publish_interval=pipeline.progress_publish_interval_seconds,
        ),
        cancellation=CancellationController(session_maker),
        retry=RetrySettings(
            max_attempts=pipeline.max_step_attempts,
            initial_delay=pipeline.retry_initial_delay_seconds,
            max_delay=pipeline.retry_max_delay_seconds,
        ),
        step_timeout=pipeline.step_timeout_seconds,
    )


def build_default_orchestrator(
    session_maker: async_sessionmaker[AsyncSession],
    config: Optional[Settings] = None,
) -> PipelineOrchestrator:
    """Orchestrator backed by the configured OpenRouter, Voyage and Mistral providers.

    Embedding and OCR are switched off when their API keys are not configured.
    """
    from ndaflow.providers.database_source import DatabaseDocumentSource
    from ndaflow.providers.llm_analysts import LLMClauseClassifier, LLMGapAnalyst, LLMRiskScorer
    from ndaflow.providers.mistral_ocr import MistralOcrEngine
    from ndaflow.providers.openrouter import OpenRouterClient
    from ndaflow.providers.voyage import VoyageEmbedder

    config = config or default_settings
    llm = OpenRouterClient()
    embedder = VoyageEmbedder() if config.embeddings.voyage_api_key else None
    ocr_engine = MistralOcrEngine() if config.ocr.mistral_api_key else None
    if ocr_engine is None:
        LOGGER.warning("MISTRAL_API_KEY not set, scanned documents will not be OCR'd")

    stages, ocr_stage = build_stages(
        DatabaseDocumentSource(session_maker),
        LLMClauseClassifier(llm),
        LLMRiskScorer(llm),
        LLMGapAnalyst(llm),
        embedder=embedder,
        ocr_engine=ocr_engine,
        config=config,
    )
    return build_orchestrator(session_maker, stages, ocr_stage, config=config)
