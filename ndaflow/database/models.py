"""SQLAlchemy models for all database tables."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TIMESTAMP,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from pgvector.sqlalchemy import Vector

from ndaflow.core.config import settings
from ndaflow.core.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")
EmbeddingType = JSON().with_variant(Vector(settings.embeddings.dimension), "postgresql")

ACTIVE_STATUSES = ("pending", "pending_ocr", "processing")
_ACTIVE_STATUS_PREDICATE = text("status IN ('pending', 'pending_ocr', 'processing')")


class Document(Base):
    """An uploaded document, as handed over by the storage collaborator."""

    __tablename__ = "documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    file_name: Mapped[str] = mapped_column(String, nullable=False)
    file_url: Mapped[str | None] = mapped_column(String, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String, nullable=True)
    page_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    raw_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_scanned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )

    analyses: Mapped[list["AnalysisRun"]] = relationship(
        "AnalysisRun", back_populates="document", cascade="all, delete-orphan"
    )


class AnalysisRun(Base):
    """One execution of the analysis pipeline over one document.

    ``version`` is the optimistic-concurrency counter; every write goes through
    ``AnalysisRepository.apply`` which compares and increments it.
    """

    __tablename__ = "analyses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    run_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="pending"
    )  # pending | pending_ocr | processing | completed | failed | cancelled

    progress_stage: Mapped[str | None] = mapped_column(String, nullable=True)
    progress_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_message: Mapped[str | None] = mapped_column(String, nullable=True)
    queue_position: Mapped[int | None] = mapped_column(Integer, nullable=True)

    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    perspective: Mapped[str] = mapped_column(String, nullable=False, default="balanced")
    rescore_generation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    token_usage: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    estimated_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    estimated_cost: Mapped[float | None] = mapped_column(Numeric(12, 6, asdecimal=False), nullable=True)
    was_truncated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    overall_risk_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    overall_risk_level: Mapped[str | None] = mapped_column(String, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    gap_analysis: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    debug_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    workflow_id: Mapped[str | None] = mapped_column(String, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=True
    )

    document: Mapped["Document"] = relationship("Document", back_populates="analyses")

    __table_args__ = (
        # At most one active run per document; concurrent triggers converge on it
        Index(
            "uq_analyses_active_document",
            "tenant_id",
            "document_id",
            unique=True,
            postgresql_where=_ACTIVE_STATUS_PREDICATE,
            sqlite_where=_ACTIVE_STATUS_PREDICATE,
        ),
    )


class AnalysisStep(Base):
    """Step ledger: one row per completed (analysis, stage, step).

    The stored output and token usage let a resumed run skip the step without
    calling the provider again, and keep usage from being counted twice.
    """

    __tablename__ = "analysis_steps"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    analysis_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("analyses.id", ondelete="CASCADE"), nullable=False
    )
    stage_name: Mapped[str] = mapped_column(String, nullable=False)
    step_key: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="completed")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    output: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    token_usage: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    progress_delta: Mapped[float | None] = mapped_column(Float, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("analysis_id", "stage_name", "step_key", name="uq_analysis_steps_key"),
    )


class DocumentChunk(Base):
    """A legal-aware chunk of the document text, optionally embedded."""

    __tablename__ = "document_chunks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    analysis_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("analyses.id", ondelete="CASCADE"), nullable=False
    )
    document_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    section_path: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    chunk_type: Mapped[str] = mapped_column(String, nullable=False, default="clause")
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    start_position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    end_position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    embedding: Mapped[list[float] | None] = mapped_column(EmbeddingType, nullable=True)

    __table_args__ = (
        UniqueConstraint("analysis_id", "chunk_index", name="uq_document_chunks_analysis_index"),
    )


class ChunkClassification(Base):
    """A taxonomy category assigned to a chunk (primary or secondary)."""

    __tablename__ = "chunk_classifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    analysis_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("analyses.id", ondelete="CASCADE"), nullable=False
    )
    document_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    chunk_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    rationale: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("analysis_id", "chunk_id", "category", name="uq_chunk_classifications_key"),
    )


class ClauseExtraction(Base):
    """A classified clause with its risk assessment."""

    __tablename__ = "clause_extractions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    analysis_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("analyses.id", ondelete="CASCADE"), nullable=False
    )
    document_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    chunk_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    clause_text: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    risk_level: Mapped[str] = mapped_column(String, nullable=False)  # standard | cautious | aggressive | unknown
    risk_explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    evidence: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    start_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    end_position: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("analysis_id", "chunk_id", "category", name="uq_clause_extractions_key"),
    )


class AnalysisGap(Base):
    """A missing or weak clause category found by gap analysis."""

    __tablename__ = "analysis_gaps"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    analysis_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("analyses.id", ondelete="CASCADE"), nullable=False
    )
    category: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)  # missing | weak
    importance: Mapped[str] = mapped_column(String, nullable=False)  # critical | important | optional
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    suggested_language: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("analysis_id", "category", name="uq_analysis_gaps_key"),
    )
