"""Request and response models for the analyses API."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class StartAnalysisRequest(BaseModel):
    document_id: UUID = Field(..., description="Document to analyze")


class RescoreRequest(BaseModel):
    perspective: Literal["receiving", "disclosing", "balanced"] = Field(
        ..., description="Party whose interests risk is scored from"
    )


class RescoreResponse(BaseModel):
    analysis_id: UUID
    status: str
    perspective: str
    progress_stage: Optional[str] = None


class AnalysisStartResponse(BaseModel):
    analysis_id: UUID
    status: str
    created: bool = Field(..., description="False when an active run already existed and was returned")
    stream_url: str


class AnalysisError(BaseModel):
    code: Optional[str] = None
    message: Optional[str] = None
    suggestion: Optional[str] = None


class AnalysisStatusResponse(BaseModel):
    """Snapshot of a run as stored, plus a queue position for pending runs."""

    model_config = ConfigDict(from_attributes=True)

    analysis_id: UUID
    document_id: UUID
    run_number: int
    attempt: int
    status: str
    progress_stage: Optional[str] = None
    progress_percent: int = 0
    progress_message: Optional[str] = None
    queue_position: Optional[int] = None
    cancel_requested: bool = False
    perspective: str = "balanced"
    error: Optional[AnalysisError] = None
    token_usage: Optional[Dict[str, Any]] = None
    estimated_cost: Optional[float] = None
    was_truncated: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    processing_time_ms: Optional[int] = None


class ClauseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    chunk_id: UUID
    category: str
    clause_text: str
    confidence: float
    risk_level: str
    risk_explanation: Optional[str] = None
    evidence: Optional[Dict[str, Any]] = None
    start_position: Optional[int] = None
    end_position: Optional[int] = None


class GapResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    category: str
    status: str
    importance: str
    explanation: Optional[str] = None
    suggested_language: Optional[str] = None


class AnalysisReportResponse(BaseModel):
    analysis_id: UUID
    document_id: UUID
    overall_risk_score: Optional[float] = None
    overall_risk_level: Optional[str] = None
    summary: Optional[str] = None
    perspective: str = "balanced"
    gap_analysis: Optional[Dict[str, Any]] = None
    token_usage: Optional[Dict[str, Any]] = None
    estimated_cost: Optional[float] = None
    was_truncated: bool = False
    clauses: List[ClauseResponse] = Field(default_factory=list)
    gaps: List[GapResponse] = Field(default_factory=list)
