"""Run statuses, stage names and the allowed status transitions."""

from enum import Enum

from ndaflow.core.exceptions import InvalidTransitionError


class AnalysisStatus(str, Enum):
    PENDING = "pending"
    PENDING_OCR = "pending_ocr"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageName(str, Enum):
    EXTRACT = "extract"
    OCR = "ocr"
    CHUNK = "chunk"
    CLASSIFY = "classify"
    SCORE_RISK = "score_risk"
    ANALYZE_GAPS = "analyze_gaps"
    FINALIZE = "finalize"


# progress_stage value written once a run completes
COMPLETE_STAGE = "complete"
# progress_stage of a completed run while its clauses are scored again
RESCORE_STAGE = "rescoring"

PERSPECTIVES = ("receiving", "disclosing", "balanced")
DEFAULT_PERSPECTIVE = "balanced"
# stages executed again, under a fresh ledger name, when a run is re-scored
RESCORED_STAGES = (StageName.SCORE_RISK, StageName.FINALIZE)

ACTIVE_STATUSES = frozenset(
    {AnalysisStatus.PENDING, AnalysisStatus.PENDING_OCR, AnalysisStatus.PROCESSING}
)
TERMINAL_STATUSES = frozenset(
    {AnalysisStatus.COMPLETED, AnalysisStatus.FAILED, AnalysisStatus.CANCELLED}
)
RESUMABLE_STATUSES = frozenset({AnalysisStatus.FAILED, AnalysisStatus.CANCELLED})

_TRANSITIONS: dict[AnalysisStatus, frozenset[AnalysisStatus]] = {
    AnalysisStatus.PENDING: frozenset({
        AnalysisStatus.PENDING_OCR,
        AnalysisStatus.PROCESSING,
        AnalysisStatus.FAILED,
        AnalysisStatus.CANCELLED,
    }),
    AnalysisStatus.PENDING_OCR: frozenset({
        AnalysisStatus.PROCESSING,
        AnalysisStatus.FAILED,
        AnalysisStatus.CANCELLED,
    }),
    AnalysisStatus.PROCESSING: frozenset({
        AnalysisStatus.COMPLETED,
        AnalysisStatus.FAILED,
        AnalysisStatus.CANCELLED,
    }),
    AnalysisStatus.COMPLETED: frozenset(),
    # resume puts a stopped run back in the queue
    AnalysisStatus.FAILED: frozenset({AnalysisStatus.PENDING}),
    AnalysisStatus.CANCELLED: frozenset({AnalysisStatus.PENDING}),
}

STAGE_MESSAGES: dict[str, str] = {
    StageName.EXTRACT.value: "Parsing document...",
    StageName.OCR.value: "Running OCR on scanned pages...",
    StageName.CHUNK.value: "Splitting into chunks...",
    StageName.CLASSIFY.value: "Classifying clauses...",
    StageName.SCORE_RISK.value: "Assessing risk levels...",
    StageName.ANALYZE_GAPS.value: "Analyzing gaps...",
    StageName.FINALIZE.value: "Preparing report...",
    COMPLETE_STAGE: "Analysis complete",
    RESCORE_STAGE: "Re-scoring clauses...",
    AnalysisStatus.FAILED.value: "Analysis failed",
    AnalysisStatus.CANCELLED.value: "Analysis cancelled",
}

STAGE_LABELS: dict[str, str] = {
    StageName.EXTRACT.value: "text extraction",
    StageName.OCR.value: "OCR",
    StageName.CHUNK.value: "chunking",
    StageName.CLASSIFY.value: "clause classification",
    StageName.SCORE_RISK.value: "risk scoring",
    StageName.ANALYZE_GAPS.value: "gap analysis",
    StageName.FINALIZE.value: "report assembly",
}


def can_transition(current: str, target: str) -> bool:
    return AnalysisStatus(target) in _TRANSITIONS[AnalysisStatus(current)]


def ensure_transition(current: str, target: str) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(AnalysisStatus(current).value, AnalysisStatus(target).value)
