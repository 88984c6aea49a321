from ndaflow.pipeline.stages.base import (
    Retryable,
    Stage,
    StageContext,
    StageOutcome,
    StageRecord,
    StepSpec,
    Success,
    TokenUsage,
    ValidationFailed,
)
from ndaflow.pipeline.stages.chunk import ChunkStage
from ndaflow.pipeline.stages.classify import ClassifyStage
from ndaflow.pipeline.stages.extract import ExtractStage
from ndaflow.pipeline.stages.finalize import FinalizeStage
from ndaflow.pipeline.stages.gaps import GapStage
from ndaflow.pipeline.stages.ocr import OcrStage
from ndaflow.pipeline.stages.score import ScoreStage

__all__ = [
    "ChunkStage",
    "ClassifyStage",
    "ExtractStage",
    "FinalizeStage",
    "GapStage",
    "OcrStage",
    "Retryable",
    "ScoreStage",
    "Stage",
    "StageContext",
    "StageOutcome",
    "StageRecord",
    "StepSpec",
    "Success",
    "TokenUsage",
    "ValidationFailed",
]
