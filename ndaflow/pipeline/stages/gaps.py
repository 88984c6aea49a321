from typing import Any, Dict, List, Mapping

from pydantic import BaseModel

from ndaflow.pipeline.scoring import gap_score
from ndaflow.pipeline.stages.base import Stage, StageContext, StageOutcome, StageRecord, StepSpec, Success
from ndaflow.pipeline.state import StageName
from ndaflow.providers.base import ClauseInput, GapAnalyst, GapFinding


class GapResult(BaseModel):
    gaps: List[GapFinding]
    present_categories: List[str]
    gap_score: int


class GapStage(Stage):
    """Find expected clause categories that are missing or weak."""

    name = StageName.ANALYZE_GAPS
    progress_range = (80, 95)
    result_model = GapResult

    def __init__(self, analyst: GapAnalyst):
        self.analyst = analyst

    async def plan(self, context: StageContext) -> List[StepSpec]:
        return [StepSpec(key="gaps", label="Analyzing gaps", provider="llm")]

    async def execute(self, context: StageContext) -> StageOutcome:
        clauses = [ClauseInput.model_validate(c) for c in context.input(StageName.CLASSIFY).get("clauses", [])]
        present = sorted({clause.category for clause in clauses})
        findings, usage = await self.analyst.analyze(present, clauses)

        # One finding per category; the natural key allows no more
        unique = list({finding.category: finding for finding in findings}.values())
        records = [
            StageRecord(
                table="analysis_gaps",
                key={"analysis_id": context.analysis_id, "category": finding.category},
                payload={
                    "tenant_id": context.tenant_id,
                    "status": finding.status,
                    "importance": finding.importance,
                    "explanation": finding.explanation,
                    "suggested_language": finding.suggested_language,
                },
            )
            for finding in unique
        ]
        gaps = [finding.model_dump() for finding in unique]
        return Success(
            result={"gaps": gaps, "present_categories": present, "gap_score": gap_score(gaps)},
            progress_delta=1.0,
            records=records,
            usage=usage,
            message=f"Found {len(gaps)} gaps",
        )

    def merge(self, context: StageContext, step_outputs: Mapping[str, Dict[str, Any]]) -> Dict[str, Any]:
        return dict(step_outputs["gaps"])
