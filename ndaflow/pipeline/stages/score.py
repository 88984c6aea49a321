from typing import Any, Dict, List, Mapping
from uuid import UUID

from pydantic import BaseModel

from ndaflow.pipeline.stages.base import Stage, StageContext, StageOutcome, StageRecord, StepSpec, Success
from ndaflow.pipeline.state import StageName
from ndaflow.providers.base import ClauseInput, RiskAssessment, RiskScorer
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class ScoreResult(BaseModel):
    assessments: List[RiskAssessment]


class ScoreStage(Stage):
    """Assess the risk of each classified clause, one batch of clauses per step."""

    name = StageName.SCORE_RISK
    progress_range = (55, 80)
    result_model = ScoreResult

    def __init__(self, scorer: RiskScorer, batch_size: int = 3):
        self.scorer = scorer
        self.batch_size = max(1, batch_size)

    async def plan(self, context: StageContext) -> List[StepSpec]:
        clauses = context.input(StageName.CLASSIFY).get("clauses", [])
        total = len(clauses)
        steps = []
        for number, first in enumerate(range(0, total, self.batch_size)):
            last = min(first + self.batch_size, total)
            label = (
                f"Scoring clause {last} of {total}"
                if last - first == 1
                else f"Scoring clauses {first + 1}-{last} of {total}"
            )
            steps.append(
                StepSpec(
                    key=f"batch-{number}",
                    label=label,
                    provider="llm",
                    params={"clause_range": [first, last], "total": total},
                )
            )
        return steps

    async def execute(self, context: StageContext) -> StageOutcome:
        first, last = context.step.params["clause_range"]
        clauses = [
            ClauseInput.model_validate(clause)
            for clause in context.input(StageName.CLASSIFY)["clauses"][first:last]
        ]
        assessments, usage = await self.scorer.score(clauses, perspective=context.perspective)

        by_key = {(a.chunk_id, a.category): a for a in assessments}
        scored: List[RiskAssessment] = []
        records: List[StageRecord] = []
        for clause in clauses:
            assessment = by_key.get((clause.chunk_id, clause.category))
            if assessment is None:
                LOGGER.warning(
                    f"No risk assessment returned for clause {clause.chunk_index}",
                    extra={"analysis_id": str(context.analysis_id), "category": clause.category},
                )
                assessment = RiskAssessment(
                    chunk_id=clause.chunk_id,
                    category=clause.category,
                    risk_level="unknown",
                    explanation="The clause could not be assessed.",
                )
            scored.append(assessment)
            records.append(self._record(context, clause, assessment))

        return Success(
            result={"assessments": [assessment.model_dump() for assessment in scored]},
            progress_delta=(last - first) / max(1, context.step.params["total"]),
            records=records,
            usage=usage,
        )

    @staticmethod
    def _record(context: StageContext, clause: ClauseInput, assessment: RiskAssessment) -> StageRecord:
        return StageRecord(
            table="clause_extractions",
            key={
                "analysis_id": context.analysis_id,
                "chunk_id": UUID(clause.chunk_id),
                "category": clause.category,
            },
            payload={
                "tenant_id": context.tenant_id,
                "document_id": context.document_id,
                "clause_text": clause.clause_text,
                "confidence": clause.confidence,
                "risk_level": assessment.risk_level,
                "risk_explanation": assessment.explanation,
                "evidence": {
                    "citations": assessment.citations,
                    "negotiation_suggestion": assessment.negotiation_suggestion,
                    "perspective": context.perspective,
                },
                "start_position": clause.start_position,
                "end_position": clause.end_position,
            },
        )

    def merge(self, context: StageContext, step_outputs: Mapping[str, Dict[str, Any]]) -> Dict[str, Any]:
        ordered = sorted(step_outputs, key=lambda key: int(key.split("-")[1]))
        return {
            "assessments": [
                assessment for key in ordered for assessment in step_outputs[key]["assessments"]
            ]
        }
