from typing import Any, Dict, List, Mapping

from pydantic import BaseModel

from ndaflow.pipeline.scoring import risk_distribution, weighted_risk
from ndaflow.pipeline.stages.base import Stage, StageContext, StageOutcome, StepSpec, Success
from ndaflow.pipeline.state import StageName


class FinalizeResult(BaseModel):
    overall_risk_score: int
    overall_risk_level: str
    summary: str
    risk_distribution: Dict[str, int]
    gap_analysis: Dict[str, Any]


def build_summary(
    title: str,
    score: int,
    level: str,
    distribution: Mapping[str, int],
    gaps: List[Mapping[str, Any]],
) -> str:
    clause_count = sum(distribution.values())
    parts = [
        f"{title}: {clause_count} clauses assessed, overall risk {level} ({score}/100).",
    ]
    if distribution.get("aggressive"):
        parts.append(f"{distribution['aggressive']} clauses use aggressive terms.")
    if distribution.get("cautious"):
        parts.append(f"{distribution['cautious']} clauses warrant a closer look.")
    missing_critical = [gap["category"] for gap in gaps if gap["status"] == "missing" and gap["importance"] == "critical"]
    if missing_critical:
        parts.append(f"Missing critical protections: {', '.join(missing_critical)}.")
    elif gaps:
        parts.append(f"{len(gaps)} expected clauses are missing or weak.")
    return " ".join(parts)


class FinalizeStage(Stage):
    """Compute the report-level scores and summary."""

    name = StageName.FINALIZE
    progress_range = (95, 100)
    result_model = FinalizeResult

    async def plan(self, context: StageContext) -> List[StepSpec]:
        return [StepSpec(key="report", label="Preparing report")]

    async def execute(self, context: StageContext) -> StageOutcome:
        assessments = context.input(StageName.SCORE_RISK).get("assessments", [])
        gap_output = context.input(StageName.ANALYZE_GAPS)
        gaps = gap_output.get("gaps", [])

        score, level = weighted_risk(assessments)
        distribution = risk_distribution(assessments)
        title = context.input(StageName.EXTRACT).get("title", "Document")

        return Success(
            result={
                "overall_risk_score": score,
                "overall_risk_level": level,
                "summary": build_summary(title, score, level, distribution, gaps),
                "risk_distribution": distribution,
                "gap_analysis": {
                    "gap_score": gap_output.get("gap_score", 0),
                    "present_categories": gap_output.get("present_categories", []),
                    "missing_count": sum(1 for gap in gaps if gap["status"] == "missing"),
                    "weak_count": sum(1 for gap in gaps if gap["status"] == "weak"),
                },
            },
            progress_delta=1.0,
        )

    def merge(self, context: StageContext, step_outputs: Mapping[str, Dict[str, Any]]) -> Dict[str, Any]:
        return dict(step_outputs["report"])

    def run_updates(self, output: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "overall_risk_score": output["overall_risk_score"],
            "overall_risk_level": output["overall_risk_level"],
            "summary": output["summary"],
            "gap_analysis": {**output["gap_analysis"], "risk_distribution": output["risk_distribution"]},
        }
