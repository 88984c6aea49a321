from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

from pydantic import BaseModel

from ndaflow.pipeline.stages import gates
from ndaflow.pipeline.stages.base import (
    Stage,
    StageContext,
    StageOutcome,
    StageRecord,
    StepSpec,
    Success,
    ValidationFailed,
)
from ndaflow.pipeline.state import StageName
from ndaflow.providers.base import ChunkInput, ClauseClassifier
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

UNCATEGORIZED = "Uncategorized"
SECONDARY_MIN_CONFIDENCE = 0.3


class ClassifiedChunk(BaseModel):
    chunk_id: str
    chunk_index: int
    category: str
    confidence: float
    secondary_categories: List[str] = []


class ClassifyResult(BaseModel):
    classifications: List[ClassifiedChunk]


class ClassifyStage(Stage):
    """Assign taxonomy categories to chunks, one batch of chunks per step."""

    name = StageName.CLASSIFY
    progress_range = (35, 55)
    result_model = ClassifyResult

    def __init__(
        self,
        classifier: ClauseClassifier,
        batch_size: int = 4,
        max_concurrency: int = 1,
        secondary_min_confidence: float = SECONDARY_MIN_CONFIDENCE,
    ):
        self.classifier = classifier
        self.batch_size = max(1, batch_size)
        self.max_concurrency = max(1, max_concurrency)
        self.secondary_min_confidence = secondary_min_confidence

    async def plan(self, context: StageContext) -> List[StepSpec]:
        indexes = [chunk["chunk_index"] for chunk in context.input(StageName.CHUNK).get("chunks", [])]
        batches = [indexes[i:i + self.batch_size] for i in range(0, len(indexes), self.batch_size)]
        return [
            StepSpec(
                key=f"batch-{number}",
                label=f"Classifying chunk batch {number + 1} of {len(batches)}",
                provider="llm",
                params={"chunk_indexes": batch, "batch_count": len(batches)},
            )
            for number, batch in enumerate(batches)
        ]

    async def execute(self, context: StageContext) -> StageOutcome:
        wanted = set(context.step.params["chunk_indexes"])
        chunks = {
            chunk["chunk_index"]: chunk
            for chunk in context.input(StageName.CHUNK)["chunks"]
            if chunk["chunk_index"] in wanted
        }
        inputs = [
            ChunkInput(
                chunk_id=chunk["chunk_id"],
                chunk_index=chunk["chunk_index"],
                content=chunk["content"],
                section_path=chunk["section_path"] or [],
                start_position=chunk["start_position"],
                end_position=chunk["end_position"],
            )
            for chunk in chunks.values()
        ]
        results, usage = await self.classifier.classify(inputs)

        classified: List[Dict[str, Any]] = []
        records: List[StageRecord] = []
        for result in results:
            chunk = chunks.get(result.chunk_index)
            if chunk is None:
                LOGGER.warning(
                    f"Classifier returned unknown chunk index {result.chunk_index}",
                    extra={"analysis_id": str(context.analysis_id)},
                )
                continue

            secondary = [
                score for score in result.secondary
                if score.confidence >= self.secondary_min_confidence and score.category != result.primary.category
            ]
            records.append(self._record(context, chunk, result.primary.category, result.primary.confidence,
                                        result.primary.rationale, is_primary=True))
            for score in secondary:
                records.append(self._record(context, chunk, score.category, score.confidence,
                                            score.rationale, is_primary=False))

            classified.append({
                "chunk_id": chunk["chunk_id"],
                "chunk_index": chunk["chunk_index"],
                "category": result.primary.category,
                "confidence": result.primary.confidence,
                "secondary_categories": [score.category for score in secondary],
            })

        return Success(
            result={"classifications": classified},
            progress_delta=1.0 / context.step.params["batch_count"],
            records=records,
            usage=usage,
        )

    @staticmethod
    def _record(
        context: StageContext,
        chunk: Dict[str, Any],
        category: str,
        confidence: float,
        rationale: Optional[str],
        is_primary: bool,
    ) -> StageRecord:
        return StageRecord(
            table="chunk_classifications",
            key={
                "analysis_id": context.analysis_id,
                "chunk_id": UUID(chunk["chunk_id"]),
                "category": category,
            },
            payload={
                "tenant_id": context.tenant_id,
                "document_id": context.document_id,
                "chunk_index": chunk["chunk_index"],
                "confidence": confidence,
                "is_primary": is_primary,
                "rationale": rationale,
            },
        )

    def merge(self, context: StageContext, step_outputs: Mapping[str, Dict[str, Any]]) -> Dict[str, Any]:
        chunks = {chunk["chunk_index"]: chunk for chunk in context.input(StageName.CHUNK).get("chunks", [])}
        classified = sorted(
            (item for output in step_outputs.values() for item in output["classifications"]),
            key=lambda item: item["chunk_index"],
        )
        clauses = [
            {
                "chunk_id": item["chunk_id"],
                "chunk_index": item["chunk_index"],
                "category": item["category"],
                "clause_text": chunks[item["chunk_index"]]["content"],
                "confidence": item["confidence"],
                "start_position": chunks[item["chunk_index"]]["start_position"],
                "end_position": chunks[item["chunk_index"]]["end_position"],
                "secondary_categories": item["secondary_categories"],
            }
            for item in classified
            if item["category"] != UNCATEGORIZED
        ]
        return {"classified_chunks": len(classified), "clauses": clauses}

    def validate(self, output: Dict[str, Any]) -> Optional[ValidationFailed]:
        if not output["clauses"]:
            return gates.zero_clauses()
        return None
