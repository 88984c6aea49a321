from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ndaflow.core.exceptions import ValidationError
from ndaflow.database.models import (
    AnalysisGap,
    AnalysisStep,
    ChunkClassification,
    ClauseExtraction,
    DocumentChunk,
)
from ndaflow.repositories.base_repository import BaseRepository, upsert_by_natural_key
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

RECORD_MODELS = {
    model.__tablename__: model
    for model in (DocumentChunk, ChunkClassification, ClauseExtraction, AnalysisGap)
}


class StepRepository(BaseRepository[AnalysisStep]):
    """Step ledger plus idempotent persistence of stage records.

    A step is recorded together with the records it produced in one
    transaction, so either both are visible or neither is.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(session, AnalysisStep)

    async def completed_steps(self, analysis_id: UUID, stage_name: str) -> Dict[str, AnalysisStep]:
        """Completed ledger entries for one stage, keyed by step key."""
        query = select(AnalysisStep).where(
            AnalysisStep.analysis_id == analysis_id,
            AnalysisStep.stage_name == stage_name,
            AnalysisStep.status == "completed",
        )
        result = await self.session.execute(query)
        return {step.step_key: step for step in result.scalars().all()}

    async def all_completed(self, analysis_id: UUID) -> List[AnalysisStep]:
        query = select(AnalysisStep).where(
            AnalysisStep.analysis_id == analysis_id,
            AnalysisStep.status == "completed",
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def record_step(
        self,
        analysis_id: UUID,
        stage_name: str,
        step_key: str,
        output: Dict[str, Any],
        records: Iterable[Any],
        token_usage: Optional[Dict[str, int]] = None,
        progress_delta: Optional[float] = None,
        attempts: int = 1,
    ) -> None:
        """Persist a step's records and its ledger entry, then commit.

        Args:
            analysis_id: Owning run
            stage_name: Stage the step belongs to
            step_key: Stable identifier of the step within the stage
            output: JSON-serializable step result, replayed on resume
            records: StageRecord-like objects with ``table``, ``key`` and ``payload``
            token_usage: Metered usage of the step, if any
            progress_delta: Fraction of the stage the step accounts for
            attempts: Attempts the step needed
        """
        for record in records:
            model = RECORD_MODELS.get(record.table)
            if model is None:
                raise ValidationError(f"Unknown record table '{record.table}'")
            await upsert_by_natural_key(self.session, model, dict(record.key), dict(record.payload))

        await upsert_by_natural_key(
            self.session,
            AnalysisStep,
            key={"analysis_id": analysis_id, "stage_name": stage_name, "step_key": step_key},
            payload={
                "status": "completed",
                "attempts": attempts,
                "output": output,
                "token_usage": token_usage,
                "progress_delta": progress_delta,
                "completed_at": datetime.now(timezone.utc),
            },
        )
        await self.session.commit()

        LOGGER.debug(
            f"Recorded step {stage_name}/{step_key}",
            extra={"analysis_id": str(analysis_id), "attempts": attempts},
        )

    async def records_for(self, model_name: str, analysis_id: UUID) -> Sequence[Any]:
        """All stage records of one table for a run."""
        model = RECORD_MODELS[model_name]
        query = select(model).where(model.analysis_id == analysis_id)
        if hasattr(model, "chunk_index"):
            query = query.order_by(model.chunk_index)
        result = await self.session.execute(query)
        return list(result.scalars().all())
