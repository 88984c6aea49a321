import uuid
from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

from pydantic import BaseModel

from ndaflow.pipeline.chunking import LegalChunker, TextChunk
from ndaflow.pipeline.stages import gates
from ndaflow.pipeline.stages.base import (
    Retryable,
    Stage,
    StageContext,
    StageOutcome,
    StageRecord,
    StepSpec,
    Success,
    ValidationFailed,
)
from ndaflow.pipeline.state import StageName
from ndaflow.providers.base import Embedder
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

SEGMENT_STEP = "segment"
# Share of the stage's progress attributed to segmentation; embedding gets the rest
SEGMENT_SHARE = 0.3
# Boilerplate is kept for the report but not worth embedding
UNEMBEDDED_TYPES = frozenset({"boilerplate"})


def chunk_id_for(analysis_id: UUID, chunk_index: int) -> UUID:
    """Deterministic chunk id, stable across retries and resumes."""
    return uuid.uuid5(analysis_id, str(chunk_index))


class ChunkStageResult(BaseModel):
    chunks: Optional[List[Dict[str, Any]]] = None
    embedded: Optional[List[int]] = None
    was_truncated: bool = False
    estimated_tokens: int = 0


class ChunkStage(Stage):
    """Split the text into legal-aware chunks, then embed them in batches."""

    name = StageName.CHUNK
    progress_range = (15, 35)
    result_model = ChunkStageResult

    def __init__(
        self,
        chunker: LegalChunker,
        embedder: Optional[Embedder] = None,
        embed_batch_size: int = 128,
        token_budget: int = 200_000,
    ):
        self.chunker = chunker
        self.embedder = embedder
        self.embed_batch_size = max(1, embed_batch_size)
        self.token_budget = token_budget

    async def plan(self, context: StageContext) -> List[StepSpec]:
        steps = [StepSpec(key=SEGMENT_STEP, label="Splitting into chunks")]
        segmented = context.step_outputs.get(SEGMENT_STEP)
        if segmented is None or self.embedder is None:
            return steps

        indexes = [c["chunk_index"] for c in segmented["chunks"] if c["chunk_type"] not in UNEMBEDDED_TYPES]
        batches = [indexes[i:i + self.embed_batch_size] for i in range(0, len(indexes), self.embed_batch_size)]
        for number, batch in enumerate(batches):
            steps.append(
                StepSpec(
                    key=f"embed-{number}",
                    label=f"Embedding chunk batch {number + 1} of {len(batches)}",
                    provider="embeddings",
                    params={"chunk_indexes": batch, "batch_count": len(batches)},
                )
            )
        return steps

    async def execute(self, context: StageContext) -> StageOutcome:
        if context.step.key == SEGMENT_STEP:
            return self._segment(context)
        return await self._embed(context)

    def _segment(self, context: StageContext) -> StageOutcome:
        text = context.input(StageName.EXTRACT).get("text", "")
        chunks = self.chunker.chunk(text)
        if not chunks:
            return gates.no_chunks()

        original_tokens = sum(chunk.token_count for chunk in chunks)
        kept: List[TextChunk] = []
        used = 0
        for chunk in chunks:
            if kept and used + chunk.token_count > self.token_budget:
                break
            kept.append(chunk)
            used += chunk.token_count
        was_truncated = len(kept) < len(chunks)
        if was_truncated:
            LOGGER.warning(
                "Document exceeds token budget, truncating",
                extra={
                    "analysis_id": str(context.analysis_id),
                    "original_tokens": original_tokens,
                    "kept_chunks": len(kept),
                    "total_chunks": len(chunks),
                },
            )

        return Success(
            result={
                "chunks": [chunk.model_dump() for chunk in kept],
                "was_truncated": was_truncated,
                "estimated_tokens": used,
            },
            progress_delta=SEGMENT_SHARE if self.embedder is not None else 1.0,
            records=[self._chunk_record(context, chunk.model_dump()) for chunk in kept],
            message=f"Split document into {len(kept)} chunks",
        )

    async def _embed(self, context: StageContext) -> StageOutcome:
        wanted = set(context.step.params["chunk_indexes"])
        chunks = [
            chunk for chunk in context.step_outputs[SEGMENT_STEP]["chunks"] if chunk["chunk_index"] in wanted
        ]
        vectors, usage = await self.embedder.embed([chunk["content"] for chunk in chunks])
        if len(vectors) != len(chunks):
            return Retryable(error=f"Embedding provider returned {len(vectors)} vectors for {len(chunks)} chunks")

        records = [
            self._chunk_record(context, chunk, embedding=list(vector))
            for chunk, vector in zip(chunks, vectors)
        ]
        return Success(
            result={"embedded": [chunk["chunk_index"] for chunk in chunks]},
            progress_delta=(1.0 - SEGMENT_SHARE) / context.step.params["batch_count"],
            records=records,
            usage=usage,
        )

    @staticmethod
    def _chunk_record(
        context: StageContext, chunk: Dict[str, Any], embedding: Optional[List[float]] = None
    ) -> StageRecord:
        payload = {
            "id": chunk_id_for(context.analysis_id, chunk["chunk_index"]),
            "tenant_id": context.tenant_id,
            "document_id": context.document_id,
            "content": chunk["content"],
            "section_path": chunk["section_path"],
            "chunk_type": chunk["chunk_type"],
            "token_count": chunk["token_count"],
            "start_position": chunk["start_position"],
            "end_position": chunk["end_position"],
        }
        if embedding is not None:
            payload["embedding"] = embedding
        return StageRecord(
            table="document_chunks",
            key={"analysis_id": context.analysis_id, "chunk_index": chunk["chunk_index"]},
            payload=payload,
        )

    def merge(self, context: StageContext, step_outputs: Mapping[str, Dict[str, Any]]) -> Dict[str, Any]:
        segmented = step_outputs[SEGMENT_STEP]
        chunks = [
            {**chunk, "chunk_id": str(chunk_id_for(context.analysis_id, chunk["chunk_index"]))}
            for chunk in segmented["chunks"]
        ]
        embedded = sorted(
            index for key, output in step_outputs.items() if key != SEGMENT_STEP for index in output["embedded"]
        )
        return {
            "chunks": chunks,
            "embedded_count": len(embedded),
            "was_truncated": segmented["was_truncated"],
            "estimated_tokens": segmented["estimated_tokens"],
        }

    def validate(self, output: Dict[str, Any]) -> Optional[ValidationFailed]:
        if not output["chunks"]:
            return gates.no_chunks()
        return None

    def run_updates(self, output: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "was_truncated": output["was_truncated"],
            "estimated_tokens": output["estimated_tokens"],
        }
