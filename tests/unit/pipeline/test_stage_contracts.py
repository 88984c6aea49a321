"""Unit tests for the analytical stages, exercised without the orchestrator."""

from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import pytest

from ndaflow.pipeline.chunking import LegalChunker
from ndaflow.pipeline.stages import (
    ChunkStage,
    ClassifyStage,
    ExtractStage,
    FinalizeStage,
    GapStage,
    OcrStage,
    ScoreStage,
    StageContext,
    StepSpec,
    Success,
    ValidationFailed,
)
from ndaflow.pipeline.stages.chunk import chunk_id_for
from ndaflow.pipeline.stages.extract import normalize_text
from ndaflow.pipeline.usage import TokenUsage
from ndaflow.providers.base import GapFinding, SourceDocument
from tests.fakes import NDA_TEXT, FakeClassifier, FakeEmbedder


@pytest.fixture
def context() -> StageContext:
    return StageContext(analysis_id=uuid4(), tenant_id=uuid4(), document_id=uuid4())


def source_for(context: StageContext, **fields) -> MagicMock:
    source = MagicMock()
    source.load = AsyncMock(return_value=SourceDocument(
        document_id=context.document_id,
        tenant_id=context.tenant_id,
        file_name=fields.pop("file_name", "mutual-nda.pdf"),
        **fields,
    ))
    return source


def with_inputs(context: StageContext, **inputs: Dict[str, Any]) -> StageContext:
    return StageContext(
        analysis_id=context.analysis_id,
        tenant_id=context.tenant_id,
        document_id=context.document_id,
        inputs=inputs,
    )


def chunk_output(context: StageContext, contents: List[str]) -> Dict[str, Any]:
    return {
        "chunks": [
            {
                "chunk_index": index,
                "chunk_id": str(chunk_id_for(context.analysis_id, index)),
                "content": content,
                "section_path": [],
                "chunk_type": "clause",
                "token_count": 10,
                "start_position": index * 100,
                "end_position": index * 100 + len(content),
            }
            for index, content in enumerate(contents)
        ]
    }


class TestSourceDocument:
    """Test suite for the OCR pre-analysis."""

    @pytest.mark.parametrize(
        "fields,expected",
        [
            ({"is_scanned": True, "text": NDA_TEXT}, True),
            ({"mime_type": "image/png"}, True),
            ({"mime_type": "application/pdf", "page_count": 3, "text": "Page 1"}, True),
            ({"mime_type": "application/pdf", "page_count": 1, "text": NDA_TEXT}, False),
            ({"mime_type": "text/plain", "text": "short"}, False),
        ],
    )
    def test_requires_ocr(self, fields, expected):
        document = SourceDocument(document_id=uuid4(), tenant_id=uuid4(), file_name="nda", **fields)

        assert document.requires_ocr is expected


class TestExtractStage:
    """Test suite for ExtractStage."""

    def test_normalize_text(self):
        assert normalize_text("A\r\nB\x07\n\n\n\nC  ") == "A\nB\n\nC"

    @pytest.mark.asyncio
    async def test_extracts_document_text(self, context):
        stage = ExtractStage(source_for(context, text=NDA_TEXT, page_count=2))
        steps = await stage.plan(context)

        outcome = await stage.execute(context.for_step(steps[0]))

        assert isinstance(outcome, Success)
        result = stage.result_model.model_validate(outcome.result)
        assert result.source == "text"
        assert result.page_count == 2
        assert result.title == "mutual-nda.pdf"

    @pytest.mark.asyncio
    async def test_prefers_ocr_output(self, context):
        stage = ExtractStage(source_for(context, text=""))
        ctx = with_inputs(context, ocr={"text": "Recognized clause text"})

        outcome = await stage.execute(ctx.for_step(StepSpec(key="extract", label="Parsing document")))

        assert outcome.result["source"] == "ocr"
        assert outcome.result["text"] == "Recognized clause text"

    @pytest.mark.asyncio
    async def test_empty_document_fails_gate(self, context):
        stage = ExtractStage(source_for(context, text="  \n "))

        outcome = await stage.execute(context.for_step(StepSpec(key="extract", label="Parsing document")))

        assert isinstance(outcome, ValidationFailed)
        assert outcome.code == "EMPTY_DOCUMENT"
        assert outcome.suggestion


class TestChunkStage:
    """Test suite for ChunkStage."""

    @pytest.mark.asyncio
    async def test_segment_emits_chunk_records_with_stable_ids(self, context):
        stage = ChunkStage(LegalChunker())
        ctx = with_inputs(context, extract={"text": NDA_TEXT})
        steps = await stage.plan(ctx)

        outcome = await stage.execute(ctx.for_step(steps[0]))

        assert [step.key for step in steps] == ["segment"]
        assert outcome.progress_delta == 1.0
        assert [record.table for record in outcome.records] == ["document_chunks"] * 4
        assert outcome.records[2].payload["id"] == chunk_id_for(context.analysis_id, 2)

        merged = stage.merge(ctx, {"segment": outcome.result})
        assert merged["chunks"][0]["chunk_id"] == str(chunk_id_for(context.analysis_id, 0))
        assert stage.validate(merged) is None

    @pytest.mark.asyncio
    async def test_embedding_steps_are_planned_after_segmentation(self, context):
        stage = ChunkStage(LegalChunker(), embedder=FakeEmbedder(), embed_batch_size=3)
        ctx = with_inputs(context, extract={"text": NDA_TEXT})
        segmented = await stage.execute(ctx.for_step(StepSpec(key="segment", label="Splitting into chunks")))

        planned = await stage.plan(StageContext(
            analysis_id=ctx.analysis_id,
            tenant_id=ctx.tenant_id,
            document_id=ctx.document_id,
            inputs=ctx.inputs,
            step_outputs={"segment": segmented.result},
        ))

        assert [step.key for step in planned] == ["segment", "embed-0", "embed-1"]
        assert planned[1].params["chunk_indexes"] == [0, 1, 2]
        assert planned[2].provider == "embeddings"

    @pytest.mark.asyncio
    async def test_token_budget_truncates_chunks(self, context):
        stage = ChunkStage(LegalChunker(), token_budget=100)
        ctx = with_inputs(context, extract={"text": NDA_TEXT})

        outcome = await stage.execute(ctx.for_step(StepSpec(key="segment", label="Splitting into chunks")))

        assert outcome.result["was_truncated"] is True
        assert 1 <= len(outcome.result["chunks"]) < 4
        assert stage.run_updates(stage.merge(ctx, {"segment": outcome.result}))["was_truncated"] is True

    @pytest.mark.asyncio
    async def test_blank_text_fails_no_chunks_gate(self, context):
        stage = ChunkStage(LegalChunker())
        ctx = with_inputs(context, extract={"text": ""})

        outcome = await stage.execute(ctx.for_step(StepSpec(key="segment", label="Splitting into chunks")))

        assert isinstance(outcome, ValidationFailed)
        assert outcome.code == "NO_CHUNKS"


class TestClassifyStage:
    """Test suite for ClassifyStage."""

    @pytest.mark.asyncio
    async def test_batches_chunks_and_drops_uncategorized(self, context):
        stage = ClassifyStage(FakeClassifier(), batch_size=2)
        ctx = with_inputs(context, chunk=chunk_output(context, [
            "This Agreement is governed by the laws of Delaware.",
            "Signature page follows.",
            "Neither party shall solicit employees of the other.",
        ]))

        steps = await stage.plan(ctx)
        outputs = {}
        for step in steps:
            outcome = await stage.execute(ctx.for_step(step))
            assert isinstance(outcome, Success)
            outputs[step.key] = outcome.result

        assert [step.params["chunk_indexes"] for step in steps] == [[0, 1], [2]]
        merged = stage.merge(ctx, outputs)
        assert merged["classified_chunks"] == 3
        assert [clause["category"] for clause in merged["clauses"]] == [
            "Governing Law",
            "No-Solicit Of Employees",
        ]
        assert merged["clauses"][0]["secondary_categories"] == ["Effective Date"]
        assert stage.validate(merged) is None

    @pytest.mark.asyncio
    async def test_records_primary_and_secondary_categories(self, context):
        stage = ClassifyStage(FakeClassifier(), batch_size=4)
        ctx = with_inputs(context, chunk=chunk_output(context, ["Either party may terminate on notice."]))
        steps = await stage.plan(ctx)

        outcome = await stage.execute(ctx.for_step(steps[0]))

        primary = [r for r in outcome.records if r.payload["is_primary"]]
        secondary = [r for r in outcome.records if not r.payload["is_primary"]]
        assert [r.key["category"] for r in primary] == ["Termination For Convenience"]
        assert [r.key["category"] for r in secondary] == ["Effective Date"]
        assert isinstance(primary[0].key["chunk_id"], UUID)
        assert outcome.usage == TokenUsage(input_tokens=100, output_tokens=20)

    def test_no_clauses_fails_gate(self):
        failed = ClassifyStage(FakeClassifier()).validate({"classified_chunks": 2, "clauses": []})

        assert failed.code == "ZERO_CLAUSES"


class TestScoreStage:
    """Test suite for ScoreStage."""

    @pytest.mark.asyncio
    async def test_plans_batches_with_readable_labels(self, context):
        clauses = [
            {"chunk_id": str(uuid4()), "chunk_index": n, "category": "Parties", "clause_text": "x", "confidence": 0.9}
            for n in range(4)
        ]
        stage = ScoreStage(MagicMock(), batch_size=3)

        steps = await stage.plan(with_inputs(context, classify={"clauses": clauses}))

        assert [step.label for step in steps] == ["Scoring clauses 1-3 of 4", "Scoring clause 4 of 4"]

    @pytest.mark.asyncio
    async def test_unassessed_clause_is_marked_unknown(self, context):
        scorer = MagicMock()
        scorer.score = AsyncMock(return_value=([], TokenUsage(input_tokens=10)))
        stage = ScoreStage(scorer)
        clause = {
            "chunk_id": str(uuid4()),
            "chunk_index": 0,
            "category": "Governing Law",
            "clause_text": "Delaware law applies.",
            "confidence": 0.9,
        }
        ctx = with_inputs(context, classify={"clauses": [clause]})
        steps = await stage.plan(ctx)

        outcome = await stage.execute(ctx.for_step(steps[0]))

        assert outcome.result["assessments"][0]["risk_level"] == "unknown"
        assert outcome.records[0].payload["risk_level"] == "unknown"
        assert stage.result_model.model_validate(outcome.result)


class TestGapStage:
    @pytest.mark.asyncio
    async def test_one_finding_per_category(self, context):
        analyst = MagicMock()
        analyst.analyze = AsyncMock(return_value=(
            [
                GapFinding(category="Governing Law", status="missing", importance="critical"),
                GapFinding(category="Governing Law", status="weak", importance="critical"),
                GapFinding(category="Notice Period", status="missing", importance="optional"),
            ],
            TokenUsage(input_tokens=100, output_tokens=10),
        ))
        stage = GapStage(analyst)
        ctx = with_inputs(context, classify={"clauses": []})

        outcome = await stage.execute(ctx.for_step(StepSpec(key="gaps", label="Analyzing gaps")))

        assert [gap["category"] for gap in outcome.result["gaps"]] == ["Governing Law", "Notice Period"]
        assert outcome.result["gap_score"] == 5 + 3
        assert len(outcome.records) == 2


class TestFinalizeStage:
    @pytest.mark.asyncio
    async def test_report_scores_and_summary(self, context):
        stage = FinalizeStage()
        ctx = with_inputs(
            context,
            extract={"title": "mutual-nda.pdf"},
            score_risk={"assessments": [{"category": "Non-Compete", "risk_level": "aggressive"}]},
            analyze_gaps={
                "gaps": [{"category": "Governing Law", "status": "missing", "importance": "critical"}],
                "gap_score": 15,
                "present_categories": ["Non-Compete"],
            },
        )

        outcome = await stage.execute(ctx.for_step(StepSpec(key="report", label="Preparing report")))

        report = stage.result_model.model_validate(outcome.result)
        assert report.overall_risk_score == 100
        assert report.overall_risk_level == "aggressive"
        assert "Missing critical protections: Governing Law." in report.summary
        assert report.gap_analysis["missing_count"] == 1

        updates = stage.run_updates(stage.merge(ctx, {"report": outcome.result}))
        assert updates["gap_analysis"]["risk_distribution"]["aggressive"] == 1


class TestOcrStage:
    """Test suite for OcrStage."""

    @pytest.mark.asyncio
    async def test_plans_page_batches(self, context):
        stage = OcrStage(source_for(context, page_count=5), MagicMock(), pages_per_step=2)

        steps = await stage.plan(context)

        assert [step.key for step in steps] == ["pages-1-2", "pages-3-4", "pages-5-5"]
        assert steps[2].params["pages"] == [5]

    def test_merge_orders_pages_and_averages_confidence(self, context):
        stage = OcrStage(MagicMock(), MagicMock())

        merged = stage.merge(context, {
            "pages-3-3": {"pages": [{"page_number": 3, "text": "  ", "confidence": 0}]},
            "pages-1-2": {"pages": [
                {"page_number": 2, "text": "second", "confidence": 80},
                {"page_number": 1, "text": "first", "confidence": 90},
            ]},
        })

        assert merged["text"] == "first\n\nsecond"
        assert merged["average_confidence"] == 85
        assert merged["low_confidence_pages"] == [3]
        assert stage.validate(merged) is None

    def test_low_confidence_fails_gate(self, context):
        stage = OcrStage(MagicMock(), MagicMock())
        merged = stage.merge(context, {
            "pages-1-1": {"pages": [{"page_number": 1, "text": "blurry", "confidence": 45}]},
        })

        failed = stage.validate(merged)

        assert failed.code == "OCR_UNUSABLE"
