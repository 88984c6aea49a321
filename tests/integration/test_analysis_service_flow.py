"""Integration tests for AnalysisService against a SQLite database."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from ndaflow.core.exceptions import (
    AnalysisNotFoundError,
    DispatchError,
    DocumentNotFoundError,
    InvalidTransitionError,
    ReportNotReadyError,
    ValidationError,
)
from ndaflow.pipeline.cancellation import CancellationController
from ndaflow.repositories.analysis_repository import AnalysisRepository
from ndaflow.repositories.step_repository import StepRepository
from ndaflow.services.analysis_service import DISPATCH_FAILED_MESSAGE, AnalysisService
from tests.fakes import (
    FakeClassifier,
    FakeGapAnalyst,
    FakeScorer,
    RecordingDispatcher,
    build_pipeline,
    create_document,
    create_run,
)


def make_service(session, session_maker, dispatcher=None, broker=None) -> AnalysisService:
    return AnalysisService(
        session,
        dispatcher or RecordingDispatcher(),
        CancellationController(session_maker),
        broker=broker,
    )


async def load_run(session_maker, analysis_id):
    async with session_maker() as session:
        return await AnalysisRepository(session).get_fresh(analysis_id)


class TestStartAnalysis:
    """Test suite for AnalysisService.start_analysis."""

    @pytest.mark.asyncio
    async def test_creates_and_dispatches_run(self, session_maker, document, tenant_id):
        dispatcher = RecordingDispatcher()
        async with session_maker() as session:
            run, created = await make_service(session, session_maker, dispatcher).start_analysis(
                tenant_id, document.id
            )

        assert created is True
        assert run.status == "pending"
        assert run.run_number == 1
        assert run.progress_message == "Queued for analysis"
        assert dispatcher.dispatched == [run.id]
        assert run.workflow_id == f"analysis-{run.id}-1"

    @pytest.mark.asyncio
    async def test_second_start_returns_active_run(self, session_maker, document, tenant_id):
        dispatcher = RecordingDispatcher()
        async with session_maker() as session:
            first, _ = await make_service(session, session_maker, dispatcher).start_analysis(tenant_id, document.id)
        async with session_maker() as session:
            second, created = await make_service(session, session_maker, dispatcher).start_analysis(
                tenant_id, document.id
            )

        assert created is False
        assert second.id == first.id
        assert dispatcher.dispatched == [first.id]

    @pytest.mark.asyncio
    async def test_finished_run_gets_a_successor(self, session_maker, document, tenant_id):
        await create_run(session_maker, document, status="failed")

        async with session_maker() as session:
            run, created = await make_service(session, session_maker).start_analysis(tenant_id, document.id)

        assert created is True
        assert run.run_number == 2

    @pytest.mark.asyncio
    async def test_unknown_document_for_tenant(self, session_maker, document):
        async with session_maker() as session:
            with pytest.raises(DocumentNotFoundError):
                await make_service(session, session_maker).start_analysis(uuid4(), document.id)

    @pytest.mark.asyncio
    async def test_dispatch_failure_fails_run(self, session_maker, document, tenant_id):
        async with session_maker() as session:
            service = make_service(session, session_maker, RecordingDispatcher(fail=True))
            with pytest.raises(DispatchError):
                await service.start_analysis(tenant_id, document.id)

        async with session_maker() as session:
            run = await AnalysisRepository(session).get_latest_for_document(tenant_id, document.id)
        assert run.status == "failed"
        assert run.error_code == "DISPATCH_FAILED"
        assert run.error_message == DISPATCH_FAILED_MESSAGE


class TestGetStatus:
    """Test suite for AnalysisService.get_status."""

    @pytest.mark.asyncio
    async def test_pending_run_reports_queue_position(self, session_maker, document, tenant_id):
        other = await create_document(session_maker, tenant_id=tenant_id)
        now = datetime.now(timezone.utc)
        await create_run(session_maker, other, status="processing", created_at=now - timedelta(minutes=2))
        run = await create_run(session_maker, document, created_at=now)

        async with session_maker() as session:
            status = await make_service(session, session_maker).get_status(tenant_id, run.id)

        assert status.status == "pending"
        assert status.queue_position == 1
        assert status.progress_message == "Queued for analysis"
        assert status.error is None

    @pytest.mark.asyncio
    async def test_other_tenants_are_not_ahead(self, session_maker, document, tenant_id):
        foreign = await create_document(session_maker)
        now = datetime.now(timezone.utc)
        await create_run(session_maker, foreign, status="processing", created_at=now - timedelta(minutes=2))
        run = await create_run(session_maker, document, created_at=now)

        async with session_maker() as session:
            status = await make_service(session, session_maker).get_status(tenant_id, run.id)

        assert status.queue_position == 0

    @pytest.mark.asyncio
    async def test_failed_run_carries_error(self, session_maker, tenant_id):
        document = await create_document(session_maker, tenant_id=tenant_id, text="", mime_type="text/plain")
        run = await create_run(session_maker, document)
        await build_pipeline(session_maker).run(run.id)

        async with session_maker() as session:
            status = await make_service(session, session_maker).get_status(tenant_id, run.id)

        assert status.status == "failed"
        assert status.error.code == "EMPTY_DOCUMENT"
        assert status.error.suggestion is not None

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_read(self, session_maker, document):
        run = await create_run(session_maker, document)

        async with session_maker() as session:
            with pytest.raises(AnalysisNotFoundError):
                await make_service(session, session_maker).get_status(uuid4(), run.id)


class TestGetReport:
    """Test suite for AnalysisService.get_report."""

    @pytest.mark.asyncio
    async def test_report_not_ready_before_completion(self, session_maker, document, tenant_id):
        run = await create_run(session_maker, document, status="processing")

        async with session_maker() as session:
            with pytest.raises(ReportNotReadyError):
                await make_service(session, session_maker).get_report(tenant_id, run.id)

    @pytest.mark.asyncio
    async def test_report_after_completion(self, session_maker, document, tenant_id):
        run = await create_run(session_maker, document)
        await build_pipeline(session_maker).run(run.id)

        async with session_maker() as session:
            report = await make_service(session, session_maker).get_report(tenant_id, run.id)

        assert report.overall_risk_level == "standard"
        assert len(report.clauses) == 4
        assert {clause.risk_level for clause in report.clauses} == {"standard", "cautious"}
        assert [gap.category for gap in report.gaps] == ["Effective Date"]
        assert report.token_usage["total"]["total_tokens"] > 0


class TestControlOperations:
    """Test suite for cancel, resume and restart."""

    @pytest.mark.asyncio
    async def test_cancel_pending_run_publishes_terminal_event(self, session_maker, document, tenant_id, broker):
        run = await create_run(session_maker, document)
        queue = broker.subscribe(run.id)

        async with session_maker() as session:
            cancelled = await make_service(session, session_maker, broker=broker).cancel(tenant_id, run.id)

        assert cancelled.status == "cancelled"
        event = queue.get_nowait()
        assert event.status == "cancelled"
        assert event.is_terminal

    @pytest.mark.asyncio
    async def test_cancel_processing_run_only_sets_flag(self, session_maker, document, tenant_id):
        run = await create_run(session_maker, document, status="processing")

        async with session_maker() as session:
            result = await make_service(session, session_maker).cancel(tenant_id, run.id)

        assert result.status == "processing"
        assert result.cancel_requested is True

    @pytest.mark.asyncio
    async def test_cancel_finished_run_rejected(self, session_maker, document, tenant_id):
        run = await create_run(session_maker, document, status="completed")

        async with session_maker() as session:
            with pytest.raises(InvalidTransitionError):
                await make_service(session, session_maker).cancel(tenant_id, run.id)

    @pytest.mark.asyncio
    async def test_resume_requires_stopped_run(self, session_maker, document, tenant_id):
        run = await create_run(session_maker, document, status="completed")

        async with session_maker() as session:
            with pytest.raises(InvalidTransitionError):
                await make_service(session, session_maker).resume(tenant_id, run.id)

    @pytest.mark.asyncio
    async def test_resume_failed_run_clears_error(self, session_maker, document, tenant_id):
        run = await create_run(
            session_maker, document, status="failed", error_code="STEP_TIMEOUT", error_message="Timed out"
        )
        dispatcher = RecordingDispatcher()

        async with session_maker() as session:
            resumed = await make_service(session, session_maker, dispatcher).resume(tenant_id, run.id)

        assert resumed.status == "pending"
        assert resumed.attempt == 2
        assert resumed.error_code is None
        assert resumed.error_message is None
        assert dispatcher.dispatched == [run.id]

    @pytest.mark.asyncio
    async def test_restart_discards_previous_run(self, session_maker, document, tenant_id):
        previous = await create_run(session_maker, document)
        await build_pipeline(session_maker).run(previous.id)
        dispatcher = RecordingDispatcher()

        async with session_maker() as session:
            run = await make_service(session, session_maker, dispatcher).restart(tenant_id, document.id)

        assert run.run_number == 2
        assert run.status == "pending"
        assert dispatcher.dispatched == [run.id]
        assert await load_run(session_maker, previous.id) is None

    @pytest.mark.asyncio
    async def test_restart_without_history_creates_first_run(self, session_maker, document, tenant_id):
        async with session_maker() as session:
            run = await make_service(session, session_maker).restart(tenant_id, document.id)

        assert run.run_number == 1

    @pytest.mark.asyncio
    async def test_restart_rejects_active_run(self, session_maker, document, tenant_id):
        await create_run(session_maker, document, status="processing")

        async with session_maker() as session:
            with pytest.raises(InvalidTransitionError):
                await make_service(session, session_maker).restart(tenant_id, document.id)


class TestRescore:
    """Test suite for AnalysisService.rescore."""

    @pytest.mark.asyncio
    async def test_rescore_updates_assessments_and_report(self, session_maker, document, tenant_id):
        run = await create_run(session_maker, document)
        await build_pipeline(session_maker).run(run.id)
        dispatcher = RecordingDispatcher()

        async with session_maker() as session:
            requested = await make_service(session, session_maker, dispatcher).rescore(
                tenant_id, run.id, "receiving"
            )

        assert requested.status == "completed"
        assert requested.progress_stage == "rescoring"
        assert requested.rescore_generation == 1
        assert requested.debug_metadata["rescore"] == {"from": "balanced", "to": "receiving", "generation": 1}
        assert dispatcher.rescored == [(run.id, "receiving")]

        classifier, scorer, analyst = FakeClassifier(), FakeScorer(), FakeGapAnalyst()
        result = await build_pipeline(
            session_maker, classifier=classifier, scorer=scorer, analyst=analyst
        ).rescore(run.id)

        assert result.status == "completed"
        assert classifier.calls == []
        assert analyst.calls == 0
        assert len(scorer.calls) == 2
        assert set(scorer.perspectives) == {"receiving"}

        async with session_maker() as session:
            report = await make_service(session, session_maker).get_report(tenant_id, run.id)
            ledger = {step.stage_name for step in await StepRepository(session).all_completed(run.id)}

        assert report.perspective == "receiving"
        assert report.overall_risk_level == "aggressive"
        assert len(report.clauses) == 4
        assert {clause.risk_level for clause in report.clauses} == {"aggressive"}
        assert {clause.evidence["perspective"] for clause in report.clauses} == {"receiving"}
        assert {"score_risk", "score_risk:rescore-1", "finalize:rescore-1"} <= ledger

        stored = await load_run(session_maker, run.id)
        assert stored.progress_stage == "complete"
        assert stored.progress_message == "Analysis complete"
        assert "score_risk:rescore-1" in stored.token_usage["by_stage"]

    @pytest.mark.asyncio
    async def test_same_perspective_rejected(self, session_maker, document, tenant_id):
        run = await create_run(session_maker, document, status="completed", progress_stage="complete")
        dispatcher = RecordingDispatcher()

        async with session_maker() as session:
            with pytest.raises(InvalidTransitionError) as exc_info:
                await make_service(session, session_maker, dispatcher).rescore(tenant_id, run.id, "balanced")

        assert "already scored from this perspective" in exc_info.value.message
        assert dispatcher.rescored == []

    @pytest.mark.asyncio
    async def test_unfinished_run_rejected(self, session_maker, document, tenant_id):
        run = await create_run(session_maker, document, status="processing")

        async with session_maker() as session:
            with pytest.raises(InvalidTransitionError):
                await make_service(session, session_maker).rescore(tenant_id, run.id, "disclosing")

    @pytest.mark.asyncio
    async def test_rescore_in_progress_rejected(self, session_maker, document, tenant_id):
        run = await create_run(
            session_maker, document, status="completed", progress_stage="rescoring", perspective="receiving"
        )

        async with session_maker() as session:
            with pytest.raises(InvalidTransitionError):
                await make_service(session, session_maker).rescore(tenant_id, run.id, "disclosing")

    @pytest.mark.asyncio
    async def test_unknown_perspective_rejected(self, session_maker, document, tenant_id):
        run = await create_run(session_maker, document, status="completed", progress_stage="complete")

        async with session_maker() as session:
            with pytest.raises(ValidationError):
                await make_service(session, session_maker).rescore(tenant_id, run.id, "neutral")

    @pytest.mark.asyncio
    async def test_dispatch_failure_restores_perspective(self, session_maker, document, tenant_id):
        run = await create_run(session_maker, document, status="completed", progress_stage="complete")

        async with session_maker() as session:
            with pytest.raises(DispatchError):
                await make_service(session, session_maker, RecordingDispatcher(fail=True)).rescore(
                    tenant_id, run.id, "disclosing"
                )

        stored = await load_run(session_maker, run.id)
        assert stored.status == "completed"
        assert stored.perspective == "balanced"
        assert stored.progress_stage == "complete"
