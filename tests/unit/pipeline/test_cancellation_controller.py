"""Unit tests for cooperative cancellation."""

from uuid import uuid4

import pytest

from ndaflow.core.exceptions import AnalysisNotFoundError, InvalidTransitionError
from ndaflow.pipeline.cancellation import CancellationController
from ndaflow.repositories.analysis_repository import AnalysisRepository
from tests.fakes import create_run


@pytest.fixture
def controller(session_maker) -> CancellationController:
    return CancellationController(session_maker)


class TestCancellationController:
    """Test suite for CancellationController."""

    @pytest.mark.asyncio
    async def test_pending_run_is_cancelled_immediately(self, controller, session_maker, document):
        run = await create_run(session_maker, document, status="pending", queue_position=3)

        cancelled = await controller.request(run.id)

        assert cancelled.status == "cancelled"
        assert cancelled.cancel_requested is True
        assert cancelled.queue_position is None
        assert cancelled.progress_message == "Analysis cancelled by user"
        assert "cancelled_at" in cancelled.debug_metadata

    @pytest.mark.asyncio
    async def test_processing_run_is_only_flagged(self, controller, session_maker, document):
        run = await create_run(session_maker, document, status="processing")

        flagged = await controller.request(run.id)

        assert flagged.status == "processing"
        assert await controller.is_requested(run.id) is True
        assert await controller.checker(run.id)() is True

    @pytest.mark.asyncio
    async def test_repeated_request_is_a_no_op(self, controller, session_maker, document):
        run = await create_run(session_maker, document, status="processing")

        first = await controller.request(run.id)
        second = await controller.request(run.id)

        assert second.version == first.version

    @pytest.mark.asyncio
    async def test_finished_run_cannot_be_cancelled(self, controller, session_maker, document):
        run = await create_run(session_maker, document, status="completed")

        with pytest.raises(InvalidTransitionError) as exc_info:
            await controller.request(run.id)

        assert exc_info.value.current == "completed"
        assert exc_info.value.target == "cancelled"

    @pytest.mark.asyncio
    async def test_unknown_run_raises_not_found(self, controller):
        with pytest.raises(AnalysisNotFoundError):
            await controller.request(uuid4())

        with pytest.raises(AnalysisNotFoundError):
            await controller.is_requested(uuid4())

    @pytest.mark.asyncio
    async def test_complete_records_stage_in_message(self, controller, session_maker, document):
        run = await create_run(session_maker, document, status="processing", progress_percent=45)
        await controller.request(run.id)

        cancelled = await controller.complete(run.id, "classify", "batch-1")

        assert cancelled.status == "cancelled"
        assert cancelled.progress_message == "Analysis cancelled during clause classification"
        assert cancelled.progress_percent == 45
        assert cancelled.debug_metadata["cancelled_before_step"] == "batch-1"

        async with session_maker() as session:
            stored = await AnalysisRepository(session).require(run.id)
        assert stored.status == "cancelled"

    @pytest.mark.asyncio
    async def test_complete_before_any_stage(self, controller, session_maker, document):
        run = await create_run(session_maker, document, status="processing")

        cancelled = await controller.complete(run.id, None)

        assert cancelled.progress_message == "Analysis cancelled before processing started"
