"""Analysis service: the trigger, status and control surface of the pipeline."""

from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ndaflow.core.exceptions import (
    AnalysisNotFoundError,
    DispatchError,
    DocumentNotFoundError,
    InvalidTransitionError,
    ReportNotReadyError,
    ValidationError,
)
from ndaflow.database.models import AnalysisRun
from ndaflow.pipeline.cancellation import CancellationController
from ndaflow.pipeline.progress import ProgressBroker, ProgressEvent
from ndaflow.pipeline.state import (
    COMPLETE_STAGE,
    PERSPECTIVES,
    RESCORE_STAGE,
    RESUMABLE_STATUSES,
    STAGE_MESSAGES,
    TERMINAL_STATUSES,
    AnalysisStatus,
    ensure_transition,
)
from ndaflow.repositories.analysis_repository import AnalysisRepository
from ndaflow.repositories.step_repository import StepRepository
from ndaflow.schemas.analysis import (
    AnalysisError,
    AnalysisReportResponse,
    AnalysisStatusResponse,
    ClauseResponse,
    GapResponse,
)
from ndaflow.services.dispatch import Dispatcher
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

QUEUED_MESSAGE = "Queued for analysis"
RESUMING_MESSAGE = "Resuming analysis..."
DISPATCH_FAILED_MESSAGE = "Analysis could not be scheduled. Please try again."
RESCORE_DISPATCH_FAILED_MESSAGE = "Re-scoring could not be scheduled. Please try again."


class AnalysisService:
    """Starts, inspects and controls analysis runs for one tenant-scoped request.

    Args:
        session: Database session for this request
        dispatcher: Hands new or resumed runs to a worker
        cancellation: Cancellation controller shared with the orchestrator
        broker: Progress broker, used to announce runs stopped from here
    """

    def __init__(
        self,
        session: AsyncSession,
        dispatcher: Dispatcher,
        cancellation: CancellationController,
        broker: Optional[ProgressBroker] = None,
    ):
        self.session = session
        self.analysis_repo = AnalysisRepository(session)
        self.step_repo = StepRepository(session)
        self.dispatcher = dispatcher
        self.cancellation = cancellation
        self.broker = broker
        self.logger = LOGGER

    async def start_analysis(self, tenant_id: UUID, document_id: UUID) -> Tuple[AnalysisRun, bool]:
        """Start analyzing a document, or return the run already working on it.

        Returns:
            The run and whether it was created by this call

        Raises:
            DocumentNotFoundError: If the tenant has no such document
            DispatchError: If the new run could not be scheduled
        """
        document = await self.analysis_repo.get_document(tenant_id, document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")

        active = await self.analysis_repo.get_active_for_document(tenant_id, document_id)
        if active is not None:
            self.logger.info(
                f"Document {document_id} already has active analysis {active.id}",
                extra={"tenant_id": str(tenant_id), "status": active.status},
            )
            return active, False

        run = await self._create_run(
            tenant_id, document_id, await self.analysis_repo.next_run_number(tenant_id, document_id)
        )
        if run is None:
            # a concurrent trigger won the race on the active-run index
            active = await self.analysis_repo.get_active_for_document(tenant_id, document_id)
            if active is None:
                raise InvalidTransitionError("none", AnalysisStatus.PENDING.value, "Analysis could not be started")
            return active, False

        return await self._dispatch(run), True

    async def get_status(self, tenant_id: UUID, analysis_id: UUID) -> AnalysisStatusResponse:
        run = await self._require_run(tenant_id, analysis_id)

        queue_position = run.queue_position
        if run.status == AnalysisStatus.PENDING.value and queue_position is None:
            queue_position = await self.analysis_repo.count_active_ahead(run)

        message = run.progress_message
        if message is None:
            message = STAGE_MESSAGES.get(run.progress_stage or "", QUEUED_MESSAGE)

        error = None
        if run.error_code or run.error_message:
            failure = (run.debug_metadata or {}).get("failure") or {}
            error = AnalysisError(
                code=run.error_code,
                message=run.error_message,
                suggestion=failure.get("suggestion"),
            )

        return AnalysisStatusResponse(
            analysis_id=run.id,
            document_id=run.document_id,
            run_number=run.run_number,
            attempt=run.attempt,
            status=run.status,
            progress_stage=run.progress_stage,
            progress_percent=run.progress_percent or 0,
            progress_message=message,
            queue_position=queue_position,
            cancel_requested=run.cancel_requested,
            perspective=run.perspective,
            error=error,
            token_usage=run.token_usage,
            estimated_cost=run.estimated_cost,
            was_truncated=run.was_truncated,
            started_at=run.started_at,
            completed_at=run.completed_at,
            processing_time_ms=run.processing_time_ms,
        )

    async def get_report(self, tenant_id: UUID, analysis_id: UUID) -> AnalysisReportResponse:
        run = await self._require_run(tenant_id, analysis_id)
        if run.status != AnalysisStatus.COMPLETED.value:
            raise ReportNotReadyError(f"Analysis is {run.status}; the report is available once it completes")

        clauses = await self.step_repo.records_for("clause_extractions", run.id)
        gaps = await self.step_repo.records_for("analysis_gaps", run.id)
        return AnalysisReportResponse(
            analysis_id=run.id,
            document_id=run.document_id,
            overall_risk_score=run.overall_risk_score,
            overall_risk_level=run.overall_risk_level,
            summary=run.summary,
            perspective=run.perspective,
            gap_analysis=run.gap_analysis,
            token_usage=run.token_usage,
            estimated_cost=run.estimated_cost,
            was_truncated=run.was_truncated,
            clauses=[ClauseResponse.model_validate(clause) for clause in clauses],
            gaps=[GapResponse.model_validate(gap) for gap in gaps],
        )

    async def cancel(self, tenant_id: UUID, analysis_id: UUID) -> AnalysisRun:
        """Request cancellation; a run that has not started is cancelled at once."""
        await self._require_run(tenant_id, analysis_id)
        run = await self.cancellation.request(analysis_id)
        if AnalysisStatus(run.status) in TERMINAL_STATUSES and self.broker is not None:
            self.broker.publish(ProgressEvent.from_run(run))
        return run

    async def resume(self, tenant_id: UUID, analysis_id: UUID) -> AnalysisRun:
        """Put a failed or cancelled run back in the queue.

        Raises:
            InvalidTransitionError: If the run is not resumable, or the document
                has meanwhile got another active run
        """
        await self._require_run(tenant_id, analysis_id)

        def mutate(run: AnalysisRun) -> dict:
            if AnalysisStatus(run.status) not in RESUMABLE_STATUSES:
                raise InvalidTransitionError(
                    run.status,
                    AnalysisStatus.PENDING.value,
                    f"Only failed or cancelled analyses can be resumed; this one is {run.status}",
                )
            ensure_transition(run.status, AnalysisStatus.PENDING.value)
            return {
                "status": AnalysisStatus.PENDING.value,
                "cancel_requested": False,
                "progress_message": RESUMING_MESSAGE,
                "queue_position": None,
                "error_code": None,
                "error_message": None,
                "completed_at": None,
                "processing_time_ms": None,
                "attempt": run.attempt + 1,
            }

        try:
            run = await self.analysis_repo.apply(analysis_id, mutate)
        except IntegrityError as e:
            raise InvalidTransitionError(
                "stopped",
                AnalysisStatus.PENDING.value,
                "Another analysis of this document is already running",
            ) from e

        self.logger.info(f"Resuming analysis {analysis_id}", extra={"attempt": run.attempt})
        return await self._dispatch(run)

    async def restart(self, tenant_id: UUID, document_id: UUID) -> AnalysisRun:
        """Discard the document's latest run and analyze it from scratch.

        Raises:
            DocumentNotFoundError: If the tenant has no such document
            InvalidTransitionError: If the latest run is still active
        """
        document = await self.analysis_repo.get_document(tenant_id, document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")

        latest = await self.analysis_repo.get_latest_for_document(tenant_id, document_id)
        run_number = 1
        if latest is not None:
            if AnalysisStatus(latest.status) not in TERMINAL_STATUSES:
                raise InvalidTransitionError(
                    latest.status,
                    AnalysisStatus.PENDING.value,
                    "Analysis is still running; cancel it before restarting",
                )
            run_number = latest.run_number + 1
            await self.analysis_repo.discard(latest.id)

        run = await self._create_run(tenant_id, document_id, run_number)
        if run is None:
            raise InvalidTransitionError(
                "active", AnalysisStatus.PENDING.value, "Another analysis of this document is already running"
            )

        self.logger.info(
            f"Restarted analysis of document {document_id} as run {run_number}",
            extra={"analysis_id": str(run.id), "discarded": str(latest.id) if latest else None},
        )
        return await self._dispatch(run)

    async def rescore(self, tenant_id: UUID, analysis_id: UUID, perspective: str) -> AnalysisRun:
        """Score a completed run's clauses again from another party's perspective.

        The run stays completed; its progress stage reads ``rescoring`` until
        the worker has written the new assessments and report scores.

        Raises:
            ValidationError: If the perspective is unknown
            InvalidTransitionError: If the run is not completed, is already
                being re-scored, or is already scored from this perspective
            DispatchError: If no worker could be reached
        """
        if perspective not in PERSPECTIVES:
            raise ValidationError(f"Unknown perspective '{perspective}'; expected one of {', '.join(PERSPECTIVES)}")
        await self._require_run(tenant_id, analysis_id)

        def mutate(run: AnalysisRun) -> dict:
            if run.status != AnalysisStatus.COMPLETED.value:
                raise InvalidTransitionError(
                    run.status, RESCORE_STAGE, "Only completed analyses can be re-scored"
                )
            if run.progress_stage == RESCORE_STAGE:
                raise InvalidTransitionError(run.status, RESCORE_STAGE, "Analysis is already being re-scored")
            last_failed = "rescore_failure" in (run.debug_metadata or {})
            if run.perspective == perspective and not last_failed:
                raise InvalidTransitionError(
                    run.status, RESCORE_STAGE, "Analysis is already scored from this perspective"
                )
            generation = run.rescore_generation + 1
            return {
                "perspective": perspective,
                "rescore_generation": generation,
                "progress_stage": RESCORE_STAGE,
                "progress_message": STAGE_MESSAGES[RESCORE_STAGE],
                "debug_metadata": {
                    **(run.debug_metadata or {}),
                    "rescore": {"from": run.perspective, "to": perspective, "generation": generation},
                },
            }

        run = await self.analysis_repo.apply(analysis_id, mutate)
        self.logger.info(
            f"Re-scoring analysis {analysis_id} from the {perspective} perspective",
            extra={"generation": run.rescore_generation},
        )

        try:
            await self.dispatcher.dispatch_rescore(run)
        except Exception as e:
            self.logger.error(f"Failed to dispatch rescore of analysis {analysis_id}: {e}", exc_info=True)
            previous = run.debug_metadata["rescore"]["from"]

            def revert(current: AnalysisRun) -> Optional[dict]:
                if current.progress_stage != RESCORE_STAGE:
                    return None
                return {
                    "perspective": previous,
                    "progress_stage": COMPLETE_STAGE,
                    "progress_message": STAGE_MESSAGES[COMPLETE_STAGE],
                }

            await self.analysis_repo.apply(analysis_id, revert)
            raise DispatchError(RESCORE_DISPATCH_FAILED_MESSAGE, original_error=e) from e
        return run

    async def _require_run(self, tenant_id: UUID, analysis_id: UUID) -> AnalysisRun:
        run = await self.analysis_repo.get_fresh(analysis_id)
        if run is None or run.tenant_id != tenant_id:
            raise AnalysisNotFoundError(f"Analysis {analysis_id} not found")
        return run

    async def _create_run(self, tenant_id: UUID, document_id: UUID, run_number: int) -> Optional[AnalysisRun]:
        """Insert a pending run and commit; None when another active run already exists."""
        try:
            run = await self.analysis_repo.create(
                tenant_id=tenant_id,
                document_id=document_id,
                run_number=run_number,
                status=AnalysisStatus.PENDING.value,
                progress_percent=0,
                progress_message=QUEUED_MESSAGE,
            )
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            self.logger.info(
                f"Concurrent analysis start for document {document_id}",
                extra={"tenant_id": str(tenant_id)},
            )
            return None

        self.logger.info(
            f"Created analysis {run.id} for document {document_id}",
            extra={"tenant_id": str(tenant_id), "run_number": run_number},
        )
        return run

    async def _dispatch(self, run: AnalysisRun) -> AnalysisRun:
        try:
            workflow_id = await self.dispatcher.dispatch(run)
        except Exception as e:
            self.logger.error(f"Failed to dispatch analysis {run.id}: {e}", exc_info=True)

            def fail(current: AnalysisRun) -> Optional[dict]:
                if AnalysisStatus(current.status) in TERMINAL_STATUSES:
                    return None
                return {
                    "status": AnalysisStatus.FAILED.value,
                    "error_code": "DISPATCH_FAILED",
                    "error_message": DISPATCH_FAILED_MESSAGE,
                    "progress_message": DISPATCH_FAILED_MESSAGE,
                }

            await self.analysis_repo.apply(run.id, fail)
            raise DispatchError(DISPATCH_FAILED_MESSAGE, original_error=e) from e

        def record(current: AnalysisRun) -> Optional[dict]:
            if current.workflow_id == workflow_id:
                return None
            return {"workflow_id": workflow_id}

        return await self.analysis_repo.apply(run.id, record)
