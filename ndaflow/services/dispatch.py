"""Handing runs to whatever executes the pipeline.

``TemporalDispatcher`` is the production path: one workflow per run attempt,
so a crashed worker is retried by Temporal. Re-scoring a completed run gets a
workflow of its own per rescore generation. ``InlineDispatcher`` runs the
orchestrator as an asyncio task in the API process, for local development
and tests.
"""

import asyncio
from typing import Protocol, Set
from uuid import UUID

from temporalio.exceptions import WorkflowAlreadyStartedError

from ndaflow.core.config import settings
from ndaflow.core.temporal_client import get_temporal_client
from ndaflow.database.models import AnalysisRun
from ndaflow.pipeline.orchestrator import PipelineOrchestrator
from ndaflow.temporal.analysis.workflows.analyze_document import AnalyzeDocumentWorkflow
from ndaflow.temporal.analysis.workflows.rescore_analysis import RescoreAnalysisWorkflow
from ndaflow.temporal.core.constants import rescore_workflow_id_for, workflow_id_for
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class Dispatcher(Protocol):
    async def dispatch(self, run: AnalysisRun) -> str:
        """Start executing ``run``; returns an identifier of the execution."""
        ...

    async def dispatch_rescore(self, run: AnalysisRun) -> str:
        """Start re-scoring a completed ``run`` at its current rescore generation."""
        ...


class TemporalDispatcher:
    """Starts ``AnalyzeDocumentWorkflow`` for a run attempt."""

    def __init__(self, task_queue: str = None):
        self.task_queue = task_queue or settings.temporal_task_queue

    async def dispatch(self, run: AnalysisRun) -> str:
        workflow_id = workflow_id_for(str(run.id), run.attempt)
        temporal_client = await get_temporal_client()

        try:
            workflow_handle = await temporal_client.start_workflow(
                AnalyzeDocumentWorkflow.run,
                {
                    "analysis_id": str(run.id),
                    "max_attempts": settings.temporal.activity_max_attempts,
                    "heartbeat_timeout_seconds": settings.temporal.activity_heartbeat_timeout_seconds,
                },
                id=workflow_id,
                task_queue=self.task_queue,
            )
        except WorkflowAlreadyStartedError:
            LOGGER.info(f"Temporal workflow {workflow_id} already running, getting handle.")
            workflow_handle = temporal_client.get_workflow_handle(workflow_id)

        LOGGER.info(
            f"Dispatched analysis {run.id} to workflow {workflow_handle.id}",
            extra={"task_queue": self.task_queue, "attempt": run.attempt},
        )
        return workflow_handle.id

    async def dispatch_rescore(self, run: AnalysisRun) -> str:
        workflow_id = rescore_workflow_id_for(str(run.id), run.rescore_generation)
        temporal_client = await get_temporal_client()

        try:
            workflow_handle = await temporal_client.start_workflow(
                RescoreAnalysisWorkflow.run,
                {
                    "analysis_id": str(run.id),
                    "max_attempts": settings.temporal.activity_max_attempts,
                    "heartbeat_timeout_seconds": settings.temporal.activity_heartbeat_timeout_seconds,
                },
                id=workflow_id,
                task_queue=self.task_queue,
            )
        except WorkflowAlreadyStartedError:
            LOGGER.info(f"Temporal workflow {workflow_id} already running, getting handle.")
            workflow_handle = temporal_client.get_workflow_handle(workflow_id)

        LOGGER.info(
            f"Dispatched rescore of analysis {run.id} to workflow {workflow_handle.id}",
            extra={"task_queue": self.task_queue, "perspective": run.perspective},
        )
        return workflow_handle.id


class InlineDispatcher:
    """Runs the orchestrator as a background task of the current event loop."""

    def __init__(self, orchestrator: PipelineOrchestrator):
        self.orchestrator = orchestrator
        self._tasks: Set[asyncio.Task] = set()

    async def dispatch(self, run: AnalysisRun) -> str:
        task_name = f"inline-{run.id}-{run.attempt}"
        task = asyncio.create_task(self._execute(run.id), name=task_name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task_name

    async def _execute(self, analysis_id: UUID) -> None:
        try:
            await self.orchestrator.run(analysis_id)
        except Exception as e:
            LOGGER.error(f"Inline run of analysis {analysis_id} crashed: {e}", exc_info=True)
            await self.orchestrator.abandon(analysis_id, "Analysis worker failed. Please try again later.")

    async def dispatch_rescore(self, run: AnalysisRun) -> str:
        task_name = f"inline-rescore-{run.id}-{run.rescore_generation}"
        task = asyncio.create_task(self._execute_rescore(run.id), name=task_name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task_name

    async def _execute_rescore(self, analysis_id: UUID) -> None:
        try:
            await self.orchestrator.rescore(analysis_id)
        except Exception as e:
            LOGGER.error(f"Inline rescore of analysis {analysis_id} crashed: {e}", exc_info=True)
            await self.orchestrator.abandon_rescore(analysis_id, "Re-scoring worker failed. Please try again later.")

    async def drain(self) -> None:
        """Wait for every dispatched run to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)
