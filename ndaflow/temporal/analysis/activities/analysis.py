"""Temporal activities executing analysis runs."""

import asyncio
from typing import Any, Dict, Optional
from uuid import UUID

from temporalio import activity

from ndaflow.core.config import settings
from ndaflow.core.database import async_session_maker
from ndaflow.pipeline.factory import build_default_orchestrator
from ndaflow.pipeline.orchestrator import PipelineOrchestrator, RunResult
from ndaflow.pipeline.progress import ProgressEvent
from ndaflow.temporal.core.activity_registry import ActivityRegistry
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

_orchestrator: Optional[PipelineOrchestrator] = None


def get_orchestrator() -> PipelineOrchestrator:
    """Orchestrator shared by every activity in this worker process."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_default_orchestrator(async_session_maker)
    return _orchestrator


def _result_payload(result: RunResult) -> Dict[str, Any]:
    return {
        "analysis_id": str(result.analysis_id),
        "status": result.status,
        "error_code": result.error_code,
        "message": result.message,
    }


async def _heartbeat_loop(details: Dict[str, Any], interval: float) -> None:
    # steps may run longer than the heartbeat timeout without emitting progress
    while True:
        await asyncio.sleep(interval)
        activity.heartbeat(dict(details))


@ActivityRegistry.register("analysis", "run_analysis_pipeline")
@activity.defn
async def run_analysis_pipeline(analysis_id: str) -> Dict[str, Any]:
    """Run (or continue) an analysis until it completes, fails or is cancelled.

    A retried attempt of this activity picks up where the previous one
    stopped: completed steps are replayed from the step ledger.
    """
    info = activity.info()
    activity.logger.info(
        f"Starting analysis pipeline for {analysis_id}",
        extra={"analysis_id": analysis_id, "activity_attempt": info.attempt},
    )

    details: Dict[str, Any] = {"analysis_id": analysis_id}

    def on_progress(event: ProgressEvent) -> None:
        details.update(event.to_dict())
        activity.heartbeat(dict(details))

    interval = max(1.0, settings.temporal.activity_heartbeat_timeout_seconds / 3)
    heartbeats = asyncio.create_task(_heartbeat_loop(details, interval))
    try:
        result = await get_orchestrator().run(UUID(analysis_id), heartbeat=on_progress)
    finally:
        heartbeats.cancel()

    activity.logger.info(
        f"Analysis pipeline for {analysis_id} finished with status {result.status}",
        extra={"analysis_id": analysis_id, "error_code": result.error_code},
    )
    return _result_payload(result)


@ActivityRegistry.register("analysis", "mark_analysis_failed")
@activity.defn
async def mark_analysis_failed(analysis_id: str, message: str) -> Dict[str, Any]:
    """Fail a run after every pipeline activity attempt crashed."""
    LOGGER.error(f"Marking analysis {analysis_id} failed: {message}")
    result = await get_orchestrator().abandon(UUID(analysis_id), message)
    return _result_payload(result)


@ActivityRegistry.register("analysis", "rescore_analysis_pipeline")
@activity.defn
async def rescore_analysis_pipeline(analysis_id: str) -> Dict[str, Any]:
    """Re-score a completed analysis from its current perspective."""
    activity.logger.info(
        f"Starting rescore for {analysis_id}",
        extra={"analysis_id": analysis_id, "activity_attempt": activity.info().attempt},
    )

    details: Dict[str, Any] = {"analysis_id": analysis_id}
    interval = max(1.0, settings.temporal.activity_heartbeat_timeout_seconds / 3)
    heartbeats = asyncio.create_task(_heartbeat_loop(details, interval))
    try:
        result = await get_orchestrator().rescore(UUID(analysis_id))
    finally:
        heartbeats.cancel()
    return _result_payload(result)


@ActivityRegistry.register("analysis", "mark_rescore_failed")
@activity.defn
async def mark_rescore_failed(analysis_id: str, message: str) -> Dict[str, Any]:
    LOGGER.error(f"Marking rescore of analysis {analysis_id} failed: {message}")
    result = await get_orchestrator().abandon_rescore(UUID(analysis_id), message)
    return _result_payload(result)
