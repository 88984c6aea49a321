"""Temporal workflow re-scoring a completed analysis."""

from datetime import timedelta
from typing import Dict

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

from ndaflow.temporal.core.constants import (
    PIPELINE_ACTIVITY_TIMEOUT_SECONDS,
    STATUS_ACTIVITY_TIMEOUT_SECONDS,
)
from ndaflow.temporal.core.workflow_registry import WorkflowRegistry

RESCORE_FAILURE_MESSAGE = "Re-scoring worker failed repeatedly. Please try again later."


@WorkflowRegistry.register()
@workflow.defn
class RescoreAnalysisWorkflow:
    """Runs the rescore activity, retrying it on worker crashes."""

    @workflow.run
    async def run(self, payload: Dict) -> dict:
        analysis_id = payload["analysis_id"]
        try:
            return await workflow.execute_activity(
                "rescore_analysis_pipeline",
                args=[analysis_id],
                start_to_close_timeout=timedelta(seconds=PIPELINE_ACTIVITY_TIMEOUT_SECONDS),
                heartbeat_timeout=timedelta(seconds=payload.get("heartbeat_timeout_seconds", 120)),
                retry_policy=RetryPolicy(
                    maximum_attempts=payload.get("max_attempts", 3),
                    initial_interval=timedelta(seconds=5),
                    maximum_interval=timedelta(seconds=60),
                    backoff_coefficient=2.0,
                ),
            )
        except ActivityError as e:
            workflow.logger.error(f"Rescore activity for {analysis_id} exhausted its retries: {e}")
            return await workflow.execute_activity(
                "mark_rescore_failed",
                args=[analysis_id, RESCORE_FAILURE_MESSAGE],
                start_to_close_timeout=timedelta(seconds=STATUS_ACTIVITY_TIMEOUT_SECONDS),
                retry_policy=RetryPolicy(maximum_attempts=5),
            )
