"""Temporal workflow driving one analysis run."""

from datetime import timedelta
from typing import Dict, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

from ndaflow.temporal.core.constants import (
    PIPELINE_ACTIVITY_TIMEOUT_SECONDS,
    STATUS_ACTIVITY_TIMEOUT_SECONDS,
)
from ndaflow.temporal.core.workflow_registry import WorkflowRegistry

WORKER_FAILURE_MESSAGE = "Analysis worker failed repeatedly. Please try again later."


@WorkflowRegistry.register()
@workflow.defn
class AnalyzeDocumentWorkflow:
    """Runs the pipeline activity, retrying it on worker crashes.

    The pipeline itself is not replayed by Temporal; durability comes from the
    step ledger, so a retried activity skips work the crashed attempt finished.
    When every attempt crashes the run is marked failed.
    """

    def __init__(self):
        self._status = "initialized"
        self._analysis_id: Optional[str] = None
        self._error_code: Optional[str] = None

    @workflow.query
    def get_status(self) -> dict:
        """Query handler for the workflow's view of the run."""
        return {
            "analysis_id": self._analysis_id,
            "status": self._status,
            "error_code": self._error_code,
        }

    @workflow.run
    async def run(self, payload: Dict) -> dict:
        self._analysis_id = payload["analysis_id"]
        self._status = "running"

        try:
            result = await workflow.execute_activity(
                "run_analysis_pipeline",
                args=[self._analysis_id],
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
            workflow.logger.error(f"Pipeline activity for {self._analysis_id} exhausted its retries: {e}")
            result = await workflow.execute_activity(
                "mark_analysis_failed",
                args=[self._analysis_id, WORKER_FAILURE_MESSAGE],
                start_to_close_timeout=timedelta(seconds=STATUS_ACTIVITY_TIMEOUT_SECONDS),
                retry_policy=RetryPolicy(maximum_attempts=5),
            )

        self._status = result["status"]
        self._error_code = result.get("error_code")
        return result
