"""Temporal worker service for analysis runs.

This worker:
- Connects to the configured Temporal server, retrying while it starts up
- Hosts every registered workflow on its task queue
- Serves the pipeline activities, sharing one set of rate limiters
"""

import asyncio
from typing import Optional

from temporalio.client import Client
from temporalio.worker import Worker
from temporalio.worker.workflow_sandbox import SandboxedWorkflowRunner, SandboxRestrictions

# Importing the modules registers their workflows and activities
import ndaflow.temporal.analysis.activities.analysis  # noqa: F401
import ndaflow.temporal.analysis.workflows.analyze_document  # noqa: F401
import ndaflow.temporal.analysis.workflows.rescore_analysis  # noqa: F401
from ndaflow.core.config import settings
from ndaflow.core.database import close_database, init_database
from ndaflow.core.temporal_client import connect_temporal
from ndaflow.temporal.core.activity_registry import ActivityRegistry
from ndaflow.temporal.core.workflow_registry import WorkflowRegistry
from ndaflow.utils.logging import get_logger

logger = get_logger(__name__)


def build_workers(client: Client, max_concurrent_activities: Optional[int] = None) -> list[Worker]:
    """One worker per task queue, each serving every registered activity."""
    queues = WorkflowRegistry.by_task_queue()
    activities = list(ActivityRegistry.get_all_activities().values())
    logger.info(
        f"Hosting {sum(len(w) for w in queues.values())} workflows and {len(activities)} activities "
        f"on queues {sorted(queues)}"
    )

    return [
        Worker(
            client,
            task_queue=queue_name,
            workflows=workflows,
            activities=activities,
            max_concurrent_activities=max_concurrent_activities or settings.pipeline.max_concurrent_runs,
            max_concurrent_workflow_tasks=20,
            workflow_runner=SandboxedWorkflowRunner(
                restrictions=SandboxRestrictions.default.with_passthrough_all_modules()
            ),
        )
        for queue_name, workflows in queues.items()
    ]


async def run_workers() -> None:
    await init_database()
    client = await connect_temporal(max_attempts=5)
    workers = build_workers(client)

    logger.info(
        f"Analysis worker connected to {settings.temporal.address}",
        extra={"namespace": settings.temporal.namespace, "workers": len(workers)},
    )

    try:
        await asyncio.gather(*(worker.run() for worker in workers))
    finally:
        await close_database()


def main() -> None:
    try:
        asyncio.run(run_workers())
    except KeyboardInterrupt:
        logger.info("Workers stopped by user")


if __name__ == "__main__":
    main()
