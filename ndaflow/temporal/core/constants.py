"""Shared constants for Temporal workflows."""

WORKFLOW_ID_PREFIX = "analysis-"

# Timeouts
DEFAULT_WORKFLOW_TIMEOUT_SECONDS = 3 * 3600
PIPELINE_ACTIVITY_TIMEOUT_SECONDS = 2 * 3600
STATUS_ACTIVITY_TIMEOUT_SECONDS = 30


def workflow_id_for(analysis_id: str, attempt: int = 1) -> str:
    """One workflow per run attempt; starting the same attempt twice is a no-op."""
    return f"{WORKFLOW_ID_PREFIX}{analysis_id}-{attempt}"


RESCORE_WORKFLOW_ID_PREFIX = "rescore-"


def rescore_workflow_id_for(analysis_id: str, generation: int) -> str:
    return f"{RESCORE_WORKFLOW_ID_PREFIX}{analysis_id}-{generation}"
