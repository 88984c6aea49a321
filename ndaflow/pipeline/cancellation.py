"""Cooperative cancellation of analysis runs.

Cancelling sets a flag on the run. The orchestrator reads the flag before each
step and stops there, so a step that is already talking to a provider is
allowed to finish and persist its results. A run still waiting in ``pending``
is moved to ``cancelled`` immediately; a worker that picks it up afterwards
finds it terminal and leaves it alone.
"""

from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ndaflow.core.exceptions import AnalysisNotFoundError, InvalidTransitionError
from ndaflow.database.models import AnalysisRun
from ndaflow.pipeline.state import (
    ACTIVE_STATUSES,
    STAGE_LABELS,
    STAGE_MESSAGES,
    AnalysisStatus,
    ensure_transition,
)
from ndaflow.repositories.analysis_repository import AnalysisRepository
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

CANCELLED_BY_USER = "Analysis cancelled by user"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CancellationController:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def request(self, analysis_id: UUID) -> AnalysisRun:
        """Flag a run for cancellation.

        Raises:
            AnalysisNotFoundError: If the run does not exist
            InvalidTransitionError: If the run already finished
        """

        def mutate(run: AnalysisRun) -> Optional[dict]:
            status = AnalysisStatus(run.status)
            if status not in ACTIVE_STATUSES:
                raise InvalidTransitionError(
                    run.status,
                    AnalysisStatus.CANCELLED.value,
                    f"Analysis is already {run.status} and cannot be cancelled",
                )
            if run.cancel_requested:
                return None

            metadata = {**(run.debug_metadata or {}), "cancel_requested_at": _now_iso()}
            changes = {"cancel_requested": True, "debug_metadata": metadata}
            if status == AnalysisStatus.PENDING:
                changes.update(
                    status=AnalysisStatus.CANCELLED.value,
                    progress_message=CANCELLED_BY_USER,
                    queue_position=None,
                    debug_metadata={**metadata, "cancelled_at": _now_iso()},
                )
            return changes

        async with self._session_maker() as session:
            run = await AnalysisRepository(session).apply(analysis_id, mutate)

        LOGGER.info(
            f"Cancellation requested for analysis {analysis_id}",
            extra={"status": run.status},
        )
        return run

    async def is_requested(self, analysis_id: UUID) -> bool:
        async with self._session_maker() as session:
            result = await session.execute(
                select(AnalysisRun.cancel_requested).where(AnalysisRun.id == analysis_id)
            )
            flag = result.scalar_one_or_none()
        if flag is None:
            raise AnalysisNotFoundError(f"Analysis {analysis_id} not found")
        return bool(flag)

    def checker(self, analysis_id: UUID) -> Callable[[], Awaitable[bool]]:
        """Bind :meth:`is_requested` to one run, for the stage context."""

        async def is_cancelled() -> bool:
            return await self.is_requested(analysis_id)

        return is_cancelled

    async def complete(
        self, analysis_id: UUID, stage: Optional[str], step_label: Optional[str] = None
    ) -> AnalysisRun:
        """Move a flagged run to ``cancelled``, keeping its persisted records."""
        if stage:
            message = f"{STAGE_MESSAGES[AnalysisStatus.CANCELLED.value]} during {STAGE_LABELS.get(stage, stage)}"
        else:
            message = f"{STAGE_MESSAGES[AnalysisStatus.CANCELLED.value]} before processing started"

        def mutate(run: AnalysisRun) -> dict:
            ensure_transition(run.status, AnalysisStatus.CANCELLED.value)
            return {
                "status": AnalysisStatus.CANCELLED.value,
                "progress_message": message,
                "queue_position": None,
                "debug_metadata": {
                    **(run.debug_metadata or {}),
                    "cancelled_at": _now_iso(),
                    "cancelled_stage": stage,
                    "cancelled_before_step": step_label,
                },
            }

        async with self._session_maker() as session:
            run = await AnalysisRepository(session).apply(analysis_id, mutate)

        LOGGER.info(
            f"Analysis {analysis_id} cancelled",
            extra={"stage": stage, "step": step_label},
        )
        return run
