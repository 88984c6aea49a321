from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ndaflow.core.exceptions import AnalysisNotFoundError, ConcurrencyConflictError
from ndaflow.database.models import (
    ACTIVE_STATUSES,
    AnalysisGap,
    AnalysisRun,
    AnalysisStep,
    ChunkClassification,
    ClauseExtraction,
    Document,
    DocumentChunk,
)
from ndaflow.repositories.base_repository import BaseRepository
from ndaflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

# Mutators receive the current row and return the columns to change, or None for no-op
RunMutator = Callable[[AnalysisRun], Optional[Dict[str, Any]]]


class AnalysisRepository(BaseRepository[AnalysisRun]):
    """Repository for analysis runs.

    All writes to a run go through :meth:`apply`, which guards them with the
    ``version`` column: the update only lands if the row still carries the
    version the mutator saw, otherwise the row is re-read and the mutator runs
    again against the fresh state.
    """

    MAX_VERSION_RETRIES = 5

    def __init__(self, session: AsyncSession):
        super().__init__(session, AnalysisRun)

    async def get_fresh(self, analysis_id: UUID) -> Optional[AnalysisRun]:
        """Load the run, bypassing any stale copy in the identity map."""
        query = (
            select(AnalysisRun)
            .where(AnalysisRun.id == analysis_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def require(self, analysis_id: UUID) -> AnalysisRun:
        run = await self.get_fresh(analysis_id)
        if run is None:
            raise AnalysisNotFoundError(f"Analysis {analysis_id} not found")
        return run

    async def apply(self, analysis_id: UUID, mutate: RunMutator) -> AnalysisRun:
        """Apply a version-checked update and commit it.

        Args:
            analysis_id: Run to update
            mutate: Computes the changed columns from the current row. It may
                raise to abort, and may run more than once under contention.

        Returns:
            The run as stored after the update

        Raises:
            AnalysisNotFoundError: If the run does not exist
            ConcurrencyConflictError: If every attempt lost a version race
        """
        for attempt in range(1, self.MAX_VERSION_RETRIES + 1):
            current = await self.require(analysis_id)
            changes = mutate(current)
            if not changes:
                return current

            expected_version = current.version
            stmt = (
                update(AnalysisRun)
                .where(AnalysisRun.id == analysis_id, AnalysisRun.version == expected_version)
                .values(
                    **changes,
                    version=expected_version + 1,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )

            try:
                result = await self.session.execute(stmt)
            except SQLAlchemyError as e:
                await self.session.rollback()
                self.logger.error(
                    f"Error updating analysis {analysis_id}: {str(e)}",
                    exc_info=True
                )
                raise

            if result.rowcount == 1:
                await self.session.commit()
                return await self.require(analysis_id)

            await self.session.rollback()
            self.logger.debug(
                f"Version conflict on analysis {analysis_id}, re-reading",
                extra={"attempt": attempt, "expected_version": expected_version},
            )

        raise ConcurrencyConflictError(
            f"Analysis {analysis_id} kept changing underneath {self.MAX_VERSION_RETRIES} update attempts"
        )

    async def get_active_for_document(self, tenant_id: UUID, document_id: UUID) -> Optional[AnalysisRun]:
        query = select(AnalysisRun).where(
            AnalysisRun.tenant_id == tenant_id,
            AnalysisRun.document_id == document_id,
            AnalysisRun.status.in_(ACTIVE_STATUSES),
        )
        result = await self.session.execute(query)
        return result.scalars().first()

    async def get_latest_for_document(self, tenant_id: UUID, document_id: UUID) -> Optional[AnalysisRun]:
        query = (
            select(AnalysisRun)
            .where(AnalysisRun.tenant_id == tenant_id, AnalysisRun.document_id == document_id)
            .order_by(AnalysisRun.run_number.desc())
            .limit(1)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def next_run_number(self, tenant_id: UUID, document_id: UUID) -> int:
        query = select(func.max(AnalysisRun.run_number)).where(
            AnalysisRun.tenant_id == tenant_id,
            AnalysisRun.document_id == document_id,
        )
        current = (await self.session.execute(query)).scalar_one_or_none()
        return (current or 0) + 1

    async def count_active_ahead(self, run: AnalysisRun) -> int:
        """Number of the tenant's active runs created before ``run``."""
        query = select(func.count()).select_from(AnalysisRun).where(
            AnalysisRun.tenant_id == run.tenant_id,
            AnalysisRun.status.in_(ACTIVE_STATUSES),
            AnalysisRun.created_at < run.created_at,
            AnalysisRun.id != run.id,
        )
        return (await self.session.execute(query)).scalar_one()

    async def get_document(self, tenant_id: UUID, document_id: UUID) -> Optional[Document]:
        query = select(Document).where(Document.id == document_id, Document.tenant_id == tenant_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def discard(self, analysis_id: UUID) -> None:
        """Delete a run together with its step ledger and stage records."""
        for model in (AnalysisStep, AnalysisGap, ClauseExtraction, ChunkClassification, DocumentChunk):
            await BaseRepository(self.session, model).delete_where(analysis_id=analysis_id)
        await self.delete_where(id=analysis_id)
        LOGGER.info(f"Discarded analysis {analysis_id} and its records")
