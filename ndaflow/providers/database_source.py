from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ndaflow.core.exceptions import DocumentNotFoundError
from ndaflow.providers.base import SourceDocument
from ndaflow.repositories.analysis_repository import AnalysisRepository


class DatabaseDocumentSource:
    """Reads documents the storage collaborator has already parsed into ``documents``."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def load(self, tenant_id: UUID, document_id: UUID) -> SourceDocument:
        async with self._session_maker() as session:
            document = await AnalysisRepository(session).get_document(tenant_id, document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document {document_id} not found for tenant {tenant_id}")
        return SourceDocument(
            document_id=document.id,
            tenant_id=document.tenant_id,
            file_name=document.file_name,
            mime_type=document.mime_type,
            file_url=document.file_url,
            page_count=document.page_count or 0,
            text=document.raw_text or "",
            is_scanned=document.is_scanned,
        )
