from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status

from ndaflow.api.v1.dependencies import get_analysis_service, get_tenant_id, http_error
from ndaflow.core.exceptions import AppError
from ndaflow.schemas.common import ApiResponse
from ndaflow.services.analysis_service import AnalysisService
from ndaflow.utils.responses import create_api_response

router = APIRouter()


@router.post(
    "/{document_id}/restart",
    response_model=ApiResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Re-analyze a document from scratch",
    operation_id="restart_document_analysis",
)
async def restart_document_analysis(
    request: Request,
    document_id: UUID,
    tenant_id: Annotated[UUID, Depends(get_tenant_id)],
    service: Annotated[AnalysisService, Depends(get_analysis_service)],
) -> ApiResponse:
    """Discard the document's finished analysis and start a new run."""
    try:
        run = await service.restart(tenant_id, document_id)
    except AppError as e:
        raise http_error(request, e)

    return create_api_response(
        data={
            "analysis_id": str(run.id),
            "status": run.status,
            "run_number": run.run_number,
            "stream_url": f"/api/v1/analyses/{run.id}/stream",
        },
        message="Analysis restarted",
        request=request,
    )
