from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import StreamingResponse

from ndaflow.api.v1.dependencies import (
    get_analysis_service,
    get_progress_broker,
    get_tenant_id,
    http_error,
)
from ndaflow.core.exceptions import AppError
from ndaflow.pipeline.progress import ProgressBroker
from ndaflow.schemas.analysis import (
    AnalysisStartResponse,
    RescoreRequest,
    RescoreResponse,
    StartAnalysisRequest,
)
from ndaflow.schemas.common import ApiResponse
from ndaflow.services.analysis_service import AnalysisService
from ndaflow.services.sse_manager import SSEManager
from ndaflow.utils.logging import get_logger
from ndaflow.utils.responses import create_api_response

LOGGER = get_logger(__name__)

router = APIRouter()


def get_sse_manager(broker: Annotated[ProgressBroker, Depends(get_progress_broker)]) -> SSEManager:
    return SSEManager(broker)


def _stream_url(analysis_id: UUID) -> str:
    return f"/api/v1/analyses/{analysis_id}/stream"


@router.post(
    "",
    response_model=ApiResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start analyzing a document",
    operation_id="start_analysis",
)
async def start_analysis(
    request: Request,
    payload: StartAnalysisRequest,
    tenant_id: Annotated[UUID, Depends(get_tenant_id)],
    service: Annotated[AnalysisService, Depends(get_analysis_service)],
) -> ApiResponse:
    """Start an analysis; returns the active run if the document already has one."""
    try:
        run, created = await service.start_analysis(tenant_id, payload.document_id)
    except AppError as e:
        raise http_error(request, e)

    data = AnalysisStartResponse(
        analysis_id=run.id,
        status=run.status,
        created=created,
        stream_url=_stream_url(run.id),
    )
    return create_api_response(
        data=data,
        message="Analysis started" if created else "Analysis already in progress",
        request=request,
    )


@router.get(
    "/{analysis_id}/status",
    response_model=ApiResponse,
    summary="Get analysis status",
    operation_id="get_analysis_status",
)
async def get_analysis_status(
    request: Request,
    analysis_id: UUID,
    tenant_id: Annotated[UUID, Depends(get_tenant_id)],
    service: Annotated[AnalysisService, Depends(get_analysis_service)],
) -> ApiResponse:
    try:
        data = await service.get_status(tenant_id, analysis_id)
    except AppError as e:
        raise http_error(request, e)
    return create_api_response(data=data, message="Analysis status retrieved", request=request)


@router.get(
    "/{analysis_id}/stream",
    summary="Stream analysis progress via SSE",
    operation_id="stream_analysis_events",
)
async def stream_analysis_events(
    request: Request,
    analysis_id: UUID,
    tenant_id: Annotated[UUID, Depends(get_tenant_id)],
    service: Annotated[AnalysisService, Depends(get_analysis_service)],
    sse_manager: Annotated[SSEManager, Depends(get_sse_manager)],
) -> StreamingResponse:
    """Stream real-time progress for an analysis, ending with its terminal event."""
    try:
        await service.get_status(tenant_id, analysis_id)
    except AppError as e:
        raise http_error(request, e)

    return StreamingResponse(
        sse_manager.stream_analysis_events(analysis_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable proxy buffering (Nginx)
        },
    )


@router.get(
    "/{analysis_id}/report",
    response_model=ApiResponse,
    summary="Get the analysis report",
    operation_id="get_analysis_report",
)
async def get_analysis_report(
    request: Request,
    analysis_id: UUID,
    tenant_id: Annotated[UUID, Depends(get_tenant_id)],
    service: Annotated[AnalysisService, Depends(get_analysis_service)],
) -> ApiResponse:
    try:
        data = await service.get_report(tenant_id, analysis_id)
    except AppError as e:
        raise http_error(request, e)
    return create_api_response(data=data, message="Analysis report retrieved", request=request)


@router.post(
    "/{analysis_id}/cancel",
    response_model=ApiResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Cancel an analysis",
    operation_id="cancel_analysis",
)
async def cancel_analysis(
    request: Request,
    analysis_id: UUID,
    tenant_id: Annotated[UUID, Depends(get_tenant_id)],
    service: Annotated[AnalysisService, Depends(get_analysis_service)],
) -> ApiResponse:
    """Request cancellation; the run stops before its next step."""
    try:
        run = await service.cancel(tenant_id, analysis_id)
    except AppError as e:
        raise http_error(request, e)

    LOGGER.info(f"Cancel requested for analysis {analysis_id}", extra={"status": run.status})
    return create_api_response(
        data={"analysis_id": str(run.id), "status": run.status, "cancel_requested": run.cancel_requested},
        message="Cancellation requested",
        request=request,
    )


@router.post(
    "/{analysis_id}/resume",
    response_model=ApiResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Resume a failed or cancelled analysis",
    operation_id="resume_analysis",
)
async def resume_analysis(
    request: Request,
    analysis_id: UUID,
    tenant_id: Annotated[UUID, Depends(get_tenant_id)],
    service: Annotated[AnalysisService, Depends(get_analysis_service)],
) -> ApiResponse:
    try:
        run = await service.resume(tenant_id, analysis_id)
    except AppError as e:
        raise http_error(request, e)

    return create_api_response(
        data={
            "analysis_id": str(run.id),
            "status": run.status,
            "attempt": run.attempt,
            "stream_url": _stream_url(run.id),
        },
        message="Analysis resumed",
        request=request,
    )


@router.post(
    "/{analysis_id}/rescore",
    response_model=ApiResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Re-score a completed analysis from another perspective",
    operation_id="rescore_analysis",
)
async def rescore_analysis(
    request: Request,
    analysis_id: UUID,
    payload: RescoreRequest,
    tenant_id: Annotated[UUID, Depends(get_tenant_id)],
    service: Annotated[AnalysisService, Depends(get_analysis_service)],
) -> ApiResponse:
    """Score the clauses again; the report updates once the status leaves ``rescoring``."""
    try:
        run = await service.rescore(tenant_id, analysis_id, payload.perspective)
    except AppError as e:
        raise http_error(request, e)

    data = RescoreResponse(
        analysis_id=run.id,
        status=run.status,
        perspective=run.perspective,
        progress_stage=run.progress_stage,
    )
    return create_api_response(data=data, message="Re-scoring started", request=request)
