"""FastAPI dependencies and error translation shared by the v1 endpoints."""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ndaflow.core.config import settings
from ndaflow.core.database import async_session_maker, get_async_session as get_session
from ndaflow.core.exceptions import (
    AnalysisNotFoundError,
    AppError,
    ConcurrencyConflictError,
    DispatchError,
    DocumentNotFoundError,
    InvalidTransitionError,
    ReportNotReadyError,
    ValidationError,
)
from ndaflow.pipeline.cancellation import CancellationController
from ndaflow.pipeline.factory import build_default_orchestrator, shared_progress_broker
from ndaflow.pipeline.progress import ProgressBroker
from ndaflow.services.analysis_service import AnalysisService
from ndaflow.services.dispatch import Dispatcher, InlineDispatcher, TemporalDispatcher
from ndaflow.utils.logging import get_logger
from ndaflow.utils.responses import create_error_detail

LOGGER = get_logger(__name__)

# exception type -> (HTTP status, title, error code)
_ERROR_MAP = [
    (AnalysisNotFoundError, status.HTTP_404_NOT_FOUND, "Analysis Not Found", "ANALYSIS_NOT_FOUND"),
    (DocumentNotFoundError, status.HTTP_404_NOT_FOUND, "Document Not Found", "DOCUMENT_NOT_FOUND"),
    (InvalidTransitionError, status.HTTP_409_CONFLICT, "Invalid Analysis State", "INVALID_TRANSITION"),
    (ReportNotReadyError, status.HTTP_409_CONFLICT, "Report Not Ready", "REPORT_NOT_READY"),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT, "Concurrent Update", "CONCURRENT_UPDATE"),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation Failed", "VALIDATION_ERROR"),
    (DispatchError, status.HTTP_503_SERVICE_UNAVAILABLE, "Scheduling Failed", "DISPATCH_FAILED"),
]

_dispatcher: Optional[Dispatcher] = None


def http_error(request: Request, error: AppError) -> HTTPException:
    """Translate a domain error into an HTTPException carrying problem details."""
    for error_type, status_code, title, code in _ERROR_MAP:
        if isinstance(error, error_type):
            break
    else:
        LOGGER.error(f"Unhandled application error: {error.message}", exc_info=error)
        status_code, title, code = status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Error", "INTERNAL_ERROR"

    error_detail = create_error_detail(
        title=title,
        status=status_code,
        detail=error.message,
        request=request,
        code=code,
    )
    return HTTPException(status_code=status_code, detail=error_detail.model_dump(mode="json"))


async def get_tenant_id(x_tenant_id: Annotated[UUID, Header(alias="X-Tenant-ID")]) -> UUID:
    return x_tenant_id


def get_dispatcher() -> Dispatcher:
    """Dispatcher for the configured mode, created once per process."""
    global _dispatcher
    if _dispatcher is None:
        if settings.pipeline.dispatch_mode == "inline":
            _dispatcher = InlineDispatcher(build_default_orchestrator(async_session_maker))
        else:
            _dispatcher = TemporalDispatcher()
        LOGGER.info(f"Using {type(_dispatcher).__name__} for analysis runs")
    return _dispatcher


def get_progress_broker() -> ProgressBroker:
    return shared_progress_broker()


def get_cancellation_controller() -> CancellationController:
    return CancellationController(async_session_maker)


async def get_analysis_service(
    db_session: Annotated[AsyncSession, Depends(get_session)],
    dispatcher: Annotated[Dispatcher, Depends(get_dispatcher)],
    cancellation: Annotated[CancellationController, Depends(get_cancellation_controller)],
    broker: Annotated[ProgressBroker, Depends(get_progress_broker)],
) -> AnalysisService:
    return AnalysisService(db_session, dispatcher, cancellation, broker)
