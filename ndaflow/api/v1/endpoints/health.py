"""Health check API endpoints."""

from fastapi import APIRouter
from pydantic import BaseModel, Field

from ndaflow.core.config import settings
from ndaflow.core.database import db_client
from ndaflow.pipeline.factory import shared_rate_limiters

router = APIRouter()


class HealthCheckResponse(BaseModel):
    status: str = Field(..., description="healthy, or degraded when the database is unreachable")
    version: str = Field(..., description="Running application version")
    service: str = Field(..., description="Service name")
    database: dict = Field(default_factory=dict, description="Database connectivity details")
    pipeline: dict = Field(
        default_factory=dict,
        description="Dispatch mode and per-provider rate limits with the number of waiting steps",
    )


@router.get(
    "/",
    response_model=HealthCheckResponse,
    tags=["Health"],
    summary="Health check endpoint",
    description="Check database connectivity and the pipeline's provider queues",
    operation_id="get_service_health_status",
)
async def health_check() -> HealthCheckResponse:
    db_health = await db_client.health_check()

    return HealthCheckResponse(
        status="healthy" if db_health["status"] == "healthy" else "degraded",
        version=settings.app_version,
        service=settings.app_name,
        database=db_health,
        pipeline={
            "dispatch_mode": settings.pipeline.dispatch_mode,
            "rate_limits": shared_rate_limiters().snapshot(),
        },
    )
