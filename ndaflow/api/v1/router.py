from fastapi import APIRouter

from ndaflow.api.v1.endpoints import analyses, documents

# Create API router
api_router = APIRouter()

# Include routers
api_router.include_router(analyses.router, prefix="/analyses", tags=["Analyses"])
api_router.include_router(documents.router, prefix="/documents", tags=["Documents"])

__all__ = ["api_router"]
