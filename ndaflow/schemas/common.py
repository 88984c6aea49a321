"""Response envelope shared by every API endpoint."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ResponseMeta(BaseModel):
    timestamp: datetime = Field(..., description="Time the response was produced")
    request_id: str = Field(..., description="Request identifier, echoed from X-Request-ID when sent")
    api_version: str = Field(default="v1", description="API version that served the request")


class ApiResponse(BaseModel):
    """Standard success envelope."""

    status: bool = Field(default=True, description="Whether the operation succeeded")
    message: str = Field(..., description="Short human readable outcome")
    data: Dict[str, Any] = Field(default_factory=dict, description="Operation payload")
    meta: ResponseMeta


class ErrorDetail(BaseModel):
    """Problem details (RFC 7807) returned in ``HTTPException.detail``."""

    title: str
    status: int
    detail: str
    code: Optional[str] = Field(default=None, description="Machine readable error code")
    instance: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: datetime
