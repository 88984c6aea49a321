from datetime import datetime, timezone
from enum import Enum
from typing import Dict
from uuid import UUID

from pydantic import BaseModel, Field


class SSEEventType(str, Enum):
    ANALYSIS_PROGRESS = "analysis:progress"
    ANALYSIS_COMPLETED = "analysis:completed"
    ANALYSIS_FAILED = "analysis:failed"
    ANALYSIS_CANCELLED = "analysis:cancelled"
    HEARTBEAT = "heartbeat"


TERMINAL_EVENT_TYPES = {
    "completed": SSEEventType.ANALYSIS_COMPLETED,
    "failed": SSEEventType.ANALYSIS_FAILED,
    "cancelled": SSEEventType.ANALYSIS_CANCELLED,
}


class SSEEvent(BaseModel):
    event_type: SSEEventType
    analysis_id: UUID
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict
