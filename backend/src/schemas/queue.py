"""
Pydantic schemas for the offline event queue endpoints.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_serializer

from backend.src.models import QueuedEventStatus


class QueuedEventResponse(BaseModel):
    """A queued crossing report."""

    guid: str = Field(..., description="Queue entry GUID (qev_xxx)")
    status: QueuedEventStatus
    payload: Dict[str, Any]
    attempts: int
    last_error: Optional[str] = None
    enqueued_at: datetime
    next_attempt_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_serializer("enqueued_at", "next_attempt_at", "completed_at")
    @classmethod
    def serialize_datetime_utc(cls, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None

    model_config = {"from_attributes": True}


class DeadEventListResponse(BaseModel):
    """Dead queue entries awaiting manual inspection."""

    items: List[QueuedEventResponse]
    count: int


class QueueStatsResponse(BaseModel):
    """Queue entry counts."""

    queued: int = Field(..., ge=0)
    done: int = Field(..., ge=0)
    dead: int = Field(..., ge=0)
    oldest_queued_at: Optional[datetime] = None

    @field_serializer("oldest_queued_at")
    @classmethod
    def serialize_datetime_utc(cls, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None
