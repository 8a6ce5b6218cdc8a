"""
Pydantic schemas for geofence crossing reports.

Provides data validation and serialization for:
- Single crossing reports from the device
- Offline bulk sync batches and their per-item results
- Intake processing statistics
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

from backend.src.models import EventStatus, EventType, SuppressionReason


# ============================================================================
# Crossing Report Schemas
# ============================================================================


class CrossingReport(BaseModel):
    """
    A raw boundary-crossing report.

    Required:
        geofence_guid: Geofence that fired (gfn_xxx)
        event_type: enter or exit
        occurred_at: Client timestamp of the crossing

    Optional:
        latitude/longitude: Device location at the crossing
        confidence: Location confidence in [0, 1] (defaults to 1.0)
        client_event_id: Client-side id echoed back in bulk sync results
    """

    geofence_guid: str = Field(..., min_length=4, max_length=40, description="Geofence GUID (gfn_xxx)")
    event_type: EventType
    occurred_at: datetime = Field(..., description="Client timestamp of the crossing")
    latitude: Optional[float] = Field(default=None, ge=-90.0, le=90.0)
    longitude: Optional[float] = Field(default=None, ge=-180.0, le=180.0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    client_event_id: Optional[str] = Field(default=None, max_length=100)

    @field_validator("geofence_guid")
    @classmethod
    def validate_geofence_prefix(cls, v: str) -> str:
        """Geofence GUIDs carry the gfn_ prefix."""
        if not v.startswith("gfn_"):
            raise ValueError("geofence_guid must be a geofence GUID (gfn_xxx)")
        return v

    @model_validator(mode="after")
    def validate_coordinate_pair(self) -> "CrossingReport":
        """Latitude and longitude are given together or not at all."""
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be provided together")
        return self

    model_config = {
        "json_schema_extra": {
            "example": {
                "geofence_guid": "gfn_01hgw2bbg0000000000000001",
                "event_type": "enter",
                "occurred_at": "2026-10-16T08:30:00Z",
                "latitude": 37.7749,
                "longitude": -122.4194,
                "confidence": 0.9,
                "client_event_id": "evt-123",
            }
        }
    }


class CrossingResult(BaseModel):
    """Intake outcome for one report."""

    accepted: bool = Field(..., description="Produced or joined a notification (or cancelled a timer)")
    queued: bool = Field(False, description="Routed to the offline queue after a transient failure")
    retryable: bool = Field(False, description="The client may resend this report later")
    status: Optional[EventStatus] = None
    reason: Optional[SuppressionReason] = None
    event_guid: Optional[str] = None
    notification_guid: Optional[str] = None
    queued_guid: Optional[str] = None
    client_event_id: Optional[str] = None
    error: Optional[str] = None


# ============================================================================
# Bulk Sync Schemas
# ============================================================================


class CrossingBatch(BaseModel):
    """A batch of reports buffered by an offline client."""

    events: List[dict] = Field(..., min_length=1, max_length=500)


class CrossingBatchResponse(BaseModel):
    """Per-item results of a bulk sync, in processing order."""

    results: List[CrossingResult]
    accepted: int
    rejected: int


# ============================================================================
# Statistics
# ============================================================================


class EventStatsResponse(BaseModel):
    """Intake processing statistics for a user."""

    days: int
    total: int
    by_status: Dict[str, int]
    by_reason: Dict[str, int]
    since: datetime

    @field_serializer("since")
    @classmethod
    def serialize_datetime_utc(cls, v: datetime) -> str:
        return v.isoformat()
