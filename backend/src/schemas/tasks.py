"""
Pydantic schemas for task sync and geofence registry endpoints.

Provides data validation and serialization for:
- Task upserts and status changes from the task CRUD service
- Task and geofence responses
- Registry optimization results and statistics
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_serializer, model_validator

from backend.src.models import (
    DeactivationReason,
    Geofence,
    GeofenceKind,
    GeofenceTier,
    LocationType,
    MuteDuration,
    PlaceType,
    PoiCategory,
    Task,
    TaskStatus,
)
from backend.src.services.geofence_registry_service import RegistryResult
from backend.src.services.task_lifecycle_service import LifecycleResult, StatusChange


# ============================================================================
# Task Schemas
# ============================================================================


class TaskUpsert(BaseModel):
    """
    Schema for a task created or updated by the task CRUD service.

    Required:
        title: Task title
        location_type: place or poi_category
        latitude/longitude: Resolved task location

    Conditionally required:
        place_type: When location_type is place
        poi_category: When location_type is poi_category

    Optional:
        description, location_name
        custom_approach_miles: Approach radius for custom places
        custom_arrival_meters: Arrival radius for custom places
    """

    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    location_type: LocationType
    place_type: Optional[PlaceType] = None
    poi_category: Optional[PoiCategory] = None
    location_name: Optional[str] = Field(default=None, max_length=200)
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    custom_approach_miles: Optional[float] = Field(default=None, gt=0, le=25)
    custom_arrival_meters: Optional[float] = Field(default=None, gt=0, le=5000)

    @model_validator(mode="after")
    def validate_classification(self) -> "TaskUpsert":
        """The classification field matching location_type must be set."""
        if self.location_type == LocationType.PLACE and self.place_type is None:
            raise ValueError("place_type is required when location_type is place")
        if self.location_type == LocationType.POI_CATEGORY and self.poi_category is None:
            raise ValueError("poi_category is required when location_type is poi_category")
        return self

    model_config = {
        "json_schema_extra": {
            "example": {
                "title": "Pick up prescription",
                "location_type": "poi_category",
                "poi_category": "pharmacy",
                "location_name": "Walgreens Market St",
                "latitude": 37.7749,
                "longitude": -122.4194,
            }
        }
    }


class TaskStatusChangeRequest(BaseModel):
    """
    Schema for a task-status-changed notification.

    Required:
        status: completed, active, deleted, muted or unmuted

    Optional:
        mute_duration: Mute length when status is muted (defaults to permanent)
        reason: Free-form mute reason
    """

    status: StatusChange
    mute_duration: Optional[MuteDuration] = None
    reason: Optional[str] = Field(default=None, max_length=200)


class GeofenceResponse(BaseModel):
    """Response schema for a stored geofence."""

    guid: str = Field(..., description="Geofence GUID (gfn_xxx)")
    task_guid: Optional[str] = None
    tier: GeofenceTier
    kind: GeofenceKind
    latitude: float
    longitude: float
    radius_m: float
    dwell_seconds: Optional[int] = None
    is_active: bool
    deactivated_reason: Optional[DeactivationReason] = None

    model_config = {"from_attributes": True}

    @classmethod
    def from_geofence(cls, geofence: Geofence) -> "GeofenceResponse":
        response = cls.model_validate(geofence)
        response.task_guid = geofence.task.guid if geofence.task else None
        return response


class TaskResponse(BaseModel):
    """Response schema for a synced task."""

    guid: str = Field(..., description="Task GUID (tsk_xxx)")
    title: str
    description: Optional[str] = None
    location_type: LocationType
    place_type: Optional[PlaceType] = None
    poi_category: Optional[PoiCategory] = None
    location_name: Optional[str] = None
    latitude: float
    longitude: float
    custom_approach_miles: Optional[float] = None
    custom_arrival_meters: Optional[float] = None
    status: TaskStatus
    completed_at: Optional[datetime] = None
    geofences: List[GeofenceResponse] = Field(default_factory=list)

    @field_serializer("completed_at")
    @classmethod
    def serialize_datetime_utc(cls, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None

    model_config = {"from_attributes": True}

    @classmethod
    def from_task(cls, task: Task, geofences: List[Geofence]) -> "TaskResponse":
        response = cls.model_validate(task)
        response.geofences = [GeofenceResponse.from_geofence(g) for g in geofences]
        return response


# ============================================================================
# Registry Schemas
# ============================================================================


class RegistryResultResponse(BaseModel):
    """Outcome of a registry re-optimization."""

    active_count: int
    capacity: int
    changed: bool
    activated: List[str]
    deactivated: List[str]
    deferred: List[str]
    capacity_warning: Optional[str] = Field(
        default=None, description="Set when some geofences could not be admitted"
    )

    @classmethod
    def from_result(cls, result: RegistryResult) -> "RegistryResultResponse":
        error = result.capacity_error
        return cls(
            active_count=result.active_count,
            capacity=result.capacity,
            changed=result.changed,
            activated=result.activated,
            deactivated=result.deactivated,
            deferred=result.deferred,
            capacity_warning=str(error) if error else None,
        )


class TaskSyncResponse(BaseModel):
    """Response for a task upsert."""

    task: TaskResponse
    registry: RegistryResultResponse


class TaskStatusChangeResponse(BaseModel):
    """Response for a task status change."""

    task_guid: str
    status: Optional[TaskStatus] = Field(None, description="Null when the task was deleted")
    notifications_cancelled: int
    bundles_recomposed: int
    mute_until: Optional[datetime] = None
    registry: Optional[RegistryResultResponse] = None

    @field_serializer("mute_until")
    @classmethod
    def serialize_datetime_utc(cls, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None

    @classmethod
    def from_result(cls, result: LifecycleResult) -> "TaskStatusChangeResponse":
        return cls(
            task_guid=result.task_guid,
            status=result.status,
            notifications_cancelled=result.notifications_cancelled,
            bundles_recomposed=result.bundles_recomposed,
            mute_until=result.mute.mute_until if result.mute else None,
            registry=RegistryResultResponse.from_result(result.registry) if result.registry else None,
        )


class GeofenceListResponse(BaseModel):
    """The user's currently registered geofences."""

    geofences: List[GeofenceResponse]
    active_count: int
    capacity: int


class GeofenceStatsResponse(BaseModel):
    """Registry statistics for a user."""

    total: int
    active: int
    deferred: int
    by_tier: Dict[str, int]
    capacity: int
    utilization_percent: float
