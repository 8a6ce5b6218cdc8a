"""
Pydantic schemas for notification API request/response validation.

Provides data validation and serialization for:
- Push subscription management (create, response, remove)
- Notification history (list, detail, stats)
- Notification actions (complete, snooze, mute, open map)
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator

from backend.src.models import (
    GeofenceTier,
    MuteDuration,
    Notification,
    NotificationAction,
    NotificationStatus,
    NotificationType,
    SnoozeDuration,
)


# ============================================================================
# Push Subscription Schemas
# ============================================================================


class PushSubscriptionCreate(BaseModel):
    """
    Schema for creating a push subscription.

    Required:
        endpoint: Push service endpoint URL (must be HTTPS)
        p256dh_key: Base64url-encoded ECDH public key
        auth_key: Base64url-encoded auth secret

    Optional:
        device_name: User-friendly device label
    """

    endpoint: str = Field(..., max_length=1024, description="Push service endpoint URL (must be HTTPS)")
    p256dh_key: str = Field(..., max_length=255, description="Base64url-encoded ECDH public key")
    auth_key: str = Field(..., max_length=255, description="Base64url-encoded auth secret")
    device_name: Optional[str] = Field(default=None, max_length=100, description="Optional device name")

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint_https(cls, v: str) -> str:
        """Ensure endpoint uses HTTPS."""
        if not v.startswith("https://"):
            raise ValueError("Push subscription endpoint must use HTTPS")
        return v

    model_config = {
        "json_schema_extra": {
            "example": {
                "endpoint": "https://fcm.googleapis.com/fcm/send/abc123...",
                "p256dh_key": "BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA_0...",
                "auth_key": "tBHItJI5svbpC7htUH8g...",
                "device_name": "Pixel 8",
            }
        }
    }


class PushSubscriptionResponse(BaseModel):
    """Response schema for a push subscription."""

    guid: str = Field(..., description="Subscription GUID (sub_xxx)")
    endpoint: str
    device_name: Optional[str] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime

    @field_serializer("last_used_at", "created_at")
    @classmethod
    def serialize_datetime_utc(cls, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None

    model_config = {"from_attributes": True}


class PushSubscriptionRemove(BaseModel):
    """Schema for removing a push subscription by endpoint."""

    endpoint: str = Field(..., description="Push service endpoint URL to remove")


# ============================================================================
# Notification Schemas
# ============================================================================


class NotificationResponse(BaseModel):
    """Response schema for a single notification."""

    guid: str = Field(..., description="Notification GUID (ntf_xxx)")
    task_guid: str = Field(..., description="Primary task GUID (tsk_xxx)")
    tier: GeofenceTier
    type: NotificationType
    status: NotificationStatus
    title: str
    body: str
    actions: List[NotificationAction]
    is_bundle: bool
    bundled_task_guids: List[str] = Field(
        default_factory=list, description="Other tasks covered by a bundle"
    )
    scheduled_for: datetime
    attempts: int
    max_attempts: int
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    delivered_at: Optional[datetime] = None
    cancelled_reason: Optional[str] = None
    superseded_at: Optional[datetime] = None
    created_at: datetime

    @field_serializer(
        "scheduled_for", "next_attempt_at", "delivered_at", "superseded_at", "created_at"
    )
    @classmethod
    def serialize_datetime_utc(cls, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None

    @classmethod
    def from_notification(
        cls, notification: Notification, bundled_task_guids: Optional[List[str]] = None
    ) -> "NotificationResponse":
        """Build a response from a notification row."""
        return cls(
            guid=notification.guid,
            task_guid=notification.task.guid,
            tier=notification.tier,
            type=notification.type,
            status=notification.status,
            title=notification.title,
            body=notification.body,
            actions=notification.actions or [],
            is_bundle=notification.is_bundle,
            bundled_task_guids=bundled_task_guids or [],
            scheduled_for=notification.scheduled_for,
            attempts=notification.attempts,
            max_attempts=notification.max_attempts,
            next_attempt_at=notification.next_attempt_at,
            last_error=notification.last_error,
            delivered_at=notification.delivered_at,
            cancelled_reason=notification.cancelled_reason,
            superseded_at=notification.superseded_at,
            created_at=notification.created_at,
        )


class NotificationListResponse(BaseModel):
    """Response schema for paginated notification list."""

    items: List[NotificationResponse]
    total: int = Field(..., ge=0, description="Total notifications matching filter")
    limit: int
    offset: int


class NotificationStatsResponse(BaseModel):
    """Notification counts for a user."""

    total: int = Field(..., ge=0)
    by_status: Dict[str, int]
    retrying: int = Field(..., ge=0, description="Failed with a retry scheduled")
    failed_terminal: int = Field(..., ge=0, description="Failed after exhausting retries")
    bundles: int = Field(..., ge=0)
    delivered_last_24h: int = Field(..., ge=0)


# ============================================================================
# Action Schemas
# ============================================================================


class NotificationActionRequest(BaseModel):
    """
    Schema for acting on a notification.

    Required:
        action: One of the actions offered on the notification

    Optional:
        task_guid: Task of a bundle to complete or mute (defaults to the
            bundle's primary task)
        mute_duration: Mute length for the mute action (defaults to permanent)
    """

    action: NotificationAction
    task_guid: Optional[str] = Field(default=None, max_length=40)
    mute_duration: Optional[MuteDuration] = None

    model_config = {
        "json_schema_extra": {
            "example": {"action": "snooze_1h"}
        }
    }


class SnoozeResponse(BaseModel):
    """An active snooze window."""

    guid: str
    duration: SnoozeDuration
    snooze_until: datetime
    snooze_count: int

    @field_serializer("snooze_until")
    @classmethod
    def serialize_datetime_utc(cls, v: datetime) -> str:
        return v.isoformat()

    model_config = {"from_attributes": True}


class MuteResponse(BaseModel):
    """An active mute window (mute_until is null for permanent mutes)."""

    guid: str
    duration: MuteDuration
    mute_until: Optional[datetime] = None
    mute_count: int
    reason: Optional[str] = None

    @field_serializer("mute_until")
    @classmethod
    def serialize_datetime_utc(cls, v: Optional[datetime]) -> Optional[str]:
        return v.isoformat() if v else None

    model_config = {"from_attributes": True}


class NotificationActionResponse(BaseModel):
    """Outcome of a notification action."""

    action: NotificationAction
    notification: NotificationResponse
    task_guid: str
    task_status: str
    snooze: Optional[SnoozeResponse] = None
    mute: Optional[MuteResponse] = None
    map_target: Optional[Dict[str, Any]] = None
