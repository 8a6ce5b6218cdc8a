"""
GeofenceEvent model: audit trail of every crossing report.

Events reference their geofence, task and user by plain id (no foreign
keys) so the audit record survives geofence regeneration and task
deletion. Apart from status and bundling fields an event is immutable;
rows are removed only by retention cleanup.
"""

import enum

from sqlalchemy import Column, Integer, String, Float, Enum, Index, Text

from backend.src.models import Base
from backend.src.models.geofence import GeofenceTier
from backend.src.models.mixins import GuidMixin
from backend.src.models.types import UTCDateTime
from backend.src.utils.clock import utcnow


class EventType(str, enum.Enum):
    """Boundary transition reported by the device."""
    ENTER = "enter"
    EXIT = "exit"


class EventStatus(str, enum.Enum):
    """
    Event processing outcome.

    - PENDING: Recorded, not yet decided
    - PROCESSED: Accepted; produced (or cancelled) a notification
    - BUNDLED: Accepted and merged into another event's notification
    - SUPPRESSED: Deliberately not notified (see suppression_reason)
    - FAILED: Malformed report
    """
    PENDING = "pending"
    PROCESSED = "processed"
    BUNDLED = "bundled"
    SUPPRESSED = "suppressed"
    FAILED = "failed"


class SuppressionReason(str, enum.Enum):
    """Why an event did not produce a notification."""
    MUTED = "muted"
    SNOOZED = "snoozed"
    LOW_CONFIDENCE = "low_confidence"
    COOLDOWN = "cooldown"
    DUPLICATE = "duplicate"
    NOTIFICATION_ACTIVE = "notification_active"
    TASK_INACTIVE = "task_inactive"
    NOT_FOUND = "not_found"
    STALE = "stale"


class GeofenceEvent(Base, GuidMixin):
    """
    A single crossing report and its intake outcome.

    Attributes:
        user_id: Reporting user
        task_id / geofence_id: Weak references (no FK)
        tier: Tier of the geofence at intake time
        event_type: enter or exit
        latitude/longitude: Reported device location
        confidence: Client-reported confidence (0..1)
        status / suppression_reason: Intake outcome
        notification_id: Notification the event produced or joined
        cooldown_until: Cooldown end set when the event was accepted
        client_event_id: Client-side id used for bulk sync acknowledgement
        error_message: Validation failure detail (failed events)
        occurred_at: Client timestamp of the crossing
        created_at: Server receipt time
    """

    __tablename__ = "geofence_events"
    GUID_PREFIX = "gev"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(String(64), nullable=False, index=True)
    task_id = Column(Integer, nullable=True, index=True)
    geofence_id = Column(Integer, nullable=True, index=True)
    tier = Column(Enum(GeofenceTier, native_enum=False, length=20), nullable=True)

    event_type = Column(Enum(EventType, native_enum=False, length=10), nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    confidence = Column(Float, nullable=True)

    status = Column(
        Enum(EventStatus, native_enum=False, length=20),
        nullable=False,
        default=EventStatus.PENDING,
    )
    suppression_reason = Column(
        Enum(SuppressionReason, native_enum=False, length=30), nullable=True
    )

    notification_id = Column(Integer, nullable=True, index=True)
    cooldown_until = Column(UTCDateTime(), nullable=True)

    client_event_id = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)

    occurred_at = Column(UTCDateTime(), nullable=False)
    created_at = Column(UTCDateTime(), default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("ix_geofence_events_task_tier", "task_id", "tier"),
        Index("ix_geofence_events_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<GeofenceEvent(id={self.id}, geofence_id={self.geofence_id}, "
            f"type={self.event_type}, status={self.status})>"
        )
