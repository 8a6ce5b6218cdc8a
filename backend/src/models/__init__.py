"""
SQLAlchemy models for the NearMe reminder backend.

This module provides the declarative base class and imports all models
to ensure they are registered with SQLAlchemy's metadata.
"""

from sqlalchemy.orm import declarative_base

# All models inherit from this Base class
Base = declarative_base()


# Import all models here so they are registered with Base.metadata
# This is required for Alembic autogenerate to detect models
from backend.src.models.task import (
    Task,
    TaskStatus,
    LocationType,
    PlaceType,
    PoiCategory,
)
from backend.src.models.geofence import (
    Geofence,
    GeofenceTier,
    GeofenceKind,
    DeactivationReason,
    APPROACH_TIERS,
)
from backend.src.models.geofence_event import (
    GeofenceEvent,
    EventType,
    EventStatus,
    SuppressionReason,
)
from backend.src.models.notification import (
    Notification,
    NotificationType,
    NotificationStatus,
    NotificationAction,
)
from backend.src.models.suppression import (
    NotificationSnooze,
    TaskMute,
    SuppressionStatus,
    SnoozeDuration,
    MuteDuration,
)
from backend.src.models.intake_guard import IntakeGuard
from backend.src.models.queued_event import QueuedEvent, QueuedEventStatus
from backend.src.models.push_subscription import PushSubscription

__all__ = [
    "Base",
    "Task",
    "TaskStatus",
    "LocationType",
    "PlaceType",
    "PoiCategory",
    "Geofence",
    "GeofenceTier",
    "GeofenceKind",
    "DeactivationReason",
    "APPROACH_TIERS",
    "GeofenceEvent",
    "EventType",
    "EventStatus",
    "SuppressionReason",
    "Notification",
    "NotificationType",
    "NotificationStatus",
    "NotificationAction",
    "NotificationSnooze",
    "TaskMute",
    "SuppressionStatus",
    "SnoozeDuration",
    "MuteDuration",
    "IntakeGuard",
    "QueuedEvent",
    "QueuedEventStatus",
    "PushSubscription",
]
