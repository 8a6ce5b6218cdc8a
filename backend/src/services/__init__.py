"""
Service layer for business logic.

This module exports all service classes for use in API endpoints.
"""

from backend.src.services.exceptions import (
    ServiceError,
    NotFoundError,
    ConflictError,
    ValidationError,
    TransientDependencyError,
    CapacityError,
    TerminalDeliveryError,
)
from backend.src.services.geofence_registry_service import GeofenceRegistryService
from backend.src.services.suppression_service import SuppressionService
from backend.src.services.notification_composer import NotificationComposer
from backend.src.services.notification_scheduler import NotificationScheduler
from backend.src.services.event_intake_service import EventIntakeService
from backend.src.services.offline_queue_service import OfflineQueueService
from backend.src.services.task_lifecycle_service import TaskLifecycleService
from backend.src.services.notification_action_service import NotificationActionService
from backend.src.services.push_subscription_service import PushSubscriptionService
from backend.src.services.retention_service import RetentionService
from backend.src.services.sweep_runner import SweepRunner

__all__ = [
    "ServiceError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "TransientDependencyError",
    "CapacityError",
    "TerminalDeliveryError",
    "GeofenceRegistryService",
    "SuppressionService",
    "NotificationComposer",
    "NotificationScheduler",
    "EventIntakeService",
    "OfflineQueueService",
    "TaskLifecycleService",
    "NotificationActionService",
    "PushSubscriptionService",
    "RetentionService",
    "SweepRunner",
]
