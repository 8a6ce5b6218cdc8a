"""
Pydantic schemas for API request/response validation.

This module exports all schema classes for use in API endpoints.
"""

from backend.src.schemas.events import (
    CrossingReport,
    CrossingResult,
    CrossingBatch,
    CrossingBatchResponse,
    EventStatsResponse,
)
from backend.src.schemas.notifications import (
    PushSubscriptionCreate,
    PushSubscriptionResponse,
    PushSubscriptionRemove,
    NotificationResponse,
    NotificationListResponse,
    NotificationStatsResponse,
    NotificationActionRequest,
    NotificationActionResponse,
    SnoozeResponse,
    MuteResponse,
)
from backend.src.schemas.queue import (
    QueuedEventResponse,
    DeadEventListResponse,
    QueueStatsResponse,
)

__all__ = [
    # Crossing reports
    "CrossingReport",
    "CrossingResult",
    "CrossingBatch",
    "CrossingBatchResponse",
    "EventStatsResponse",
    # Notifications
    "PushSubscriptionCreate",
    "PushSubscriptionResponse",
    "PushSubscriptionRemove",
    "NotificationResponse",
    "NotificationListResponse",
    "NotificationStatsResponse",
    "NotificationActionRequest",
    "NotificationActionResponse",
    "SnoozeResponse",
    "MuteResponse",
    # Offline queue
    "QueuedEventResponse",
    "DeadEventListResponse",
    "QueueStatsResponse",
]
