"""
Notification model: durable state of every reminder.

The notifications table is the scheduler's source of truth. Pending,
retrying and delivered rows are all queryable, so dispatch and retry
resume after a process restart without any in-memory state.

State machine:
    pending -> delivered | failed | cancelled | snoozed
    failed (next_attempt_at set) -> delivered | failed | cancelled
    delivered -> snoozed | cancelled
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Integer, String, Float, Boolean, ForeignKey, Enum, Index, Text
from sqlalchemy.orm import relationship

from backend.src.models import Base
from backend.src.models.geofence import GeofenceTier
from backend.src.models.mixins import GuidMixin, ClaimableMixin, TimestampMixin
from backend.src.models.types import JSONBType, UTCDateTime


class NotificationType(str, enum.Enum):
    """Tier-derived notification type."""
    APPROACH = "approach"
    ARRIVAL = "arrival"
    POST_ARRIVAL = "post_arrival"

    @classmethod
    def for_tier(cls, tier: GeofenceTier) -> "NotificationType":
        return _TIER_TYPES[tier]


_TIER_TYPES = {
    GeofenceTier.APPROACH_5MI: NotificationType.APPROACH,
    GeofenceTier.APPROACH_3MI: NotificationType.APPROACH,
    GeofenceTier.APPROACH_1MI: NotificationType.APPROACH,
    GeofenceTier.ARRIVAL: NotificationType.ARRIVAL,
    GeofenceTier.POST_ARRIVAL: NotificationType.POST_ARRIVAL,
}


class NotificationStatus(str, enum.Enum):
    """
    Notification lifecycle states.

    - PENDING: Waiting for dispatch (scheduled_for in the future or due)
    - DELIVERED: Handed off to at least one device
    - FAILED: Last attempt failed; retrying while next_attempt_at is set
    - CANCELLED: Withdrawn (task completed/deleted/muted, timer cancelled)
    - SNOOZED: User snoozed it; a NotificationSnooze governs re-eligibility
    """
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SNOOZED = "snoozed"


class NotificationAction(str, enum.Enum):
    """Actions a user can take on a notification."""
    COMPLETE = "complete"
    SNOOZE_15M = "snooze_15m"
    SNOOZE_1H = "snooze_1h"
    SNOOZE_TODAY = "snooze_today"
    MUTE = "mute"
    OPEN_MAP = "open_map"


class Notification(Base, GuidMixin, ClaimableMixin, TimestampMixin):
    """
    A reminder raised for one task tier, or a bundle of co-located tiers.

    Attributes:
        task_id: Owning task (primary task for bundles)
        user_id: Recipient
        tier / type: Tier that triggered it and the derived type
        title/body: Composed copy
        actions: Ordered list of NotificationAction values offered to the user
        is_bundle: Covers events of more than one task
        anchor_latitude/anchor_longitude: Location used for bundling proximity
        anchor_at: Client time of the triggering event (bundling window reference)
        scheduled_for: Earliest dispatch time
        status: Lifecycle state
        attempts: Delivery attempts made so far
        last_attempt_at / next_attempt_at: Retry bookkeeping
        last_error: Last delivery error
        delivered_at: Confirmed handoff time
        cancelled_reason: Why it was cancelled
        superseded_at: Closed because a newer notification covers the same tier
        trigger_event_id: Event that created it

    Coverage:
        A notification covers its own (task, tier) and the (task, tier) of
        every event bundled into it. At most one open notification covers
        any (task, tier).
    """

    __tablename__ = "notifications"
    GUID_PREFIX = "ntf"

    id = Column(Integer, primary_key=True, autoincrement=True)

    task_id = Column(
        Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(String(64), nullable=False, index=True)

    tier = Column(Enum(GeofenceTier, native_enum=False, length=20), nullable=False)
    type = Column(Enum(NotificationType, native_enum=False, length=20), nullable=False)

    title = Column(String(200), nullable=False)
    body = Column(String(500), nullable=False)
    actions = Column(JSONBType, nullable=False, default=list)
    is_bundle = Column(Boolean, nullable=False, default=False)

    anchor_latitude = Column(Float, nullable=True)
    anchor_longitude = Column(Float, nullable=True)
    anchor_at = Column(UTCDateTime(), nullable=True)

    scheduled_for = Column(UTCDateTime(), nullable=False)
    status = Column(
        Enum(NotificationStatus, native_enum=False, length=20),
        nullable=False,
        default=NotificationStatus.PENDING,
    )

    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_attempt_at = Column(UTCDateTime(), nullable=True)
    next_attempt_at = Column(UTCDateTime(), nullable=True)
    last_error = Column(Text, nullable=True)

    delivered_at = Column(UTCDateTime(), nullable=True)
    cancelled_reason = Column(String(50), nullable=True)
    superseded_at = Column(UTCDateTime(), nullable=True)

    trigger_event_id = Column(Integer, nullable=True)

    task = relationship("Task", back_populates="notifications")

    __table_args__ = (
        Index("ix_notifications_task_tier_status", "task_id", "tier", "status"),
        Index("ix_notifications_status_due", "status", "scheduled_for"),
        Index("ix_notifications_user_created", "user_id", "created_at"),
    )

    @property
    def is_retrying(self) -> bool:
        """Failed, with another attempt scheduled."""
        return self.status == NotificationStatus.FAILED and self.next_attempt_at is not None

    @property
    def is_terminal(self) -> bool:
        """
        Closed for good: cancelled, retries exhausted, or superseded.

        Terminal notifications accept no further actions.
        """
        if self.superseded_at is not None:
            return True
        if self.status == NotificationStatus.CANCELLED:
            return True
        return self.status == NotificationStatus.FAILED and self.next_attempt_at is None

    @property
    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts

    def due_at(self) -> Optional[datetime]:
        """When the scheduler should next attempt dispatch, if ever."""
        if self.status == NotificationStatus.PENDING:
            return self.scheduled_for
        if self.is_retrying:
            return self.next_attempt_at
        return None

    def __repr__(self) -> str:
        return (
            f"<Notification(id={self.id}, task_id={self.task_id}, tier={self.tier}, "
            f"status={self.status}, attempts={self.attempts})>"
        )
