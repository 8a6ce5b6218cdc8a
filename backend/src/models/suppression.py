"""
Snooze and mute models: user-issued suppression windows.

A NotificationSnooze silences one notification's (task, tier) until a
resolved time. A TaskMute silences every tier of a task. Both are
extended in place when requested again while active, so at most one
active snooze exists per notification and one active mute per task.
"""

import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, ForeignKey, Enum, Index

from backend.src.models import Base
from backend.src.models.geofence import GeofenceTier
from backend.src.models.mixins import GuidMixin, ClaimableMixin, TimestampMixin
from backend.src.models.types import UTCDateTime
from backend.src.utils.clock import FAR_FUTURE


class SuppressionStatus(str, enum.Enum):
    """Lifecycle shared by snoozes and mutes."""
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SnoozeDuration(str, enum.Enum):
    """Snooze duration tags offered on notifications."""
    MINUTES_15 = "15m"
    HOUR_1 = "1h"
    TODAY = "today"


class MuteDuration(str, enum.Enum):
    """Mute duration tags."""
    HOUR_1 = "1h"
    HOURS_4 = "4h"
    HOURS_8 = "8h"
    HOURS_24 = "24h"
    UNTIL_TOMORROW = "until_tomorrow"
    PERMANENT = "permanent"


class NotificationSnooze(Base, GuidMixin, ClaimableMixin, TimestampMixin):
    """
    Snooze window for one notification.

    Attributes:
        user_id / task_id: Owner and task
        notification_id: Snoozed notification
        tier: Tier of the snoozed notification
        duration: 15m, 1h or today
        snooze_until: Resolved end of the window
        original_scheduled_time: scheduled_for of the notification when first snoozed
        snooze_count: Times the window was requested (1 on creation)
        status: active, expired or cancelled
    """

    __tablename__ = "notification_snoozes"
    GUID_PREFIX = "snz"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(String(64), nullable=False, index=True)
    task_id = Column(
        Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    notification_id = Column(
        Integer, ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tier = Column(Enum(GeofenceTier, native_enum=False, length=20), nullable=False)

    duration = Column(Enum(SnoozeDuration, native_enum=False, length=10), nullable=False)
    snooze_until = Column(UTCDateTime(), nullable=False)
    original_scheduled_time = Column(UTCDateTime(), nullable=True)
    snooze_count = Column(Integer, nullable=False, default=1)

    status = Column(
        Enum(SuppressionStatus, native_enum=False, length=20),
        nullable=False,
        default=SuppressionStatus.ACTIVE,
    )

    __table_args__ = (
        Index("ix_snoozes_task_tier_status", "task_id", "tier", "status"),
        Index("ix_snoozes_status_until", "status", "snooze_until"),
    )

    def covers(self, at: datetime) -> bool:
        return self.status == SuppressionStatus.ACTIVE and self.snooze_until > at


class TaskMute(Base, GuidMixin, ClaimableMixin, TimestampMixin):
    """
    Mute window for a task.

    Attributes:
        user_id / task_id: Owner and task
        duration: 1h, 4h, 8h, 24h, until_tomorrow or permanent
        mute_until: Resolved end of the window; NULL means permanent
        mute_count: Times the mute was requested (1 on creation)
        reason: Optional user-supplied reason
        status: active, expired or cancelled
    """

    __tablename__ = "task_mutes"
    GUID_PREFIX = "mut"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(String(64), nullable=False, index=True)
    task_id = Column(
        Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )

    duration = Column(Enum(MuteDuration, native_enum=False, length=20), nullable=False)
    mute_until = Column(UTCDateTime(), nullable=True)
    mute_count = Column(Integer, nullable=False, default=1)
    reason = Column(String(200), nullable=True)

    status = Column(
        Enum(SuppressionStatus, native_enum=False, length=20),
        nullable=False,
        default=SuppressionStatus.ACTIVE,
    )

    __table_args__ = (
        Index("ix_mutes_task_status", "task_id", "status"),
        Index("ix_mutes_status_until", "status", "mute_until"),
    )

    @property
    def is_permanent(self) -> bool:
        return self.mute_until is None

    @property
    def effective_until(self) -> datetime:
        """mute_until, with permanent mutes compared as a far-future sentinel."""
        return self.mute_until if self.mute_until is not None else FAR_FUTURE

    def covers(self, at: datetime) -> bool:
        return self.status == SuppressionStatus.ACTIVE and self.effective_until > at
