"""
Snooze / mute store.

Tracks user-issued suppression windows:

- Snoozes silence one notification's (task, tier). "15m" and "1h" are
  relative to the request; "today" resolves to the next morning (09:00 in
  the configured zone by default), not a relative offset.
- Mutes silence every tier of a task. "1h" .. "24h" are relative offsets,
  "until_tomorrow" resolves to the next morning, and "permanent" stores no
  end time and only clears through an explicit cancel.

A repeat request while a window is active extends it in place (counter
incremented, end time overwritten), so there is at most one active snooze
per notification and one active mute per task.

Intake compares end times directly, so eligibility returns the moment a
window ends; the expiry sweep only tidies up state (status, task mute flag,
registry) and never sends anything by itself.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from backend.src.config.pipeline import PipelineConfig
from backend.src.models import (
    GeofenceTier,
    MuteDuration,
    Notification,
    NotificationSnooze,
    SnoozeDuration,
    SuppressionStatus,
    Task,
    TaskMute,
    TaskStatus,
)
from backend.src.services.coverage import covering_notification_ids
from backend.src.services.row_claims import claim_rows, release
from backend.src.utils.clock import ensure_utc, next_morning, utcnow
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")


RELATIVE_SNOOZES = {
    SnoozeDuration.MINUTES_15: timedelta(minutes=15),
    SnoozeDuration.HOUR_1: timedelta(hours=1),
}

RELATIVE_MUTES = {
    MuteDuration.HOUR_1: timedelta(hours=1),
    MuteDuration.HOURS_4: timedelta(hours=4),
    MuteDuration.HOURS_8: timedelta(hours=8),
    MuteDuration.HOURS_24: timedelta(hours=24),
}


@dataclass
class ExpirySweepResult:
    """What an expiry sweep changed."""

    snoozes_expired: int = 0
    mutes_expired: int = 0
    tasks_unmuted: List[int] = field(default_factory=list)
    users_touched: List[str] = field(default_factory=list)


class SuppressionService:
    """
    Reads and writes snooze and mute windows.

    Usage:
        >>> store = SuppressionService(db, config)
        >>> store.snooze(notification, SnoozeDuration.HOUR_1)
        >>> store.is_task_muted(task.id, at=now)
    """

    def __init__(self, db: Session, config: Optional[PipelineConfig] = None):
        self.db = db
        self.config = config or PipelineConfig()

    # ========================================================================
    # Until-time resolution
    # ========================================================================

    def resolve_snooze_until(self, duration: SnoozeDuration, at: datetime) -> datetime:
        """Resolve a snooze tag to an absolute end time."""
        if duration == SnoozeDuration.TODAY:
            return next_morning(at, self.config.reminder_timezone, self.config.morning_hour)
        return ensure_utc(at) + RELATIVE_SNOOZES[duration]

    def resolve_mute_until(self, duration: MuteDuration, at: datetime) -> Optional[datetime]:
        """Resolve a mute tag to an absolute end time (None = permanent)."""
        if duration == MuteDuration.PERMANENT:
            return None
        if duration == MuteDuration.UNTIL_TOMORROW:
            return next_morning(at, self.config.reminder_timezone, self.config.morning_hour)
        return ensure_utc(at) + RELATIVE_MUTES[duration]

    # ========================================================================
    # Snoozes
    # ========================================================================

    def snooze(
        self,
        notification: Notification,
        duration: SnoozeDuration,
        at: Optional[datetime] = None,
    ) -> NotificationSnooze:
        """
        Create or extend the snooze for a notification.

        The caller commits and moves the notification to SNOOZED.
        """
        at = at or utcnow()
        until = self.resolve_snooze_until(duration, at)

        existing = (
            self.db.query(NotificationSnooze)
            .filter(
                NotificationSnooze.notification_id == notification.id,
                NotificationSnooze.status == SuppressionStatus.ACTIVE,
            )
            .first()
        )
        if existing is not None:
            existing.snooze_count += 1
            existing.snooze_until = until
            existing.duration = duration
            self.db.flush()
            logger.info(
                "Snooze extended",
                extra={
                    "snooze_guid": existing.guid,
                    "notification_guid": notification.guid,
                    "count": existing.snooze_count,
                    "until": until.isoformat(),
                },
            )
            return existing

        snooze = NotificationSnooze(
            user_id=notification.user_id,
            task_id=notification.task_id,
            notification_id=notification.id,
            tier=notification.tier,
            duration=duration,
            snooze_until=until,
            original_scheduled_time=notification.scheduled_for,
            snooze_count=1,
            status=SuppressionStatus.ACTIVE,
        )
        self.db.add(snooze)
        self.db.flush()
        logger.info(
            "Notification snoozed",
            extra={
                "snooze_guid": snooze.guid,
                "notification_guid": notification.guid,
                "duration": duration.value,
                "until": until.isoformat(),
            },
        )
        return snooze

    def active_snooze_for(
        self, task_id: int, tier: GeofenceTier, at: datetime
    ) -> Optional[NotificationSnooze]:
        """Unexpired snooze covering (task, tier), if any."""
        return (
            self.db.query(NotificationSnooze)
            .filter(
                NotificationSnooze.status == SuppressionStatus.ACTIVE,
                NotificationSnooze.snooze_until > at,
                or_(
                    (NotificationSnooze.task_id == task_id) & (NotificationSnooze.tier == tier),
                    NotificationSnooze.notification_id.in_(
                        covering_notification_ids(task_id, tier)
                    ),
                ),
            )
            .order_by(NotificationSnooze.snooze_until.desc())
            .first()
        )

    def active_snooze_for_notification(
        self, notification_id: int, at: datetime
    ) -> Optional[NotificationSnooze]:
        return (
            self.db.query(NotificationSnooze)
            .filter(
                NotificationSnooze.notification_id == notification_id,
                NotificationSnooze.status == SuppressionStatus.ACTIVE,
                NotificationSnooze.snooze_until > at,
            )
            .first()
        )

    def cancel_snoozes_for_task(self, task_id: int) -> int:
        """Cancel every active snooze of a task. The caller commits."""
        count = (
            self.db.query(NotificationSnooze)
            .filter(
                NotificationSnooze.task_id == task_id,
                NotificationSnooze.status == SuppressionStatus.ACTIVE,
            )
            .update(
                {NotificationSnooze.status: SuppressionStatus.CANCELLED},
                synchronize_session="fetch",
            )
        )
        if count:
            logger.info("Snoozes cancelled", extra={"task_id": task_id, "count": count})
        return count

    # ========================================================================
    # Mutes
    # ========================================================================

    def mute(
        self,
        task: Task,
        duration: MuteDuration,
        reason: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> TaskMute:
        """
        Create or extend the mute for a task.

        The caller commits and updates the task status.
        """
        at = at or utcnow()
        until = self.resolve_mute_until(duration, at)

        existing = self.active_mute(task.id)
        if existing is not None:
            existing.mute_count += 1
            existing.mute_until = until
            existing.duration = duration
            if reason:
                existing.reason = reason
            self.db.flush()
            logger.info(
                "Mute extended",
                extra={
                    "mute_guid": existing.guid,
                    "task_guid": task.guid,
                    "count": existing.mute_count,
                    "duration": duration.value,
                },
            )
            return existing

        mute = TaskMute(
            user_id=task.user_id,
            task_id=task.id,
            duration=duration,
            mute_until=until,
            mute_count=1,
            reason=reason,
            status=SuppressionStatus.ACTIVE,
        )
        self.db.add(mute)
        self.db.flush()
        logger.info(
            "Task muted",
            extra={"mute_guid": mute.guid, "task_guid": task.guid, "duration": duration.value},
        )
        return mute

    def active_mute(self, task_id: int) -> Optional[TaskMute]:
        """The task's ACTIVE mute row, regardless of whether it has run out."""
        return (
            self.db.query(TaskMute)
            .filter(TaskMute.task_id == task_id, TaskMute.status == SuppressionStatus.ACTIVE)
            .first()
        )

    def is_task_muted(self, task_id: int, at: datetime) -> bool:
        """Whether an active mute covers the task at ``at``."""
        mute = self.active_mute(task_id)
        return mute is not None and mute.covers(ensure_utc(at))

    def cancel_mute(self, task_id: int) -> Optional[TaskMute]:
        """Cancel the task's active mute (explicit unmute). The caller commits."""
        mute = self.active_mute(task_id)
        if mute is None:
            return None
        mute.status = SuppressionStatus.CANCELLED
        self.db.flush()
        logger.info("Mute cancelled", extra={"mute_guid": mute.guid, "task_id": task_id})
        return mute

    # ========================================================================
    # Expiry sweep
    # ========================================================================

    def run_expiry_sweep(self, now: Optional[datetime] = None, limit: int = 500) -> ExpirySweepResult:
        """
        Expire ended snoozes and mutes.

        Muted tasks whose mute ended return to ACTIVE. Claims rows first so
        overlapping sweeps never process the same window twice. Registry
        re-optimization for touched users is left to the caller.
        """
        now = now or utcnow()
        result = ExpirySweepResult()
        users = set()

        _, snoozes = claim_rows(
            self.db,
            NotificationSnooze,
            criteria=[
                NotificationSnooze.status == SuppressionStatus.ACTIVE,
                NotificationSnooze.snooze_until <= now,
            ],
            order_by=[NotificationSnooze.snooze_until, NotificationSnooze.id],
            now=now,
            lease=self.config.claim_lease,
            limit=limit,
        )
        for snooze in snoozes:
            if snooze.status == SuppressionStatus.ACTIVE:
                snooze.status = SuppressionStatus.EXPIRED
                result.snoozes_expired += 1
            release(snooze)
        self.db.commit()

        _, mutes = claim_rows(
            self.db,
            TaskMute,
            criteria=[
                TaskMute.status == SuppressionStatus.ACTIVE,
                TaskMute.mute_until.isnot(None),
                TaskMute.mute_until <= now,
            ],
            order_by=[TaskMute.mute_until, TaskMute.id],
            now=now,
            lease=self.config.claim_lease,
            limit=limit,
        )
        for mute in mutes:
            if mute.status == SuppressionStatus.ACTIVE:
                mute.status = SuppressionStatus.EXPIRED
                result.mutes_expired += 1
                task = self.db.get(Task, mute.task_id)
                if task is not None and task.status == TaskStatus.MUTED:
                    task.status = TaskStatus.ACTIVE
                    result.tasks_unmuted.append(task.id)
                    users.add(task.user_id)
            release(mute)
        self.db.commit()

        result.users_touched = sorted(users)
        if result.snoozes_expired or result.mutes_expired:
            logger.info(
                "Expiry sweep completed",
                extra={
                    "snoozes_expired": result.snoozes_expired,
                    "mutes_expired": result.mutes_expired,
                    "tasks_unmuted": len(result.tasks_unmuted),
                },
            )
        return result
