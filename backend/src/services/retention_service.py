"""
Retention cleanup for pipeline history.

Removes rows that no longer influence any decision:
- Geofence events older than the event retention period
- Closed notifications older than the notification retention period
- Replayed (done) offline-queue entries older than the event retention
- Intake guards whose task is gone or whose windows ended long ago

Design:
- Runs from the periodic sweep loop, never inside a request
- Batch deletions with a bounded batch size to limit lock duration
- One failing step is logged and recorded in the stats; the remaining
  steps still run
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.src.config.pipeline import PipelineConfig
from backend.src.models import GeofenceEvent, IntakeGuard, QueuedEvent, QueuedEventStatus, Task
from backend.src.services.notification_scheduler import NotificationScheduler
from backend.src.utils.clock import utcnow
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")

# Batch size for deletions to limit lock duration
DEFAULT_BATCH_SIZE = 500


@dataclass
class CleanupStats:
    """
    Statistics from a retention run.

    Attributes:
        events_deleted: Geofence events past retention
        notifications_deleted: Closed notifications past retention
        queue_entries_deleted: Replayed offline-queue entries past retention
        guards_deleted: Orphaned or long-idle intake guards
        errors: Error messages from steps that failed
    """
    events_deleted: int = 0
    notifications_deleted: int = 0
    queue_entries_deleted: int = 0
    guards_deleted: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def total_deleted(self) -> int:
        """Total number of rows deleted."""
        return (
            self.events_deleted
            + self.notifications_deleted
            + self.queue_entries_deleted
            + self.guards_deleted
        )


class RetentionService:
    """
    Deletes pipeline history past its retention period.

    Usage:
        >>> retention = RetentionService(db, config)
        >>> stats = retention.run_cleanup()
    """

    def __init__(
        self,
        db: Session,
        config: Optional[PipelineConfig] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.db = db
        self.config = config or PipelineConfig()
        self.batch_size = batch_size

    def run_cleanup(self, now: Optional[datetime] = None) -> CleanupStats:
        """
        Run every retention step.

        Returns:
            CleanupStats with per-step counts and any step errors
        """
        now = now or utcnow()
        stats = CleanupStats()

        steps = [
            ("events_deleted", lambda: self.cleanup_old_events(now)),
            ("notifications_deleted", lambda: self.cleanup_old_notifications(now)),
            ("queue_entries_deleted", lambda: self.cleanup_replayed_queue_entries(now)),
            ("guards_deleted", lambda: self.cleanup_intake_guards(now)),
        ]
        for name, step in steps:
            try:
                count = step()
            except SQLAlchemyError as e:
                self.db.rollback()
                stats.errors.append(f"{name}: {e}")
                logger.error(
                    "Retention step failed",
                    extra={"step": name, "error": str(e)},
                    exc_info=True,
                )
                continue
            setattr(stats, name, count)

        if stats.total_deleted or stats.errors:
            logger.info(
                "Retention cleanup completed",
                extra={
                    "events_deleted": stats.events_deleted,
                    "notifications_deleted": stats.notifications_deleted,
                    "queue_entries_deleted": stats.queue_entries_deleted,
                    "guards_deleted": stats.guards_deleted,
                    "errors": len(stats.errors),
                },
            )
        return stats

    # ========================================================================
    # Steps
    # ========================================================================

    def cleanup_old_events(self, now: Optional[datetime] = None) -> int:
        """Delete geofence events recorded before the retention cutoff."""
        now = now or utcnow()
        cutoff = now - timedelta(days=self.config.event_retention_days)
        return self._delete_in_batches(
            GeofenceEvent, lambda: GeofenceEvent.created_at < cutoff
        )

    def cleanup_old_notifications(self, now: Optional[datetime] = None) -> int:
        """Delete closed notifications past the notification retention."""
        scheduler = NotificationScheduler(self.db, self.config)
        return scheduler.cleanup_old_notifications(
            self.config.notification_retention_days, now=now, batch_size=self.batch_size
        )

    def cleanup_replayed_queue_entries(self, now: Optional[datetime] = None) -> int:
        """Delete done queue entries; dead entries stay for inspection."""
        now = now or utcnow()
        cutoff = now - timedelta(days=self.config.event_retention_days)
        return self._delete_in_batches(
            QueuedEvent,
            lambda: and_(
                QueuedEvent.status == QueuedEventStatus.DONE,
                QueuedEvent.completed_at < cutoff,
            ),
        )

    def cleanup_intake_guards(self, now: Optional[datetime] = None) -> int:
        """
        Delete guards that can no longer block anything.

        A guard is removable when its task no longer exists, or when both
        its dedup marker and its cooldown ended before the event cutoff.
        """
        now = now or utcnow()
        cutoff = now - timedelta(days=self.config.event_retention_days)
        task_ids = self.db.query(Task.id)
        return self._delete_in_batches(
            IntakeGuard,
            lambda: or_(
                IntakeGuard.task_id.not_in(task_ids.scalar_subquery()),
                and_(
                    or_(IntakeGuard.last_accepted_at.is_(None), IntakeGuard.last_accepted_at < cutoff),
                    or_(IntakeGuard.cooldown_until.is_(None), IntakeGuard.cooldown_until < cutoff),
                ),
            ),
        )

    def _delete_in_batches(self, model, criterion: Callable) -> int:
        deleted = 0
        while True:
            ids = [
                row.id
                for row in self.db.query(model.id)
                .filter(criterion())
                .order_by(model.id)
                .limit(self.batch_size)
                .all()
            ]
            if not ids:
                return deleted
            deleted += (
                self.db.query(model)
                .filter(model.id.in_(ids))
                .delete(synchronize_session=False)
            )
            self.db.commit()
