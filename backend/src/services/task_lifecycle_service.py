"""
Task lifecycle service.

Tasks are authored by the CRUD collaborator and synced in here. Every
change that affects reminders goes through this service so that pending
notifications are cancelled inside the same request that completed,
deleted or muted the task, and the owner's geofence registry is
re-optimized afterwards.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from backend.src.config.pipeline import PipelineConfig
from backend.src.models import MuteDuration, Task, TaskMute, TaskStatus
from backend.src.services.exceptions import NotFoundError, ValidationError
from backend.src.services.geofence_registry_service import GeofenceRegistryService, RegistryResult
from backend.src.services.geofence_sync import GeofenceSpecsPublisher
from backend.src.services.notification_composer import NotificationComposer
from backend.src.services.notification_scheduler import NotificationScheduler
from backend.src.services.suppression_service import SuppressionService
from backend.src.services.tier_generator import generate_for_task
from backend.src.utils.clock import utcnow
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")


# Fields the CRUD collaborator may set on a synced task
SYNCED_FIELDS = (
    "title",
    "description",
    "location_type",
    "place_type",
    "poi_category",
    "location_name",
    "latitude",
    "longitude",
    "custom_approach_miles",
    "custom_arrival_meters",
)


class StatusChange(str, enum.Enum):
    """task-status-changed notifications from the CRUD collaborator."""
    COMPLETED = "completed"
    ACTIVE = "active"
    DELETED = "deleted"
    MUTED = "muted"
    UNMUTED = "unmuted"


@dataclass
class LifecycleResult:
    """Outcome of a task change."""

    task_guid: str
    status: Optional[TaskStatus]
    notifications_cancelled: int = 0
    bundles_recomposed: int = 0
    mute: Optional[TaskMute] = None
    registry: Optional[RegistryResult] = None


class TaskLifecycleService:
    """
    Applies task upserts and status changes.

    Usage:
        >>> lifecycle = TaskLifecycleService(db, config, publisher)
        >>> task, registry = lifecycle.upsert_task(user_id, guid, fields)
        >>> lifecycle.change_status(user_id, guid, StatusChange.COMPLETED)
    """

    def __init__(
        self,
        db: Session,
        config: Optional[PipelineConfig] = None,
        publisher: Optional[GeofenceSpecsPublisher] = None,
    ):
        self.db = db
        self.config = config or PipelineConfig()
        self.registry = GeofenceRegistryService(db, self.config, publisher)
        self.scheduler = NotificationScheduler(db, self.config)
        self.composer = NotificationComposer(db, self.config)
        self.suppression = SuppressionService(db, self.config)

    # ========================================================================
    # Lookup
    # ========================================================================

    def get_task(self, user_id: str, guid: str) -> Task:
        """
        Get a user's task by GUID.

        Raises:
            NotFoundError: If not found or owned by another user
        """
        try:
            uuid_value = Task.parse_guid(guid)
        except ValueError:
            raise NotFoundError("Task", guid)

        task = (
            self.db.query(Task)
            .filter(Task.uuid == uuid_value, Task.user_id == user_id)
            .first()
        )
        if not task:
            raise NotFoundError("Task", guid)
        return task

    # ========================================================================
    # Upsert
    # ========================================================================

    def upsert_task(
        self, user_id: str, guid: str, fields: Dict[str, Any]
    ) -> Tuple[Task, RegistryResult]:
        """
        Create or update a synced task and regenerate its geofences.

        Args:
            user_id: Owning user
            guid: Task GUID issued by the CRUD collaborator (tsk_xxx)
            fields: Values for SYNCED_FIELDS (missing keys keep their value)

        Returns:
            Tuple of (task, registry result)

        Raises:
            ValidationError: Invalid GUID or a classification that cannot
                produce geofences
            NotFoundError: The GUID belongs to another user's task
        """
        try:
            uuid_value = Task.parse_guid(guid)
        except ValueError:
            raise ValidationError(f"Invalid task GUID: {guid}", field="guid")

        task = self.db.query(Task).filter(Task.uuid == uuid_value).first()
        if task is not None and task.user_id != user_id:
            raise NotFoundError("Task", guid)

        created = task is None
        if created:
            task = Task(uuid=uuid_value, user_id=user_id, status=TaskStatus.ACTIVE)

        # Validate the classification before anything is written
        try:
            for name in SYNCED_FIELDS:
                if name in fields:
                    try:
                        setattr(task, name, fields[name])
                    except ValueError as e:
                        raise ValidationError(str(e), field=name) from e
            generate_for_task(task, int(self.config.post_arrival_delay.total_seconds()))
        except ValidationError:
            if not created:
                self.db.rollback()
            raise

        if created:
            self.db.add(task)
        self.db.flush()

        result = self.registry.sync_task_geofences(task)
        self.db.refresh(task)
        logger.info(
            "Task synced",
            extra={
                "task_guid": task.guid,
                "user_id": user_id,
                "is_new": created,
                "regenerated": result.regenerated,
                "deferred": len(result.deferred),
            },
        )
        return task, result

    # ========================================================================
    # Status changes
    # ========================================================================

    def change_status(
        self,
        user_id: str,
        guid: str,
        change: StatusChange,
        mute_duration: Optional[MuteDuration] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LifecycleResult:
        """Apply a task-status-changed notification."""
        task = self.get_task(user_id, guid)
        handlers = {
            StatusChange.COMPLETED: lambda: self.complete_task(task, now),
            StatusChange.ACTIVE: lambda: self.reopen_task(task),
            StatusChange.DELETED: lambda: self.delete_task(task),
            StatusChange.MUTED: lambda: self.mute_task(
                task, mute_duration or MuteDuration.PERMANENT, reason, now
            ),
            StatusChange.UNMUTED: lambda: self.unmute_task(task),
        }
        return handlers[StatusChange(change)]()

    def complete_task(self, task: Task, now: Optional[datetime] = None) -> LifecycleResult:
        """Complete a task: cancel its notifications, deactivate its geofences."""
        now = now or utcnow()
        result = self._withdraw(task, "task_completed")
        self.suppression.cancel_snoozes_for_task(task.id)
        task.status = TaskStatus.COMPLETED
        task.completed_at = now
        self.db.commit()

        result.status = task.status
        result.registry = self.registry.optimize_user(task.user_id)
        logger.info(
            "Task completed",
            extra={"task_guid": task.guid, "cancelled": result.notifications_cancelled},
        )
        return result

    def reopen_task(self, task: Task) -> LifecycleResult:
        """Return a completed or muted task to ACTIVE."""
        self.suppression.cancel_mute(task.id)
        task.status = TaskStatus.ACTIVE
        task.completed_at = None
        self.db.commit()

        result = LifecycleResult(task_guid=task.guid, status=task.status)
        result.registry = self.registry.optimize_user(task.user_id)
        logger.info("Task reopened", extra={"task_guid": task.guid})
        return result

    def delete_task(self, task: Task) -> LifecycleResult:
        """Delete a task with its geofences, notifications and suppression windows."""
        user_id = task.user_id
        result = self._withdraw(task, "task_deleted")
        result.status = None
        self.db.delete(task)
        self.db.commit()

        result.registry = self.registry.optimize_user(user_id)
        logger.info("Task deleted", extra={"task_guid": result.task_guid, "user_id": user_id})
        return result

    def mute_task(
        self,
        task: Task,
        duration: MuteDuration,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LifecycleResult:
        """
        Mute a task (or extend its mute).

        Pending notifications are cancelled and the task's geofences are
        deactivated, freeing their slots for unmuted tasks.
        """
        if task.status == TaskStatus.COMPLETED:
            raise ValidationError("Completed tasks cannot be muted", field="status")

        now = now or utcnow()
        mute = self.suppression.mute(task, duration, reason, now)
        result = self._withdraw(task, "task_muted")
        task.status = TaskStatus.MUTED
        self.db.commit()

        result.status = task.status
        result.mute = mute
        result.registry = self.registry.optimize_user(task.user_id)
        return result

    def unmute_task(self, task: Task) -> LifecycleResult:
        """Cancel the task's mute; eligibility returns without a fresh crossing."""
        mute = self.suppression.cancel_mute(task.id)
        if task.status == TaskStatus.MUTED:
            task.status = TaskStatus.ACTIVE
        self.db.commit()

        result = LifecycleResult(task_guid=task.guid, status=task.status, mute=mute)
        result.registry = self.registry.optimize_user(task.user_id)
        logger.info("Task unmuted", extra={"task_guid": task.guid, "had_mute": mute is not None})
        return result

    def _withdraw(self, task: Task, reason: str) -> LifecycleResult:
        """Cancel the task's open notifications and drop it from other pending bundles."""
        cancelled = self.scheduler.cancel_for_task(task.id, reason)
        recomposed = self.composer.detach_task(task.id)
        return LifecycleResult(
            task_guid=task.guid,
            status=task.status,
            notifications_cancelled=cancelled,
            bundles_recomposed=recomposed,
        )
