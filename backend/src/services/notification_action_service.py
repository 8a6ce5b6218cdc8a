"""
Notification action handling.

Applies the buttons offered on a notification: complete, snooze_15m,
snooze_1h, snooze_today, mute and open_map. Acting on a terminal
notification (cancelled, retries exhausted or superseded) is rejected
with a ConflictError so the client can reconcile its local state.

On a bundle, complete and mute apply to one covered task (the primary
task unless ``task_guid`` names another); a snooze applies to the whole
bundle.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from backend.src.config.pipeline import PipelineConfig
from backend.src.models import (
    MuteDuration,
    Notification,
    NotificationAction,
    NotificationSnooze,
    NotificationStatus,
    SnoozeDuration,
    Task,
    TaskMute,
    TaskStatus,
)
from backend.src.services.coverage import covered_task_ids
from backend.src.services.exceptions import ConflictError, ValidationError
from backend.src.services.geofence_sync import GeofenceSpecsPublisher
from backend.src.services.notification_scheduler import NotificationScheduler
from backend.src.services.suppression_service import SuppressionService
from backend.src.services.task_lifecycle_service import TaskLifecycleService
from backend.src.utils.clock import utcnow
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")


SNOOZE_ACTIONS = {
    NotificationAction.SNOOZE_15M: SnoozeDuration.MINUTES_15,
    NotificationAction.SNOOZE_1H: SnoozeDuration.HOUR_1,
    NotificationAction.SNOOZE_TODAY: SnoozeDuration.TODAY,
}

# A repeat snooze on a snoozed notification extends the window
SNOOZABLE_STATUSES = (
    NotificationStatus.PENDING,
    NotificationStatus.DELIVERED,
    NotificationStatus.SNOOZED,
)

DEFAULT_MUTE_DURATION = MuteDuration.PERMANENT


@dataclass
class ActionResult:
    """Outcome of a notification action."""

    notification: Notification
    action: NotificationAction
    task: Task
    snooze: Optional[NotificationSnooze] = None
    mute: Optional[TaskMute] = None
    map_target: Optional[Dict[str, Any]] = None


class NotificationActionService:
    """
    Applies user actions to notifications.

    Usage:
        >>> actions = NotificationActionService(db, config, publisher)
        >>> actions.apply(user_id, "ntf_...", NotificationAction.SNOOZE_1H)
    """

    def __init__(
        self,
        db: Session,
        config: Optional[PipelineConfig] = None,
        publisher: Optional[GeofenceSpecsPublisher] = None,
    ):
        self.db = db
        self.config = config or PipelineConfig()
        self.scheduler = NotificationScheduler(db, self.config)
        self.suppression = SuppressionService(db, self.config)
        self.lifecycle = TaskLifecycleService(db, self.config, publisher)

    def apply(
        self,
        user_id: str,
        notification_guid: str,
        action: NotificationAction,
        task_guid: Optional[str] = None,
        mute_duration: Optional[MuteDuration] = None,
        now: Optional[datetime] = None,
    ) -> ActionResult:
        """
        Apply an action to a user's notification.

        Raises:
            NotFoundError: Unknown notification, or owned by another user
            ConflictError: The notification is terminal, or cannot be
                snoozed in its current state
            ValidationError: The action is not offered on this notification,
                or task_guid is not covered by it
        """
        now = now or utcnow()
        action = NotificationAction(action)
        notification = self.scheduler.get_notification(notification_guid, user_id)

        if notification.is_terminal:
            raise ConflictError(
                f"Notification {notification.guid} is closed",
                current_status=notification.status.value,
            )
        if action.value not in (notification.actions or []):
            raise ValidationError(
                f"Action '{action.value}' is not offered on this notification", field="action"
            )

        task = self._target_task(notification, task_guid)
        handlers: Dict[NotificationAction, Callable[[], ActionResult]] = {
            NotificationAction.COMPLETE: lambda: self._complete(notification, task, now),
            NotificationAction.SNOOZE_15M: lambda: self._snooze(notification, task, action, now),
            NotificationAction.SNOOZE_1H: lambda: self._snooze(notification, task, action, now),
            NotificationAction.SNOOZE_TODAY: lambda: self._snooze(notification, task, action, now),
            NotificationAction.MUTE: lambda: self._mute(
                notification, task, mute_duration or DEFAULT_MUTE_DURATION, now
            ),
            NotificationAction.OPEN_MAP: lambda: self._open_map(notification, task),
        }
        result = handlers[action]()

        logger.info(
            "Notification action applied",
            extra={
                "notification_guid": notification.guid,
                "action": action.value,
                "task_guid": task.guid,
                "user_id": user_id,
            },
        )
        return result

    # ========================================================================
    # Handlers
    # ========================================================================

    def _complete(self, notification: Notification, task: Task, now: datetime) -> ActionResult:
        if task.status != TaskStatus.COMPLETED:
            self.lifecycle.complete_task(task, now)
        self._close_if_settled(notification, "task_completed")
        return ActionResult(notification=notification, action=NotificationAction.COMPLETE, task=task)

    def _snooze(
        self, notification: Notification, task: Task, action: NotificationAction, now: datetime
    ) -> ActionResult:
        if notification.status not in SNOOZABLE_STATUSES:
            raise ConflictError(
                f"Notification {notification.guid} cannot be snoozed while {notification.status.value}",
                current_status=notification.status.value,
            )
        snooze = self.suppression.snooze(notification, SNOOZE_ACTIONS[action], now)
        self.scheduler.mark_snoozed(notification)
        self.db.commit()
        return ActionResult(notification=notification, action=action, task=task, snooze=snooze)

    def _mute(
        self, notification: Notification, task: Task, duration: MuteDuration, now: datetime
    ) -> ActionResult:
        lifecycle = self.lifecycle.mute_task(task, duration, now=now)
        self._close_if_settled(notification, "task_muted")
        return ActionResult(
            notification=notification, action=NotificationAction.MUTE, task=task, mute=lifecycle.mute
        )

    def _open_map(self, notification: Notification, task: Task) -> ActionResult:
        return ActionResult(
            notification=notification,
            action=NotificationAction.OPEN_MAP,
            task=task,
            map_target={
                "latitude": task.latitude,
                "longitude": task.longitude,
                "label": task.display_name,
            },
        )

    # ========================================================================
    # Helpers
    # ========================================================================

    def _target_task(self, notification: Notification, task_guid: Optional[str]) -> Task:
        if not task_guid:
            return notification.task

        try:
            uuid_value = Task.parse_guid(task_guid)
        except ValueError:
            raise ValidationError(f"Invalid task GUID: {task_guid}", field="task_guid")

        covered = covered_task_ids(self.db, notification)
        task = (
            self.db.query(Task)
            .filter(Task.uuid == uuid_value, Task.id.in_(covered))
            .first()
        )
        if task is None:
            raise ValidationError(
                f"Task {task_guid} is not part of notification {notification.guid}",
                field="task_guid",
            )
        return task

    def _close_if_settled(self, notification: Notification, reason: str) -> None:
        """
        Cancel the acted-on notification once none of its tasks is actionable.

        A bundle stays open while any covered task is still active.
        """
        self.db.refresh(notification)
        if notification.is_terminal:
            return
        tasks = [self.db.get(Task, task_id) for task_id in covered_task_ids(self.db, notification)]
        if any(t is not None and t.status == TaskStatus.ACTIVE for t in tasks):
            return
        self.scheduler.cancel(notification, reason)
        self.db.commit()
