"""
Notification composer and bundler.

Turns accepted enter events into notification content and merges
co-incident events into one notification. An accepted event joins an open
notification of the same user when the two triggering events lie within
the bundling window (2 minutes by default) and within the bundling radius
(200 m by default) of each other, and the event's task is not already in
it. Exactly one Notification row exists per bundle; every bundled event
references it.

Copy templates are keyed by notification type:
    approach:     "Approaching CVS" / "You're 2.5 miles from CVS — Pick up prescription?"
    arrival:      "Arriving at Home — Water the plants now?"
    post_arrival: "Still need to water the plants?"
    bundle:       "3 reminders nearby"
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from backend.src.config.pipeline import PipelineConfig
from backend.src.models import (
    EventStatus,
    Geofence,
    GeofenceEvent,
    GeofenceTier,
    Notification,
    NotificationAction,
    NotificationStatus,
    NotificationType,
    SuppressionReason,
    Task,
)
from backend.src.services.coverage import (
    covered_pairs,
    covered_task_ids,
    covering_notification_ids,
)
from backend.src.services.geo_utils import haversine_meters
from backend.src.utils.clock import ensure_utc, utcnow
from backend.src.utils.formatting import format_distance
from backend.src.utils.logging_config import get_logger


logger = get_logger("intake")


ACTION_LABELS = {
    NotificationAction.COMPLETE: "Done",
    NotificationAction.SNOOZE_15M: "Snooze 15 min",
    NotificationAction.SNOOZE_1H: "Snooze 1 hour",
    NotificationAction.SNOOZE_TODAY: "Tomorrow",
    NotificationAction.MUTE: "Mute",
    NotificationAction.OPEN_MAP: "Open map",
}

TYPE_ACTIONS = {
    NotificationType.APPROACH: [
        NotificationAction.COMPLETE,
        NotificationAction.SNOOZE_15M,
        NotificationAction.SNOOZE_1H,
        NotificationAction.OPEN_MAP,
        NotificationAction.MUTE,
    ],
    NotificationType.ARRIVAL: [
        NotificationAction.COMPLETE,
        NotificationAction.SNOOZE_15M,
        NotificationAction.SNOOZE_TODAY,
        NotificationAction.MUTE,
    ],
    NotificationType.POST_ARRIVAL: [
        NotificationAction.COMPLETE,
        NotificationAction.SNOOZE_1H,
        NotificationAction.MUTE,
    ],
}

BUNDLE_ACTIONS = [
    NotificationAction.COMPLETE,
    NotificationAction.SNOOZE_1H,
    NotificationAction.OPEN_MAP,
    NotificationAction.MUTE,
]

# Statuses a notification may be in while other events can still join it
JOINABLE_STATUSES = (NotificationStatus.PENDING, NotificationStatus.DELIVERED)

MAX_BODY_LENGTH = 500


def _task_phrase(title: str) -> str:
    """Lower-case the first letter so a title reads inside a sentence."""
    title = (title or "").strip().rstrip("?.!")
    if len(title) > 1 and title[1:2].islower():
        return title[0].lower() + title[1:]
    return title


def render_single(
    notification_type: NotificationType, task: Task, distance_m: Optional[float]
) -> Tuple[str, str]:
    """
    Render title and body for a single-task notification.

    Args:
        notification_type: Tier-derived type
        task: Task the reminder is for
        distance_m: Distance from the user to the place (approach only)

    Returns:
        Tuple of (title, body)
    """
    name = task.display_name
    if notification_type == NotificationType.APPROACH:
        distance = format_distance(distance_m) if distance_m is not None else None
        if distance:
            return f"Approaching {name}", f"You're {distance} from {name} — {task.title}?"
        return f"Approaching {name}", f"You're close to {name} — {task.title}?"
    if notification_type == NotificationType.ARRIVAL:
        return f"At {name}", f"Arriving at {name} — {task.title} now?"
    if notification_type == NotificationType.POST_ARRIVAL:
        return task.title, f"Still need to {_task_phrase(task.title)}?"
    raise ValueError(f"Unhandled notification type: {notification_type}")


def render_bundle(tasks: List[Task], reminder_count: int) -> Tuple[str, str]:
    """
    Render title and body for a multi-task bundle.

    Args:
        tasks: Covered tasks, primary first
        reminder_count: Covered (task, tier) pairs
    """
    titles = ", ".join(task.title for task in tasks)
    body = f"You have {reminder_count} reminders for {len(tasks)} tasks in this area: {titles}"
    if len(body) > MAX_BODY_LENGTH:
        body = body[:MAX_BODY_LENGTH - 3] + "..."
    return f"{reminder_count} reminders nearby", body


def actions_for(notification_type: NotificationType, is_bundle: bool) -> List[str]:
    """Action values offered for a notification."""
    actions = BUNDLE_ACTIONS if is_bundle else TYPE_ACTIONS[notification_type]
    return [action.value for action in actions]


def build_push_payload(notification: Notification) -> Dict[str, Any]:
    """
    Push payload for a notification.

    The tag is the notification GUID so a re-sent bundle replaces the
    earlier one on the device instead of stacking.
    """
    return {
        "title": notification.title,
        "body": notification.body,
        "tag": notification.guid,
        "actions": [
            {"action": action, "title": ACTION_LABELS[NotificationAction(action)]}
            for action in (notification.actions or [])
        ],
        "data": {
            "notification_guid": notification.guid,
            "task_guid": notification.task.guid if notification.task else None,
            "type": notification.type.value,
            "tier": notification.tier.value,
            "is_bundle": notification.is_bundle,
        },
    }


@dataclass
class ComposeResult:
    """Outcome of composing an accepted event."""

    notification: Notification
    created: bool
    bundled: bool
    superseded: int = 0

    @property
    def needs_refresh(self) -> bool:
        """A delivered bundle changed and should be re-sent under the same tag."""
        return self.bundled and self.notification.status == NotificationStatus.DELIVERED


class NotificationComposer:
    """
    Creates, bundles and re-composes notifications.

    The composer never dispatches; callers hand its results to the
    NotificationScheduler.
    """

    def __init__(self, db: Session, config: Optional[PipelineConfig] = None):
        self.db = db
        self.config = config or PipelineConfig()

    # ========================================================================
    # Composition
    # ========================================================================

    def compose(
        self,
        event: GeofenceEvent,
        task: Task,
        geofence: Geofence,
        now: Optional[datetime] = None,
    ) -> ComposeResult:
        """
        Turn an accepted enter event into (part of) a notification.

        Marks the event PROCESSED (new notification) or BUNDLED (joined an
        open one). The caller commits.
        """
        now = now or utcnow()
        occurred_at = ensure_utc(event.occurred_at)

        open_bundle = self._find_bundle(event, task)
        if open_bundle is not None:
            superseded = self._supersede_covering(task.id, geofence.tier, now, keep_id=open_bundle.id)
            event.status = EventStatus.BUNDLED
            event.notification_id = open_bundle.id
            self.db.flush()
            self.recompose(open_bundle)
            logger.info(
                "Event bundled",
                extra={
                    "event_guid": event.guid,
                    "notification_guid": open_bundle.guid,
                    "task_guid": task.guid,
                },
            )
            return ComposeResult(open_bundle, created=False, bundled=True, superseded=superseded)

        superseded = self._supersede_covering(task.id, geofence.tier, now)
        notification_type = NotificationType.for_tier(geofence.tier)
        title, body = render_single(notification_type, task, self._distance_to_task(event, task, geofence))

        notification = Notification(
            task_id=task.id,
            user_id=task.user_id,
            tier=geofence.tier,
            type=notification_type,
            title=title,
            body=body,
            actions=actions_for(notification_type, is_bundle=False),
            is_bundle=False,
            anchor_latitude=event.latitude if event.latitude is not None else geofence.latitude,
            anchor_longitude=event.longitude if event.longitude is not None else geofence.longitude,
            anchor_at=occurred_at,
            scheduled_for=now,
            status=NotificationStatus.PENDING,
            attempts=0,
            max_attempts=self.config.max_delivery_attempts,
            trigger_event_id=event.id,
        )
        self.db.add(notification)
        self.db.flush()

        event.status = EventStatus.PROCESSED
        event.notification_id = notification.id
        self.db.flush()

        logger.info(
            "Notification composed",
            extra={
                "notification_guid": notification.guid,
                "event_guid": event.guid,
                "task_guid": task.guid,
                "tier": geofence.tier.value,
            },
        )
        return ComposeResult(notification, created=True, bundled=False, superseded=superseded)

    def arm_post_arrival(
        self,
        event: GeofenceEvent,
        task: Task,
        timer: Geofence,
        now: Optional[datetime] = None,
    ) -> Optional[Notification]:
        """
        Arm the post-arrival timer after an accepted arrival enter.

        Creates a pending post_arrival notification scheduled at the event
        time plus the dwell delay. An already armed timer for the task is
        left as is.

        Returns:
            The armed notification, or None if one was already pending
        """
        now = now or utcnow()
        already_armed = (
            self.db.query(Notification.id)
            .filter(
                Notification.task_id == task.id,
                Notification.tier == GeofenceTier.POST_ARRIVAL,
                Notification.status == NotificationStatus.PENDING,
                Notification.superseded_at.is_(None),
            )
            .first()
        )
        if already_armed is not None:
            return None

        self._supersede_covering(task.id, GeofenceTier.POST_ARRIVAL, now)

        dwell = timedelta(seconds=timer.dwell_seconds) if timer.dwell_seconds else self.config.post_arrival_delay
        title, body = render_single(NotificationType.POST_ARRIVAL, task, None)
        notification = Notification(
            task_id=task.id,
            user_id=task.user_id,
            tier=GeofenceTier.POST_ARRIVAL,
            type=NotificationType.POST_ARRIVAL,
            title=title,
            body=body,
            actions=actions_for(NotificationType.POST_ARRIVAL, is_bundle=False),
            is_bundle=False,
            anchor_latitude=timer.latitude,
            anchor_longitude=timer.longitude,
            anchor_at=ensure_utc(event.occurred_at),
            scheduled_for=ensure_utc(event.occurred_at) + dwell,
            status=NotificationStatus.PENDING,
            attempts=0,
            max_attempts=self.config.max_delivery_attempts,
            trigger_event_id=event.id,
        )
        self.db.add(notification)
        self.db.flush()
        logger.info(
            "Post-arrival timer armed",
            extra={
                "notification_guid": notification.guid,
                "task_guid": task.guid,
                "fires_at": notification.scheduled_for.isoformat(),
            },
        )
        return notification

    def recompose(self, notification: Notification) -> None:
        """Rebuild title, body and actions from everything the notification covers."""
        task_ids = covered_task_ids(self.db, notification)
        tasks = [t for t in (self.db.get(Task, task_id) for task_id in task_ids) if t is not None]

        if len(tasks) > 1:
            notification.is_bundle = True
            notification.title, notification.body = render_bundle(
                tasks, len(covered_pairs(self.db, notification))
            )
        elif tasks:
            notification.is_bundle = False
            notification.title, notification.body = render_single(
                notification.type, tasks[0], self._anchor_distance(notification, tasks[0])
            )
        notification.actions = actions_for(notification.type, notification.is_bundle)
        self.db.flush()

    def detach_task(self, task_id: int) -> int:
        """
        Remove a task's events from pending bundles owned by other tasks.

        Used when a task completes, is muted or is deleted, so a pending
        bundle never reminds about it. The caller commits.

        Returns:
            Number of bundles re-composed
        """
        events = (
            self.db.query(GeofenceEvent)
            .join(Notification, GeofenceEvent.notification_id == Notification.id)
            .filter(
                GeofenceEvent.task_id == task_id,
                GeofenceEvent.status == EventStatus.BUNDLED,
                Notification.task_id != task_id,
                Notification.status == NotificationStatus.PENDING,
            )
            .all()
        )
        bundle_ids = set()
        for event in events:
            bundle_ids.add(event.notification_id)
            event.notification_id = None
            event.status = EventStatus.SUPPRESSED
            event.suppression_reason = SuppressionReason.TASK_INACTIVE
        self.db.flush()

        for bundle_id in bundle_ids:
            bundle = self.db.get(Notification, bundle_id)
            if bundle is not None:
                self.recompose(bundle)
        return len(bundle_ids)

    # ========================================================================
    # Internals
    # ========================================================================

    def _find_bundle(self, event: GeofenceEvent, task: Task) -> Optional[Notification]:
        if event.latitude is None or event.longitude is None:
            return None
        window = self.config.bundle_window
        if window <= timedelta(0):
            return None

        occurred_at = ensure_utc(event.occurred_at)
        candidates = (
            self.db.query(Notification)
            .filter(
                Notification.user_id == event.user_id,
                Notification.type != NotificationType.POST_ARRIVAL,
                Notification.status.in_(JOINABLE_STATUSES),
                Notification.superseded_at.is_(None),
                Notification.anchor_at >= occurred_at - window,
                Notification.anchor_at <= occurred_at + window,
                Notification.anchor_latitude.isnot(None),
            )
            .order_by(Notification.anchor_at.desc(), Notification.id.desc())
            .all()
        )
        for candidate in candidates:
            distance = haversine_meters(
                (event.latitude, event.longitude),
                (candidate.anchor_latitude, candidate.anchor_longitude),
            )
            if distance > self.config.bundle_radius_m:
                continue
            if task.id in covered_task_ids(self.db, candidate):
                continue
            return candidate
        return None

    def _supersede_covering(
        self,
        task_id: int,
        tier: GeofenceTier,
        now: datetime,
        keep_id: Optional[int] = None,
    ) -> int:
        """
        Close older open notifications covering (task, tier).

        Intake only lets an event through when none of them is blocking,
        so these are stale delivered or expired-snooze notifications.
        """
        query = self.db.query(Notification).filter(
            Notification.id.in_(covering_notification_ids(task_id, tier)),
            Notification.superseded_at.is_(None),
            Notification.status != NotificationStatus.CANCELLED,
            or_(
                Notification.status != NotificationStatus.FAILED,
                Notification.next_attempt_at.isnot(None),
            ),
        )
        if keep_id is not None:
            query = query.filter(Notification.id != keep_id)

        count = 0
        for stale in query.all():
            stale.superseded_at = now
            stale.status = NotificationStatus.CANCELLED
            stale.cancelled_reason = "superseded"
            stale.next_attempt_at = None
            count += 1
        if count:
            self.db.flush()
            logger.debug(
                "Superseded stale notifications",
                extra={"task_id": task_id, "tier": tier.value, "count": count},
            )
        return count

    @staticmethod
    def _distance_to_task(event: GeofenceEvent, task: Task, geofence: Geofence) -> Optional[float]:
        if event.latitude is not None and event.longitude is not None:
            return haversine_meters((event.latitude, event.longitude), (task.latitude, task.longitude))
        return geofence.radius_m

    @staticmethod
    def _anchor_distance(notification: Notification, task: Task) -> Optional[float]:
        if notification.anchor_latitude is None:
            return None
        return haversine_meters(
            (notification.anchor_latitude, notification.anchor_longitude),
            (task.latitude, task.longitude),
        )
