"""
Event intake filter.

Every crossing report is recorded as a GeofenceEvent and decided exactly
once. Checks run in a fixed order so cheap rejections never consume
cooldown or dedup state:

    1. validate and resolve geofence -> task -> user (unknown geofence
       -> suppressed/not_found; another user's geofence, a dwell timer or
       a timestamp ahead of the server clock -> failed; completed task
       -> suppressed/task_inactive)
    2. active mute on the task                     -> suppressed/muted
    3. older than the maximum event age            -> suppressed/stale
    4. confidence below the threshold              -> suppressed/low_confidence
    5. (enter) active snooze on (task, tier)       -> suppressed/snoozed
       (enter) blocking notification on (task, tier) -> suppressed/notification_active
    6. (enter) atomic cooldown / dedup guard claim -> suppressed/cooldown | duplicate
    7. accepted: enter events go to the composer; an exit from an arrival
       geofence cancels the armed post-arrival timer

Time-based checks use the client timestamp of the crossing, so a report
replayed from the offline queue is judged as of when it happened.

Only malformed payloads raise ValidationError. A report that parses but
names something it may not report on is recorded as a failed event and
returned as an outcome with status failed.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, case, func, literal, or_, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from backend.src.config.pipeline import PipelineConfig
from backend.src.models import (
    EventStatus,
    EventType,
    Geofence,
    GeofenceEvent,
    GeofenceKind,
    GeofenceTier,
    IntakeGuard,
    Notification,
    NotificationSnooze,
    NotificationStatus,
    SuppressionReason,
    SuppressionStatus,
    Task,
    TaskStatus,
)
from backend.src.models.types import UTCDateTime
from backend.src.schemas.events import CrossingReport, CrossingResult
from backend.src.services.coverage import covering_notification_ids
from backend.src.services.exceptions import TransientDependencyError, ValidationError
from backend.src.services.notification_composer import NotificationComposer
from backend.src.services.notification_scheduler import NotificationScheduler
from backend.src.services.push_gateway import PushGateway
from backend.src.services.suppression_service import SuppressionService
from backend.src.utils.clock import ensure_utc, utcnow
from backend.src.utils.logging_config import get_logger


logger = get_logger("intake")


@dataclass
class IntakeOutcome:
    """How intake decided one report."""

    accepted: bool
    status: EventStatus
    reason: Optional[SuppressionReason] = None
    event: Optional[GeofenceEvent] = None
    notification: Optional[Notification] = None
    queued_guid: Optional[str] = None
    error: Optional[str] = None

    @property
    def queued(self) -> bool:
        return self.queued_guid is not None

    def to_result(self, client_event_id: Optional[str] = None) -> CrossingResult:
        return CrossingResult(
            accepted=self.accepted,
            queued=self.queued,
            retryable=self.queued,
            status=self.status if not self.queued else None,
            reason=self.reason,
            event_guid=self.event.guid if self.event is not None else None,
            notification_guid=self.notification.guid if self.notification is not None else None,
            queued_guid=self.queued_guid,
            client_event_id=client_event_id,
            error=self.error,
        )


def parse_report(payload: Union[CrossingReport, Dict[str, Any]]) -> CrossingReport:
    """
    Validate a raw report.

    Raises:
        ValidationError: If the payload is malformed
    """
    if isinstance(payload, CrossingReport):
        return payload
    try:
        return CrossingReport.model_validate(payload)
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ValidationError(first.get("msg", "Invalid crossing report"), field=field) from e


class EventIntakeService:
    """
    Decides crossing reports.

    Usage:
        >>> intake = EventIntakeService(db, config, gateway=gateway)
        >>> outcome = intake.process_report(user_id, payload)
        >>> outcome.status, outcome.reason
    """

    def __init__(
        self,
        db: Session,
        config: Optional[PipelineConfig] = None,
        gateway: Optional[PushGateway] = None,
        scheduler: Optional[NotificationScheduler] = None,
    ):
        self.db = db
        self.config = config or PipelineConfig()
        self.suppression = SuppressionService(db, self.config)
        self.composer = NotificationComposer(db, self.config)
        self.scheduler = scheduler or NotificationScheduler(db, self.config, gateway)

    # ========================================================================
    # Entry points
    # ========================================================================

    def report_crossing(
        self,
        user_id: str,
        payload: Union[CrossingReport, Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> IntakeOutcome:
        """
        Process a report, routing it to the offline queue on a transient failure.

        Raises:
            ValidationError: If the report is malformed (never queued)
            TransientDependencyError: If even queuing the report failed
        """
        from backend.src.services.offline_queue_service import OfflineQueueService

        try:
            return self.process_report(user_id, payload, now)
        except TransientDependencyError as e:
            raw = payload.model_dump(mode="json") if isinstance(payload, CrossingReport) else dict(payload)
            try:
                entry = OfflineQueueService(self.db, self.config).enqueue(user_id, raw, e.message, now)
            except OperationalError as queue_error:
                self.db.rollback()
                raise TransientDependencyError("database", str(queue_error)) from queue_error
            return IntakeOutcome(
                accepted=False,
                status=EventStatus.PENDING,
                queued_guid=entry.guid,
                error=e.message,
            )

    def process_report(
        self,
        user_id: str,
        payload: Union[CrossingReport, Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> IntakeOutcome:
        """
        Decide one report and commit the outcome.

        Raises:
            ValidationError: If the report is malformed
            TransientDependencyError: The store is temporarily unavailable
        """
        now = ensure_utc(now) if now else utcnow()
        try:
            report = parse_report(payload)
        except ValidationError as e:
            self._record_malformed(user_id, payload, e, now)
            raise

        try:
            return self._process(user_id, report, now)
        except OperationalError as e:
            self.db.rollback()
            logger.warning(
                "Intake store unavailable",
                extra={"user_id": user_id, "geofence_guid": report.geofence_guid, "error": str(e)},
            )
            raise TransientDependencyError("database", str(e.orig) if e.orig else str(e)) from e

    # ========================================================================
    # Decision
    # ========================================================================

    def _process(self, user_id: str, report: CrossingReport, now: datetime) -> IntakeOutcome:
        occurred_at = ensure_utc(report.occurred_at)
        event = GeofenceEvent(
            user_id=user_id,
            event_type=report.event_type,
            latitude=report.latitude,
            longitude=report.longitude,
            confidence=report.confidence,
            occurred_at=occurred_at,
            client_event_id=report.client_event_id,
            status=EventStatus.PENDING,
        )

        geofence = self._find_geofence(report.geofence_guid)
        if geofence is None:
            return self._suppress(event, SuppressionReason.NOT_FOUND)

        event.geofence_id = geofence.id
        event.task_id = geofence.task_id
        event.tier = geofence.tier

        task = self.db.get(Task, geofence.task_id)
        if task is None:
            return self._suppress(event, SuppressionReason.NOT_FOUND)
        if task.user_id != user_id:
            return self._reject(event, "Geofence belongs to another user")
        if geofence.kind != GeofenceKind.BOUNDARY:
            return self._reject(event, "Dwell timers are not reported by devices")
        # A skewed device clock must not push cooldown or dedup state into the future
        if occurred_at > now + self.config.max_clock_skew:
            return self._reject(event, "Crossing timestamp is ahead of the server clock")
        if task.status == TaskStatus.COMPLETED:
            return self._suppress(event, SuppressionReason.TASK_INACTIVE)

        # Mutes short-circuit before any cooldown or dedup state is read
        if self.suppression.is_task_muted(task.id, occurred_at):
            return self._suppress(event, SuppressionReason.MUTED)
        if now - occurred_at > self.config.max_event_age:
            return self._suppress(event, SuppressionReason.STALE)
        if (report.confidence or 0.0) < self.config.min_confidence:
            return self._suppress(event, SuppressionReason.LOW_CONFIDENCE)

        if report.event_type == EventType.EXIT:
            return self._accept_exit(event, task, geofence)

        if self.suppression.active_snooze_for(task.id, geofence.tier, occurred_at) is not None:
            return self._suppress(event, SuppressionReason.SNOOZED)
        if self._blocking_notification(task.id, geofence.tier, occurred_at) is not None:
            return self._suppress(event, SuppressionReason.NOTIFICATION_ACTIVE)

        guard_reason = self._claim_guard(user_id, task, geofence, report.event_type, occurred_at)
        if guard_reason is not None:
            return self._suppress(event, guard_reason)

        return self._accept_enter(event, task, geofence, now)

    def _accept_enter(
        self, event: GeofenceEvent, task: Task, geofence: Geofence, now: datetime
    ) -> IntakeOutcome:
        event.cooldown_until = ensure_utc(event.occurred_at) + self._cooldown_for(geofence.tier)
        self.db.add(event)
        self.db.flush()

        composed = self.composer.compose(event, task, geofence, now)
        if geofence.tier == GeofenceTier.ARRIVAL:
            timer = self._dwell_timer(task.id)
            if timer is not None:
                self.composer.arm_post_arrival(event, task, timer, now)
        self.db.commit()

        logger.info(
            "Event accepted",
            extra={
                "event_guid": event.guid,
                "task_guid": task.guid,
                "tier": geofence.tier.value,
                "bundled": composed.bundled,
            },
        )

        notification = composed.notification
        try:
            if composed.created:
                self.scheduler.dispatch_now(notification, now)
            elif composed.needs_refresh:
                self.scheduler.push_update(notification, now)
        except OperationalError as e:
            # Row is committed; the delivery sweep picks it up
            self.db.rollback()
            logger.warning(
                "Immediate dispatch deferred to delivery sweep",
                extra={"notification_guid": notification.guid, "error": str(e)},
            )

        return IntakeOutcome(
            accepted=True,
            status=event.status,
            event=event,
            notification=notification,
        )

    def _accept_exit(self, event: GeofenceEvent, task: Task, geofence: Geofence) -> IntakeOutcome:
        event.status = EventStatus.PROCESSED
        self.db.add(event)
        cancelled = 0
        if geofence.tier == GeofenceTier.ARRIVAL:
            cancelled = self.scheduler.cancel_pending(
                task.id, GeofenceTier.POST_ARRIVAL, "left_before_dwell"
            )
        self.db.commit()
        logger.debug(
            "Exit recorded",
            extra={"event_guid": event.guid, "task_guid": task.guid, "timers_cancelled": cancelled},
        )
        return IntakeOutcome(accepted=True, status=event.status, event=event)

    def _suppress(self, event: GeofenceEvent, reason: SuppressionReason) -> IntakeOutcome:
        event.status = EventStatus.SUPPRESSED
        event.suppression_reason = reason
        self.db.add(event)
        self.db.commit()
        logger.debug(
            "Event suppressed",
            extra={"event_guid": event.guid, "reason": reason.value, "task_id": event.task_id},
        )
        return IntakeOutcome(accepted=False, status=event.status, reason=reason, event=event)

    def _reject(self, event: GeofenceEvent, message: str) -> IntakeOutcome:
        """Record a report whose references resolve but cannot be honored."""
        self._fail(event, message)
        return IntakeOutcome(
            accepted=False, status=event.status, event=event, error=message
        )

    def _fail(self, event: GeofenceEvent, message: str) -> None:
        event.status = EventStatus.FAILED
        event.error_message = message
        self.db.add(event)
        self.db.commit()
        logger.warning(
            f"Invalid crossing report: {message}",
            extra={"event_guid": event.guid, "user_id": event.user_id},
        )

    def _record_malformed(
        self, user_id: str, payload: Any, error: ValidationError, now: datetime
    ) -> None:
        """Record a failed event when the payload carries enough to identify it."""
        if not isinstance(payload, dict):
            return
        try:
            event_type = EventType(payload.get("event_type"))
        except ValueError:
            return
        event = GeofenceEvent(
            user_id=user_id,
            event_type=event_type,
            occurred_at=now,
            client_event_id=str(payload.get("client_event_id"))[:100]
            if payload.get("client_event_id") is not None else None,
        )
        self._fail(event, error.message)

    # ========================================================================
    # Lookups and guards
    # ========================================================================

    def _find_geofence(self, guid: str) -> Optional[Geofence]:
        try:
            uuid_value = Geofence.parse_guid(guid)
        except ValueError:
            return None
        return self.db.query(Geofence).filter(Geofence.uuid == uuid_value).first()

    def _dwell_timer(self, task_id: int) -> Optional[Geofence]:
        return (
            self.db.query(Geofence)
            .filter(Geofence.task_id == task_id, Geofence.kind == GeofenceKind.DWELL_TIMER)
            .first()
        )

    def _cooldown_for(self, tier: GeofenceTier) -> timedelta:
        if tier.is_approach:
            return self.config.approach_cooldown
        return self.config.arrival_cooldown

    def _blocking_notification(
        self, task_id: int, tier: GeofenceTier, at: datetime
    ) -> Optional[Notification]:
        """
        Open notification covering (task, tier) that rules out a new one.

        Pending, awaiting retry, delivered within the hold period, or
        snoozed with the snooze still running.
        """
        active_snoozes = select(NotificationSnooze.notification_id).where(
            NotificationSnooze.status == SuppressionStatus.ACTIVE,
            NotificationSnooze.snooze_until > at,
        )
        return (
            self.db.query(Notification)
            .filter(
                Notification.id.in_(covering_notification_ids(task_id, tier)),
                Notification.superseded_at.is_(None),
                or_(
                    Notification.status == NotificationStatus.PENDING,
                    and_(
                        Notification.status == NotificationStatus.FAILED,
                        Notification.next_attempt_at.isnot(None),
                    ),
                    and_(
                        Notification.status == NotificationStatus.DELIVERED,
                        Notification.delivered_at > at - self.config.delivered_hold,
                    ),
                    and_(
                        Notification.status == NotificationStatus.SNOOZED,
                        Notification.id.in_(active_snoozes),
                    ),
                ),
            )
            .first()
        )

    def _claim_guard(
        self,
        user_id: str,
        task: Task,
        geofence: Geofence,
        event_type: EventType,
        occurred_at: datetime,
    ) -> Optional[SuppressionReason]:
        """
        Atomically check and set the cooldown / dedup guard.

        The conditional UPDATE only matches when the cooldown has elapsed
        and the last accepted report lies outside the dedup window, so of
        two concurrent reports exactly one claims the row.

        Returns:
            None when claimed, otherwise COOLDOWN or DUPLICATE
        """
        key = (
            IntakeGuard.user_id == user_id,
            IntakeGuard.task_id == task.id,
            IntakeGuard.geofence_id == geofence.id,
            IntakeGuard.event_type == event_type,
        )
        self._ensure_guard(user_id, task.id, geofence.id, event_type, key)

        cooldown = self._cooldown_for(geofence.tier)
        window = self.config.dedup_window
        cooldown_end = occurred_at + cooldown

        claimed = (
            self.db.query(IntakeGuard)
            .filter(
                *key,
                or_(IntakeGuard.cooldown_until.is_(None), IntakeGuard.cooldown_until <= occurred_at),
                or_(
                    IntakeGuard.last_accepted_at.is_(None),
                    IntakeGuard.last_accepted_at <= occurred_at - window,
                    IntakeGuard.last_accepted_at >= occurred_at + window,
                ),
            )
            .update(
                {
                    # Never move either marker backwards for a late replayed report
                    IntakeGuard.last_accepted_at: case(
                        (IntakeGuard.last_accepted_at > occurred_at, IntakeGuard.last_accepted_at),
                        else_=literal(occurred_at, UTCDateTime()),
                    ),
                    IntakeGuard.cooldown_until: case(
                        (IntakeGuard.cooldown_until > cooldown_end, IntakeGuard.cooldown_until),
                        else_=literal(cooldown_end, UTCDateTime()),
                    ),
                },
                synchronize_session=False,
            )
        )
        if claimed:
            return None

        guard = self.db.query(IntakeGuard).filter(*key).one()
        self.db.refresh(guard)
        cooldown_until = ensure_utc(guard.cooldown_until)
        if cooldown_until is not None and cooldown_until > occurred_at:
            return SuppressionReason.COOLDOWN
        return SuppressionReason.DUPLICATE

    def _ensure_guard(self, user_id, task_id, geofence_id, event_type, key) -> None:
        if self.db.query(IntakeGuard.id).filter(*key).first() is not None:
            return
        # SAVEPOINT so a concurrent insert of the same key does not abort the transaction
        nested = self.db.begin_nested()
        try:
            self.db.add(IntakeGuard(
                user_id=user_id,
                task_id=task_id,
                geofence_id=geofence_id,
                event_type=event_type,
            ))
            self.db.flush()
            nested.commit()
        except IntegrityError:
            nested.rollback()

    # ========================================================================
    # Statistics
    # ========================================================================

    def get_processing_stats(
        self, user_id: str, days: int = 7, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Intake outcome counts for a user over the last ``days`` days.

        Returns:
            Dict with days, total, by_status, by_reason and since
        """
        now = now or utcnow()
        since = now - timedelta(days=days)

        by_status = {status.value: 0 for status in EventStatus}
        for status, count in (
            self.db.query(GeofenceEvent.status, func.count(GeofenceEvent.id))
            .filter(GeofenceEvent.user_id == user_id, GeofenceEvent.created_at >= since)
            .group_by(GeofenceEvent.status)
            .all()
        ):
            by_status[EventStatus(status).value] = count

        by_reason: Dict[str, int] = {}
        for reason, count in (
            self.db.query(GeofenceEvent.suppression_reason, func.count(GeofenceEvent.id))
            .filter(
                GeofenceEvent.user_id == user_id,
                GeofenceEvent.created_at >= since,
                GeofenceEvent.suppression_reason.isnot(None),
            )
            .group_by(GeofenceEvent.suppression_reason)
            .all()
        ):
            by_reason[SuppressionReason(reason).value] = count

        return {
            "days": days,
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_reason": by_reason,
            "since": since,
        }
