"""
Notification scheduler: durable dispatch, retry and cancellation.

Every notification lives in the notifications table, so pending timers
(post-arrival) and retries survive restarts: the delivery sweep simply
picks up whatever is due. Dispatch re-checks the task right before
sending; a task completed, deleted or muted in the meantime cancels the
notification instead of delivering it.

Retry policy:
    attempts < max_attempts  -> FAILED with next_attempt_at = now + backoff
    attempts == max_attempts -> FAILED with next_attempt_at = NULL (terminal)

A notification with no push subscriptions counts as a failed attempt.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from backend.src.config.pipeline import PipelineConfig
from backend.src.models import (
    GeofenceTier,
    Notification,
    NotificationStatus,
    PushSubscription,
    Task,
    TaskStatus,
)
from backend.src.services.exceptions import NotFoundError, TerminalDeliveryError
from backend.src.services.notification_composer import build_push_payload
from backend.src.services.push_gateway import PushDeliveryError, PushGateway, PushGoneError
from backend.src.services.row_claims import claim_row, claim_rows, release
from backend.src.services.suppression_service import SuppressionService
from backend.src.utils.clock import utcnow
from backend.src.utils.logging_config import get_logger


logger = get_logger("scheduler")


# Statuses that may still reach the user
OPEN_STATUSES = (
    NotificationStatus.PENDING,
    NotificationStatus.FAILED,
    NotificationStatus.SNOOZED,
)


@dataclass
class DeliveryOutcome:
    """Result of one dispatch attempt."""

    delivered: bool = False
    cancelled: bool = False
    skipped: bool = False
    sent: int = 0
    failed: int = 0
    removed: int = 0
    error: Optional[str] = None


@dataclass
class DeliverySweepResult:
    """What a delivery sweep did."""

    claimed: int = 0
    delivered: int = 0
    failed: int = 0
    cancelled: int = 0


class NotificationScheduler:
    """
    Dispatches due notifications through a PushGateway.

    Usage:
        >>> scheduler = NotificationScheduler(db, config, gateway)
        >>> scheduler.dispatch_now(notification)
        >>> scheduler.run_delivery_sweep()
    """

    def __init__(
        self,
        db: Session,
        config: Optional[PipelineConfig] = None,
        gateway: Optional[PushGateway] = None,
    ):
        self.db = db
        self.config = config or PipelineConfig()
        self.gateway = gateway
        self.suppression = SuppressionService(db, self.config)

    # ========================================================================
    # Dispatch
    # ========================================================================

    def dispatch_now(self, notification: Notification, now: Optional[datetime] = None) -> DeliveryOutcome:
        """
        Dispatch a freshly created notification if it is already due.

        Claims the row first so a concurrent delivery sweep cannot send it
        a second time.
        """
        now = now or utcnow()
        if notification.status != NotificationStatus.PENDING or notification.scheduled_for > now:
            return DeliveryOutcome(skipped=True)

        token = claim_row(self.db, Notification, notification.id, now, self.config.claim_lease)
        if token is None:
            return DeliveryOutcome(skipped=True)

        self.db.refresh(notification)
        try:
            return self.dispatch(notification, now)
        finally:
            release(notification)
            self.db.commit()

    def dispatch(self, notification: Notification, now: Optional[datetime] = None) -> DeliveryOutcome:
        """
        Attempt delivery of a due notification.

        The caller holds the row claim. Commits the outcome.
        """
        now = now or utcnow()
        if notification.superseded_at is not None or notification.due_at() is None:
            return DeliveryOutcome(skipped=True)

        task = self.db.get(Task, notification.task_id)
        if task is None or task.status == TaskStatus.COMPLETED:
            self.cancel(notification, "task_inactive")
            self.db.commit()
            return DeliveryOutcome(cancelled=True)
        if self.suppression.is_task_muted(task.id, now):
            self.cancel(notification, "task_muted")
            self.db.commit()
            return DeliveryOutcome(cancelled=True)

        outcome = self._send_to_devices(notification, now)
        notification.attempts += 1
        notification.last_attempt_at = now

        if outcome.sent:
            notification.status = NotificationStatus.DELIVERED
            notification.delivered_at = now
            notification.next_attempt_at = None
            notification.last_error = None
            outcome.delivered = True
            logger.info(
                "Notification delivered",
                extra={
                    "notification_guid": notification.guid,
                    "task_guid": task.guid,
                    "attempt": notification.attempts,
                    "devices": outcome.sent,
                },
            )
        else:
            self._record_failure(notification, outcome.error or "delivery failed", now)

        self.db.commit()
        return outcome

    def push_update(self, notification: Notification, now: Optional[datetime] = None) -> DeliveryOutcome:
        """
        Re-send a delivered notification whose content changed (a bundle grew).

        Uses the same tag so the device replaces the earlier one. The
        notification's status and attempt bookkeeping are left untouched.
        """
        now = now or utcnow()
        outcome = self._send_to_devices(notification, now)
        self.db.commit()
        logger.info(
            "Notification update pushed",
            extra={
                "notification_guid": notification.guid,
                "devices": outcome.sent,
                "failed": outcome.failed,
            },
        )
        return outcome

    def _send_to_devices(self, notification: Notification, now: datetime) -> DeliveryOutcome:
        outcome = DeliveryOutcome()
        subscriptions = (
            self.db.query(PushSubscription)
            .filter(PushSubscription.user_id == notification.user_id)
            .all()
        )
        if not subscriptions:
            outcome.error = "no push subscriptions"
            return outcome
        if self.gateway is None:
            outcome.error = "push gateway not configured"
            return outcome

        payload = build_push_payload(notification)
        errors: List[str] = []
        for sub in subscriptions:
            endpoint_short = sub.endpoint[:60]
            try:
                self.gateway.send(sub, payload, self.config.push_timeout_seconds)
                sub.last_used_at = now
                outcome.sent += 1
            except PushGoneError:
                logger.info(
                    "Removing expired push subscription",
                    extra={
                        "subscription_guid": sub.guid,
                        "user_id": notification.user_id,
                        "endpoint": endpoint_short,
                    },
                )
                self.db.delete(sub)
                outcome.removed += 1
            except PushDeliveryError as e:
                outcome.failed += 1
                errors.append(str(e))
                logger.warning(
                    f"Push delivery failed: {e}",
                    extra={
                        "subscription_guid": sub.guid,
                        "notification_guid": notification.guid,
                        "endpoint": endpoint_short,
                    },
                )
            except Exception as e:
                # Any other gateway error (a raw timeout included) still costs an attempt
                outcome.failed += 1
                errors.append(f"{type(e).__name__}: {e}")
                logger.error(
                    f"Push gateway error: {type(e).__name__}: {e}",
                    extra={
                        "subscription_guid": sub.guid,
                        "notification_guid": notification.guid,
                        "endpoint": endpoint_short,
                    },
                    exc_info=True,
                )

        if not outcome.sent:
            outcome.error = errors[-1] if errors else "all push subscriptions are gone"
        return outcome

    def _record_failure(self, notification: Notification, error: str, now: datetime) -> None:
        notification.status = NotificationStatus.FAILED
        notification.last_error = error[:1000]

        if notification.attempts >= notification.max_attempts:
            notification.next_attempt_at = None
            terminal = TerminalDeliveryError(notification.guid, notification.attempts, error)
            logger.error(
                str(terminal),
                extra={
                    "notification_guid": notification.guid,
                    "attempts": notification.attempts,
                },
            )
            return

        delay = self.config.retry_delay(notification.attempts)
        notification.next_attempt_at = now + delay
        logger.warning(
            "Notification delivery failed, retry scheduled",
            extra={
                "notification_guid": notification.guid,
                "attempt": notification.attempts,
                "retry_in_seconds": int(delay.total_seconds()),
                "error": error,
            },
        )

    # ========================================================================
    # Sweep
    # ========================================================================

    def run_delivery_sweep(self, now: Optional[datetime] = None, limit: int = 100) -> DeliverySweepResult:
        """
        Dispatch every due notification: pending ones whose scheduled time
        has come (post-arrival timers included) and failed ones whose retry
        time has come.
        """
        now = now or utcnow()
        result = DeliverySweepResult()

        _, rows = claim_rows(
            self.db,
            Notification,
            criteria=[
                Notification.superseded_at.is_(None),
                or_(
                    and_(
                        Notification.status == NotificationStatus.PENDING,
                        Notification.scheduled_for <= now,
                    ),
                    and_(
                        Notification.status == NotificationStatus.FAILED,
                        Notification.next_attempt_at.isnot(None),
                        Notification.next_attempt_at <= now,
                    ),
                ),
            ],
            order_by=[Notification.scheduled_for, Notification.id],
            now=now,
            lease=self.config.claim_lease,
            limit=limit,
        )
        result.claimed = len(rows)

        for notification in rows:
            try:
                outcome = self.dispatch(notification, now)
            finally:
                release(notification)
                self.db.commit()
            if outcome.delivered:
                result.delivered += 1
            elif outcome.cancelled:
                result.cancelled += 1
            elif not outcome.skipped:
                result.failed += 1

        if result.claimed:
            logger.info(
                "Delivery sweep completed",
                extra={
                    "claimed": result.claimed,
                    "delivered": result.delivered,
                    "failed": result.failed,
                    "cancelled": result.cancelled,
                },
            )
        return result

    # ========================================================================
    # Cancellation and state changes
    # ========================================================================

    def cancel(self, notification: Notification, reason: str) -> None:
        """Cancel a notification. The caller commits."""
        notification.status = NotificationStatus.CANCELLED
        notification.cancelled_reason = reason
        notification.next_attempt_at = None
        self.db.flush()
        logger.info(
            "Notification cancelled",
            extra={"notification_guid": notification.guid, "reason": reason},
        )

    def cancel_for_task(self, task_id: int, reason: str) -> int:
        """
        Cancel every notification of a task that could still reach the user.

        Covers pending, retrying and snoozed notifications. The caller commits.
        """
        notifications = (
            self.db.query(Notification)
            .filter(
                Notification.task_id == task_id,
                Notification.status.in_(OPEN_STATUSES),
                Notification.superseded_at.is_(None),
            )
            .all()
        )
        count = 0
        for notification in notifications:
            if notification.status == NotificationStatus.FAILED and notification.next_attempt_at is None:
                continue
            self.cancel(notification, reason)
            count += 1
        return count

    def cancel_pending(self, task_id: int, tier: GeofenceTier, reason: str) -> int:
        """Cancel a task's pending notifications of one tier (e.g. an armed post-arrival timer)."""
        notifications = (
            self.db.query(Notification)
            .filter(
                Notification.task_id == task_id,
                Notification.tier == tier,
                Notification.status == NotificationStatus.PENDING,
            )
            .all()
        )
        for notification in notifications:
            self.cancel(notification, reason)
        return len(notifications)

    def mark_snoozed(self, notification: Notification) -> None:
        """Move a notification to SNOOZED. The caller commits."""
        notification.status = NotificationStatus.SNOOZED
        notification.next_attempt_at = None
        self.db.flush()

    # ========================================================================
    # Queries
    # ========================================================================

    def get_notification(self, guid: str, user_id: str) -> Notification:
        """
        Get a user's notification by GUID.

        Raises:
            NotFoundError: If not found or owned by another user
        """
        try:
            uuid_value = Notification.parse_guid(guid)
        except ValueError:
            raise NotFoundError("Notification", guid)

        notification = (
            self.db.query(Notification)
            .filter(Notification.uuid == uuid_value, Notification.user_id == user_id)
            .first()
        )
        if not notification:
            raise NotFoundError("Notification", guid)
        return notification

    def list_notifications(
        self,
        user_id: str,
        status: Optional[NotificationStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Notification], int]:
        """
        List a user's notifications, newest first.

        Returns:
            Tuple of (notifications, total count)
        """
        query = self.db.query(Notification).filter(Notification.user_id == user_id)
        if status is not None:
            query = query.filter(Notification.status == status)

        total = query.count()
        notifications = (
            query.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return notifications, total

    def get_stats(self, user_id: str, now: Optional[datetime] = None) -> dict:
        """
        Notification statistics for a user.

        Returns:
            Dict with per-status counts, retrying, terminal failures,
            bundles and deliveries in the last 24 hours
        """
        now = now or utcnow()
        base = self.db.query(Notification).filter(Notification.user_id == user_id)

        by_status = {status.value: 0 for status in NotificationStatus}
        rows = (
            self.db.query(Notification.status, func.count(Notification.id))
            .filter(Notification.user_id == user_id)
            .group_by(Notification.status)
            .all()
        )
        for status, count in rows:
            by_status[NotificationStatus(status).value] = count

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "retrying": base.filter(
                Notification.status == NotificationStatus.FAILED,
                Notification.next_attempt_at.isnot(None),
            ).count(),
            "failed_terminal": base.filter(
                Notification.status == NotificationStatus.FAILED,
                Notification.next_attempt_at.is_(None),
            ).count(),
            "bundles": base.filter(Notification.is_bundle.is_(True)).count(),
            "delivered_last_24h": base.filter(
                Notification.delivered_at.isnot(None),
                Notification.delivered_at >= now - timedelta(hours=24),
            ).count(),
        }

    # ========================================================================
    # Retention
    # ========================================================================

    def cleanup_old_notifications(
        self, days: int, now: Optional[datetime] = None, batch_size: int = 500
    ) -> int:
        """
        Delete closed notifications untouched for more than ``days`` days.

        Closed means delivered, cancelled, superseded or terminally failed.
        Snoozed notifications and scheduled retries are kept regardless of
        age. Snooze records go with their notification (ON DELETE CASCADE).

        Returns:
            Number of notifications deleted
        """
        now = now or utcnow()
        cutoff = now - timedelta(days=days)
        closed = or_(
            Notification.status.in_([NotificationStatus.DELIVERED, NotificationStatus.CANCELLED]),
            Notification.superseded_at.isnot(None),
            and_(
                Notification.status == NotificationStatus.FAILED,
                Notification.next_attempt_at.is_(None),
            ),
        )

        deleted = 0
        while True:
            ids = [
                row.id
                for row in self.db.query(Notification.id)
                .filter(closed, Notification.updated_at < cutoff)
                .order_by(Notification.id)
                .limit(batch_size)
                .all()
            ]
            if not ids:
                break
            deleted += (
                self.db.query(Notification)
                .filter(Notification.id.in_(ids))
                .delete(synchronize_session=False)
            )
            self.db.commit()

        if deleted:
            logger.info(
                "Old notifications deleted",
                extra={"deleted": deleted, "retention_days": days},
            )
        return deleted
