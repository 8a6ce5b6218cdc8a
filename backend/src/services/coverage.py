"""
Notification coverage queries.

A notification covers its own (task, tier) plus the (task, tier) of every
event bundled into it. Intake, snoozes and supersession all reason about
"notifications covering (task, tier)", expressed here once as SQL.
"""

from sqlalchemy import and_, or_, select

from backend.src.models import GeofenceEvent, GeofenceTier, Notification


def covering_notification_ids(task_id: int, tier: GeofenceTier):
    """SELECT of notification ids covering (task, tier)."""
    via_events = select(GeofenceEvent.notification_id).where(
        GeofenceEvent.task_id == task_id,
        GeofenceEvent.tier == tier,
        GeofenceEvent.notification_id.isnot(None),
    )
    return select(Notification.id).where(
        or_(
            and_(Notification.task_id == task_id, Notification.tier == tier),
            Notification.id.in_(via_events),
        )
    )


def covered_pairs(db, notification: Notification) -> set:
    """All (task_id, tier) pairs a notification covers."""
    pairs = {(notification.task_id, notification.tier)}
    rows = (
        db.query(GeofenceEvent.task_id, GeofenceEvent.tier)
        .filter(
            GeofenceEvent.notification_id == notification.id,
            GeofenceEvent.task_id.isnot(None),
            GeofenceEvent.tier.isnot(None),
        )
        .distinct()
        .all()
    )
    pairs.update((row.task_id, row.tier) for row in rows)
    return pairs


def covered_task_ids(db, notification: Notification) -> list:
    """Distinct task ids covered by a notification, primary task first."""
    others = sorted({task_id for task_id, _ in covered_pairs(db, notification)} - {notification.task_id})
    return [notification.task_id] + others
