"""
End-to-end reminder scenarios.

Drives the pipeline the way a device and the delivery sweep would:
- Approaching a pharmacy through every tier with a flapping inner geofence
- Arriving home and staying, or leaving before the dwell timer fires
- Snoozing an approach reminder and crossing again before and after expiry
"""

import pytest

from backend.src.models import (
    EventStatus,
    GeofenceEvent,
    Notification,
    NotificationStatus,
    NotificationType,
    SuppressionReason,
)
from backend.src.services.event_intake_service import EventIntakeService
from backend.src.services.notification_action_service import NotificationActionService
from backend.src.services.notification_scheduler import NotificationScheduler
from backend.tests.factories import (
    HOME_LOCATION,
    USER_ID,
    crossing,
    geofence_for,
    later,
)


@pytest.fixture
def intake(test_db_session, pipeline_config, gateway):
    return EventIntakeService(test_db_session, pipeline_config, gateway=gateway)


@pytest.fixture
def scheduler(test_db_session, pipeline_config, gateway):
    return NotificationScheduler(test_db_session, pipeline_config, gateway)


def cross(intake, task, tier, minutes, seconds=0, event_type='enter'):
    at = later(minutes=minutes, seconds=seconds)
    return intake.process_report(
        USER_ID, crossing(geofence_for(task, tier), occurred_at=at, event_type=event_type), now=at
    )


def notifications(db):
    return db.query(Notification).order_by(Notification.id).all()


class TestApproachingPharmacy:
    """Category task approached through 5 mi, 3 mi and 1 mi."""

    def test_three_notifications_despite_flapping(
        self, intake, make_task, make_subscription, test_db_session, gateway
    ):
        make_subscription()
        pharmacy = make_task(title='Pick up prescription', poi_category='pharmacy', location_name='CVS')

        cross(intake, pharmacy, 'approach_5mi', 0)
        cross(intake, pharmacy, 'approach_3mi', 6)
        cross(intake, pharmacy, 'approach_1mi', 10)
        cross(intake, pharmacy, 'approach_1mi', 10, seconds=50, event_type='exit')
        flapped = cross(intake, pharmacy, 'approach_1mi', 11, seconds=40)

        assert flapped.accepted is False
        assert flapped.reason == SuppressionReason.NOTIFICATION_ACTIVE

        sent = notifications(test_db_session)
        assert len(sent) == 3
        assert [n.tier.value for n in sent] == ['approach_5mi', 'approach_3mi', 'approach_1mi']
        assert all(n.status == NotificationStatus.DELIVERED for n in sent)
        assert len(gateway.sent) == 3
        assert sent[0].title == 'Approaching CVS'
        assert sent[2].body == "You're close to CVS — Pick up prescription?"

        statuses = [e.status for e in test_db_session.query(GeofenceEvent).order_by(GeofenceEvent.id)]
        assert statuses.count(EventStatus.PROCESSED) == 4
        assert statuses.count(EventStatus.SUPPRESSED) == 1


class TestArrivingHome:
    """Place task with an arrival geofence and a dwell timer."""

    @pytest.fixture
    def home(self, make_task, make_subscription):
        make_subscription()
        return make_task(title='Water the plants', place_type='home', location=HOME_LOCATION)

    def test_stay_six_minutes(self, intake, scheduler, home, test_db_session, gateway):
        cross(intake, home, 'arrival', 0)

        result = scheduler.run_delivery_sweep(now=later(minutes=6))

        assert result.delivered == 1
        sent = notifications(test_db_session)
        assert [n.type for n in sent] == [NotificationType.ARRIVAL, NotificationType.POST_ARRIVAL]
        assert all(n.status == NotificationStatus.DELIVERED for n in sent)
        assert sent[1].body == 'Still need to water the plants?'
        assert len(gateway.sent) == 2

    def test_leave_before_dwell(self, intake, scheduler, home, test_db_session, gateway):
        cross(intake, home, 'arrival', 0)
        cross(intake, home, 'arrival', 3, event_type='exit')

        result = scheduler.run_delivery_sweep(now=later(minutes=6))

        assert result.delivered == 0
        arrival, timer = notifications(test_db_session)
        assert arrival.status == NotificationStatus.DELIVERED
        assert timer.status == NotificationStatus.CANCELLED
        assert timer.delivered_at is None
        assert len(gateway.sent) == 1


class TestSnoozeOneHour:
    """Snoozed approach reminders stay quiet until the snooze ends."""

    def test_crossings_during_and_after_snooze(
        self, intake, make_task, make_subscription, test_db_session, pipeline_config, publisher
    ):
        make_subscription()
        pharmacy = make_task(location_name='CVS')
        first = cross(intake, pharmacy, 'approach_1mi', 0).notification

        NotificationActionService(test_db_session, pipeline_config, publisher).apply(
            USER_ID, first.guid, 'snooze_1h', now=later(minutes=1)
        )

        during = cross(intake, pharmacy, 'approach_1mi', 11)
        assert during.accepted is False
        assert during.reason == SuppressionReason.SNOOZED
        assert len(notifications(test_db_session)) == 1

        after = cross(intake, pharmacy, 'approach_1mi', 62)
        assert after.accepted is True
        assert after.notification.guid != first.guid
        assert after.notification.status == NotificationStatus.DELIVERED
        assert len(notifications(test_db_session)) == 2
