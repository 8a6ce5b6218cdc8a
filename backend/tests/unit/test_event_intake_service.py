"""
Unit tests for EventIntakeService.

Tests the intake filter:
- Accepted enters create and dispatch a notification
- Suppression reasons in check order (muted, stale, low confidence,
  snoozed, active notification, cooldown, duplicate)
- Mutes never touch cooldown/dedup state
- Malformed and foreign reports are recorded as failed
- Exits from an arrival geofence cancel the armed post-arrival timer
- Of two reports racing for one guard key only one is accepted
- Transient store failures route the report to the offline queue
"""

import pytest
from sqlalchemy.exc import OperationalError

from backend.src.config.pipeline import PipelineConfig
from backend.src.models import (
    EventStatus,
    EventType,
    GeofenceEvent,
    IntakeGuard,
    MuteDuration,
    Notification,
    NotificationStatus,
    QueuedEvent,
    SuppressionReason,
    TaskStatus,
)
from backend.src.services.event_intake_service import EventIntakeService
from backend.src.services.exceptions import ValidationError
from backend.src.services.suppression_service import SuppressionService
from backend.src.services.task_lifecycle_service import TaskLifecycleService
from backend.tests.factories import (
    HOME_LOCATION,
    NEAR_PHARMACY,
    NOW,
    OTHER_USER_ID,
    USER_ID,
    crossing,
    geofence_for,
    later,
    new_guid,
)


@pytest.fixture
def intake(test_db_session, pipeline_config, gateway):
    return EventIntakeService(test_db_session, pipeline_config, gateway=gateway)


@pytest.fixture
def pharmacy(make_task, make_subscription):
    make_subscription()
    return make_task(title='Pick up prescription', location_name='CVS')


@pytest.fixture
def home(make_task, make_subscription):
    make_subscription()
    return make_task(
        title='Water the plants', place_type='home', location=HOME_LOCATION, location_name='Home'
    )


def report(task, tier, **kwargs):
    return crossing(geofence_for(task, tier), **kwargs)


class TestAcceptedEnter:
    """Enters that pass every check."""

    def test_creates_and_delivers_notification(self, intake, pharmacy, gateway):
        outcome = intake.process_report(
            USER_ID, report(pharmacy, 'approach_1mi', location=NEAR_PHARMACY), now=NOW
        )

        assert outcome.accepted is True
        assert outcome.status == EventStatus.PROCESSED
        notification = outcome.notification
        assert notification.status == NotificationStatus.DELIVERED
        assert notification.attempts == 1
        assert notification.title == 'Approaching CVS'
        assert gateway.tags == [notification.guid]

    def test_event_recorded_with_cooldown(self, intake, pharmacy, test_db_session):
        outcome = intake.process_report(USER_ID, report(pharmacy, 'approach_3mi'), now=NOW)

        event = test_db_session.get(GeofenceEvent, outcome.event.id)
        assert event.task_id == pharmacy.id
        assert event.cooldown_until == later(minutes=15)
        assert event.notification_id == outcome.notification.id

    def test_arrival_arms_post_arrival_timer(self, intake, home, test_db_session):
        intake.process_report(USER_ID, report(home, 'arrival'), now=NOW)

        timer = (
            test_db_session.query(Notification)
            .filter(Notification.tier == 'post_arrival')
            .one()
        )
        assert timer.status == NotificationStatus.PENDING
        assert timer.scheduled_for == later(minutes=5)
        assert timer.body == 'Still need to water the plants?'


class TestSuppression:
    """Each suppression reason."""

    def test_muted_task(self, intake, pharmacy, test_db_session, pipeline_config):
        TaskLifecycleService(test_db_session, pipeline_config).mute_task(
            pharmacy, MuteDuration.HOURS_4, now=NOW
        )

        outcome = intake.process_report(USER_ID, report(pharmacy, 'approach_1mi'), now=NOW)

        assert outcome.reason == SuppressionReason.MUTED
        assert test_db_session.query(IntakeGuard).count() == 0

    def test_mute_checked_before_staleness(self, intake, pharmacy, test_db_session, pipeline_config):
        SuppressionService(test_db_session, pipeline_config).mute(
            pharmacy, MuteDuration.PERMANENT, at=later(minutes=-300)
        )
        test_db_session.commit()

        outcome = intake.process_report(
            USER_ID, report(pharmacy, 'approach_1mi', occurred_at=later(minutes=-180)), now=NOW
        )
        assert outcome.reason == SuppressionReason.MUTED

    def test_stale_report(self, intake, pharmacy):
        outcome = intake.process_report(
            USER_ID, report(pharmacy, 'approach_1mi', occurred_at=later(minutes=-121)), now=NOW
        )
        assert outcome.reason == SuppressionReason.STALE

    def test_low_confidence(self, intake, pharmacy):
        outcome = intake.process_report(
            USER_ID, report(pharmacy, 'approach_1mi', confidence=0.3), now=NOW
        )
        assert outcome.status == EventStatus.SUPPRESSED
        assert outcome.reason == SuppressionReason.LOW_CONFIDENCE

    def test_unknown_geofence(self, intake, pharmacy):
        payload = report(pharmacy, 'approach_1mi')
        payload['geofence_guid'] = new_guid('gfn')

        outcome = intake.process_report(USER_ID, payload, now=NOW)
        assert outcome.reason == SuppressionReason.NOT_FOUND

    def test_completed_task(self, intake, pharmacy, test_db_session, pipeline_config):
        TaskLifecycleService(test_db_session, pipeline_config).complete_task(pharmacy, NOW)

        outcome = intake.process_report(USER_ID, report(pharmacy, 'approach_1mi'), now=NOW)
        assert outcome.reason == SuppressionReason.TASK_INACTIVE

    def test_delivered_notification_blocks_reentry(self, intake, pharmacy):
        intake.process_report(USER_ID, report(pharmacy, 'approach_1mi'), now=NOW)

        outcome = intake.process_report(
            USER_ID, report(pharmacy, 'approach_1mi', occurred_at=later(minutes=5)), now=later(minutes=5)
        )
        assert outcome.reason == SuppressionReason.NOTIFICATION_ACTIVE

    def test_other_tier_not_blocked(self, intake, pharmacy):
        intake.process_report(USER_ID, report(pharmacy, 'approach_3mi'), now=NOW)

        outcome = intake.process_report(
            USER_ID, report(pharmacy, 'approach_1mi', occurred_at=later(minutes=2)), now=later(minutes=2)
        )
        assert outcome.accepted is True

    def test_cooldown(self, test_db_session, pharmacy, gateway):
        config = PipelineConfig(
            approach_cooldown=PipelineConfig().approach_cooldown * 2,
            delivered_hold=PipelineConfig().delivered_hold / 3,
            dedup_window=PipelineConfig().dedup_window / 3,
        )
        intake = EventIntakeService(test_db_session, config, gateway=gateway)
        intake.process_report(USER_ID, report(pharmacy, 'approach_1mi'), now=NOW)

        outcome = intake.process_report(
            USER_ID, report(pharmacy, 'approach_1mi', occurred_at=later(minutes=10)), now=later(minutes=10)
        )
        assert outcome.reason == SuppressionReason.COOLDOWN

    def test_duplicate(self, test_db_session, home, gateway):
        # Arrival tiers have no cooldown; only the dedup window applies
        config = PipelineConfig(delivered_hold=PipelineConfig().arrival_cooldown)
        intake = EventIntakeService(test_db_session, config, gateway=gateway)
        intake.process_report(USER_ID, report(home, 'arrival'), now=NOW)

        outcome = intake.process_report(
            USER_ID, report(home, 'arrival', occurred_at=later(minutes=1)), now=later(minutes=1)
        )
        assert outcome.reason == SuppressionReason.DUPLICATE

    def test_reentry_after_windows_accepted(self, intake, pharmacy):
        intake.process_report(USER_ID, report(pharmacy, 'approach_1mi'), now=NOW)

        outcome = intake.process_report(
            USER_ID, report(pharmacy, 'approach_1mi', occurred_at=later(minutes=16)), now=later(minutes=16)
        )
        assert outcome.accepted is True


class TestGuardRace:
    """Two reports for one guard key arriving together."""

    def test_one_of_two_arrival_claims_wins(self, test_db_session, pipeline_config, gateway, home):
        first = EventIntakeService(test_db_session, pipeline_config, gateway=gateway)
        second = EventIntakeService(test_db_session, pipeline_config, gateway=gateway)
        geofence = geofence_for(home, 'arrival')

        results = [
            service._claim_guard(USER_ID, home, geofence, EventType.ENTER, NOW)
            for service in (first, second)
        ]

        assert results.count(None) == 1
        assert results[1] == SuppressionReason.DUPLICATE
        assert test_db_session.query(IntakeGuard).count() == 1

    def test_one_of_two_approach_claims_wins(self, intake, pharmacy, test_db_session):
        geofence = geofence_for(pharmacy, 'approach_1mi')

        results = [
            intake._claim_guard(USER_ID, pharmacy, geofence, EventType.ENTER, occurred_at)
            for occurred_at in (NOW, later(seconds=2))
        ]

        assert results == [None, SuppressionReason.COOLDOWN]
        assert test_db_session.query(IntakeGuard).count() == 1

    def test_second_report_stops_at_guard(self, intake, home, mocker):
        # Let the second report past the notification check so only the guard decides
        mocker.patch.object(intake, '_blocking_notification', return_value=None)

        first = intake.process_report(USER_ID, report(home, 'arrival'), now=NOW)
        second = intake.process_report(
            USER_ID, report(home, 'arrival', occurred_at=later(seconds=1)), now=later(seconds=1)
        )

        assert first.accepted is True
        assert second.accepted is False
        assert second.reason == SuppressionReason.DUPLICATE


class TestInvalidReports:
    """Malformed and foreign reports."""

    def test_malformed_report_recorded_as_failed(self, intake, pharmacy, test_db_session):
        payload = report(pharmacy, 'approach_1mi')
        del payload['occurred_at']

        with pytest.raises(ValidationError) as exc_info:
            intake.process_report(USER_ID, payload, now=NOW)

        assert exc_info.value.field == 'occurred_at'
        event = test_db_session.query(GeofenceEvent).one()
        assert event.status == EventStatus.FAILED

    def test_geofence_of_other_user(self, intake, pharmacy, test_db_session):
        outcome = intake.process_report(OTHER_USER_ID, report(pharmacy, 'approach_1mi'), now=NOW)

        assert outcome.accepted is False
        assert outcome.status == EventStatus.FAILED
        assert outcome.error == 'Geofence belongs to another user'
        event = test_db_session.query(GeofenceEvent).one()
        assert event.id == outcome.event.id
        assert event.status == EventStatus.FAILED
        assert event.user_id == OTHER_USER_ID

    def test_dwell_timer_not_reportable(self, intake, home):
        outcome = intake.process_report(USER_ID, report(home, 'post_arrival'), now=NOW)

        assert outcome.status == EventStatus.FAILED
        assert outcome.notification is None

    def test_future_timestamp_rejected(self, intake, pharmacy, test_db_session):
        outcome = intake.process_report(
            USER_ID, report(pharmacy, 'approach_1mi', occurred_at=later(minutes=60)), now=NOW
        )

        assert outcome.accepted is False
        assert outcome.status == EventStatus.FAILED
        assert outcome.error == 'Crossing timestamp is ahead of the server clock'
        assert test_db_session.query(IntakeGuard).count() == 0

    def test_future_timestamp_does_not_block_later_crossings(self, intake, pharmacy):
        intake.process_report(
            USER_ID, report(pharmacy, 'approach_1mi', occurred_at=later(minutes=60)), now=NOW
        )

        outcome = intake.process_report(
            USER_ID,
            report(pharmacy, 'approach_1mi', occurred_at=later(minutes=20)),
            now=later(minutes=20),
        )

        assert outcome.accepted is True
        assert outcome.status == EventStatus.PROCESSED

    def test_small_clock_skew_tolerated(self, intake, pharmacy):
        outcome = intake.process_report(
            USER_ID, report(pharmacy, 'approach_1mi', occurred_at=later(minutes=2)), now=NOW
        )

        assert outcome.accepted is True


class TestExit:
    """Exit reports."""

    def test_exit_cancels_post_arrival_timer(self, intake, home, test_db_session):
        intake.process_report(USER_ID, report(home, 'arrival'), now=NOW)

        outcome = intake.process_report(
            USER_ID,
            report(home, 'arrival', event_type='exit', occurred_at=later(minutes=2)),
            now=later(minutes=2),
        )

        assert outcome.accepted is True
        timer = (
            test_db_session.query(Notification)
            .filter(Notification.tier == 'post_arrival')
            .one()
        )
        assert timer.status == NotificationStatus.CANCELLED
        assert timer.cancelled_reason == 'left_before_dwell'

    def test_exit_from_approach_is_recorded_only(self, intake, pharmacy, test_db_session):
        outcome = intake.process_report(
            USER_ID, report(pharmacy, 'approach_5mi', event_type='exit'), now=NOW
        )

        assert outcome.status == EventStatus.PROCESSED
        assert outcome.notification is None
        assert test_db_session.query(Notification).count() == 0


class TestTransientFailure:
    """Store outages route reports to the offline queue."""

    def test_report_queued(self, intake, pharmacy, test_db_session, mocker):
        mocker.patch.object(
            EventIntakeService,
            '_process',
            side_effect=OperationalError('SELECT 1', {}, Exception('database is locked')),
        )
        payload = report(pharmacy, 'approach_1mi', client_event_id='evt-1')

        outcome = intake.report_crossing(USER_ID, payload, now=NOW)

        assert outcome.queued is True
        assert outcome.accepted is False
        entry = test_db_session.query(QueuedEvent).one()
        assert entry.payload['client_event_id'] == 'evt-1'
        assert entry.last_error == 'database is locked'
        assert outcome.to_result('evt-1').retryable is True


class TestStats:
    """Processing statistics."""

    def test_counts_by_status_and_reason(self, intake, pharmacy):
        intake.process_report(USER_ID, report(pharmacy, 'approach_1mi'), now=NOW)
        intake.process_report(USER_ID, report(pharmacy, 'approach_3mi', confidence=0.1), now=NOW)

        stats = intake.get_processing_stats(USER_ID)

        assert stats['total'] == 2
        assert stats['by_status']['processed'] == 1
        assert stats['by_status']['suppressed'] == 1
        assert stats['by_reason'] == {'low_confidence': 1}

    def test_task_status_unchanged_by_intake(self, intake, pharmacy, test_db_session):
        intake.process_report(USER_ID, report(pharmacy, 'approach_1mi'), now=NOW)
        test_db_session.refresh(pharmacy)
        assert pharmacy.status == TaskStatus.ACTIVE
