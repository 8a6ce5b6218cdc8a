"""
Unit tests for TaskLifecycleService.

Tests task sync from the CRUD collaborator:
- Upsert creates geofences; updates without classification changes keep them
- Invalid GUIDs, foreign tasks and bad classifications are rejected
- Complete, delete, mute, unmute and reopen withdraw or restore reminders
"""

import logging

import pytest

from backend.src.models import (
    Geofence,
    MuteDuration,
    Notification,
    NotificationStatus,
    TaskMute,
    TaskStatus,
)
from backend.src.services.event_intake_service import EventIntakeService
from backend.src.services.exceptions import NotFoundError, ValidationError
from backend.src.services.task_lifecycle_service import StatusChange, TaskLifecycleService
from backend.tests.factories import (
    HOME_LOCATION,
    NOW,
    OTHER_USER_ID,
    USER_ID,
    crossing,
    geofence_for,
    new_guid,
)


@pytest.fixture
def lifecycle(test_db_session, pipeline_config, publisher):
    return TaskLifecycleService(test_db_session, pipeline_config, publisher)


@pytest.fixture
def home(make_task, make_subscription):
    make_subscription()
    return make_task(title='Water the plants', place_type='home', location=HOME_LOCATION)


@pytest.fixture
def armed_timer(home, test_db_session, pipeline_config, gateway):
    """Arrive home at NOW so the post-arrival timer is pending."""
    intake = EventIntakeService(test_db_session, pipeline_config, gateway=gateway)
    intake.process_report(USER_ID, crossing(geofence_for(home, 'arrival')), now=NOW)
    return test_db_session.query(Notification).filter(Notification.tier == 'post_arrival').one()


CATEGORY_FIELDS = {
    'title': 'Fill up the tank',
    'location_type': 'poi_category',
    'poi_category': 'gas',
    'latitude': 37.77,
    'longitude': -122.41,
}


class TestUpsert:
    """Task create / update sync."""

    def test_create(self, lifecycle):
        guid = new_guid()
        task, result = lifecycle.upsert_task(USER_ID, guid, CATEGORY_FIELDS)

        assert task.guid == guid
        assert task.status == TaskStatus.ACTIVE
        assert result.regenerated is True
        assert len(task.geofences) == 3

    def test_create_logs_sync(self, lifecycle, mocker):
        handler = logging.Handler()
        emit = mocker.patch.object(handler, "emit")
        sync_logger = logging.getLogger("nearme.services")
        sync_logger.addHandler(handler)
        try:
            lifecycle.upsert_task(USER_ID, new_guid(), CATEGORY_FIELDS)
        finally:
            sync_logger.removeHandler(handler)

        records = [call.args[0] for call in emit.call_args_list]
        synced = [r for r in records if r.getMessage() == "Task synced"]
        assert len(synced) == 1
        assert synced[0].is_new is True
        assert synced[0].regenerated is True

    def test_title_change_keeps_geofences(self, lifecycle):
        guid = new_guid()
        task, _ = lifecycle.upsert_task(USER_ID, guid, CATEGORY_FIELDS)
        before = {g.guid for g in task.geofences}

        task, result = lifecycle.upsert_task(USER_ID, guid, {'title': 'Get gas'})

        assert task.title == 'Get gas'
        assert result.regenerated is False
        assert {g.guid for g in task.geofences} == before

    def test_category_to_place_regenerates(self, lifecycle, test_db_session):
        guid = new_guid()
        lifecycle.upsert_task(USER_ID, guid, CATEGORY_FIELDS)

        task, result = lifecycle.upsert_task(USER_ID, guid, {
            'location_type': 'place',
            'poi_category': None,
            'place_type': 'work',
        })

        assert result.regenerated is True
        assert sorted(g.tier.value for g in task.geofences) == [
            'approach_5mi', 'arrival', 'post_arrival'
        ]
        assert test_db_session.query(Geofence).count() == 3

    def test_invalid_guid(self, lifecycle):
        with pytest.raises(ValidationError) as exc_info:
            lifecycle.upsert_task(USER_ID, 'ntf_not-a-task', CATEGORY_FIELDS)
        assert exc_info.value.field == 'guid'

    def test_other_users_task(self, lifecycle):
        guid = new_guid()
        lifecycle.upsert_task(USER_ID, guid, CATEGORY_FIELDS)

        with pytest.raises(NotFoundError):
            lifecycle.upsert_task(OTHER_USER_ID, guid, CATEGORY_FIELDS)

    def test_invalid_classification_writes_nothing(self, lifecycle, test_db_session):
        fields = dict(CATEGORY_FIELDS, poi_category=None)

        with pytest.raises(ValidationError):
            lifecycle.upsert_task(USER_ID, new_guid(), fields)
        assert test_db_session.query(Geofence).count() == 0

    def test_unknown_category(self, lifecycle):
        with pytest.raises(ValidationError) as exc_info:
            lifecycle.upsert_task(USER_ID, new_guid(), dict(CATEGORY_FIELDS, poi_category='bakery'))
        assert exc_info.value.field == 'poi_category'

    def test_invalid_update_keeps_previous_state(self, lifecycle, test_db_session):
        guid = new_guid()
        lifecycle.upsert_task(USER_ID, guid, CATEGORY_FIELDS)

        with pytest.raises(ValidationError):
            lifecycle.upsert_task(USER_ID, guid, {'latitude': 123.0})

        task = lifecycle.get_task(USER_ID, guid)
        assert task.latitude == 37.77


class TestStatusChanges:
    """Status changes withdraw or restore reminders."""

    def test_complete_cancels_timer(self, lifecycle, home, armed_timer, test_db_session):
        result = lifecycle.change_status(USER_ID, home.guid, StatusChange.COMPLETED, now=NOW)

        assert result.status == TaskStatus.COMPLETED
        assert result.notifications_cancelled == 1
        test_db_session.refresh(armed_timer)
        assert armed_timer.status == NotificationStatus.CANCELLED
        assert armed_timer.cancelled_reason == 'task_completed'

    def test_reopen(self, lifecycle, home, test_db_session):
        lifecycle.complete_task(home, NOW)

        result = lifecycle.change_status(USER_ID, home.guid, StatusChange.ACTIVE)

        assert result.status == TaskStatus.ACTIVE
        assert home.completed_at is None
        assert geofence_for(home, 'arrival').is_active is True

    def test_delete_cascades(self, lifecycle, home, armed_timer, test_db_session):
        lifecycle.change_status(USER_ID, home.guid, StatusChange.DELETED)

        assert test_db_session.query(Geofence).count() == 0
        assert test_db_session.query(Notification).count() == 0
        with pytest.raises(NotFoundError):
            lifecycle.get_task(USER_ID, home.guid)

    def test_mute_and_unmute(self, lifecycle, home, armed_timer, test_db_session):
        result = lifecycle.change_status(
            USER_ID, home.guid, StatusChange.MUTED,
            mute_duration=MuteDuration.HOURS_24, reason='travelling', now=NOW,
        )

        assert result.status == TaskStatus.MUTED
        assert result.mute.reason == 'travelling'
        test_db_session.refresh(armed_timer)
        assert armed_timer.cancelled_reason == 'task_muted'

        result = lifecycle.change_status(USER_ID, home.guid, StatusChange.UNMUTED)

        assert result.status == TaskStatus.ACTIVE
        mute = test_db_session.query(TaskMute).one()
        assert mute.status.value == 'cancelled'

    def test_completed_task_cannot_be_muted(self, lifecycle, home):
        lifecycle.complete_task(home, NOW)

        with pytest.raises(ValidationError):
            lifecycle.mute_task(home, MuteDuration.HOUR_1)

    def test_unknown_task(self, lifecycle):
        with pytest.raises(NotFoundError):
            lifecycle.change_status(USER_ID, new_guid(), StatusChange.COMPLETED)
