"""
Unit tests for RetentionService.

Tests retention cleanup of pipeline history:
- Events, closed notifications, replayed queue entries and idle guards
  past retention are deleted
- Recent rows, open notifications and dead queue entries are kept
- A failing step is recorded without stopping the others
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from backend.src.config.pipeline import PipelineConfig
from backend.src.models import (
    GeofenceEvent,
    IntakeGuard,
    Notification,
    QueuedEvent,
    QueuedEventStatus,
)
from backend.src.services.event_intake_service import EventIntakeService
from backend.src.services.offline_queue_service import OfflineQueueService
from backend.src.services.retention_service import RetentionService
from backend.src.services.task_lifecycle_service import TaskLifecycleService
from backend.src.utils.clock import utcnow
from backend.tests.factories import NOW, USER_ID, crossing, geofence_for, later


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def retention_service(test_db_session, pipeline_config):
    """Create a RetentionService instance with a small batch size."""
    return RetentionService(test_db_session, pipeline_config, batch_size=2)


@pytest.fixture
def pharmacy(make_task, make_subscription):
    make_subscription()
    return make_task(location_name='CVS')


@pytest.fixture
def history(pharmacy, test_db_session, pipeline_config, gateway):
    """One accepted approach: an event, a delivered notification and a guard."""
    intake = EventIntakeService(test_db_session, pipeline_config, gateway=gateway)
    intake.process_report(USER_ID, crossing(geofence_for(pharmacy, 'approach_1mi')), now=NOW)
    return pharmacy


def past_retention():
    return utcnow() + timedelta(days=31)


# ============================================================================
# Steps
# ============================================================================

class TestRunCleanup:
    """Full retention runs."""

    def test_everything_past_retention_deleted(self, retention_service, history, test_db_session):
        stats = retention_service.run_cleanup(now=past_retention())

        assert stats.events_deleted == 1
        assert stats.notifications_deleted == 1
        assert stats.guards_deleted == 1
        assert stats.total_deleted == 3
        assert stats.errors == []
        assert test_db_session.query(GeofenceEvent).count() == 0
        assert test_db_session.query(Notification).count() == 0
        assert test_db_session.query(IntakeGuard).count() == 0

    def test_recent_history_kept(self, retention_service, history):
        stats = retention_service.run_cleanup(now=utcnow())
        assert stats.total_deleted == 0

    def test_batches_cover_all_rows(self, retention_service, pharmacy, test_db_session,
                                    pipeline_config, gateway):
        intake = EventIntakeService(test_db_session, pipeline_config, gateway=gateway)
        for minutes in range(5):
            at = later(minutes=minutes)
            intake.process_report(
                USER_ID, crossing(geofence_for(pharmacy, 'approach_5mi'), occurred_at=at, confidence=0.1),
                now=at,
            )

        assert retention_service.cleanup_old_events(now=past_retention()) == 5

    def test_failing_step_does_not_stop_others(self, retention_service, history, mocker):
        mocker.patch.object(
            RetentionService,
            'cleanup_old_events',
            side_effect=OperationalError('DELETE', {}, Exception('database is locked')),
        )

        stats = retention_service.run_cleanup(now=past_retention())

        assert len(stats.errors) == 1
        assert stats.errors[0].startswith('events_deleted:')
        assert stats.notifications_deleted == 1
        assert stats.guards_deleted == 1


class TestQueueEntries:
    """Offline-queue retention."""

    def test_done_deleted_dead_kept(self, retention_service, history, test_db_session,
                                    pipeline_config, gateway):
        queue = OfflineQueueService(test_db_session, pipeline_config, gateway)
        queue.enqueue(USER_ID, crossing(geofence_for(history, 'approach_3mi')), now=NOW)
        queue.process_queue(now=later(minutes=1))
        dead = queue.enqueue(USER_ID, {'geofence_guid': 'gfn_x'}, now=NOW)
        dead.status = QueuedEventStatus.DEAD
        test_db_session.commit()

        deleted = retention_service.cleanup_replayed_queue_entries(now=later(minutes=1) + timedelta(days=31))

        assert deleted == 1
        remaining = test_db_session.query(QueuedEvent).one()
        assert remaining.status == QueuedEventStatus.DEAD

    def test_recent_done_kept(self, retention_service, history, test_db_session,
                              pipeline_config, gateway):
        queue = OfflineQueueService(test_db_session, pipeline_config, gateway)
        queue.enqueue(USER_ID, crossing(geofence_for(history, 'approach_3mi')), now=NOW)
        queue.process_queue(now=later(minutes=1))

        assert retention_service.cleanup_replayed_queue_entries(now=later(minutes=2)) == 0


class TestIntakeGuards:
    """Guard retention."""

    def test_orphaned_guards_deleted(self, retention_service, history, test_db_session, pipeline_config):
        TaskLifecycleService(test_db_session, pipeline_config).delete_task(history)

        assert retention_service.cleanup_intake_guards(now=NOW) == 1

    def test_active_cooldown_kept(self, test_db_session, history):
        config = PipelineConfig(event_retention_days=0)
        retention = RetentionService(test_db_session, config)

        # Cooldown runs until NOW + 15 min
        assert retention.cleanup_intake_guards(now=later(minutes=10)) == 0
        assert retention.cleanup_intake_guards(now=later(minutes=16)) == 1
