"""
Unit tests for OfflineQueueService.

Tests both paths back into intake:
- Replay of queued reports in per-user FIFO order
- Transient failures stop a user's run and back off
- Entries go dead after the configured attempts and can be requeued
- Bulk sync processes items chronologically, rejecting malformed ones
"""

import pytest
from sqlalchemy.exc import OperationalError

from backend.src.config.pipeline import PipelineConfig
from backend.src.models import GeofenceEvent, QueuedEvent, QueuedEventStatus
from backend.src.services.event_intake_service import EventIntakeService
from backend.src.services.exceptions import NotFoundError
from backend.src.services.offline_queue_service import OfflineQueueService
from backend.tests.factories import (
    NOW,
    OTHER_USER_ID,
    USER_ID,
    crossing,
    geofence_for,
    later,
)


@pytest.fixture
def queue(test_db_session, pipeline_config, gateway):
    return OfflineQueueService(test_db_session, pipeline_config, gateway)


@pytest.fixture
def pharmacy(make_task, make_subscription):
    make_subscription()
    return make_task(location_name='CVS')


@pytest.fixture
def store_down(mocker):
    """Every intake attempt hits a locked database."""
    return mocker.patch.object(
        EventIntakeService,
        '_process',
        side_effect=OperationalError('INSERT', {}, Exception('database is locked')),
    )


def entries(db):
    return db.query(QueuedEvent).order_by(QueuedEvent.id).all()


class TestReplay:
    """Queue worker replay."""

    def test_replays_in_order(self, queue, pharmacy, test_db_session):
        first = queue.enqueue(USER_ID, crossing(geofence_for(pharmacy, 'approach_5mi')), 'db down', now=NOW)
        second = queue.enqueue(
            USER_ID, crossing(geofence_for(pharmacy, 'approach_3mi'), occurred_at=later(seconds=30)),
            'db down', now=later(seconds=30),
        )

        result = queue.process_queue(now=later(minutes=2))

        assert result.claimed == 2
        assert result.completed == 2
        test_db_session.refresh(first)
        test_db_session.refresh(second)
        assert first.status == QueuedEventStatus.DONE
        assert first.claim_token is None
        assert first.result_event_id < second.result_event_id
        assert test_db_session.query(GeofenceEvent).count() == 2

    def test_transient_failure_stops_user_run(self, queue, pharmacy, test_db_session, store_down):
        queue.enqueue(USER_ID, crossing(geofence_for(pharmacy, 'approach_5mi')), now=NOW)
        queue.enqueue(USER_ID, crossing(geofence_for(pharmacy, 'approach_3mi')), now=later(seconds=1))

        result = queue.process_queue(now=later(minutes=1))

        assert result.retried == 1
        assert result.completed == 0
        head, tail = entries(test_db_session)
        assert head.attempts == 1
        assert head.last_error == 'database is locked'
        assert head.next_attempt_at == later(minutes=2)
        assert tail.attempts == 0
        assert tail.claim_token is None
        assert store_down.call_count == 1

    def test_backing_off_head_holds_user(self, queue, pharmacy, store_down):
        queue.enqueue(USER_ID, crossing(geofence_for(pharmacy, 'approach_5mi')), now=NOW)
        queue.enqueue(USER_ID, crossing(geofence_for(pharmacy, 'approach_3mi')), now=later(seconds=1))
        queue.process_queue(now=later(minutes=1))
        store_down.reset_mock()

        result = queue.process_queue(now=later(minutes=1, seconds=30))

        assert result.completed == 0
        assert store_down.call_count == 0

    def test_other_users_unaffected(self, queue, pharmacy, make_task, test_db_session, mocker):
        other_task = make_task(user_id=OTHER_USER_ID)
        queue.enqueue(USER_ID, crossing(geofence_for(pharmacy, 'approach_5mi')), now=NOW)
        queue.enqueue(OTHER_USER_ID, crossing(geofence_for(other_task, 'approach_5mi')), now=NOW)

        original = EventIntakeService._process

        def fail_for_alice(self, user_id, report, now):
            if user_id == USER_ID:
                raise OperationalError('INSERT', {}, Exception('database is locked'))
            return original(self, user_id, report, now)

        mocker.patch.object(EventIntakeService, '_process', fail_for_alice)

        result = queue.process_queue(now=later(minutes=1))

        assert result.retried == 1
        assert result.completed == 1

    def test_invalid_report_completes_with_error(self, queue, pharmacy, test_db_session):
        entry = queue.enqueue(OTHER_USER_ID, crossing(geofence_for(pharmacy, 'approach_5mi')), now=NOW)

        result = queue.process_queue(now=later(minutes=1))

        assert result.completed == 1
        test_db_session.refresh(entry)
        assert entry.status == QueuedEventStatus.DONE
        assert entry.last_error == 'Geofence belongs to another user'


class TestDeadEntries:
    """Attempt budget and manual requeue."""

    @pytest.fixture
    def dead_entry(self, test_db_session, gateway, pharmacy, store_down):
        queue = OfflineQueueService(test_db_session, PipelineConfig(offline_queue_max_attempts=2), gateway)
        entry = queue.enqueue(USER_ID, crossing(geofence_for(pharmacy, 'approach_5mi')), now=NOW)
        queue.process_queue(now=NOW)
        result = queue.process_queue(now=later(minutes=1))
        assert result.dead == 1
        return entry

    def test_dead_after_max_attempts(self, queue, dead_entry, test_db_session):
        test_db_session.refresh(dead_entry)
        assert dead_entry.status == QueuedEventStatus.DEAD
        assert dead_entry.attempts == 2
        assert dead_entry.next_attempt_at is None
        assert [e.guid for e in queue.list_dead(USER_ID)] == [dead_entry.guid]

    def test_dead_entries_not_replayed(self, queue, dead_entry, store_down):
        store_down.reset_mock()
        assert queue.process_queue(now=later(minutes=30)).claimed == 0

    def test_requeue(self, queue, dead_entry):
        entry = queue.requeue_dead(dead_entry.guid, USER_ID, now=later(minutes=5))

        assert entry.status == QueuedEventStatus.QUEUED
        assert entry.attempts == 0
        assert queue.list_dead(USER_ID) == []

    def test_requeue_unknown(self, queue):
        with pytest.raises(NotFoundError):
            queue.requeue_dead('qev_00000000000000000000000000', USER_ID)

    def test_stats(self, queue, dead_entry):
        stats = queue.get_stats(USER_ID)
        assert stats == {'queued': 0, 'done': 0, 'dead': 1, 'oldest_queued_at': None}


class TestBulkSync:
    """Batches buffered by offline clients."""

    def test_chronological_with_malformed_first(self, queue, pharmacy, test_db_session):
        items = [
            crossing(geofence_for(pharmacy, 'approach_1mi'), occurred_at=later(minutes=1),
                     client_event_id='b'),
            {'event_type': 'enter', 'client_event_id': 'bad'},
            crossing(geofence_for(pharmacy, 'approach_3mi'), occurred_at=NOW, client_event_id='a'),
        ]

        results = queue.process_batch(USER_ID, items, now=later(minutes=2))

        assert [r.client_event_id for r in results] == ['bad', 'a', 'b']
        assert results[0].accepted is False
        assert results[0].retryable is False
        assert all(r.accepted for r in results[1:])
        events = test_db_session.query(GeofenceEvent).order_by(GeofenceEvent.id).all()
        assert [e.client_event_id for e in events if e.client_event_id in ('a', 'b')] == ['a', 'b']

    def test_suppressed_items_reported(self, queue, pharmacy):
        items = [
            crossing(geofence_for(pharmacy, 'approach_1mi'), client_event_id='a'),
            crossing(geofence_for(pharmacy, 'approach_1mi'), occurred_at=later(minutes=1),
                     client_event_id='b'),
        ]

        results = queue.process_batch(USER_ID, items, now=later(minutes=2))

        assert results[0].accepted is True
        assert results[1].accepted is False
        assert results[1].reason.value == 'notification_active'

    def test_transient_items_queued(self, queue, pharmacy, store_down, test_db_session):
        results = queue.process_batch(
            USER_ID, [crossing(geofence_for(pharmacy, 'approach_1mi'), client_event_id='a')], now=NOW
        )

        assert results[0].queued is True
        assert results[0].retryable is True
        assert test_db_session.query(QueuedEvent).count() == 1
