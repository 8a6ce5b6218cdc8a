"""
Offline event queue.

Two paths feed crossing reports back into intake:

- Replay: reports that hit a transient failure are stored with their
  original payload and resubmitted by a worker, per user in FIFO order
  (enqueued_at, id). A transient failure stops that user's run so later
  reports never overtake an earlier one. After the configured number of
  failed attempts an entry is marked dead and kept for inspection.
- Bulk sync: a batch buffered by an offline client is processed item by
  item in chronological order, each in its own transaction, returning a
  per-item result so the client can clear what was accepted.
"""

from dataclasses import dataclass
from datetime import datetime
from itertools import groupby
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from backend.src.config.pipeline import PipelineConfig
from backend.src.models import QueuedEvent, QueuedEventStatus
from backend.src.schemas.events import CrossingResult
from backend.src.services.event_intake_service import EventIntakeService, parse_report
from backend.src.services.exceptions import (
    NotFoundError,
    TransientDependencyError,
    ValidationError,
)
from backend.src.services.push_gateway import PushGateway
from backend.src.services.row_claims import claim_rows, release
from backend.src.utils.clock import ensure_utc, utcnow
from backend.src.utils.logging_config import get_logger


logger = get_logger("queue")


@dataclass
class QueueRunResult:
    """What one queue worker run did."""

    claimed: int = 0
    completed: int = 0
    retried: int = 0
    dead: int = 0
    users_skipped: int = 0


class OfflineQueueService:
    """
    Buffers and replays crossing reports.

    Usage:
        >>> queue = OfflineQueueService(db, config, gateway)
        >>> queue.enqueue(user_id, payload, "database unavailable")
        >>> queue.process_queue()
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

    def _intake(self) -> EventIntakeService:
        return EventIntakeService(self.db, self.config, gateway=self.gateway)

    # ========================================================================
    # Replay
    # ========================================================================

    def enqueue(
        self,
        user_id: str,
        payload: Dict[str, Any],
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> QueuedEvent:
        """Store a report for later replay. Commits."""
        now = now or utcnow()
        entry = QueuedEvent(
            user_id=user_id,
            payload=payload,
            enqueued_at=now,
            attempts=0,
            last_error=error,
            next_attempt_at=now,
            status=QueuedEventStatus.QUEUED,
        )
        self.db.add(entry)
        self.db.commit()
        logger.info(
            "Report queued for replay",
            extra={"queued_guid": entry.guid, "user_id": user_id, "error": error},
        )
        return entry

    def process_queue(self, now: Optional[datetime] = None, limit: int = 200) -> QueueRunResult:
        """
        Replay queued reports, per user in FIFO order.

        A user is skipped for this run when an older entry of theirs is
        held by another worker, or when their oldest entry is still
        backing off.
        """
        now = now or utcnow()
        result = QueueRunResult()

        _, rows = claim_rows(
            self.db,
            QueuedEvent,
            criteria=[QueuedEvent.status == QueuedEventStatus.QUEUED],
            order_by=[QueuedEvent.user_id, QueuedEvent.enqueued_at, QueuedEvent.id],
            now=now,
            lease=self.config.claim_lease,
            limit=limit,
        )
        result.claimed = len(rows)

        for user_id, group in groupby(rows, key=lambda row: row.user_id):
            entries = list(group)
            if self._older_entry_held_elsewhere(user_id, entries[0]):
                result.users_skipped += 1
                self._release_all(entries)
                continue
            self._replay_user(user_id, entries, now, result)

        if result.claimed:
            logger.info(
                "Queue run completed",
                extra={
                    "claimed": result.claimed,
                    "completed": result.completed,
                    "retried": result.retried,
                    "dead": result.dead,
                },
            )
        return result

    def _replay_user(
        self, user_id: str, entries: List[QueuedEvent], now: datetime, result: QueueRunResult
    ) -> None:
        for index, entry in enumerate(entries):
            due = ensure_utc(entry.next_attempt_at)
            if due is not None and due > now:
                self._release_all(entries[index:])
                return

            try:
                outcome = self._intake().process_report(user_id, entry.payload, now)
            except TransientDependencyError as e:
                self._record_failure(entry, e.message, now, result)
                self._release_all(entries[index:])
                return
            except ValidationError as e:
                self._complete(entry, now, error=e.message)
                result.completed += 1
                continue

            self._complete(
                entry,
                now,
                event_id=outcome.event.id if outcome.event is not None else None,
                error=outcome.error,
            )
            result.completed += 1

    def _complete(
        self,
        entry: QueuedEvent,
        now: datetime,
        event_id: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        entry.status = QueuedEventStatus.DONE
        entry.completed_at = now
        entry.result_event_id = event_id
        if error:
            entry.last_error = error
        release(entry)
        self.db.commit()
        logger.debug("Queued report replayed", extra={"queued_guid": entry.guid, "error": error})

    def _record_failure(
        self, entry: QueuedEvent, error: str, now: datetime, result: QueueRunResult
    ) -> None:
        entry.attempts += 1
        entry.last_error = error
        if entry.attempts >= self.config.offline_queue_max_attempts:
            entry.status = QueuedEventStatus.DEAD
            entry.next_attempt_at = None
            result.dead += 1
            logger.error(
                "Queued report moved to dead state",
                extra={"queued_guid": entry.guid, "attempts": entry.attempts, "error": error},
            )
        else:
            entry.next_attempt_at = now + self.config.retry_delay(entry.attempts)
            result.retried += 1
            logger.warning(
                "Queued report replay failed",
                extra={"queued_guid": entry.guid, "attempts": entry.attempts, "error": error},
            )
        self.db.commit()

    def _older_entry_held_elsewhere(self, user_id: str, head: QueuedEvent) -> bool:
        older = (
            self.db.query(QueuedEvent.id)
            .filter(
                QueuedEvent.user_id == user_id,
                QueuedEvent.status == QueuedEventStatus.QUEUED,
                QueuedEvent.id != head.id,
                (QueuedEvent.enqueued_at < head.enqueued_at)
                | ((QueuedEvent.enqueued_at == head.enqueued_at) & (QueuedEvent.id < head.id)),
            )
            .first()
        )
        return older is not None

    def _release_all(self, entries: List[QueuedEvent]) -> None:
        for entry in entries:
            release(entry)
        self.db.commit()

    # ========================================================================
    # Bulk sync
    # ========================================================================

    def process_batch(
        self,
        user_id: str,
        items: List[Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> List[CrossingResult]:
        """
        Process a batch buffered by an offline client.

        Items are handled independently in chronological order; malformed
        items are rejected without affecting the rest.

        Returns:
            One result per item, in processing order
        """
        now = now or utcnow()
        results: List[CrossingResult] = []
        valid: List[Tuple[datetime, int, Dict[str, Any]]] = []

        for position, item in enumerate(items):
            client_event_id = item.get("client_event_id") if isinstance(item, dict) else None
            try:
                report = parse_report(item)
            except ValidationError as e:
                results.append(CrossingResult(
                    accepted=False,
                    retryable=False,
                    client_event_id=str(client_event_id) if client_event_id is not None else None,
                    error=e.message,
                ))
                continue
            valid.append((ensure_utc(report.occurred_at), position, report))

        valid.sort(key=lambda entry: (entry[0], entry[1]))
        intake = self._intake()
        for _, _, report in valid:
            try:
                outcome = intake.report_crossing(user_id, report, now)
                results.append(outcome.to_result(report.client_event_id))
            except ValidationError as e:
                results.append(CrossingResult(
                    accepted=False,
                    retryable=False,
                    client_event_id=report.client_event_id,
                    error=e.message,
                ))
            except TransientDependencyError as e:
                results.append(CrossingResult(
                    accepted=False,
                    retryable=True,
                    client_event_id=report.client_event_id,
                    error=e.message,
                ))

        accepted = sum(1 for r in results if r.accepted)
        logger.info(
            "Bulk sync processed",
            extra={"user_id": user_id, "items": len(items), "accepted": accepted},
        )
        return results

    # ========================================================================
    # Inspection
    # ========================================================================

    def list_dead(self, user_id: Optional[str] = None, limit: int = 100) -> List[QueuedEvent]:
        """Dead entries, oldest first."""
        query = self.db.query(QueuedEvent).filter(QueuedEvent.status == QueuedEventStatus.DEAD)
        if user_id is not None:
            query = query.filter(QueuedEvent.user_id == user_id)
        return query.order_by(QueuedEvent.enqueued_at, QueuedEvent.id).limit(limit).all()

    def requeue_dead(self, guid: str, user_id: Optional[str] = None, now: Optional[datetime] = None) -> QueuedEvent:
        """
        Put a dead entry back in the queue with a fresh attempt budget.

        Raises:
            NotFoundError: If no dead entry matches
        """
        now = now or utcnow()
        try:
            uuid_value = QueuedEvent.parse_guid(guid)
        except ValueError:
            raise NotFoundError("QueuedEvent", guid)

        query = self.db.query(QueuedEvent).filter(
            QueuedEvent.uuid == uuid_value,
            QueuedEvent.status == QueuedEventStatus.DEAD,
        )
        if user_id is not None:
            query = query.filter(QueuedEvent.user_id == user_id)
        entry = query.first()
        if entry is None:
            raise NotFoundError("QueuedEvent", guid)

        entry.status = QueuedEventStatus.QUEUED
        entry.attempts = 0
        entry.next_attempt_at = now
        release(entry)
        self.db.commit()
        logger.info("Dead report requeued", extra={"queued_guid": entry.guid})
        return entry

    def get_stats(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Entry counts by status, plus the age of the oldest queued entry."""
        query = self.db.query(QueuedEvent.status, func.count(QueuedEvent.id))
        if user_id is not None:
            query = query.filter(QueuedEvent.user_id == user_id)
        counts = {status.value: 0 for status in QueuedEventStatus}
        for status, count in query.group_by(QueuedEvent.status).all():
            counts[QueuedEventStatus(status).value] = count

        oldest_query = self.db.query(func.min(QueuedEvent.enqueued_at)).filter(
            QueuedEvent.status == QueuedEventStatus.QUEUED
        )
        if user_id is not None:
            oldest_query = oldest_query.filter(QueuedEvent.user_id == user_id)
        oldest = oldest_query.scalar()

        return {
            "queued": counts[QueuedEventStatus.QUEUED.value],
            "done": counts[QueuedEventStatus.DONE.value],
            "dead": counts[QueuedEventStatus.DEAD.value],
            "oldest_queued_at": ensure_utc(oldest) if oldest else None,
        }
