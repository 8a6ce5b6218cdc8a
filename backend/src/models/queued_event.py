"""
QueuedEvent model: offline event queue entries.

Holds crossing reports that could not be processed because a dependency
was unavailable. The worker replays them per user in FIFO order.
"""

import enum

from sqlalchemy import Column, Integer, String, Enum, Index, Text

from backend.src.models import Base
from backend.src.models.mixins import GuidMixin, ClaimableMixin
from backend.src.models.types import JSONBType, UTCDateTime
from backend.src.utils.clock import utcnow


class QueuedEventStatus(str, enum.Enum):
    """
    Queue entry states.

    - QUEUED: Waiting for (re)submission
    - DONE: Resubmitted and decided by intake
    - DEAD: Failed too many times; kept for manual inspection
    """
    QUEUED = "queued"
    DONE = "done"
    DEAD = "dead"


class QueuedEvent(Base, GuidMixin, ClaimableMixin):
    """
    A crossing report waiting for replay.

    Attributes:
        user_id: Reporting user
        payload: Original report as received
        enqueued_at: When it entered the queue (FIFO order key)
        attempts: Failed resubmissions
        last_error: Last failure message
        next_attempt_at: Earliest next resubmission
        status: queued, done or dead
        result_event_id: Event recorded when the entry was finally processed
    """

    __tablename__ = "queued_events"
    GUID_PREFIX = "qev"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(String(64), nullable=False, index=True)
    payload = Column(JSONBType, nullable=False)

    enqueued_at = Column(UTCDateTime(), default=utcnow, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(UTCDateTime(), nullable=True)

    status = Column(
        Enum(QueuedEventStatus, native_enum=False, length=20),
        nullable=False,
        default=QueuedEventStatus.QUEUED,
    )
    result_event_id = Column(Integer, nullable=True)
    completed_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_queued_events_user_fifo", "user_id", "status", "enqueued_at"),
    )
