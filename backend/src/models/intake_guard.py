"""
IntakeGuard model: backing row for atomic cooldown/dedup checks.

One row per (user, task, geofence, event type). Intake claims the row with
a conditional UPDATE that only matches when the cooldown has elapsed and
the last accepted report lies outside the dedup window, so two
near-simultaneous reports can never both pass.
"""

from sqlalchemy import Column, Integer, String, UniqueConstraint, Enum

from backend.src.models import Base
from backend.src.models.geofence_event import EventType
from backend.src.models.types import UTCDateTime


class IntakeGuard(Base):
    """
    Last accepted report and cooldown end for one geofence transition.

    Attributes:
        user_id / task_id / geofence_id / event_type: Guard key
        last_accepted_at: Client time of the last accepted report
        cooldown_until: No report is accepted before this time
    """

    __tablename__ = "intake_guards"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(String(64), nullable=False)
    task_id = Column(Integer, nullable=False)
    geofence_id = Column(Integer, nullable=False)
    event_type = Column(Enum(EventType, native_enum=False, length=10), nullable=False)

    last_accepted_at = Column(UTCDateTime(), nullable=True)
    cooldown_until = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "task_id", "geofence_id", "event_type",
            name="uq_intake_guards_key",
        ),
    )
