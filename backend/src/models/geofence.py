"""
Geofence model for tiered proximity boundaries.

Each task owns a generated set of geofences, one per tier. Boundary
geofences are registered on the device (subject to the per-user platform
cap); the post-arrival row is a dwell timer armed by an arrival enter and
is never registered with the OS.
"""

import enum

from sqlalchemy import Column, Integer, String, Float, Boolean, ForeignKey, Enum, Index
from sqlalchemy.orm import relationship

from backend.src.models import Base
from backend.src.models.mixins import GuidMixin, TimestampMixin


class GeofenceTier(str, enum.Enum):
    """
    Escalating proximity thresholds.

    - APPROACH_5MI / APPROACH_3MI / APPROACH_1MI: heads-up while approaching
    - ARRIVAL: at the place
    - POST_ARRIVAL: still there after the dwell delay
    """
    APPROACH_5MI = "approach_5mi"
    APPROACH_3MI = "approach_3mi"
    APPROACH_1MI = "approach_1mi"
    ARRIVAL = "arrival"
    POST_ARRIVAL = "post_arrival"

    @property
    def is_approach(self) -> bool:
        return self in APPROACH_TIERS


APPROACH_TIERS = frozenset({
    GeofenceTier.APPROACH_5MI,
    GeofenceTier.APPROACH_3MI,
    GeofenceTier.APPROACH_1MI,
})


class GeofenceKind(str, enum.Enum):
    """BOUNDARY geofences are registered on the device; DWELL_TIMER rows are not."""
    BOUNDARY = "boundary"
    DWELL_TIMER = "dwell_timer"


class DeactivationReason(str, enum.Enum):
    """Why a stored geofence is not currently registered."""
    CAPACITY = "capacity"
    TASK_MUTED = "task_muted"
    TASK_INACTIVE = "task_inactive"


class Geofence(Base, GuidMixin, TimestampMixin):
    """
    One tier of a task's geofence set.

    Attributes:
        task_id: Owning task (cascade-deleted with it)
        latitude/longitude: Center coordinate
        radius_m: Radius in meters
        tier: Proximity tier
        kind: boundary or dwell_timer
        dwell_seconds: Delay before a dwell timer fires (dwell_timer only)
        is_active: Currently registered on the device
        deactivated_reason: Why the geofence is stored but inactive

    Lifecycle:
        Generated wholesale from the task classification. Activated and
        deactivated by the registry; never patched in place.
    """

    __tablename__ = "geofences"
    GUID_PREFIX = "gfn"

    id = Column(Integer, primary_key=True, autoincrement=True)

    task_id = Column(
        Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    radius_m = Column(Float, nullable=False)

    tier = Column(Enum(GeofenceTier, native_enum=False, length=20), nullable=False)
    kind = Column(
        Enum(GeofenceKind, native_enum=False, length=20),
        nullable=False,
        default=GeofenceKind.BOUNDARY,
    )
    dwell_seconds = Column(Integer, nullable=True)

    is_active = Column(Boolean, nullable=False, default=False)
    deactivated_reason = Column(
        Enum(DeactivationReason, native_enum=False, length=20), nullable=True
    )

    task = relationship("Task", back_populates="geofences")

    __table_args__ = (
        Index("ix_geofences_task_tier", "task_id", "tier", unique=True),
    )

    @property
    def is_boundary(self) -> bool:
        return self.kind == GeofenceKind.BOUNDARY

    def __repr__(self) -> str:
        return (
            f"<Geofence(id={self.id}, task_id={self.task_id}, tier={self.tier}, "
            f"radius_m={self.radius_m}, active={self.is_active})>"
        )
