"""
Task model for location-bound reminders.

Tasks are authored by the task CRUD service and synced into the pipeline.
A task is bound either to a specific place (home, work or a custom place)
or to a POI category (any pharmacy, any gas station, ...). The binding is
the task's classification and determines its geofence tiers.
"""

import enum
import hashlib

from sqlalchemy import Column, Integer, String, Float, Text, Enum, Index
from sqlalchemy.orm import relationship, validates

from backend.src.models import Base
from backend.src.models.mixins import GuidMixin, TimestampMixin
from backend.src.models.types import UTCDateTime


class TaskStatus(str, enum.Enum):
    """
    Task status enumeration.

    - ACTIVE: Eligible for reminders
    - COMPLETED: Done; geofences deactivated, notifications cancelled
    - MUTED: Temporarily or permanently silenced via a TaskMute
    """
    ACTIVE = "active"
    COMPLETED = "completed"
    MUTED = "muted"


class LocationType(str, enum.Enum):
    """How a task is bound to the world."""
    PLACE = "place"
    POI_CATEGORY = "poi_category"


class PlaceType(str, enum.Enum):
    """Kind of a specific place binding."""
    HOME = "home"
    WORK = "work"
    CUSTOM = "custom"


class PoiCategory(str, enum.Enum):
    """Supported point-of-interest categories."""
    GAS = "gas"
    PHARMACY = "pharmacy"
    GROCERY = "grocery"
    BANK = "bank"
    POST_OFFICE = "post_office"


class Task(Base, GuidMixin, TimestampMixin):
    """
    A reminder tied to a place or a POI category.

    Attributes:
        user_id: Owning user (identifier issued by the auth collaborator)
        title: Task text used in notification copy
        location_type: place or poi_category
        place_type: home/work/custom (place tasks only)
        poi_category: Category tag (category tasks only)
        location_name: Display name of the place or resolved POI
        latitude/longitude: Place center, or anchor POI for category tasks
        custom_approach_miles: Optional override of the outermost approach radius
        custom_arrival_meters: Optional override of the arrival radius
        status: active, completed or muted
        completed_at: When the task was completed

    Relationships:
        geofences: Generated geofences (cascade-deleted)
        notifications: Notifications raised for the task (cascade-deleted)
    """

    __tablename__ = "tasks"
    GUID_PREFIX = "tsk"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(String(64), nullable=False, index=True)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    # Classification
    location_type = Column(
        Enum(LocationType, native_enum=False, length=20), nullable=False
    )
    place_type = Column(Enum(PlaceType, native_enum=False, length=20), nullable=True)
    poi_category = Column(Enum(PoiCategory, native_enum=False, length=20), nullable=True)

    location_name = Column(String(200), nullable=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)

    custom_approach_miles = Column(Float, nullable=True)
    custom_arrival_meters = Column(Float, nullable=True)

    status = Column(
        Enum(TaskStatus, native_enum=False, length=20),
        nullable=False,
        default=TaskStatus.ACTIVE,
    )
    completed_at = Column(UTCDateTime(), nullable=True)

    # Fingerprint of the classification that produced the current geofences
    geofence_fingerprint = Column(String(64), nullable=True)

    geofences = relationship(
        "Geofence",
        back_populates="task",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    notifications = relationship(
        "Notification",
        back_populates="task",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_tasks_user_status", "user_id", "status"),
    )

    _ENUM_FIELDS = {
        "location_type": LocationType,
        "place_type": PlaceType,
        "poi_category": PoiCategory,
        "status": TaskStatus,
    }

    @validates("location_type", "place_type", "poi_category", "status")
    def validate_enum_field(self, key: str, value):
        """Coerce raw strings to their enum.

        Raises:
            ValueError: If the value is not a member of the field's enum.
        """
        if value is None or value == "":
            return None
        return self._ENUM_FIELDS[key](value)

    @property
    def is_active(self) -> bool:
        return self.status == TaskStatus.ACTIVE

    @property
    def display_name(self) -> str:
        """Name used in notification copy."""
        if self.location_name:
            return self.location_name
        if self.poi_category is not None:
            return self.poi_category.value.replace("_", " ")
        if self.place_type is not None:
            return self.place_type.value
        return "your destination"

    def classification_key(self) -> str:
        """Stable fingerprint of everything that shapes the geofence set."""
        raw = "|".join(
            str(part) for part in (
                self.location_type.value if self.location_type else None,
                self.place_type.value if self.place_type else None,
                self.poi_category.value if self.poi_category else None,
                round(self.latitude, 6),
                round(self.longitude, 6),
                self.custom_approach_miles,
                self.custom_arrival_meters,
            )
        )
        return hashlib.sha1(raw.encode("utf-8")).hexdigest()

    def __repr__(self) -> str:
        return f"<Task(id={self.id}, title='{self.title}', status={self.status})>"
