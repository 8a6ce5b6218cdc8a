"""
Timestamp mixin for SQLAlchemy models.

All pipeline timestamps are timezone-aware UTC (see UTCDateTime).
"""

from sqlalchemy import Column

from backend.src.models.types import UTCDateTime
from backend.src.utils.clock import utcnow


class TimestampMixin:
    """
    Mixin providing created_at / updated_at columns.

    Adds:
    - created_at: Set on insert
    - updated_at: Set on insert and on every ORM update
    """

    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)
