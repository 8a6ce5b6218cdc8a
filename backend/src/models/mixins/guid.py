"""
GUID mixin for SQLAlchemy models.

Provides UUID-based Global Unique Identifiers for every pipeline entity.
Uses UUIDv7 (time-ordered) with Crockford's Base32 encoding for URL-safe
identifiers that stay unique across devices and services.

GUID Format: {prefix}_{base32_uuid}
Examples:
    - tsk_01hgw2bbg0000000000000000 (Task)
    - gfn_01hgw2bbg0000000000000001 (Geofence)
    - ntf_01hgw2bbg0000000000000002 (Notification)
"""

import re
import uuid as uuid_module
from typing import ClassVar

import base32_crockford
from sqlalchemy import Column, TypeDecorator, LargeBinary
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from uuid_extensions import uuid7


# Crockford Base32 body of a GUID (excludes I, L, O, U)
_GUID_BODY = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$", re.IGNORECASE)


class UUIDType(TypeDecorator):
    """
    Platform-independent UUID type.

    Uses PostgreSQL's native UUID type when available,
    otherwise stores as 16-byte LargeBinary for SQLite.

    Always presents as a Python UUID object.
    """

    impl = LargeBinary
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        else:
            return dialect.type_descriptor(LargeBinary(16))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, uuid_module.UUID):
            value = (
                uuid_module.UUID(bytes=value)
                if isinstance(value, bytes)
                else uuid_module.UUID(str(value))
            )
        if dialect.name == 'postgresql':
            return value
        return value.bytes

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid_module.UUID):
            return value
        if isinstance(value, bytes):
            return uuid_module.UUID(bytes=value)
        return uuid_module.UUID(str(value))


def encode_guid(prefix: str, value: uuid_module.UUID) -> str:
    """Encode a UUID as ``{prefix}_{base32}``."""
    encoded = base32_crockford.encode(int.from_bytes(value.bytes, "big"))
    return f"{prefix}_{encoded.zfill(26).lower()}"


class GuidMixin:
    """
    Mixin providing GUID (Global Unique Identifier) support for entities.

    Adds:
    - uuid: UUID column (UUIDv7, time-ordered)
    - guid: Property returning prefixed Base32 string
    - parse_guid: Class method to decode GUID strings

    Entity Prefixes:
        - tsk: Task
        - gfn: Geofence
        - gev: GeofenceEvent
        - ntf: Notification
        - snz: NotificationSnooze
        - mut: TaskMute
        - qev: QueuedEvent
        - sub: PushSubscription
    """

    # Subclasses define their 3-character prefix
    GUID_PREFIX: ClassVar[str]

    # PostgreSQL: native UUID; SQLite: LargeBinary(16)
    uuid = Column(
        UUIDType(),
        nullable=False,
        unique=True,
        index=True,
        default=uuid7,
    )

    @property
    def guid(self) -> str:
        """
        Get the full GUID with prefix.

        Returns:
            GUID in format {prefix}_{base32_uuid}, or None before flush
        """
        if self.uuid is None:
            return None
        return encode_guid(self.GUID_PREFIX, self.uuid)

    @classmethod
    def parse_guid(cls, guid: str) -> uuid_module.UUID:
        """
        Parse a GUID string to a UUID object.

        Args:
            guid: GUID string (e.g., "tsk_01hgw2bbg...")

        Returns:
            UUID object

        Raises:
            ValueError: If the GUID format is invalid or prefix doesn't match
        """
        if not guid:
            raise ValueError("GUID cannot be empty")

        expected_prefix = f"{cls.GUID_PREFIX}_"
        if not guid.lower().startswith(expected_prefix):
            raise ValueError(
                f"Invalid prefix for {cls.__name__}. "
                f"Expected '{cls.GUID_PREFIX}', got '{guid.split('_')[0]}'"
            )

        encoded_part = guid[len(expected_prefix):]
        if not _GUID_BODY.match(encoded_part):
            raise ValueError(
                f"Invalid GUID body for {cls.__name__}: expected 26 Crockford "
                f"Base32 characters"
            )

        try:
            uuid_int = base32_crockford.decode(encoded_part.upper())
            return uuid_module.UUID(bytes=uuid_int.to_bytes(16, "big"))
        except (ValueError, OverflowError) as e:
            raise ValueError(f"Invalid GUID encoding: {e}")
