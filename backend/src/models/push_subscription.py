"""
PushSubscription model for Web Push notification subscriptions.

Stores the push service endpoint and encryption keys needed to deliver
reminders to one of a user's devices.
"""

from sqlalchemy import Column, Integer, String

from backend.src.models import Base
from backend.src.models.mixins import GuidMixin, TimestampMixin
from backend.src.models.types import UTCDateTime


class PushSubscription(Base, GuidMixin, TimestampMixin):
    """
    Web Push subscription for a specific user on a specific device.

    Attributes:
        endpoint: Push service URL (unique per subscription)
        p256dh_key: ECDH public key for payload encryption (Base64url)
        auth_key: Auth secret for message authentication (Base64url)
        device_name: Optional user-friendly label (e.g., "Pixel 8")
        last_used_at: Timestamp of last successful push delivery

    Lifecycle:
        Created when the user enables notifications on a device.
        Removed when the user disables notifications or the push
        service returns 404/410.
    """

    __tablename__ = "push_subscriptions"
    GUID_PREFIX = "sub"

    id = Column(Integer, primary_key=True, autoincrement=True)

    user_id = Column(String(64), nullable=False, index=True)

    endpoint = Column(String(1024), nullable=False, unique=True)
    p256dh_key = Column(String(255), nullable=False)
    auth_key = Column(String(255), nullable=False)

    device_name = Column(String(100), nullable=True)
    last_used_at = Column(UTCDateTime(), nullable=True)
