"""
Push subscription service for managing Web Push subscriptions.

Provides business logic for subscribing, unsubscribing and listing the
device subscriptions reminders are delivered to.
"""

from typing import List, Optional

from sqlalchemy.orm import Session

from backend.src.models.push_subscription import PushSubscription
from backend.src.services.exceptions import NotFoundError
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")


class PushSubscriptionService:
    """
    Service for managing Web Push subscriptions.

    Handles subscription lifecycle:
    - Create (upsert by endpoint)
    - Remove (by endpoint or GUID)
    - List (by user)
    """

    def __init__(self, db: Session):
        self.db = db

    def create_subscription(
        self,
        user_id: str,
        endpoint: str,
        p256dh_key: str,
        auth_key: str,
        device_name: Optional[str] = None,
    ) -> PushSubscription:
        """
        Create or replace a push subscription.

        An existing subscription with the same endpoint is updated and
        transferred to ``user_id`` (a device changed hands or re-subscribed).

        Args:
            user_id: Owning user
            endpoint: Push service endpoint URL
            p256dh_key: ECDH public key (Base64url)
            auth_key: Auth secret (Base64url)
            device_name: Optional user-friendly device label

        Returns:
            Created or updated PushSubscription
        """
        existing = (
            self.db.query(PushSubscription)
            .filter(PushSubscription.endpoint == endpoint)
            .first()
        )

        if existing:
            existing.user_id = user_id
            existing.p256dh_key = p256dh_key
            existing.auth_key = auth_key
            existing.device_name = device_name
            self.db.commit()
            self.db.refresh(existing)
            logger.info(
                "Updated push subscription",
                extra={"endpoint_prefix": endpoint[:60], "user_id": user_id},
            )
            return existing

        subscription = PushSubscription(
            user_id=user_id,
            endpoint=endpoint,
            p256dh_key=p256dh_key,
            auth_key=auth_key,
            device_name=device_name,
        )
        self.db.add(subscription)
        self.db.commit()
        self.db.refresh(subscription)
        logger.info(
            "Created push subscription",
            extra={"guid": subscription.guid, "user_id": user_id},
        )
        return subscription

    def remove_subscription(self, user_id: str, endpoint: str) -> bool:
        """
        Remove a push subscription by endpoint for a specific user.

        Raises:
            NotFoundError: If no subscription matches endpoint + user
        """
        subscription = (
            self.db.query(PushSubscription)
            .filter(
                PushSubscription.endpoint == endpoint,
                PushSubscription.user_id == user_id,
            )
            .first()
        )

        if not subscription:
            raise NotFoundError("PushSubscription", endpoint[:60])

        self.db.delete(subscription)
        self.db.commit()
        logger.info(
            "Removed push subscription",
            extra={"endpoint_prefix": endpoint[:60], "user_id": user_id},
        )
        return True

    def remove_subscription_by_guid(self, user_id: str, guid: str) -> bool:
        """
        Remove a push subscription by its GUID (e.g. a lost device).

        Raises:
            NotFoundError: If no subscription matches guid + user
        """
        try:
            sub_uuid = PushSubscription.parse_guid(guid)
        except ValueError:
            raise NotFoundError("PushSubscription", guid)

        subscription = (
            self.db.query(PushSubscription)
            .filter(
                PushSubscription.uuid == sub_uuid,
                PushSubscription.user_id == user_id,
            )
            .first()
        )

        if not subscription:
            raise NotFoundError("PushSubscription", guid)

        self.db.delete(subscription)
        self.db.commit()
        logger.info(
            "Removed push subscription by GUID",
            extra={"guid": guid, "user_id": user_id},
        )
        return True

    def list_subscriptions(self, user_id: str) -> List[PushSubscription]:
        """All push subscriptions of a user, newest first."""
        return (
            self.db.query(PushSubscription)
            .filter(PushSubscription.user_id == user_id)
            .order_by(PushSubscription.created_at.desc())
            .all()
        )
