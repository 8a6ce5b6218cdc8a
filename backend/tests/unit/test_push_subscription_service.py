"""
Unit tests for PushSubscriptionService.

Tests subscription create (upsert by endpoint), remove and list.
"""

import pytest

from backend.src.models.push_subscription import PushSubscription
from backend.src.services.exceptions import NotFoundError
from backend.src.services.push_subscription_service import PushSubscriptionService
from backend.tests.factories import OTHER_USER_ID, USER_ID


ENDPOINT = "https://push.example.com/sub/1"


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def push_service(test_db_session):
    """Create a PushSubscriptionService instance."""
    return PushSubscriptionService(db=test_db_session)


# ============================================================================
# Test: create_subscription
# ============================================================================


class TestCreateSubscription:
    """Tests for PushSubscriptionService.create_subscription."""

    def test_creates_new_subscription(self, push_service):
        """Should create a new subscription record."""
        sub = push_service.create_subscription(
            user_id=USER_ID,
            endpoint=ENDPOINT,
            p256dh_key="test-p256dh",
            auth_key="test-auth",
            device_name="Pixel 8",
        )
        assert sub.id is not None
        assert sub.guid.startswith("sub_")
        assert sub.endpoint == ENDPOINT
        assert sub.device_name == "Pixel 8"

    def test_upserts_existing_endpoint(self, push_service, test_db_session):
        """Should update keys when the endpoint already exists."""
        push_service.create_subscription(
            user_id=USER_ID, endpoint=ENDPOINT, p256dh_key="old-key", auth_key="old-auth"
        )
        updated = push_service.create_subscription(
            user_id=USER_ID, endpoint=ENDPOINT, p256dh_key="new-key", auth_key="new-auth"
        )
        assert updated.p256dh_key == "new-key"
        assert updated.auth_key == "new-auth"
        assert test_db_session.query(PushSubscription).count() == 1

    def test_transfers_endpoint_to_new_user(self, push_service):
        """A re-subscribed device moves to its new owner."""
        push_service.create_subscription(
            user_id=USER_ID, endpoint=ENDPOINT, p256dh_key="k", auth_key="a"
        )
        sub = push_service.create_subscription(
            user_id=OTHER_USER_ID, endpoint=ENDPOINT, p256dh_key="k", auth_key="a"
        )
        assert sub.user_id == OTHER_USER_ID
        assert push_service.list_subscriptions(USER_ID) == []


# ============================================================================
# Test: remove_subscription / remove_subscription_by_guid
# ============================================================================


class TestRemoveSubscription:
    """Tests for subscription removal."""

    def test_remove_by_endpoint(self, push_service, make_subscription, test_db_session):
        sub = make_subscription()
        assert push_service.remove_subscription(USER_ID, sub.endpoint) is True
        assert test_db_session.query(PushSubscription).count() == 0

    def test_remove_other_users_endpoint(self, push_service, make_subscription):
        sub = make_subscription()
        with pytest.raises(NotFoundError):
            push_service.remove_subscription(OTHER_USER_ID, sub.endpoint)

    def test_remove_by_guid(self, push_service, make_subscription):
        sub = make_subscription()
        assert push_service.remove_subscription_by_guid(USER_ID, sub.guid) is True
        assert push_service.list_subscriptions(USER_ID) == []

    def test_remove_by_invalid_guid(self, push_service):
        with pytest.raises(NotFoundError):
            push_service.remove_subscription_by_guid(USER_ID, "not-a-guid")


class TestListSubscriptions:
    """Tests for PushSubscriptionService.list_subscriptions."""

    def test_lists_only_own(self, push_service, make_subscription):
        mine = make_subscription()
        make_subscription(user_id=OTHER_USER_ID)

        subs = push_service.list_subscriptions(USER_ID)

        assert [s.guid for s in subs] == [mine.guid]
