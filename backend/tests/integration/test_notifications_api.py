"""
Integration tests for the notifications API.

Tests end-to-end flows for:
- Push subscription registration and removal
- Notification history and statistics
- Notification actions (complete, snooze, mute, open map)
"""

import pytest

from backend.src.utils.clock import utcnow
from backend.tests.factories import OTHER_USER_ID, crossing, geofence_for


SUBSCRIPTION = {
    "endpoint": "https://fcm.googleapis.com/fcm/send/abc123",
    "p256dh_key": "BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA_0",
    "auth_key": "tBHItJI5svbpC7htUH8g",
    "device_name": "Pixel 8",
}


@pytest.fixture
def pharmacy(make_task, make_subscription):
    make_subscription()
    return make_task(title="Pick up prescription", location_name="CVS")


@pytest.fixture
def delivered(test_client, auth_headers, pharmacy):
    """GUID of a delivered 1 mi approach notification."""
    response = test_client.post(
        "/api/events/crossings",
        json=crossing(geofence_for(pharmacy, "approach_1mi"), occurred_at=utcnow()),
        headers=auth_headers,
    )
    return response.json()["notification_guid"]


def act(client, headers, guid, action, **extra):
    return client.post(
        f"/api/notifications/{guid}/actions", json=dict(action=action, **extra), headers=headers
    )


class TestPushSubscriptionAPI:
    """Subscription endpoints."""

    def test_subscribe_and_list(self, test_client, auth_headers):
        response = test_client.post(
            "/api/notifications/subscribe", json=SUBSCRIPTION, headers=auth_headers
        )
        assert response.status_code == 201
        assert response.json()["guid"].startswith("sub_")

        listed = test_client.get("/api/notifications/subscriptions", headers=auth_headers).json()
        assert [s["device_name"] for s in listed] == ["Pixel 8"]

    def test_subscribe_requires_https(self, test_client, auth_headers):
        body = dict(SUBSCRIPTION, endpoint="http://push.example.com/1")

        response = test_client.post("/api/notifications/subscribe", json=body, headers=auth_headers)

        assert response.status_code == 422

    def test_unsubscribe_by_endpoint(self, test_client, auth_headers):
        test_client.post("/api/notifications/subscribe", json=SUBSCRIPTION, headers=auth_headers)

        response = test_client.request(
            "DELETE", "/api/notifications/subscribe",
            json={"endpoint": SUBSCRIPTION["endpoint"]}, headers=auth_headers,
        )

        assert response.status_code == 204
        assert test_client.get("/api/notifications/subscriptions", headers=auth_headers).json() == []

    def test_unsubscribe_by_guid(self, test_client, auth_headers):
        created = test_client.post(
            "/api/notifications/subscribe", json=SUBSCRIPTION, headers=auth_headers
        ).json()

        response = test_client.delete(
            f"/api/notifications/subscriptions/{created['guid']}", headers=auth_headers
        )
        assert response.status_code == 204

        response = test_client.delete(
            f"/api/notifications/subscriptions/{created['guid']}", headers=auth_headers
        )
        assert response.status_code == 404


class TestNotificationHistoryAPI:
    """History and stats endpoints."""

    def test_list(self, test_client, auth_headers, delivered):
        data = test_client.get("/api/notifications", headers=auth_headers).json()

        assert data["total"] == 1
        item = data["items"][0]
        assert item["guid"] == delivered
        assert item["status"] == "delivered"
        assert item["title"] == "Approaching CVS"
        assert item["actions"] == ["complete", "snooze_15m", "snooze_1h", "open_map", "mute"]

    def test_filter_by_status(self, test_client, auth_headers, delivered):
        data = test_client.get(
            "/api/notifications", params={"status": "pending"}, headers=auth_headers
        ).json()

        assert data["total"] == 0

    def test_detail_and_isolation(self, test_client, auth_headers, delivered):
        assert test_client.get(
            f"/api/notifications/{delivered}", headers=auth_headers
        ).status_code == 200
        assert test_client.get(
            f"/api/notifications/{delivered}", headers={"X-User-Id": OTHER_USER_ID}
        ).status_code == 404

    def test_stats(self, test_client, auth_headers, delivered):
        stats = test_client.get("/api/notifications/stats", headers=auth_headers).json()

        assert stats["total"] == 1
        assert stats["by_status"]["delivered"] == 1
        assert stats["retrying"] == 0
        assert stats["bundles"] == 0


class TestNotificationActionsAPI:
    """POST /api/notifications/{guid}/actions"""

    def test_complete(self, test_client, auth_headers, delivered, pharmacy):
        response = act(test_client, auth_headers, delivered, "complete")

        assert response.status_code == 200
        data = response.json()
        assert data["task_guid"] == pharmacy.guid
        assert data["task_status"] == "completed"
        assert data["notification"]["status"] == "cancelled"
        assert data["notification"]["cancelled_reason"] == "task_completed"

    def test_closed_notification_conflicts(self, test_client, auth_headers, delivered):
        act(test_client, auth_headers, delivered, "complete")

        response = act(test_client, auth_headers, delivered, "complete")

        assert response.status_code == 409
        assert response.json()["current_status"] == "cancelled"

    def test_snooze(self, test_client, auth_headers, delivered):
        response = act(test_client, auth_headers, delivered, "snooze_1h")

        assert response.status_code == 200
        data = response.json()
        assert data["notification"]["status"] == "snoozed"
        assert data["snooze"]["duration"] == "1h"
        assert data["snooze"]["snooze_count"] == 1

    def test_action_not_offered(self, test_client, auth_headers, delivered):
        response = act(test_client, auth_headers, delivered, "snooze_today")

        assert response.status_code == 422
        assert response.json()["field"] == "action"

    def test_unknown_action(self, test_client, auth_headers, delivered):
        response = act(test_client, auth_headers, delivered, "archive")

        assert response.status_code == 422

    def test_mute(self, test_client, auth_headers, delivered):
        response = act(test_client, auth_headers, delivered, "mute", mute_duration="4h")

        assert response.status_code == 200
        assert response.json()["task_status"] == "muted"
        assert response.json()["mute"]["duration"] == "4h"

    def test_open_map(self, test_client, auth_headers, delivered, pharmacy):
        response = act(test_client, auth_headers, delivered, "open_map")

        assert response.status_code == 200
        assert response.json()["map_target"] == {
            "latitude": pharmacy.latitude,
            "longitude": pharmacy.longitude,
            "label": "CVS",
        }
        assert response.json()["task_status"] == "active"

    def test_unknown_notification(self, test_client, auth_headers):
        response = act(test_client, auth_headers, "ntf_01hgw2bbg0000000000000000", "complete")

        assert response.status_code == 404
