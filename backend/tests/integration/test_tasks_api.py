"""
Integration tests for the task sync API.

Tests end-to-end flows for tasks synced from the CRUD collaborator:
- Upsert generates geofences and registers them
- Classification errors are rejected with the offending field
- Status changes (complete, mute, delete) via API
- Identity header is required
"""

from backend.tests.factories import OTHER_USER_ID, new_guid


PHARMACY_TASK = {
    "title": "Pick up prescription",
    "location_type": "poi_category",
    "poi_category": "pharmacy",
    "location_name": "CVS",
    "latitude": 37.7749,
    "longitude": -122.4194,
}

HOME_TASK = {
    "title": "Water the plants",
    "location_type": "place",
    "place_type": "home",
    "latitude": 37.8044,
    "longitude": -122.2712,
}


def put_task(client, headers, body, guid=None):
    guid = guid or new_guid()
    return guid, client.put(f"/api/tasks/{guid}", json=body, headers=headers)


class TestTaskUpsertAPI:
    """PUT /api/tasks/{guid}"""

    def test_create_category_task(self, test_client, auth_headers, publisher):
        guid, response = put_task(test_client, auth_headers, PHARMACY_TASK)
        assert response.status_code == 200

        data = response.json()
        assert data["task"]["guid"] == guid
        assert data["task"]["status"] == "active"
        assert [g["tier"] for g in data["task"]["geofences"]] == [
            "approach_5mi", "approach_3mi", "approach_1mi"
        ]
        assert data["registry"]["active_count"] == 3
        assert data["registry"]["capacity"] == 20
        assert data["registry"]["capacity_warning"] is None
        assert publisher.published

    def test_create_place_task(self, test_client, auth_headers):
        _, response = put_task(test_client, auth_headers, HOME_TASK)
        assert response.status_code == 200

        geofences = {g["tier"]: g for g in response.json()["task"]["geofences"]}
        assert geofences["arrival"]["kind"] == "boundary"
        assert geofences["post_arrival"]["kind"] == "dwell_timer"
        assert geofences["post_arrival"]["dwell_seconds"] == 300

    def test_update_keeps_guid(self, test_client, auth_headers):
        guid, _ = put_task(test_client, auth_headers, PHARMACY_TASK)

        _, response = put_task(
            test_client, auth_headers, dict(PHARMACY_TASK, title="Refill inhaler"), guid=guid
        )

        assert response.status_code == 200
        assert response.json()["task"]["title"] == "Refill inhaler"
        assert response.json()["registry"]["changed"] is False

    def test_missing_category(self, test_client, auth_headers):
        body = dict(PHARMACY_TASK)
        del body["poi_category"]

        _, response = put_task(test_client, auth_headers, body)

        assert response.status_code == 422

    def test_invalid_guid(self, test_client, auth_headers):
        _, response = put_task(test_client, auth_headers, PHARMACY_TASK, guid="tsk_nope")

        assert response.status_code == 422
        assert response.json()["field"] == "guid"

    def test_other_users_task_hidden(self, test_client, auth_headers):
        guid, _ = put_task(test_client, auth_headers, PHARMACY_TASK)

        response = test_client.get(f"/api/tasks/{guid}", headers={"X-User-Id": OTHER_USER_ID})

        assert response.status_code == 404

    def test_missing_identity(self, test_client):
        _, response = put_task(test_client, {}, PHARMACY_TASK)

        assert response.status_code == 401


class TestTaskStatusAPI:
    """POST /api/tasks/{guid}/status"""

    def test_complete(self, test_client, auth_headers):
        guid, _ = put_task(test_client, auth_headers, PHARMACY_TASK)

        response = test_client.post(
            f"/api/tasks/{guid}/status", json={"status": "completed"}, headers=auth_headers
        )

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        geofences = test_client.get(f"/api/tasks/{guid}/geofences", headers=auth_headers).json()
        assert all(g["is_active"] is False for g in geofences)

    def test_mute_for_a_day(self, test_client, auth_headers):
        guid, _ = put_task(test_client, auth_headers, PHARMACY_TASK)

        response = test_client.post(
            f"/api/tasks/{guid}/status",
            json={"status": "muted", "mute_duration": "24h", "reason": "travelling"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "muted"
        assert response.json()["mute_until"] is not None

    def test_delete(self, test_client, auth_headers):
        guid, _ = put_task(test_client, auth_headers, PHARMACY_TASK)

        response = test_client.post(
            f"/api/tasks/{guid}/status", json={"status": "deleted"}, headers=auth_headers
        )

        assert response.status_code == 200
        assert response.json()["status"] is None
        assert test_client.get(f"/api/tasks/{guid}", headers=auth_headers).status_code == 404

    def test_unknown_status(self, test_client, auth_headers):
        guid, _ = put_task(test_client, auth_headers, PHARMACY_TASK)

        response = test_client.post(
            f"/api/tasks/{guid}/status", json={"status": "archived"}, headers=auth_headers
        )

        assert response.status_code == 422
