"""Tests for the HTTP and WebSocket endpoints."""

import pytest
from fastapi.testclient import TestClient

from call_signaling.main import app

CALLER = "patient-0001"
CALLEE = "therapist-0001"


@pytest.fixture
def client():
    """Test client running the app lifespan with the in-memory store."""
    with TestClient(app) as test_client:
        yield test_client


def _create(client, **overrides):
    body = {"callerId": CALLER, "calleeId": CALLEE, "callerName": "Pat", "calleeName": "Dr. Lee"}
    body.update(overrides)
    response = client.post("/api/v1/calls", json=body, headers={"X-User-ID": CALLER})
    assert response.status_code == 201, response.text
    return response.json()


def _as(user_id):
    return {"X-User-ID": user_id}


class TestHealth:
    """Test health and readiness endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "X-Request-ID" in response.headers

    def test_ready(self, client):
        response = client.get("/api/v1/ready")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert data["checks"] == {"store": True}
        assert data["store_backend"] == "memory"

    def test_not_ready_when_store_down(self, client):
        client.app.state.store.available = False

        response = client.get("/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_api_info(self, client):
        response = client.get("/api/v1/")
        assert response.status_code == 200
        assert response.json()["service"] == "call-signaling"


class TestCallEndpoints:
    """Test call creation and transitions."""

    def test_create_call(self, client):
        data = _create(client)

        assert data["status"] == "dialing"
        assert data["callerId"] == CALLER
        assert data["calleeId"] == CALLEE
        assert data["callerName"] == "Pat"
        assert data["type"] == "instant"
        assert data["version"] == 1
        assert data["channelName"].startswith("ch-")

        fetched = client.get(f"/api/v1/calls/{data['id']}")
        assert fetched.status_code == 200
        assert fetched.json() == data

    def test_caller_defaults_to_acting_user(self, client):
        response = client.post("/api/v1/calls", json={"calleeId": CALLEE}, headers=_as(CALLER))

        assert response.status_code == 201
        assert response.json()["callerId"] == CALLER
        assert response.json()["callerName"] == "User"

    def test_cannot_create_call_for_someone_else(self, client):
        response = client.post(
            "/api/v1/calls",
            json={"callerId": CALLER, "calleeId": CALLEE},
            headers=_as("intruder"),
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "PERMISSION_DENIED"

    def test_create_requires_caller(self, client):
        response = client.post("/api/v1/calls", json={"calleeId": CALLEE})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_create_requires_callee(self, client):
        response = client.post("/api/v1/calls", json={"callerId": CALLER})

        assert response.status_code == 422
        fields = [e["field"] for e in response.json()["error"]["details"]["validation_errors"]]
        assert "body.calleeId" in fields

    def test_get_missing_call(self, client):
        response = client.get("/api/v1/calls/call-missing")

        assert response.status_code == 404
        error = response.json()["error"]
        assert error["code"] == "NOT_FOUND"
        assert error["details"]["call_id"] == "call-missing"

    def test_ring_accept_end(self, client):
        call_id = _create(client)["id"]

        ringing = client.post(f"/api/v1/calls/{call_id}/ringing", headers=_as(CALLEE))
        assert ringing.json()["status"] == "ringing"

        accepted = client.post(f"/api/v1/calls/{call_id}/accept", headers=_as(CALLEE))
        assert accepted.json()["status"] == "accepted"
        assert accepted.json()["answeredAt"] is not None

        ended = client.post(f"/api/v1/calls/{call_id}/end", headers=_as(CALLER))
        assert ended.json()["status"] == "ended"
        assert ended.json()["version"] == 4

    def test_cancel_after_accept_conflicts(self, client):
        call_id = _create(client)["id"]
        client.post(f"/api/v1/calls/{call_id}/accept", headers=_as(CALLEE))

        response = client.post(f"/api/v1/calls/{call_id}/cancel", headers=_as(CALLER))

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "INVALID_TRANSITION"
        assert error["details"]["current_status"] == "accepted"

    def test_caller_cannot_accept(self, client):
        call_id = _create(client)["id"]

        response = client.post(f"/api/v1/calls/{call_id}/accept", headers=_as(CALLER))

        assert response.status_code == 403

    def test_decline_reasons(self, client):
        declined = _create(client)["id"]
        missed = _create(client)["id"]

        response = client.post(f"/api/v1/calls/{declined}/decline", headers=_as(CALLEE))
        assert response.json()["status"] == "declined"

        response = client.post(
            f"/api/v1/calls/{missed}/decline", json={"reason": "timeout"}, headers=_as(CALLEE)
        )
        assert response.json()["status"] == "missed"

    def test_media_update(self, client):
        call_id = _create(client)["id"]
        client.post(f"/api/v1/calls/{call_id}/accept", headers=_as(CALLEE))

        response = client.put(
            f"/api/v1/calls/{call_id}/media",
            json={"audioEnabled": False, "videoEnabled": True},
            headers=_as(CALLER),
        )

        assert response.status_code == 200
        assert response.json()["callerMedia"] == {"audioEnabled": False, "videoEnabled": True}
        assert response.json()["calleeMedia"] is None

    def test_media_update_requires_actor(self, client):
        call_id = _create(client)["id"]
        client.post(f"/api/v1/calls/{call_id}/accept", headers=_as(CALLEE))

        response = client.put(f"/api/v1/calls/{call_id}/media", json={"audioEnabled": False})

        assert response.status_code == 422

    def test_store_unavailable(self, client):
        client.app.state.store.available = False

        response = client.get("/api/v1/calls/call-1")

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "STORE_UNAVAILABLE"


class TestCandidateEndpoints:
    """Test the ranking endpoint."""

    def test_rank(self, client):
        response = client.post(
            "/api/v1/candidates/rank",
            json={
                "preference": "en",
                "candidates": [
                    {"id": "T2", "rankScore": 7, "languageTag": "es"},
                    {"id": "T1", "rankScore": 9, "languageTag": "en"},
                    {"id": "T3", "rankScore": 8, "languageTag": "en"},
                ],
            },
        )

        assert response.status_code == 200
        assert [c["id"] for c in response.json()] == ["T1", "T3", "T2"]


class TestWebSockets:
    """Test live update streams."""

    def test_call_events_stream(self, client):
        call_id = _create(client)["id"]

        with client.websocket_connect(f"/api/v1/calls/{call_id}/events") as websocket:
            subscribed = websocket.receive_json()
            assert subscribed["type"] == "subscribed"
            assert subscribed["channel"].endswith(f"{call_id}:changes")

            current = websocket.receive_json()
            assert current["type"] == "call_update"
            assert current["data"]["status"] == "dialing"

            client.post(f"/api/v1/calls/{call_id}/ringing", headers=_as(CALLEE))
            update = websocket.receive_json()
            assert update["data"]["status"] == "ringing"
            assert update["data"]["version"] == 2

    def test_incoming_calls_stream(self, client):
        with client.websocket_connect(f"/api/v1/calls/incoming/{CALLEE}") as websocket:
            assert websocket.receive_json()["type"] == "subscribed"

            created = _create(client)
            event = websocket.receive_json()

            assert event["type"] == "incoming_call"
            assert event["data"]["id"] == created["id"]
            assert event["data"]["callerName"] == "Pat"
