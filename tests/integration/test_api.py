"""HTTP and WebSocket surface of the controller app."""

import pytest
from fastapi.testclient import TestClient

from healthcheck.backend.push import PushTransport
from healthcheck.main import create_app
from healthcheck.records import RecordIdentityProvider
from healthcheck.session_manager import SessionManager


@pytest.fixture
def manager(settings, results_client, record_store):
    settings.liveness.timeout_seconds = 30.0
    settings.performance.ui_event_queue_size = 256
    return SessionManager(
        settings=settings,
        transports=[PushTransport()],
        identity_provider=RecordIdentityProvider(record_store),
        client=results_client,
        record_store=record_store,
    )


@pytest.fixture
def client(manager):
    with TestClient(create_app(manager)) as test_client:
        yield test_client


@pytest.mark.integration
class TestControllerApi:

    def test_healthz_reports_active_session(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["active"] is True
        assert body["stage"] == "TEMPERATURE"
        assert body["session_number"] == 1

    def test_state_projection(self, client):
        body = client.get("/state").json()

        assert body["stages"] == ["TEMPERATURE", "ALCOHOL"]
        assert body["current_stage"] == "TEMPERATURE"
        assert body["stability_threshold"] == 7
        assert body["has_identity"] is False
        assert body["submission_status"] == "idle"

    def test_pushed_telemetry_updates_state(self, client):
        response = client.post(
            "/telemetry", json={"channel": "sensors/temperature", "data": {"temperature": 36.6}}
        )

        body = response.json()
        assert body["routed"] is True
        assert body["state"]["stability_counter"] == 1
        assert body["state"]["values"]["TEMPERATURE"] == {"value": 36.6}

    def test_unrouted_telemetry(self, client):
        response = client.post("/telemetry", json={"channel": "sensors/blood", "data": {"value": 1}})

        assert response.status_code == 200
        assert response.json()["routed"] is False

    def test_stage_override(self, client):
        response = client.post("/stage", json={"stage": "ALCOHOL"})

        assert response.status_code == 200
        assert response.json()["state"]["current_stage"] == "ALCOHOL"

    def test_stage_override_rejects_unknown_stage(self, client):
        response = client.post("/stage", json={"stage": "BLOOD"})
        assert response.status_code == 422

    def test_submit_before_completion_is_refused(self, client, results_client):
        body = client.post("/submit").json()

        assert body["outcome"] == "precondition_failed"
        assert body["error"] == "Проверка еще не завершена"
        results_client.post_results.assert_not_awaited()

    def test_identity_then_manual_completion(self, client, results_client):
        """
        Test operator flow: store identity, advance through both stages.

        Arrange: Running app without an identity token
        Act: PUT /identity, POST /advance twice, POST /submit again
        Assert: One backend call, results readable, resubmit ignored
        """
        assert client.get("/results").status_code == 404

        response = client.put("/identity", json={"token": "face-77"})
        assert response.json() == {"status": "ok", "has_identity": True}
        assert client.get("/state").json()["has_identity"] is True

        assert client.post("/advance").json()["completed"] is False
        assert client.post("/advance").json()["completed"] is True

        results_client.post_results.assert_awaited_once()
        assert results_client.post_results.await_args.args[0]["faceId"] == "face-77"

        results = client.get("/results")
        assert results.status_code == 200
        assert results.json()["results"]["identity_token"] == "face-77"

        assert client.post("/submit").json()["outcome"] == "ignored"
        results_client.post_results.assert_awaited_once()

    def test_restart_and_abort(self, client):
        response = client.post("/session/restart")
        assert response.json() == {"status": "ok", "session_number": 2}

        response = client.post("/session/abort", json={"reason": "kiosk closed"})
        assert response.json() == {"status": "ok", "active": False}
        assert client.post("/stage", json={"stage": "ALCOHOL"}).status_code == 409

    def test_ui_websocket_streams_state(self, client):
        with client.websocket_connect("/ws/ui") as ws:
            first = ws.receive_json()
            assert first["type"] == "state"
            assert first["data"]["session_number"] == 1

            client.post("/telemetry", json={"channel": "sensors/temperature", "data": {"temperature": 36.8}})

            for _ in range(20):
                message = ws.receive_json()
                if message["type"] == "state" and message["data"]["stability_counter"] == 1:
                    break
            else:
                pytest.fail("no state update for the pushed reading")
            assert message["stage"] == "TEMPERATURE"
