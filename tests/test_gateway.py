"""WebSocket gateway and source status endpoint."""

import pytest
from fastapi.testclient import TestClient

from telemetry.config import SourceSettings, TrackingSettings
from telemetry.exceptions import SubscriptionError
from telemetry.gateway import WebSocketSessions, create_app
from telemetry.ingesters import FlightRadar24Ingester
from telemetry.service import TrackingService


@pytest.fixture
def service():
    ingester = FlightRadar24Ingester(SourceSettings(base_url="http://mock.local"))
    return TrackingService(TrackingSettings(), ingesters=[ingester])


@pytest.fixture
def client(service):
    app = create_app(service=service, start_service=False)
    with TestClient(app) as client:
        yield client


def test_sources_endpoint_reports_health(client):
    response = client.get("/api/sources")

    assert response.status_code == 200
    (source,) = response.json()
    assert source["source"] == "flightradar24"
    assert source["available"] is True
    assert source["consecutive_failures"] == 0


def test_stats_endpoint(client):
    response = client.get("/api/stats")
    assert response.status_code == 200
    assert "pipeline" in response.json()


def test_websocket_subscribe_and_unsubscribe(client, service):
    with client.websocket_connect("/ws/tracking") as ws:
        hello = ws.receive_json()
        assert hello["type"] == "session"
        session_id = hello["key"]

        ws.send_json({"action": "subscribe_area", "min_lat": 8.5, "max_lat": 23.5, "min_lon": 102.0, "max_lon": 109.5})
        reply = ws.receive_json()
        assert reply == {"type": "area", "status": "subscribed", "key": "area_8.500000_23.500000_102.000000_109.500000"}

        ws.send_json({"action": "subscribe_entity", "entity_id": "7C1B72"})
        assert ws.receive_json()["key"] == "7C1B72"
        assert service.notifier.registry.sessions_for_entity("7C1B72") == {session_id}

        ws.send_json({"action": "unsubscribe_entity", "entity_id": "7C1B72"})
        assert ws.receive_json()["status"] == "unsubscribed"

    assert service.notifier.registry.sessions() == set()


def test_websocket_rejects_bad_requests(client):
    with client.websocket_connect("/ws/tracking") as ws:
        ws.receive_json()

        ws.send_json({"action": "subscribe_area", "min_lat": 8.5})
        assert ws.receive_json()["type"] == "error"

        ws.send_json({"action": "subscribe_entity", "entity_id": ""})
        assert ws.receive_json()["type"] == "error"

        ws.send_json({"action": "teleport"})
        reply = ws.receive_json()
        assert reply["type"] == "error"
        assert "teleport" in reply["message"]

        ws.send_json({"action": "ping"})
        assert ws.receive_json()["type"] == "pong"


@pytest.mark.asyncio
async def test_sessions_send_to_connected_socket():
    class FakeSocket:
        def __init__(self):
            self.sent = []

        async def send_json(self, message):
            self.sent.append(message)

    sessions = WebSocketSessions()
    socket = FakeSocket()
    sessions.register("s1", socket)

    await sessions.send("s1", {"type": "update"})
    assert socket.sent == [{"type": "update"}]

    sessions.unregister("s1")
    with pytest.raises(SubscriptionError):
        await sessions.send("s1", {"type": "update"})
