"""Flask routes and SocketIO topic rooms of the alert server"""

import pytest

from alerts.alert_dispatcher import AlertDispatcher
from dms_engine.data_structures import Alert, DriverContext, Episode, FrameResult
from server.alert_server import AlertServer, SocketIONotifier

BODY = {
    "driverId": "507f1f77bcf86cd799439011",
    "alertType": "warning",
    "timestamp": "2025-12-15T10:00:00Z",
    "driverState": "Sleeping",
    "eyeClosedDuration": 3.5,
}


@pytest.fixture
def server():
    return AlertServer(drivers={BODY["driverId"]: {"name": "Nimal", "email": "n@example.com"}})


@pytest.fixture
def client(server):
    return server.app.test_client()


def _alert(driver="d1", route="r1", bus=None):
    ep = Episode(driver_id=driver, started_at=0.0, last_seen_closed_at=5.0,
                 continuous_closed_duration=5.0)
    return Alert.build("critical", DriverContext(driver, route_id=route, bus_id=bus),
                       1_700_000_000.0, episode=ep)


class TestRest:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.get_json()["status"] == "ok"

    def test_post_creates(self, client, server):
        r = client.post("/driver-alerts", json=BODY)
        assert r.status_code == 201
        data = r.get_json()
        assert data["success"] is True
        rec = server.store.get(data["alertId"])
        assert rec.alert_type == "drowsiness_warning"
        assert rec.severity == "medium"

    @pytest.mark.parametrize("field", ["driverId", "alertType", "timestamp"])
    def test_post_missing_field(self, client, field):
        body = dict(BODY)
        del body[field]
        assert client.post("/driver-alerts", json=body).status_code == 400

    def test_post_not_json(self, client):
        r = client.post("/driver-alerts", data="hello", content_type="text/plain")
        assert r.status_code == 400

    def test_post_duplicate_episode(self, client, server):
        body = dict(BODY, episodeId="ep-1")
        first = client.post("/driver-alerts", json=body)
        second = client.post("/driver-alerts", json=body)
        assert first.status_code == 201
        assert second.status_code == 200
        assert second.get_json()["duplicate"] is True
        assert second.get_json()["alertId"] == first.get_json()["alertId"]
        assert len(server.store) == 1

    def test_get_newest_first_with_driver(self, client):
        for hour, kind in ((9, "warning"), (11, "alarm"), (10, "tension")):
            client.post("/driver-alerts", json=dict(
                BODY, alertType=kind, timestamp=f"2025-12-15T{hour:02d}:00:00Z"))

        r = client.get(f"/driver-alerts?driverId={BODY['driverId']}&limit=10")
        data = r.get_json()
        assert r.status_code == 200
        assert data["count"] == 3
        assert [a["alertType"] for a in data["alerts"]] == [
            "drowsiness_critical", "tension_detected", "drowsiness_warning"]
        assert data["alerts"][0]["severity"] == "critical"
        assert data["alerts"][0]["driver"] == {
            "id": BODY["driverId"], "name": "Nimal", "email": "n@example.com"}

    def test_get_filters(self, client):
        client.post("/driver-alerts", json=BODY)
        client.post("/driver-alerts", json=dict(BODY, alertType="tension"))
        r = client.get("/driver-alerts?alertType=tension")
        assert r.get_json()["count"] == 1
        r = client.get("/driver-alerts?startDate=2026-01-01T00:00:00Z")
        assert r.get_json()["count"] == 0

    def test_get_bad_limit(self, client):
        assert client.get("/driver-alerts?limit=abc").status_code == 400
        assert client.get("/driver-alerts?limit=0").status_code == 400

    def test_resolve(self, client):
        alert_id = client.post("/driver-alerts", json=BODY).get_json()["alertId"]
        r = client.patch(f"/driver-alerts/{alert_id}", json={"resolved": True, "notes": "ok"})
        assert r.status_code == 200
        assert r.get_json()["alert"]["resolved"] is True
        assert client.get("/driver-alerts?resolved=false").get_json()["count"] == 0

    @pytest.mark.parametrize("extra", [
        {"eyeClosedDuration": [3.5]},
        {"eyeClosedDuration": {"seconds": 3.5}},
        {"alertType": ["warning"]},
        {"episodeId": ["ep-1"]},
    ])
    def test_post_malformed_field_is_rejected(self, client, server, extra):
        r = client.post("/driver-alerts", json=dict(BODY, **extra))
        assert r.status_code == 400
        assert "error" in r.get_json()
        assert len(server.store) == 0

    def test_resolve_unknown(self, client):
        r = client.patch("/driver-alerts/missing", json={"resolved": True})
        assert r.status_code == 404


class TestSocketTopics:
    def test_subscriber_receives_alert_for_its_topic(self, server):
        sub = server.socketio.test_client(server.app)
        other = server.socketio.test_client(server.app)
        ack = sub.emit("subscribe", {"topics": ["route:r1"]}, callback=True)
        assert ack == {"subscribed": ["route:r1"]}
        other.emit("subscribe", {"topics": ["route:r2"]})

        alert = _alert(route="r1")
        AlertDispatcher(server.store, SocketIONotifier(server)).dispatch(alert)

        received = [m for m in sub.get_received() if m["name"] == "driver-alert"]
        assert len(received) == 1
        payload = received[0]["args"][0]
        assert payload["alertType"] == "alarm"
        assert payload["driverId"] == "d1"
        assert payload["alertId"]

        assert [m for m in other.get_received() if m["name"] == "driver-alert"] == []

    def test_one_event_per_topic(self, server):
        sub = server.socketio.test_client(server.app)
        sub.emit("subscribe", {"topics": ["driver:d1", "bus:b9"]})
        server.publish_alert(_alert(route=None, bus="b9"), "a1")
        received = [m for m in sub.get_received() if m["name"] == "driver-alert"]
        assert len(received) == 2

    def test_unsubscribe(self, server):
        sub = server.socketio.test_client(server.app)
        sub.emit("subscribe", {"topics": ["driver:d1"]})
        sub.emit("unsubscribe", {"topics": ["driver:d1"]})
        server.publish_alert(_alert(), "a1")
        assert [m for m in sub.get_received() if m["name"] == "driver-alert"] == []

    def test_client_count_tracks_connections(self, server):
        first = server.socketio.test_client(server.app)
        second = server.socketio.test_client(server.app)
        assert server.client_count == 2
        second.disconnect()
        assert server.client_count == 1
        first.disconnect()
        assert server.client_count == 0

    def test_frames_not_emitted_before_start(self, server):
        sub = server.socketio.test_client(server.app)
        sub.emit("subscribe", {"topics": ["driver:d1"]})
        server.publish_frame(FrameResult(driver_id="d1", timestamp=0.0, valid=True))
        assert [m for m in sub.get_received() if m["name"] == "dms_frame"] == []
