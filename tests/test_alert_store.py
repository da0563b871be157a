"""InMemoryAlertStore and HttpAlertStore tests"""

from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest
import requests

from alerts.alert_store import (
    AlertNotFoundError, AlertPersistenceError, HttpAlertStore,
    InMemoryAlertStore, build_record, parse_timestamp,
)
from dms_engine.data_structures import Alert, DriverContext, Episode

T0 = 1_700_000_000.0


def _alert(kind="warning", driver="d1", episode=None, t=T0, **ctx):
    episode = episode or Episode(driver_id=driver, started_at=t - 3.2,
                                 last_seen_closed_at=t, continuous_closed_duration=3.2)
    return Alert.build(kind, DriverContext(driver, **ctx), t, episode=episode)


@pytest.fixture
def store():
    return InMemoryAlertStore()


class TestBuildRecord:
    def test_maps_type_and_severity(self):
        rec = build_record({"driverId": "d1", "alertType": "alarm",
                            "timestamp": "2025-12-15T10:00:00Z",
                            "driverState": "Sleeping", "eyeClosedDuration": 5.2}, "a1")
        assert rec.alert_type == "drowsiness_critical"
        assert rec.severity == "critical"
        assert rec.mood_state == "sleeping"
        assert rec.timestamp == datetime(2025, 12, 15, 10, tzinfo=timezone.utc)

    @pytest.mark.parametrize("wire, stored, severity", [
        ("warning", "drowsiness_warning", "medium"),
        ("sleeping", "sleeping_detected", "critical"),
        ("tension", "tension_detected", "high"),
    ])
    def test_type_table(self, wire, stored, severity):
        rec = build_record({"driverId": "d1", "alertType": wire,
                            "timestamp": "2025-12-15T10:00:00Z"}, "a1")
        assert (rec.alert_type, rec.severity) == (stored, severity)

    @pytest.mark.parametrize("field", ["driverId", "alertType", "timestamp"])
    def test_missing_required(self, field):
        body = {"driverId": "d1", "alertType": "warning", "timestamp": "2025-12-15T10:00:00Z"}
        del body[field]
        with pytest.raises(ValueError, match=field):
            build_record(body, "a1")

    @pytest.mark.parametrize("extra", [
        {"alertType": "panic"},
        {"timestamp": "yesterday"},
        {"location": {"latitude": 91, "longitude": 0}},
        {"location": {"latitude": 0}},
        {"eyeClosedDuration": -1},
        {"eyeClosedDuration": [3.1]},
        {"eyeClosedDuration": {"s": 3.1}},
        {"eyeClosedDuration": "long"},
        {"alertType": ["warning"]},
        {"driverState": ["Sleeping"]},
        {"episodeId": {"id": "ep-1"}},
    ])
    def test_rejects_bad_values(self, extra):
        body = {"driverId": "d1", "alertType": "warning", "timestamp": "2025-12-15T10:00:00Z"}
        body.update(extra)
        with pytest.raises(ValueError):
            build_record(body, "a1")

    def test_naive_timestamp_is_utc(self):
        assert parse_timestamp("2025-12-15T10:00:00").tzinfo is not None


class TestInMemoryStore:
    def test_create_returns_id(self, store):
        alert_id = store.create(_alert())
        rec = store.get(alert_id)
        assert rec.alert_type == "drowsiness_warning"
        assert rec.severity == "medium"
        assert rec.eye_closed_duration == pytest.approx(3.2)
        assert rec.resolved is False

    def test_duplicate_episode_type_is_not_inserted(self, store):
        alert = _alert()
        first = store.create(alert)
        second = store.create(alert)
        assert first == second
        assert len(store) == 1

    def test_same_episode_other_type_is_inserted(self, store):
        ep = Episode(driver_id="d1", started_at=T0, last_seen_closed_at=T0 + 5,
                     continuous_closed_duration=5.0)
        store.create(_alert("warning", episode=ep))
        store.create(_alert("critical", episode=ep))
        assert len(store) == 2

    def test_query_newest_first_with_filters(self, store):
        for i in range(5):
            store.create(_alert(driver="d1", t=T0 + i))
        store.create(_alert(driver="d2", t=T0 + 10))
        store.create(_alert("tension", driver="d1", t=T0 + 20))

        d1 = store.query(driver_id="d1")
        assert len(d1) == 6
        assert [r.timestamp for r in d1] == sorted((r.timestamp for r in d1), reverse=True)

        assert len(store.query(driver_id="d1", alert_type="tension")) == 1
        assert len(store.query(alert_type="tension_detected")) == 1
        assert len(store.query(severity="high")) == 1
        assert len(store.query(limit=2)) == 2

    def test_query_time_range_and_pages(self, store):
        for i in range(6):
            store.create(_alert(t=T0 + i * 60))
        start = datetime.fromtimestamp(T0 + 60, tz=timezone.utc)
        end = start + timedelta(minutes=2)
        assert len(store.query(start=start, end=end)) == 3

        page1 = store.query(limit=4, page=1)
        page2 = store.query(limit=4, page=2)
        assert len(page1) == 4 and len(page2) == 2
        assert not {r.alert_id for r in page1} & {r.alert_id for r in page2}

    def test_resolve(self, store):
        alert_id = store.create(_alert())
        rec = store.resolve(alert_id, notes="  driver pulled over ")
        assert rec.resolved and rec.resolved_at is not None
        assert rec.notes == "driver pulled over"
        assert store.query(resolved=False) == []

    def test_resolve_unknown(self, store):
        with pytest.raises(AlertNotFoundError):
            store.resolve("nope")

    def test_bad_limit(self, store):
        with pytest.raises(ValueError):
            store.query(limit=0)


class TestHttpAlertStore:
    def _store(self, response=None, error=None):
        session = mock.Mock(spec=requests.Session)
        if error is not None:
            session.post.side_effect = error
        else:
            session.post.return_value = response
        return HttpAlertStore("http://fleet:5050/", session=session), session

    def test_posts_wire_payload(self):
        resp = mock.Mock(status_code=201)
        resp.json.return_value = {"success": True, "alertId": "abc"}
        store, session = self._store(resp)

        alert = _alert("critical", trip_id="t1", route_id="r1")
        assert store.create(alert) == "abc"

        url = session.post.call_args.args[0]
        body = session.post.call_args.kwargs["json"]
        assert url == "http://fleet:5050/driver-alerts"
        assert body["alertType"] == "alarm"
        assert body["driverId"] == "d1"
        assert body["episodeId"] == alert.episode_id
        assert body["tripId"] == "t1" and body["routeId"] == "r1"

    def test_duplicate_response_returns_existing_id(self):
        resp = mock.Mock(status_code=200)
        resp.json.return_value = {"success": True, "alertId": "abc", "duplicate": True}
        store, _ = self._store(resp)
        assert store.create(_alert()) == "abc"

    def test_server_error_raises(self):
        store, _ = self._store(mock.Mock(status_code=500, text="boom"))
        with pytest.raises(AlertPersistenceError):
            store.create(_alert())

    def test_transport_error_raises(self):
        store, _ = self._store(error=requests.ConnectionError("refused"))
        with pytest.raises(AlertPersistenceError):
            store.create(_alert())

    def test_requires_url(self):
        with pytest.raises(ValueError):
            HttpAlertStore("")
