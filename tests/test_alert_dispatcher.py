"""AlertDispatcher and DispatchWorker tests"""

import threading
from unittest import mock

import pytest

from alerts.alert_dispatcher import AlertDispatcher, DispatchWorker
from alerts.alert_store import AlertPersistenceError, InMemoryAlertStore
from dms_engine.data_structures import Alert, DriverContext, Episode


def _alert(kind="warning", driver="d1", episode=None):
    episode = episode or Episode(driver_id=driver, started_at=0.0, last_seen_closed_at=3.1,
                                 continuous_closed_duration=3.1)
    return Alert.build(kind, DriverContext(driver, route_id="r7", bus_id="b3"),
                       1_700_000_000.0, episode=episode)


class RecordingNotifier:
    def __init__(self):
        self.published = []

    def publish(self, alert, alert_id):
        self.published.append((alert, alert_id))


class FailingStore(InMemoryAlertStore):
    def create(self, alert):
        raise ConnectionError("database down")


@pytest.fixture
def store():
    return InMemoryAlertStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


class TestDispatch:
    def test_persists_then_publishes(self, store, notifier):
        alert = _alert()
        alert_id = AlertDispatcher(store, notifier).dispatch(alert)

        assert store.get(alert_id).driver_id == "d1"
        assert notifier.published == [(alert, alert_id)]

    def test_duplicate_delivery_creates_one_record(self, store, notifier):
        dispatcher = AlertDispatcher(store, notifier)
        alert = _alert()
        first = dispatcher.dispatch(alert)
        second = dispatcher.dispatch(alert)
        assert first == second
        assert len(store) == 1

    def test_concurrent_duplicates_create_one_record(self, store, notifier):
        dispatcher = AlertDispatcher(store, notifier)
        alert = _alert()
        ids = []
        threads = [threading.Thread(target=lambda: ids.append(dispatcher.dispatch(alert)))
                   for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(set(ids)) == 1
        assert len(store) == 1

    def test_persistence_failure_raises_and_skips_publish(self, notifier):
        dispatcher = AlertDispatcher(FailingStore(), notifier)
        with pytest.raises(AlertPersistenceError, match="database down"):
            dispatcher.dispatch(_alert())
        assert notifier.published == []

    def test_publish_failure_is_swallowed(self, store):
        notifier = mock.Mock()
        notifier.publish.side_effect = RuntimeError("socket gone")
        alert_id = AlertDispatcher(store, notifier).dispatch(_alert())
        assert store.get(alert_id) is not None
        notifier.publish.assert_called_once()

    def test_default_notifier_logs_only(self, store):
        assert AlertDispatcher(store).dispatch(_alert())


class TestDispatchWorker:
    def test_submit_resolves_to_alert_id(self, store, notifier):
        with DispatchWorker(AlertDispatcher(store, notifier)) as worker:
            future = worker.submit(_alert())
            alert_id = future.result(timeout=5)
        assert store.get(alert_id) is not None

    def test_failure_is_carried_by_future(self, notifier):
        with DispatchWorker(AlertDispatcher(FailingStore(), notifier)) as worker:
            future = worker.submit(_alert())
            with pytest.raises(AlertPersistenceError):
                future.result(timeout=5)

    def test_stop_drains_queue(self, store, notifier):
        worker = DispatchWorker(AlertDispatcher(store, notifier))
        worker.start()
        futures = [worker.submit(_alert(driver=f"d{i}")) for i in range(10)]
        worker.stop()
        assert all(f.done() for f in futures)
        assert len(store) == 10

    def test_submit_when_stopped(self, store):
        future = DispatchWorker(AlertDispatcher(store)).submit(_alert())
        with pytest.raises(RuntimeError):
            future.result(timeout=1)

    def test_submit_after_stop_fails_fast(self, store):
        worker = DispatchWorker(AlertDispatcher(store))
        worker.start()
        worker.stop()
        future = worker.submit(_alert())
        assert future.done()
        with pytest.raises(RuntimeError):
            future.result(timeout=0)
        assert len(store) == 0

    def test_full_queue_fails_future_without_blocking(self, notifier):
        entered, release = threading.Event(), threading.Event()

        class SlowStore(InMemoryAlertStore):
            def create(self, alert):
                entered.set()
                release.wait(timeout=5)
                return super().create(alert)

        store = SlowStore()
        worker = DispatchWorker(AlertDispatcher(store, notifier), maxsize=1)
        worker.start()
        try:
            first = worker.submit(_alert(driver="d1"))
            assert entered.wait(timeout=5)
            queued = worker.submit(_alert(driver="d2"))
            overflow = worker.submit(_alert(driver="d3"))

            assert overflow.done()
            with pytest.raises(AlertPersistenceError):
                overflow.result(timeout=0)
        finally:
            release.set()
            worker.stop()

        assert first.result(timeout=5) and queued.result(timeout=5)
        assert len(store) == 2
