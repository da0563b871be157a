"""
alerts/alert_dispatcher.py — Persist-then-publish for escalation alerts.

dispatch(alert) is called exactly once per escalation transition:
  1. store.create(alert)         → record of truth; failure is raised
  2. notifier.publish(alert, id) → best-effort side channel; failure is logged

Dispatches for the same driver are serialized so two concurrent submissions
for one episode cannot both insert. The store's (driver, episode, type)
compare-and-set covers duplicates from a restarted pipeline.

DispatchWorker runs dispatch() on a background thread so frame processing
never waits on storage.
"""

import queue
import threading
from collections import defaultdict
from concurrent.futures import Future
from typing import Dict, Optional

import config
from alerts.alert_store import AlertStore, AlertPersistenceError
from dms_engine.data_structures import Alert
from core.logger import get_logger

log = get_logger(__name__)


class LoggingNotifier:
    """Notifier that only logs; used when no socket server is attached."""

    def publish(self, alert: Alert, alert_id: str) -> None:
        log.info(f"[notify] {alert.alert_type} ({alert.severity}) driver={alert.driver_id} "
                 f"topics={alert.topics()} id={alert_id}")


class AlertDispatcher:
    """
    Usage:
        dispatcher = AlertDispatcher(store, notifier)
        alert_id = dispatcher.dispatch(alert)
    """

    def __init__(self, store: AlertStore, notifier=None):
        self._store = store
        self._notifier = notifier or LoggingNotifier()
        self._locks_guard = threading.Lock()
        self._driver_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

    def dispatch(self, alert: Alert) -> str:
        """
        Persist and publish one alert.

        Returns:
            Stable alert identifier from the store.

        Raises:
            AlertPersistenceError: the store rejected or failed the insert.
        """
        with self._driver_lock(alert.driver_id):
            try:
                alert_id = self._store.create(alert)
            except AlertPersistenceError:
                log.error(f"Persisting {alert.alert_type} alert for driver "
                          f"{alert.driver_id} failed", exc_info=True)
                raise
            except Exception as exc:
                log.error(f"Persisting {alert.alert_type} alert for driver "
                          f"{alert.driver_id} failed: {exc}", exc_info=True)
                raise AlertPersistenceError(str(exc)) from exc

        log.info(f"Alert {alert_id}: {alert.alert_type} ({alert.severity}) "
                 f"driver={alert.driver_id} closed={alert.eye_closed_duration}")
        self._publish(alert, alert_id)
        return alert_id

    def _publish(self, alert: Alert, alert_id: str) -> None:
        try:
            self._notifier.publish(alert, alert_id)
        except Exception as exc:
            log.warning(f"Publishing alert {alert_id} failed (not retried): {exc}")

    def _driver_lock(self, driver_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._driver_locks[driver_id]


class DispatchWorker:
    """
    Runs AlertDispatcher.dispatch() on a background thread.

    The frame loop calls submit() and continues immediately; the returned
    Future resolves to the alert id or carries the AlertPersistenceError.

    Usage:
        worker = DispatchWorker(dispatcher)
        worker.start()
        future = worker.submit(alert)
        worker.stop()
    """

    _STOP = object()

    def __init__(self, dispatcher: AlertDispatcher, maxsize: int = config.DISPATCH_QUEUE_SIZE):
        self._dispatcher = dispatcher
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._running = False
        # Guards _running against submit/stop races
        self._state_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        with self._state_lock:
            if self._running:
                return
            self._running = True
        self._thread = threading.Thread(
            target=self._run, name="alert-dispatch", daemon=True,
        )
        self._thread.start()
        log.info("DispatchWorker started.")

    def stop(self, timeout: float = 3.0) -> None:
        """Drain queued alerts, then stop the thread."""
        with self._state_lock:
            if not self._running:
                return
            self._running = False
        # Blocks until the worker frees a slot; queued alerts are drained first
        self._queue.put(self._STOP)
        self._thread.join(timeout=timeout)
        log.info("DispatchWorker stopped.")

    # ── Public API ────────────────────────────────────────────────────────────

    def submit(self, alert: Alert) -> Future:
        """
        Queue an alert for dispatch. Never blocks: when the worker is stopped
        or the queue is full the returned Future fails immediately.
        """
        future: Future = Future()
        with self._state_lock:
            if not self._running:
                future.set_exception(RuntimeError("DispatchWorker is not running"))
                return future
            try:
                self._queue.put_nowait((alert, future))
            except queue.Full:
                log.error(f"Dispatch queue full, dropping {alert.alert_type} alert "
                          f"for driver {alert.driver_id}")
                future.set_exception(AlertPersistenceError("dispatch queue full"))
        return future

    # ── Background Thread ─────────────────────────────────────────────────────

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is self._STOP:
                break
            alert, future = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(self._dispatcher.dispatch(alert))
            except Exception as exc:
                future.set_exception(exc)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *_):
        self.stop()
