"""
server/alert_server.py — Flask-SocketIO alert ingestion and notification hub.

REST:
    POST  /driver-alerts             ingest one alert (201, or 200 on duplicate)
    GET   /driver-alerts             newest-first query with filters
    PATCH /driver-alerts/<alertId>   external resolution
    GET   /health

SocketIO:
    client → "subscribe" / "unsubscribe"  {"topics": ["driver:<id>", ...]}
    server → "driver-alert"               alert payload + alertId, per topic room
    server → "dms_frame"                  per-frame HUD payload, driver room

Run standalone: python -m server.alert_server
Or use AlertServer.start_background() from main.py.
"""

import threading
import time
from typing import Dict, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_socketio import SocketIO, join_room, leave_room

import config
from alerts.alert_store import (
    AlertNotFoundError, InMemoryAlertStore, parse_timestamp,
)
from dms_engine.data_structures import Alert, FrameResult
from core.logger import get_logger

log = get_logger(__name__)


def _parse_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    lowered = value.lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    raise ValueError(f"Invalid boolean: {value!r}")


class AlertServer:
    """
    Flask-SocketIO server exposing the alert store and the driver-alert channel.

    Usage:
        server = AlertServer(store)
        server.start_background()                  # non-blocking
        server.publish_alert(alert, alert_id)      # from SocketIONotifier
        server.publish_frame(frame_result)         # from the frame loop
        server.stop()
    """

    def __init__(
        self,
        store: Optional[InMemoryAlertStore] = None,
        drivers: Optional[Dict[str, dict]] = None,
        host: str = config.SERVER_HOST,
        port: int = config.SERVER_PORT,
        cors_origins: str = config.SERVER_CORS_ALLOWED_ORIGINS,
        async_mode: str = config.SERVER_ASYNC_MODE,
    ):
        self.store = store if store is not None else InMemoryAlertStore()
        # driverId → {"name": ..., "email": ...}
        self.drivers = drivers or {}
        self.host = host
        self.port = port
        self._running = False
        self._thread: Optional[threading.Thread] = None

        # ── Flask + SocketIO setup ─────────────────────────────────────────
        self.app = Flask(__name__, static_folder=None)
        CORS(self.app, origins=cors_origins)

        self.socketio = SocketIO(
            self.app,
            cors_allowed_origins=cors_origins,
            async_mode=async_mode,
            logger=False,
            engineio_logger=False,
        )

        self._client_count: int = 0
        self._register_routes()
        self._register_events()

    # ──────────────────────────────────────────────────────────────────────────
    # Flask routes
    # ──────────────────────────────────────────────────────────────────────────

    def _register_routes(self) -> None:
        @self.app.route("/health")
        def health():
            return jsonify({
                "status": "ok",
                "clients": self._client_count,
                "alerts": len(self.store),
                "server": "Driver Alert Hub",
                "port": self.port,
            })

        @self.app.route("/driver-alerts", methods=["POST"])
        def create_alert():
            body = request.get_json(silent=True)
            if not isinstance(body, dict):
                return jsonify({"error": "Request body must be a JSON object"}), 400
            try:
                record, created = self.store.insert(body)
            except ValueError as exc:
                return jsonify({"error": str(exc)}), 400

            if not created:
                return jsonify({
                    "success": True,
                    "alertId": record.alert_id,
                    "duplicate": True,
                    "message": "Alert already recorded",
                }), 200
            return jsonify({
                "success": True,
                "alertId": record.alert_id,
                "message": "Alert saved successfully",
            }), 201

        @self.app.route("/driver-alerts", methods=["GET"])
        def list_alerts():
            args = request.args
            try:
                limit = int(args.get("limit", config.ALERT_QUERY_DEFAULT_LIMIT))
                page = int(args.get("page", 1))
                start = parse_timestamp(args["startDate"]) if args.get("startDate") else None
                end = parse_timestamp(args["endDate"]) if args.get("endDate") else None
                alerts = self.store.query(
                    driver_id=args.get("driverId"),
                    alert_type=args.get("alertType"),
                    severity=args.get("severity"),
                    resolved=_parse_bool(args.get("resolved")),
                    start=start,
                    end=end,
                    limit=limit,
                    page=page,
                )
            except ValueError as exc:
                return jsonify({"error": str(exc)}), 400

            payload = [self._with_driver(a.to_dict()) for a in alerts]
            return jsonify({"success": True, "alerts": payload, "count": len(payload)})

        @self.app.route("/driver-alerts/<alert_id>", methods=["PATCH"])
        def resolve_alert(alert_id):
            body = request.get_json(silent=True) or {}
            if body.get("resolved") is not True:
                return jsonify({"error": "Only {\"resolved\": true} is supported"}), 400
            try:
                record = self.store.resolve(alert_id, notes=body.get("notes"))
            except AlertNotFoundError:
                return jsonify({"error": f"Alert {alert_id} not found"}), 404
            return jsonify({"success": True, "alert": record.to_dict()})

    def _with_driver(self, data: dict) -> dict:
        """Populate minimal driver identity fields."""
        info = self.drivers.get(data["driverId"], {})
        data["driver"] = {
            "id": data["driverId"],
            "name": info.get("name"),
            "email": info.get("email"),
        }
        return data

    # ──────────────────────────────────────────────────────────────────────────
    # SocketIO events
    # ──────────────────────────────────────────────────────────────────────────

    def _register_events(self) -> None:
        @self.socketio.on("connect")
        def on_connect():
            self._client_count += 1
            log.info(f"Subscriber connected. Clients: {self._client_count}")

        @self.socketio.on("disconnect")
        def on_disconnect(*_):
            self._client_count = max(0, self._client_count - 1)
            log.info(f"Subscriber disconnected. Clients: {self._client_count}")

        @self.socketio.on("subscribe")
        def on_subscribe(data):
            topics = (data or {}).get("topics", [])
            for topic in topics:
                join_room(topic)
            log.debug(f"Subscribed to {topics}")
            return {"subscribed": topics}

        @self.socketio.on("unsubscribe")
        def on_unsubscribe(data):
            topics = (data or {}).get("topics", [])
            for topic in topics:
                leave_room(topic)
            return {"unsubscribed": topics}

    # ──────────────────────────────────────────────────────────────────────────
    # Data emission
    # ──────────────────────────────────────────────────────────────────────────

    def publish_alert(self, alert: Alert, alert_id: str) -> None:
        """Emit one driver-alert event to each of the alert's topic rooms."""
        payload = dict(alert.to_payload(), alertId=alert_id)
        for topic in alert.topics():
            self.socketio.emit(config.ALERT_EVENT_NAME, payload, to=topic)

    def publish_frame(self, result: FrameResult) -> None:
        """Broadcast a per-frame snapshot to the driver's room (HUD)."""
        if not self._running:
            return
        try:
            self.socketio.emit(
                config.EMIT_EVENT_NAME, result.to_payload(),
                to=f"driver:{result.driver_id}",
            )
        except Exception as exc:
            log.debug(f"Frame emit error: {exc}")

    # ──────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────────────────

    def start_background(self) -> None:
        """
        Start the SocketIO server in a background daemon thread.
        Returns immediately.
        """
        if self._running:
            log.info("Alert server already running.")
            return

        self._running = True
        self._thread = threading.Thread(
            target=self._run_server,
            daemon=True,
            name="alert-server",
        )
        self._thread.start()
        time.sleep(0.5)   # give the server time to bind the port
        log.info(f"Alert server started at http://{self.host}:{self.port}  "
                 f"(health: http://localhost:{self.port}/health)")

    def _run_server(self) -> None:
        """Internal: run Flask-SocketIO (blocking, called in daemon thread)."""
        self.socketio.run(
            self.app,
            host=self.host,
            port=self.port,
            use_reloader=False,
            log_output=False,
            allow_unsafe_werkzeug=True,
        )

    def stop(self) -> None:
        """Signal the server to stop (best-effort for daemon thread)."""
        self._running = False
        log.info("Alert server stopped.")

    @property
    def client_count(self) -> int:
        return self._client_count


class SocketIONotifier:
    """Notifier collaborator for AlertDispatcher backed by an AlertServer."""

    def __init__(self, server: AlertServer):
        self._server = server

    def publish(self, alert: Alert, alert_id: str) -> None:
        self._server.publish_alert(alert, alert_id)


# ──────────────────────────────────────────────────────────────────────────────
# Standalone: serve an empty in-memory store
# ──────────────────────────────────────────────────────────────────────────────
if __name__ == "__main__":
    server = AlertServer()
    log.info(f"Serving driver alerts on http://{server.host}:{server.port} … Ctrl+C to stop.")
    server.socketio.run(
        server.app, host=server.host, port=server.port,
        use_reloader=False, allow_unsafe_werkzeug=True,
    )
