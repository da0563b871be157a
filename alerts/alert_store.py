"""
alerts/alert_store.py — Durable alert record stores.

The store is the record of truth for dispatched alerts. Every store accepts
the same camelCase body as POST /driver-alerts and enforces a
compare-and-set on (driverId, episodeId, alertType): a repeated submission
for the same episode returns the existing record instead of inserting a
second one.

    InMemoryAlertStore — thread-safe, backs the bundled alert server
    HttpAlertStore     — requests client for a remote /driver-alerts endpoint
"""

import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import requests

import config
from dms_engine.data_structures import Alert, StoredAlert
from core.logger import get_logger

log = get_logger(__name__)


class AlertPersistenceError(RuntimeError):
    """The alert could not be durably stored."""


class AlertNotFoundError(KeyError):
    """No stored alert with the given id."""


# ──────────────────────────────────────────────────────────────────────────────
# Payload validation
# ──────────────────────────────────────────────────────────────────────────────

def parse_timestamp(value) -> datetime:
    """Parse an ISO-8601 string (or epoch seconds) into an aware UTC datetime."""
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        ts = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"Invalid timestamp: {value!r}") from exc
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _parse_location(raw) -> Optional[Tuple[float, float]]:
    if raw is None:
        return None
    try:
        lat = float(raw["latitude"])
        lon = float(raw["longitude"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValueError("location requires numeric latitude and longitude") from exc
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
        raise ValueError(f"location out of range: ({lat}, {lon})")
    return (lat, lon)


def _parse_mood(raw) -> str:
    if raw is None:
        return "active"
    if not isinstance(raw, str):
        raise ValueError(f"driverState must be a string, got {raw!r}")
    return config.MOOD_STATES.get(raw, "active")


def _optional_str(payload: dict, field: str) -> Optional[str]:
    value = payload.get(field)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"{field} must be a string, got {value!r}")
    return value


def build_record(payload: dict, alert_id: str) -> StoredAlert:
    """
    Validate an ingestion body and map it onto a StoredAlert.

    Raises:
        ValueError: missing driverId/alertType/timestamp, unknown alertType,
                    bad timestamp, out-of-range location, non-numeric or
                    negative duration, non-string ids or driverState
    """
    missing = [k for k in ("driverId", "alertType", "timestamp") if not payload.get(k)]
    if missing:
        raise ValueError(f"Missing required fields: {', '.join(missing)}")

    wire_type = payload["alertType"]
    if not isinstance(wire_type, str) or wire_type not in config.STORED_ALERT_TYPES:
        raise ValueError(f"Unknown alertType: {wire_type!r}")

    duration = payload.get("eyeClosedDuration")
    if duration is not None:
        try:
            duration = float(duration)
        except (TypeError, ValueError) as exc:
            raise ValueError("eyeClosedDuration must be a number") from exc
        if duration < 0:
            raise ValueError("eyeClosedDuration must be >= 0")

    return StoredAlert(
        alert_id=alert_id,
        driver_id=str(payload["driverId"]),
        alert_type=config.STORED_ALERT_TYPES[wire_type],
        severity=config.WIRE_SEVERITY[wire_type],
        timestamp=parse_timestamp(payload["timestamp"]),
        created_at=datetime.now(timezone.utc),
        eye_closed_duration=duration,
        mood_state=_parse_mood(payload.get("driverState")),
        episode_id=_optional_str(payload, "episodeId"),
        location=_parse_location(payload.get("location")),
        trip_id=_optional_str(payload, "tripId"),
        bus_id=_optional_str(payload, "busId"),
        route_id=_optional_str(payload, "routeId"),
        notes=_optional_str(payload, "notes"),
    )


def stored_alert_from_dict(data: dict) -> StoredAlert:
    """Inverse of StoredAlert.to_dict()."""
    location = data.get("location")
    return StoredAlert(
        alert_id=data["alertId"],
        driver_id=data["driverId"],
        alert_type=data["alertType"],
        severity=data["severity"],
        timestamp=parse_timestamp(data["timestamp"]),
        created_at=parse_timestamp(data["createdAt"]),
        eye_closed_duration=data.get("eyeClosedDuration"),
        mood_state=data.get("moodState"),
        episode_id=data.get("episodeId"),
        location=(location["latitude"], location["longitude"]) if location else None,
        trip_id=data.get("tripId"),
        bus_id=data.get("busId"),
        route_id=data.get("routeId"),
        resolved=bool(data.get("resolved", False)),
        resolved_at=parse_timestamp(data["resolvedAt"]) if data.get("resolvedAt") else None,
        notes=data.get("notes"),
    )


# ──────────────────────────────────────────────────────────────────────────────
# Store interface
# ──────────────────────────────────────────────────────────────────────────────

class AlertStore(ABC):
    """Create / query / resolve alerts by driver and time range."""

    @abstractmethod
    def create(self, alert: Alert) -> str:
        """Persist an alert exactly once; returns its stable identifier."""

    @abstractmethod
    def query(
        self,
        driver_id: Optional[str] = None,
        alert_type: Optional[str] = None,
        severity: Optional[str] = None,
        resolved: Optional[bool] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = config.ALERT_QUERY_DEFAULT_LIMIT,
        page: int = 1,
    ) -> List[StoredAlert]:
        """Alerts matching every given filter, newest first."""

    @abstractmethod
    def resolve(self, alert_id: str, notes: Optional[str] = None) -> StoredAlert:
        """Mark an alert resolved (external resolution workflow)."""


class InMemoryAlertStore(AlertStore):
    """
    Thread-safe in-process store.

    Usage:
        store = InMemoryAlertStore()
        alert_id = store.create(alert)
        recent = store.query(driver_id="d1", limit=10)
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[str, StoredAlert] = {}
        self._by_key: Dict[Tuple[str, str, str], str] = {}

    def insert(self, payload: dict) -> Tuple[StoredAlert, bool]:
        """
        Validate and insert an ingestion body.

        Returns:
            (record, created); created is False when an alert with the same
            (driverId, episodeId, alertType) already exists.
        """
        record = build_record(payload, alert_id=uuid.uuid4().hex)
        key = None
        if record.episode_id:
            key = (record.driver_id, record.episode_id, record.alert_type)

        with self._lock:
            if key is not None and key in self._by_key:
                existing = self._records[self._by_key[key]]
                log.info(f"Duplicate {record.alert_type} for episode "
                         f"{record.episode_id[:8]} → {existing.alert_id}")
                return existing, False
            self._records[record.alert_id] = record
            if key is not None:
                self._by_key[key] = record.alert_id

        log.debug(f"Stored {record.alert_type} ({record.severity}) "
                  f"for driver {record.driver_id} → {record.alert_id}")
        return record, True

    def create(self, alert: Alert) -> str:
        record, _ = self.insert(alert.to_payload())
        return record.alert_id

    def get(self, alert_id: str) -> StoredAlert:
        with self._lock:
            try:
                return self._records[alert_id]
            except KeyError:
                raise AlertNotFoundError(alert_id) from None

    def query(
        self,
        driver_id: Optional[str] = None,
        alert_type: Optional[str] = None,
        severity: Optional[str] = None,
        resolved: Optional[bool] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = config.ALERT_QUERY_DEFAULT_LIMIT,
        page: int = 1,
    ) -> List[StoredAlert]:
        if limit < 1 or page < 1:
            raise ValueError("limit and page must be positive")

        # Accept both the stored enum and the ingestion name
        alert_type = config.STORED_ALERT_TYPES.get(alert_type, alert_type)

        with self._lock:
            records = list(self._records.values())

        matches = [
            r for r in records
            if (driver_id is None or r.driver_id == driver_id)
            and (alert_type is None or r.alert_type == alert_type)
            and (severity is None or r.severity == severity)
            and (resolved is None or r.resolved == resolved)
            and (start is None or r.timestamp >= start)
            and (end is None or r.timestamp <= end)
        ]
        matches.sort(key=lambda r: (r.timestamp, r.created_at), reverse=True)
        skip = (page - 1) * limit
        return matches[skip:skip + limit]

    def resolve(self, alert_id: str, notes: Optional[str] = None) -> StoredAlert:
        with self._lock:
            record = self._records.get(alert_id)
            if record is None:
                raise AlertNotFoundError(alert_id)
            if not record.resolved:
                record.resolved = True
                record.resolved_at = datetime.now(timezone.utc)
            if notes:
                record.notes = notes.strip()
        log.info(f"Alert {alert_id} resolved.")
        return record

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class HttpAlertStore(AlertStore):
    """
    Client for a remote POST/GET /driver-alerts endpoint.

    Transport errors and non-2xx responses on create() raise
    AlertPersistenceError; they are never retried here.
    """

    def __init__(
        self,
        base_url: str = config.ALERT_STORE_URL,
        timeout: float = config.ALERT_STORE_TIMEOUT_S,
        session: Optional[requests.Session] = None,
    ):
        if not base_url:
            raise ValueError("HttpAlertStore needs a base URL")
        self._url = base_url.rstrip("/") + "/driver-alerts"
        self._timeout = timeout
        self._session = session or requests.Session()

    def create(self, alert: Alert) -> str:
        try:
            r = self._session.post(self._url, json=alert.to_payload(), timeout=self._timeout)
        except requests.RequestException as exc:
            raise AlertPersistenceError(f"POST {self._url} failed: {exc}") from exc

        if r.status_code not in (200, 201):
            raise AlertPersistenceError(
                f"POST {self._url} returned {r.status_code}: {r.text[:200]}"
            )
        body = r.json()
        if body.get("duplicate"):
            log.info(f"Remote store already had {alert.alert_type} for episode "
                     f"{(alert.episode_id or '')[:8]}")
        return body["alertId"]

    def query(
        self,
        driver_id: Optional[str] = None,
        alert_type: Optional[str] = None,
        severity: Optional[str] = None,
        resolved: Optional[bool] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = config.ALERT_QUERY_DEFAULT_LIMIT,
        page: int = 1,
    ) -> List[StoredAlert]:
        params = {"limit": limit, "page": page}
        if driver_id is not None:
            params["driverId"] = driver_id
        if alert_type is not None:
            params["alertType"] = alert_type
        if severity is not None:
            params["severity"] = severity
        if resolved is not None:
            params["resolved"] = "true" if resolved else "false"
        if start is not None:
            params["startDate"] = start.isoformat()
        if end is not None:
            params["endDate"] = end.isoformat()

        r = self._session.get(self._url, params=params, timeout=self._timeout)
        r.raise_for_status()
        return [stored_alert_from_dict(a) for a in r.json()["alerts"]]

    def resolve(self, alert_id: str, notes: Optional[str] = None) -> StoredAlert:
        body = {"resolved": True}
        if notes:
            body["notes"] = notes
        r = self._session.patch(f"{self._url}/{alert_id}", json=body, timeout=self._timeout)
        if r.status_code == 404:
            raise AlertNotFoundError(alert_id)
        r.raise_for_status()
        return stored_alert_from_dict(r.json()["alert"])
