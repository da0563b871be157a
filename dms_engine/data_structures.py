# =============================================================================
# dms_engine/data_structures.py
# Shared dataclasses that flow between every stage of the alert pipeline.
# Frames and alerts are immutable; Episode is the only mutable record and is
# owned by exactly one EpisodeTracker.
# =============================================================================

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Tuple

import numpy as np

from config import ALERT_SEVERITY, ALERT_WIRE_TYPES


# ── Frame Input ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LandmarkFrame:
    """One timestamped sample of facial keypoints from the external detector."""
    driver_id: str
    # Seconds; only deltas between frames of one driver are meaningful
    timestamp: float
    # (N, 2) or (N, 3) pixel coordinates, None if the face was lost
    landmarks: Optional[np.ndarray] = None

    @classmethod
    def from_dict(cls, data: dict) -> "LandmarkFrame":
        """Build a frame from a replay/JSON record: {driverId, timestamp, landmarks}."""
        raw = data.get("landmarks")
        landmarks = None
        if raw is not None:
            landmarks = np.asarray(raw, dtype=np.float64)
        return cls(
            driver_id=str(data["driverId"]),
            timestamp=float(data["timestamp"]),
            landmarks=landmarks,
        )


# ── Per-frame Measurements ────────────────────────────────────────────────────

@dataclass(frozen=True)
class EyeMeasurement:
    """Eye aspect ratios for one frame. valid=False means the geometry was unusable."""
    left_ear:  float = 0.0
    right_ear: float = 0.0
    ear:       float = 0.0
    valid:     bool  = False


class DriverState(str, Enum):
    """Advisory per-frame classification for dashboards."""
    ACTIVE   = "Active"
    TENSION  = "Tension"
    SLEEPING = "Sleeping"


# ── Episodes ──────────────────────────────────────────────────────────────────

@dataclass
class Episode:
    """One continuous interval of eye closure; the unit of alert deduplication."""
    driver_id: str
    started_at: float
    last_seen_closed_at: float
    continuous_closed_duration: float = 0.0
    warning_fired:  bool = False
    critical_fired: bool = False
    resolved:       bool = False
    resolved_at: Optional[float] = None
    episode_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class DurationThresholdCrossed:
    kind: str          # "warning" | "critical"
    episode_id: str
    duration: float
    timestamp: float


@dataclass
class TrackerUpdate:
    """What the EpisodeTracker did with one frame."""
    events:   List[DurationThresholdCrossed] = field(default_factory=list)
    opened:   Optional[Episode] = None
    resolved: Optional[Episode] = None


# ── Trip Context ──────────────────────────────────────────────────────────────

@dataclass
class DriverContext:
    """Trip metadata copied onto every alert a driver raises."""
    driver_id: str
    trip_id:  Optional[str] = None
    bus_id:   Optional[str] = None
    route_id: Optional[str] = None
    # (latitude, longitude) from the latest GPS fix
    location: Optional[Tuple[float, float]] = None


# ── Alerts ────────────────────────────────────────────────────────────────────

def to_utc(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


@dataclass(frozen=True)
class Alert:
    """
    Immutable alert derived from an Episode crossing a threshold.
    alert_type: "warning" | "critical" | "sleeping" | "tension"
    severity:   "low" | "medium" | "high" | "critical"
    """
    driver_id: str
    alert_type: str
    severity: str
    timestamp: datetime
    eye_closed_duration: Optional[float] = None
    episode_id: Optional[str] = None
    driver_state: Optional[str] = None
    location: Optional[Tuple[float, float]] = None
    trip_id:  Optional[str] = None
    bus_id:   Optional[str] = None
    route_id: Optional[str] = None
    resolved: bool = False

    @classmethod
    def build(
        cls,
        alert_type: str,
        context: DriverContext,
        timestamp: float,
        episode: Optional[Episode] = None,
        driver_state: Optional[DriverState] = None,
    ) -> "Alert":
        return cls(
            driver_id=context.driver_id,
            alert_type=alert_type,
            severity=ALERT_SEVERITY[alert_type],
            timestamp=to_utc(timestamp),
            eye_closed_duration=(
                round(episode.continuous_closed_duration, 3) if episode else None
            ),
            episode_id=episode.episode_id if episode else None,
            driver_state=driver_state.value if driver_state else None,
            location=context.location,
            trip_id=context.trip_id,
            bus_id=context.bus_id,
            route_id=context.route_id,
        )

    @property
    def dedupe_key(self) -> Optional[Tuple[str, str, str]]:
        """(driver, episode, type); None for alerts not tied to an episode."""
        if self.episode_id is None:
            return None
        return (self.driver_id, self.episode_id, self.alert_type)

    def topics(self) -> List[str]:
        """Notification rooms this alert is published to."""
        topics = [f"driver:{self.driver_id}"]
        if self.route_id:
            topics.append(f"route:{self.route_id}")
        if self.bus_id:
            topics.append(f"bus:{self.bus_id}")
        return topics

    def to_payload(self) -> dict:
        """camelCase body accepted by POST /driver-alerts."""
        payload = {
            "driverId":   self.driver_id,
            "alertType":  ALERT_WIRE_TYPES[self.alert_type],
            "severity":   self.severity,
            "timestamp":  self.timestamp.isoformat(),
            "driverState": self.driver_state or "Sleeping",
        }
        if self.eye_closed_duration is not None:
            payload["eyeClosedDuration"] = self.eye_closed_duration
        if self.episode_id is not None:
            payload["episodeId"] = self.episode_id
        if self.location is not None:
            payload["location"] = {
                "latitude":  self.location[0],
                "longitude": self.location[1],
            }
        for key, value in (
            ("tripId", self.trip_id),
            ("busId", self.bus_id),
            ("routeId", self.route_id),
        ):
            if value is not None:
                payload[key] = value
        return payload


@dataclass
class StoredAlert:
    """An alert as persisted by an AlertStore."""
    alert_id: str
    driver_id: str
    alert_type: str          # stored enum, e.g. "drowsiness_warning"
    severity: str
    timestamp: datetime
    created_at: datetime
    eye_closed_duration: Optional[float] = None
    mood_state: Optional[str] = None
    episode_id: Optional[str] = None
    location: Optional[Tuple[float, float]] = None
    trip_id:  Optional[str] = None
    bus_id:   Optional[str] = None
    route_id: Optional[str] = None
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    notes: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "alertId":           self.alert_id,
            "driverId":          self.driver_id,
            "alertType":         self.alert_type,
            "severity":          self.severity,
            "timestamp":         self.timestamp.isoformat(),
            "createdAt":         self.created_at.isoformat(),
            "eyeClosedDuration": self.eye_closed_duration,
            "moodState":         self.mood_state,
            "episodeId":         self.episode_id,
            "tripId":            self.trip_id,
            "busId":             self.bus_id,
            "routeId":           self.route_id,
            "resolved":          self.resolved,
            "resolvedAt":        self.resolved_at.isoformat() if self.resolved_at else None,
            "notes":             self.notes,
        }
        data["location"] = (
            {"latitude": self.location[0], "longitude": self.location[1]}
            if self.location else None
        )
        return data


# ── Pipeline Output ───────────────────────────────────────────────────────────

@dataclass
class FrameResult:
    """
    Master output of DMSCore.process() for one frame.
    Consumed by the in-cab alarm, the HUD emitter and tests.
    """
    driver_id: str
    timestamp: float
    valid: bool = False
    left_ear:  float = 0.0
    right_ear: float = 0.0
    ear:       float = 0.0
    motion:    float = 0.0
    # None when the frame was invalid
    driver_state: Optional[DriverState] = None
    episode_id: Optional[str] = None
    closed_duration: float = 0.0
    escalation_level: str = "IDLE"
    events: List[DurationThresholdCrossed] = field(default_factory=list)
    alerts: List[Alert] = field(default_factory=list)
    processing_ms: float = 0.0

    def to_payload(self) -> dict:
        """Dict for the dms_frame socket event."""
        return {
            "driverId":        self.driver_id,
            "timestamp":       self.timestamp,
            "valid":           self.valid,
            "ear":             round(self.ear, 3),
            "earL":            round(self.left_ear, 3),
            "earR":            round(self.right_ear, 3),
            "motion":          round(self.motion, 3),
            "driverState":     self.driver_state.value if self.driver_state else None,
            "episodeId":       self.episode_id,
            "closedDuration":  round(self.closed_duration, 2),
            "alertLevel":      self.escalation_level,
            "alerts":          [a.alert_type for a in self.alerts],
        }
