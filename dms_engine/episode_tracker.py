# =============================================================================
# dms_engine/episode_tracker.py
#
# Episode Tracker — continuous closed-eye duration for one driver.
#
# Independent of the DriverState classifier: only the mean EAR and the frame
# timestamps matter here.
#
# Hysteresis:
#   An Episode opens when EAR < EAR_CLOSED_THRESHOLD and only resolves once
#   EAR >= EAR_OPEN_THRESHOLD. Frames in the dead band between the two
#   neither accumulate nor resolve, so measurement noise around a single
#   boundary cannot churn episodes.
#
#          closed            dead band             open
#   ──────────────────┼─────────────────────┼──────────────────→ EAR
#               CLOSED (0.18)          OPEN (0.25)
#
# Landmark gaps:
#   Invalid frames never accumulate. The open Episode survives a gap of up
#   to LANDMARK_GAP_TOLERANCE_S since the last valid frame; after that it
#   resolves, whether the gap was invalid frames or no frames at all. A
#   closed frame after a long silent gap opens a fresh Episode.
#
# Threshold events:
#   DurationThresholdCrossed("warning") at >= WARNING_DURATION_S and
#   ("critical") at >= CRITICAL_DURATION_S, each at most once per Episode,
#   always warning first.
# =============================================================================

from typing import Optional

from config import (
    EAR_CLOSED_THRESHOLD, EAR_OPEN_THRESHOLD,
    WARNING_DURATION_S, CRITICAL_DURATION_S,
    LANDMARK_GAP_TOLERANCE_S,
)
from dms_engine.data_structures import (
    Episode, DurationThresholdCrossed, TrackerUpdate,
)
from core.logger import get_logger

log = get_logger(__name__)


class EpisodeTracker:
    """
    Owns the (at most one) open Episode for a driver.

    Usage:
        tracker = EpisodeTracker("driver-1")
        update = tracker.update(ear=0.12, valid=True, timestamp=t)
        for event in update.events: ...
    """

    def __init__(
        self,
        driver_id: str,
        closed_threshold: float = EAR_CLOSED_THRESHOLD,
        open_threshold: float = EAR_OPEN_THRESHOLD,
        warning_duration: float = WARNING_DURATION_S,
        critical_duration: float = CRITICAL_DURATION_S,
        gap_tolerance: float = LANDMARK_GAP_TOLERANCE_S,
    ):
        if open_threshold < closed_threshold:
            raise ValueError("open_threshold must not be below closed_threshold")
        if critical_duration < warning_duration:
            raise ValueError("critical_duration must not be below warning_duration")

        self.driver_id = driver_id
        self.closed_threshold  = closed_threshold
        self.open_threshold    = open_threshold
        self.warning_duration  = warning_duration
        self.critical_duration = critical_duration
        self.gap_tolerance     = gap_tolerance

        self._episode: Optional[Episode] = None
        self._last_valid_at: Optional[float] = None

    # ── Public API ────────────────────────────────────────────────────────────

    def update(self, ear: float, valid: bool, timestamp: float) -> TrackerUpdate:
        """
        Feed one frame.

        Args:
            ear:       mean eye aspect ratio (ignored when valid is False)
            valid:     False for frames with unusable landmarks
            timestamp: frame time in seconds

        Returns:
            TrackerUpdate with any threshold events, opened or resolved Episode
        """
        result = TrackerUpdate()

        if not valid:
            self._handle_gap(timestamp, result)
            return result

        # No frames at all for longer than the tolerance is a gap too
        self._handle_gap(timestamp, result)
        self._last_valid_at = timestamp

        if ear < self.closed_threshold:
            if self._episode is None:
                self._episode = Episode(
                    driver_id=self.driver_id,
                    started_at=timestamp,
                    last_seen_closed_at=timestamp,
                )
                result.opened = self._episode
                log.debug(f"[{self.driver_id}] Episode {self._episode.episode_id[:8]} opened "
                          f"(ear={ear:.3f})")
            else:
                ep = self._episode
                ep.continuous_closed_duration += max(0.0, timestamp - ep.last_seen_closed_at)
                ep.last_seen_closed_at = timestamp
            self._check_thresholds(timestamp, result)

        elif ear >= self.open_threshold and self._episode is not None:
            result.resolved = self._resolve(timestamp, "eyes open")

        return result

    def close(self, timestamp: float) -> Optional[Episode]:
        """Resolve any open Episode without emitting events (trip end / stop)."""
        self._last_valid_at = None
        if self._episode is None:
            return None
        return self._resolve(timestamp, "closed by caller")

    # ── Internals ─────────────────────────────────────────────────────────────

    def _handle_gap(self, timestamp: float, result: TrackerUpdate) -> None:
        if self._episode is None or self._last_valid_at is None:
            return
        if timestamp - self._last_valid_at > self.gap_tolerance:
            result.resolved = self._resolve(timestamp, "landmarks lost")

    def _check_thresholds(self, timestamp: float, result: TrackerUpdate) -> None:
        ep = self._episode
        duration = ep.continuous_closed_duration

        if not ep.warning_fired and duration >= self.warning_duration:
            ep.warning_fired = True
            result.events.append(DurationThresholdCrossed(
                kind="warning", episode_id=ep.episode_id,
                duration=duration, timestamp=timestamp,
            ))
            log.info(f"[{self.driver_id}] Eyes closed {duration:.2f}s → warning threshold")

        if ep.warning_fired and not ep.critical_fired and duration >= self.critical_duration:
            ep.critical_fired = True
            result.events.append(DurationThresholdCrossed(
                kind="critical", episode_id=ep.episode_id,
                duration=duration, timestamp=timestamp,
            ))
            log.info(f"[{self.driver_id}] Eyes closed {duration:.2f}s → critical threshold")

    def _resolve(self, timestamp: float, reason: str) -> Episode:
        ep = self._episode
        ep.resolved = True
        ep.resolved_at = timestamp
        self._episode = None
        log.debug(f"[{self.driver_id}] Episode {ep.episode_id[:8]} resolved ({reason}) "
                  f"after {ep.continuous_closed_duration:.2f}s")
        return ep

    # ── Properties ────────────────────────────────────────────────────────────

    @property
    def episode(self) -> Optional[Episode]:
        """The open Episode, or None."""
        return self._episode
