# =============================================================================
# dms_engine/dms_core.py
#
# DMSCore — per-driver orchestrator for the signal-to-alert pipeline.
#
# One instance per driver; instances share nothing. Frames are processed
# one at a time, strictly in timestamp order.
#
# Call flow per frame:
#   1. measure_eyes(landmarks)                → EyeMeasurement (left/right/mean)
#   2. MotionDetector.update(...)             → motion score
#   3. classify_driver_state(ear, motion)     → Active | Tension | Sleeping
#   4. EpisodeTracker.update(ear, valid, t)   → threshold events / resolution
#   5. EscalationStateMachine                 → Alerts (warning, critical, tension)
#   6. dispatch_fn(alert) for each new Alert  → persistence + notification
#   7. Pack everything into FrameResult and return
# =============================================================================

import time
from typing import Callable, Optional

from config import FRAME_BUDGET_MS
from dms_engine.data_structures import (
    Alert, DriverContext, FrameResult, LandmarkFrame,
)
from dms_engine.episode_tracker import EpisodeTracker
from dms_engine.geometry_tracker import measure_eyes
from dms_engine.motion_detector import MotionDetector
from dms_engine.state_classifier import classify_driver_state
from dms_engine.state_machine import EscalationStateMachine
from core.logger import get_logger

log = get_logger(__name__)


class DMSCore:
    """
    Single entry point for one driver's pipeline.

    Usage:
        core = DMSCore(DriverContext("driver-1"), dispatch_fn=worker.submit)

        # In the frame loop:
        result = core.process(frame)   # FrameResult, or None if dropped

        # When the trip ends:
        core.end_trip(timestamp)

    dispatch_fn receives each new Alert. Pass DispatchWorker.submit for
    fire-and-continue, or AlertDispatcher.dispatch to persist inline; in the
    inline case a persistence error propagates out of process() after the
    frame's state has been committed.
    """

    def __init__(
        self,
        context: DriverContext,
        dispatch_fn: Optional[Callable[[Alert], object]] = None,
        tracker: Optional[EpisodeTracker] = None,
    ):
        self.context = context
        self._dispatch_fn = dispatch_fn

        self._motion  = MotionDetector()
        self._tracker = tracker or EpisodeTracker(context.driver_id)
        self._escalation = EscalationStateMachine(context.driver_id)

        self._last_timestamp: Optional[float] = None
        self._frame_count   = 0
        self._dropped_count = 0
        self._last_result: Optional[FrameResult] = None

        log.info(f"DMSCore initialized for driver {context.driver_id}.")

    # ── Main Update ───────────────────────────────────────────────────────────

    def process(self, frame: LandmarkFrame) -> Optional[FrameResult]:
        """
        Run one frame through the full pipeline.

        Returns:
            FrameResult, or None when the frame is stale (timestamp not newer
            than the last processed frame) and was dropped.
        """
        if frame.driver_id != self.context.driver_id:
            raise ValueError(
                f"Frame for driver {frame.driver_id!r} sent to pipeline "
                f"of {self.context.driver_id!r}"
            )

        if self._last_timestamp is not None and frame.timestamp <= self._last_timestamp:
            self._dropped_count += 1
            log.debug(f"[{frame.driver_id}] Dropping stale frame t={frame.timestamp:.3f} "
                      f"(last={self._last_timestamp:.3f})")
            return None

        t0 = time.perf_counter()
        self._last_timestamp = frame.timestamp
        self._frame_count += 1

        # ── 1. Eye geometry ───────────────────────────────────────────────
        eyes = measure_eyes(frame.landmarks)

        # ── 2. Motion (0 unless the previous frame was valid) ─────────────
        motion = self._motion.update(frame.landmarks, eyes.valid)

        # ── 3. Advisory driver state ──────────────────────────────────────
        driver_state = classify_driver_state(eyes.ear, motion) if eyes.valid else None

        # ── 4. Closed-eye duration ────────────────────────────────────────
        update = self._tracker.update(eyes.ear, eyes.valid, frame.timestamp)

        # ── 5. Escalation ─────────────────────────────────────────────────
        alerts = []
        if update.resolved is not None:
            self._escalation.on_resolved()

        episode = self._tracker.episode
        for event in update.events:
            alert = self._escalation.on_threshold(event, episode, self.context, driver_state)
            if alert is not None:
                alerts.append(alert)

        tension = self._escalation.on_tension(
            episode, self.context, driver_state, frame.timestamp
        )
        if tension is not None:
            alerts.append(tension)

        result = FrameResult(
            driver_id=frame.driver_id,
            timestamp=frame.timestamp,
            valid=eyes.valid,
            left_ear=eyes.left_ear,
            right_ear=eyes.right_ear,
            ear=eyes.ear,
            motion=motion,
            driver_state=driver_state,
            episode_id=episode.episode_id if episode else None,
            closed_duration=episode.continuous_closed_duration if episode else 0.0,
            escalation_level=self._escalation.level,
            events=update.events,
            alerts=alerts,
        )
        self._last_result = result

        # ── 6. Dispatch (state above is already committed) ────────────────
        # Every alert gets its own attempt; the first failure is re-raised.
        first_error: Optional[Exception] = None
        if self._dispatch_fn is not None:
            for alert in alerts:
                try:
                    self._dispatch_fn(alert)
                except Exception as exc:
                    log.error(f"[{frame.driver_id}] Dispatch of {alert.alert_type} "
                              f"alert failed: {exc}")
                    if first_error is None:
                        first_error = exc

        result.processing_ms = (time.perf_counter() - t0) * 1000.0
        if result.processing_ms > FRAME_BUDGET_MS:
            log.warning(f"[{frame.driver_id}] Frame took {result.processing_ms:.1f}ms "
                        f"(budget {FRAME_BUDGET_MS:.0f}ms)")

        if first_error is not None:
            raise first_error
        return result

    # ── Trip Control ──────────────────────────────────────────────────────────

    def start_trip(
        self,
        trip_id: Optional[str] = None,
        bus_id: Optional[str] = None,
        route_id: Optional[str] = None,
    ) -> None:
        self.context.trip_id  = trip_id
        self.context.bus_id   = bus_id
        self.context.route_id = route_id
        log.info(f"[{self.context.driver_id}] Trip started (trip={trip_id}, bus={bus_id}, "
                 f"route={route_id})")

    def end_trip(self, timestamp: float) -> None:
        """Resolve any open episode silently and clear per-trip history."""
        episode = self._tracker.close(timestamp)
        if episode is not None:
            log.info(f"[{self.context.driver_id}] Trip ended with open episode "
                     f"({episode.continuous_closed_duration:.2f}s closed)")
        self._escalation.reset()
        self._motion.reset()
        self.context.trip_id = None
        log.info(f"[{self.context.driver_id}] Trip ended.")

    def update_location(self, latitude: float, longitude: float) -> None:
        """Latest GPS fix; copied onto alerts raised afterwards."""
        self.context.location = (latitude, longitude)

    # ── Utility ───────────────────────────────────────────────────────────────

    @property
    def escalation_level(self) -> str:
        return self._escalation.level

    @property
    def episode(self):
        return self._tracker.episode

    @property
    def frame_count(self) -> int:
        return self._frame_count

    @property
    def dropped_count(self) -> int:
        return self._dropped_count

    @property
    def last_result(self) -> Optional[FrameResult]:
        """Most recently computed result without re-processing."""
        return self._last_result
