# =============================================================================
# dms_engine/state_machine.py
#
# Alert Escalation State Machine — one closed-eye ladder per Episode.
#
# State diagram:
#
#        warning event         critical event
#   IDLE ─────────────→ WARNING ──────────────→ CRITICAL
#     ↑                    │                        │
#     └────────────────────┴──── episode resolved ──┘
#
# Every forward transition builds exactly one Alert:
#   • IDLE → WARNING     → alert_type "warning",  severity "medium"
#   • WARNING → CRITICAL → alert_type "critical", severity "critical"
#
# Secondary alert:
#   While the ladder is at WARNING or above, a Tension classification raises
#   one "tension"/"high" alert per Episode. It has its own slot and never
#   consumes the warning/critical ones.
# =============================================================================

from typing import Optional

from dms_engine.data_structures import (
    Alert, DriverContext, DriverState, DurationThresholdCrossed, Episode,
)
from core.logger import get_logger

log = get_logger(__name__)

# Ordered escalation levels
IDLE     = "IDLE"
WARNING  = "WARNING"
CRITICAL = "CRITICAL"
ESCALATION_LEVELS = [IDLE, WARNING, CRITICAL]

_EVENT_TARGET = {
    "warning":  WARNING,
    "critical": CRITICAL,
}


class EscalationStateMachine:
    """
    Converts DurationThresholdCrossed events into Alerts for one driver.

    Usage:
        sm = EscalationStateMachine("driver-1")
        alert = sm.on_threshold(event, episode, context, driver_state)
        sm.on_resolved()
    """

    def __init__(self, driver_id: str):
        self.driver_id = driver_id
        self.level = IDLE
        self._episode_id: Optional[str] = None
        self._tension_episode_id: Optional[str] = None

        log.info(f"EscalationStateMachine initialized for driver {driver_id}.")

    # ── Public API ────────────────────────────────────────────────────────────

    def on_threshold(
        self,
        event: DurationThresholdCrossed,
        episode: Episode,
        context: DriverContext,
        driver_state: Optional[DriverState] = None,
    ) -> Optional[Alert]:
        """
        Apply one threshold event.

        Returns:
            The Alert for a forward transition, None if the event would not
            move the ladder forward.
        """
        target = _EVENT_TARGET.get(event.kind)
        if target is None:
            raise ValueError(f"Unknown threshold event kind: {event.kind!r}")

        if self._episode_id is not None and self._episode_id != episode.episode_id:
            # A new episode without an explicit resolution; start from IDLE
            self.on_resolved()

        if _rank(target) <= _rank(self.level):
            log.debug(f"[{self.driver_id}] Ignoring {event.kind} event at level {self.level}")
            return None

        log.info(f"[{self.driver_id}] Escalation: {self.level} → {target} "
                 f"(closed {episode.continuous_closed_duration:.2f}s)")
        self.level = target
        self._episode_id = episode.episode_id

        return Alert.build(
            alert_type=event.kind,
            context=context,
            timestamp=event.timestamp,
            episode=episode,
            driver_state=driver_state,
        )

    def on_tension(
        self,
        episode: Optional[Episode],
        context: DriverContext,
        driver_state: Optional[DriverState],
        timestamp: float,
    ) -> Optional[Alert]:
        """Raise the secondary tension alert, once per Episode, at WARNING or above."""
        if driver_state != DriverState.TENSION or episode is None:
            return None
        if self.level == IDLE or self._episode_id != episode.episode_id:
            return None
        if self._tension_episode_id == episode.episode_id:
            return None

        self._tension_episode_id = episode.episode_id
        log.info(f"[{self.driver_id}] Tension during {self.level} episode")
        return Alert.build(
            alert_type="tension",
            context=context,
            timestamp=timestamp,
            episode=episode,
            driver_state=driver_state,
        )

    def on_resolved(self) -> None:
        """Episode resolved: back to IDLE."""
        if self.level != IDLE:
            log.info(f"[{self.driver_id}] Escalation: {self.level} → {IDLE} (resolved)")
        self.level = IDLE
        self._episode_id = None
        self._tension_episode_id = None

    # ── Utility ───────────────────────────────────────────────────────────────

    def reset(self) -> None:
        """Reset to safe defaults (e.g. after the trip ends)."""
        self.on_resolved()

    @property
    def is_critical(self) -> bool:
        return self.level == CRITICAL


def _rank(level: str) -> int:
    return ESCALATION_LEVELS.index(level)
