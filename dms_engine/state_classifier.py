# =============================================================================
# dms_engine/state_classifier.py
#
# Per-frame driver state: (mean EAR, motion) → Active | Tension | Sleeping.
#
# Advisory only. This feeds dashboards and the secondary tension alert; the
# closed-eye alert ladder is driven by the EpisodeTracker, so retuning these
# thresholds can neither disable nor double-fire drowsiness alerts.
#
# Rules (first match wins):
#   1. ear < SLEEPING_EAR_THRESH                             → Sleeping
#   2. motion > TENSION_MOTION_THRESH                        → Tension
#   3. motion < STILL_MOTION_THRESH and ear < DROWSY_EAR     → Sleeping
#   4. otherwise                                             → Active
#
# Moderate motion with a low ratio falls through to Active.
# =============================================================================

from config import (
    SLEEPING_EAR_THRESH, TENSION_MOTION_THRESH,
    STILL_MOTION_THRESH, DROWSY_EAR_THRESH,
)
from dms_engine.data_structures import DriverState


def classify_driver_state(ear: float, motion: float) -> DriverState:
    if ear < SLEEPING_EAR_THRESH:
        return DriverState.SLEEPING

    if motion > TENSION_MOTION_THRESH:
        return DriverState.TENSION

    if motion < STILL_MOTION_THRESH and ear < DROWSY_EAR_THRESH:
        return DriverState.SLEEPING

    return DriverState.ACTIVE
