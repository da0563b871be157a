# =============================================================================
# dms_engine/motion_detector.py
#
# Motion detector — mean pixel displacement of a few stable facial points
# between the current and the immediately preceding *valid* frame.
#
# "No motion data yet" (first frame, or the previous frame was invalid)
# reports 0.0, which the classifier reads as "no motion", never as agitation.
# =============================================================================

from typing import Optional, Sequence

import numpy as np

from config import MOTION_SAMPLE_IDX


def compute_motion(
    current: np.ndarray,
    previous: Optional[np.ndarray],
    indices: Sequence[int] = MOTION_SAMPLE_IDX,
) -> float:
    """
    Mean Euclidean (x, y) displacement of the sampled points.

    Args:
        current:  (N, 2|3) landmarks of this frame
        previous: landmarks of the previous valid frame, or None
        indices:  reference point indices to sample

    Returns:
        Non-negative mean displacement; 0.0 without a previous frame
    """
    if previous is None:
        return 0.0

    idx = list(indices)
    cur  = np.asarray(current,  dtype=np.float64)[idx, :2]
    prev = np.asarray(previous, dtype=np.float64)[idx, :2]
    return float(np.mean(np.linalg.norm(cur - prev, axis=1)))


class MotionDetector:
    """
    Holds the previous valid landmark set for one driver.

    Usage:
        md = MotionDetector()
        score = md.update(landmarks, valid=True)
    """

    def __init__(self, indices: Sequence[int] = MOTION_SAMPLE_IDX):
        self._indices = list(indices)
        self._previous: Optional[np.ndarray] = None

    def update(self, landmarks: Optional[np.ndarray], valid: bool) -> float:
        """Score this frame and remember it; invalid frames clear the history."""
        if not valid or landmarks is None:
            self._previous = None
            return 0.0

        score = compute_motion(landmarks, self._previous, self._indices)
        self._previous = np.array(landmarks, dtype=np.float64, copy=True)
        return score

    def reset(self) -> None:
        self._previous = None

    @property
    def has_previous(self) -> bool:
        return self._previous is not None
