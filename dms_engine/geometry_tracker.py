# =============================================================================
# dms_engine/geometry_tracker.py
#
# Geometric ratio calculator — turns the six-point eye landmark sets of one
# LandmarkFrame into an Eye Aspect Ratio per eye and a mean ratio per frame.
#
# Pure functions only: the same landmarks always produce the same
# EyeMeasurement, with no side effects.
# =============================================================================

from typing import Optional, Sequence

import numpy as np

from config import LEFT_EYE_EAR_IDX, RIGHT_EYE_EAR_IDX
from dms_engine.data_structures import EyeMeasurement

_INVALID = EyeMeasurement()


# ── EAR Formula ───────────────────────────────────────────────────────────────
#
#          ||p1−p5|| + ||p2−p4||
#  EAR  =  ──────────────────────
#               2 · ||p0−p3||
#
# p0..p5 are the 6 eye landmarks in order:
#   p0 = outer corner, p3 = inner corner
#   p1,p2 = upper lid,  p4,p5 = lower lid

def compute_ear(eye_points) -> float:
    """
    Compute Eye Aspect Ratio for one eye.

    Args:
        eye_points: six (x, y) points, p0..p5

    Returns:
        EAR scalar value, 0.0 when the horizontal distance is zero
    """
    pts = np.asarray(eye_points, dtype=np.float64)[:, :2]

    d_top    = np.linalg.norm(pts[1] - pts[5])
    d_middle = np.linalg.norm(pts[2] - pts[4])
    d_horiz  = np.linalg.norm(pts[0] - pts[3])

    if d_horiz == 0.0:
        return 0.0

    return float((d_top + d_middle) / (2.0 * d_horiz))


def _eye_points(landmarks: np.ndarray, idx: Sequence[int]) -> Optional[np.ndarray]:
    """Slice one eye out of the landmark array, None if geometry is unusable."""
    pts = landmarks[list(idx), :2]
    if not np.all(np.isfinite(pts)):
        return None
    if np.linalg.norm(pts[0] - pts[3]) == 0.0:
        return None
    return pts


def measure_eyes(
    landmarks: Optional[np.ndarray],
    left_idx: Sequence[int] = LEFT_EYE_EAR_IDX,
    right_idx: Sequence[int] = RIGHT_EYE_EAR_IDX,
) -> EyeMeasurement:
    """
    Compute left, right and mean EAR for one frame.

    A frame is invalid (valid=False, ratios 0) when landmarks are missing,
    too short for the eye indices, non-finite, or either eye has zero
    horizontal width.
    """
    if landmarks is None:
        return _INVALID

    lm = np.asarray(landmarks, dtype=np.float64)
    if lm.ndim != 2 or lm.shape[1] < 2:
        return _INVALID
    if lm.shape[0] <= max(max(left_idx), max(right_idx)):
        return _INVALID

    left_pts  = _eye_points(lm, left_idx)
    right_pts = _eye_points(lm, right_idx)
    if left_pts is None or right_pts is None:
        return _INVALID

    left_ear  = compute_ear(left_pts)
    right_ear = compute_ear(right_pts)

    return EyeMeasurement(
        left_ear=left_ear,
        right_ear=right_ear,
        ear=(left_ear + right_ear) / 2.0,
        valid=True,
    )
