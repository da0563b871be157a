# =============================================================================
# config.py — Central Configuration for the Driver Alert Pipeline
# All tunable parameters live here. Never hardcode values in modules.
# =============================================================================

import os

# ── Paths ─────────────────────────────────────────────────────────────────────
BASE_DIR    = os.path.dirname(os.path.abspath(__file__))
ASSETS_DIR  = os.path.join(BASE_DIR, "assets")
LOGS_DIR    = os.path.join(BASE_DIR, "logs")
os.makedirs(LOGS_DIR, exist_ok=True)

# ── Frame source ──────────────────────────────────────────────────────────────
CAMERA_FPS          = 30
# One frame interval. Frames that take longer are logged.
FRAME_BUDGET_MS     = 1000.0 / CAMERA_FPS

# ── Landmarks (MediaPipe Face Mesh, 468/478-point topology) ───────────────────
# EAR landmark indices (6 points per eye: p0..p5)
#   p0 = outer corner, p3 = inner corner
#   p1,p2 = upper lid,  p4,p5 = lower lid
LEFT_EYE_EAR_IDX        = [33,  160, 158, 133, 153, 144]
RIGHT_EYE_EAR_IDX       = [362, 385, 387, 263, 373, 380]

# Stable reference points sampled for motion:
# nose tip, left eye corner, left mouth, chin, right eye corner, right mouth
MOTION_SAMPLE_IDX       = [1, 33, 61, 199, 263, 291]

# ── Driver State Classifier ───────────────────────────────────────────────────
SLEEPING_EAR_THRESH     = 0.15    # Below this → eyes effectively closed
TENSION_MOTION_THRESH   = 2.0     # px/frame above this → agitated
STILL_MOTION_THRESH     = 0.5     # px/frame below this → face is still
DROWSY_EAR_THRESH       = 0.20    # Partially closed eyes on a still face

# ── Episode Tracker ───────────────────────────────────────────────────────────
# Hysteresis: an episode opens below CLOSED and only resolves at/above OPEN
EAR_CLOSED_THRESHOLD    = 0.18
EAR_OPEN_THRESHOLD      = 0.25
WARNING_DURATION_S      = 3.0
CRITICAL_DURATION_S     = 5.0
# Landmarks may be lost this long before an open episode is resolved
LANDMARK_GAP_TOLERANCE_S = 0.5

# ── Alerts ────────────────────────────────────────────────────────────────────
ALERT_SEVERITY = {
    "warning":  "medium",
    "critical": "critical",
    "sleeping": "critical",
    "tension":  "high",
}

# Pipeline alert type → alertType on the ingestion endpoint
ALERT_WIRE_TYPES = {
    "warning":  "warning",
    "critical": "alarm",
    "sleeping": "sleeping",
    "tension":  "tension",
}

# Ingestion alertType → stored enum
STORED_ALERT_TYPES = {
    "warning":  "drowsiness_warning",
    "alarm":    "drowsiness_critical",
    "sleeping": "sleeping_detected",
    "tension":  "tension_detected",
}

# Ingestion alertType → derived severity
WIRE_SEVERITY = {
    "warning":  "medium",
    "alarm":    "critical",
    "sleeping": "critical",
    "tension":  "high",
}

MOOD_STATES = {
    "Active":   "active",
    "Tension":  "tension",
    "Sleeping": "sleeping",
}

ALERT_QUERY_DEFAULT_LIMIT = 50
DISPATCH_QUEUE_SIZE       = 256

# Remote alert store (POST /driver-alerts). Empty → in-memory store.
ALERT_STORE_URL           = os.environ.get("DMS_ALERT_STORE_URL", "")
ALERT_STORE_TIMEOUT_S     = 5.0

# ── Alert server (Flask-SocketIO) ─────────────────────────────────────────────
SERVER_HOST                 = os.environ.get("DMS_SERVER_HOST", "0.0.0.0")
SERVER_PORT                 = int(os.environ.get("DMS_SERVER_PORT", "5050"))
SERVER_CORS_ALLOWED_ORIGINS = "*"
SERVER_ASYNC_MODE           = "threading"
ALERT_EVENT_NAME            = "driver-alert"
EMIT_EVENT_NAME             = "dms_frame"

# ── In-cab alarm ──────────────────────────────────────────────────────────────
ALERT_L1_FREQ               = 660.0   # Hz, soft warning beep
ALERT_L1_DURATION           = 0.25
ALERT_L2_FREQ               = 1200.0  # Hz, critical alarm
ALERT_L2_DURATION           = 0.5
ALERT_REPEAT_INTERVAL_L1    = 2.0
ALERT_REPEAT_INTERVAL_L2    = 0.6
ALERT_SOUND_L1              = os.path.join(ASSETS_DIR, "warning.wav")
ALERT_SOUND_L2              = os.path.join(ASSETS_DIR, "alarm.wav")

DEBUG_MODE                  = False
