"""
BioTracker — Shared configuration.

Single place to load environment variables and the tuning constants used by
the extractors, the session scheduler and the relay.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# ── Load .env: biotracker/.env first, then repo root ────────────────────────
_PACKAGE_DIR = Path(__file__).resolve().parent           # biotracker/
_ROOT = _PACKAGE_DIR.parent                              # repo root
load_dotenv(_PACKAGE_DIR / ".env", override=False)       # biotracker/.env (primary)
load_dotenv(_ROOT / ".env", override=False)              # repo root fallback

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# ── Relay server ──────────────────────────────────────────────────────────────
RELAY_HOST: str = os.getenv("RELAY_HOST", "0.0.0.0")
RELAY_PORT: int = int(os.getenv("RELAY_PORT", "3000"))
RELAY_URL: str = os.getenv("RELAY_URL", f"http://localhost:{RELAY_PORT}")
OUTBOX_LIMIT: int = int(os.getenv("OUTBOX_LIMIT", "256"))            # queued msgs per polling endpoint
POLL_IDLE_TIMEOUT_SEC: float = float(os.getenv("POLL_IDLE_TIMEOUT_SEC", "30"))
REAPER_INTERVAL_SEC: float = float(os.getenv("REAPER_INTERVAL_SEC", "5"))
FEEDBACK_MAX_CHARS: int = 500

# ── Relay client ──────────────────────────────────────────────────────────────
WS_MAX_ATTEMPTS: int = int(os.getenv("WS_MAX_ATTEMPTS", "3"))
WS_BACKOFF_BASE_SEC: float = float(os.getenv("WS_BACKOFF_BASE_SEC", "0.5"))
WS_BACKOFF_MAX_SEC: float = float(os.getenv("WS_BACKOFF_MAX_SEC", "8"))
POLL_INTERVAL_SEC: float = float(os.getenv("POLL_INTERVAL_SEC", "0.2"))

# ── Session cadence (ms) ──────────────────────────────────────────────────────
EYE_INTERVAL_MS: int = int(os.getenv("EYE_INTERVAL_MS", "33"))       # ~30 fps
HR_SAMPLE_INTERVAL_MS: int = int(os.getenv("HR_SAMPLE_INTERVAL_MS", "50"))
HR_PROCESS_INTERVAL_MS: int = int(os.getenv("HR_PROCESS_INTERVAL_MS", "1000"))
EMIT_INTERVAL_MS: int = int(os.getenv("EMIT_INTERVAL_MS", "200"))    # 5 Hz

# ── Eye / blink ───────────────────────────────────────────────────────────────
BLINK_EAR_THRESHOLD: float = float(os.getenv("BLINK_EAR_THRESHOLD", "0.25"))
BLINK_HISTORY_SIZE: int = 20
BLINK_WINDOW_MS: int = 60_000
BLINK_RATE_MIN_SPAN_MS: int = 1000
EYE_POSITION_HISTORY: int = 10
FIXATION_THRESHOLD_PX: float = 10.0
PUPIL_DIAMETER_RATIO: float = 0.4        # diameter ≈ 0.4 × opening height
PUPIL_MAX_OPENING_RATIO: float = 0.5     # max plausible opening = 0.5 × eye width
GAZE_HEAD_SCALE_DEG: float = 45.0

# ── Head pose ─────────────────────────────────────────────────────────────────
HEAD_POSITION_SCALE: float = 10.0
HEAD_DEPTH_SCALE: float = 5.0
HEAD_PITCH_BASELINE: float = 0.3
HEAD_ANGLE_LIMIT: float = 90.0

# ── Heart rate (rPPG) ─────────────────────────────────────────────────────────
HR_WINDOW_SEC: float = float(os.getenv("HR_WINDOW_SEC", "15"))
HR_MIN_SAMPLES: int = 4
HR_HISTORY_SIZE: int = 7
HR_MIN_BPM: float = 40.0
HR_MAX_BPM: float = 200.0
HR_PEAK_MAX_BPM: float = 180.0           # sets the minimum peak distance
HR_MIN_BRIGHTNESS: float = 40.0
HR_STALE_CONFIDENCE_FACTOR: float = 0.5

# ── Fusion / display ──────────────────────────────────────────────────────────
EYE_HISTORY_SIZE: int = 100
HR_DISPLAY_HISTORY_SIZE: int = 30
EMOTION_HISTORY_SIZE: int = 30
FEEDBACK_HISTORY_SIZE: int = 50
SCORE_BAND_LOW: int = 30
SCORE_BAND_HIGH: int = 70

# ── Detector ──────────────────────────────────────────────────────────────────
FACE_MODEL_PATH: str = os.getenv(
    "FACE_MODEL_PATH", str(_PACKAGE_DIR / "face_landmarker.task")
)
