"""
Server-side payload sanitisation.

Every biometric payload the relay forwards is rebuilt from scratch here.
Nothing is rejected: missing keys, wrong types and non-finite numbers are
replaced by defaults, and ranges are clamped, so a display always receives a
complete, well-typed record.
"""

from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from biotracker.config import FEEDBACK_MAX_CHARS, HR_MAX_BPM, HR_MIN_BPM
from biotracker.geometry import clamp, clamp01
from biotracker.models import (
    EMOTION_CATEGORIES,
    FEEDBACK_TYPES,
    BiometricFrame,
    EmotionScores,
    Feedback,
    GazeDirection,
    HeadDirection,
    HeadPosition,
    HeartRateReading,
)


def _now_ms() -> float:
    return time.time() * 1000.0


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _number(value: Any) -> Optional[float]:
    """Finite float or None. Booleans and numeric strings are not numbers here."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def _num(raw: Dict[str, Any], key: str, default: float, lo: float = -math.inf, hi: float = math.inf) -> float:
    value = _number(raw.get(key))
    if value is None:
        return default
    return clamp(value, lo, hi)


def _flag(raw: Dict[str, Any], key: str, default: bool = False) -> bool:
    value = raw.get(key)
    return value if isinstance(value, bool) else default


def _timestamp(raw: Dict[str, Any]) -> float:
    """Epoch milliseconds. ISO-8601 strings are converted; anything else is server time."""
    value = raw.get("timestamp")
    if isinstance(value, str):
        value = _iso_to_ms(value)
    value = _number(value)
    return value if value is not None else _now_ms()


def _iso_to_ms(text: str) -> Optional[float]:
    try:
        stamp = datetime.fromisoformat(text.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp.timestamp() * 1000.0


# ─── Per-payload sanitisers ───────────────────────────────────────────────────

def sanitize_heart_rate(data: Any) -> HeartRateReading:
    raw = _as_dict(data)
    bpm = _number(raw.get("bpm"))
    if bpm is None or bpm < HR_MIN_BPM or bpm > HR_MAX_BPM:
        return HeartRateReading(bpm=0.0, confidence=0.0, timestamp=_timestamp(raw))
    return HeartRateReading(
        bpm=bpm,
        confidence=_num(raw, "confidence", 0.0, 0.0, 1.0),
        timestamp=_timestamp(raw),
    )


def sanitize_emotions(data: Any) -> EmotionScores:
    raw = _as_dict(data)
    scores = {c: _num(raw, c, 0.0, 0.0, 1.0) for c in EMOTION_CATEGORIES}
    dominant = raw.get("dominant")
    if dominant not in EMOTION_CATEGORIES:
        dominant = "neutral"
    return EmotionScores(
        **scores,
        dominant=dominant,
        dominant_score=clamp01(_num(raw, "dominantScore", 0.0)),
        timestamp=_timestamp(raw),
    )


def sanitize_feedback(data: Any) -> Feedback:
    raw = _as_dict(data)
    kind = raw.get("type")
    if kind not in FEEDBACK_TYPES:
        kind = "info"
    message = raw.get("message")
    message = "" if message is None else str(message)
    return Feedback(
        type=kind,
        message=message[:FEEDBACK_MAX_CHARS],
        timestamp=_timestamp(raw),
    )


def sanitize_tracking(data: Any, with_extras: bool = False) -> BiometricFrame:
    """Eye/head record with defaults filled.

    With ``with_extras`` the optional ``heartRate`` and ``emotions`` blocks
    are kept (sanitised) when present; this is the combined-frame path.
    """
    raw = _as_dict(data)
    gaze = _as_dict(raw.get("gazeDirection"))
    head_dir = _as_dict(raw.get("headDirection"))
    head_pos = _as_dict(raw.get("headPosition"))

    count = _number(raw.get("blinkCount"))
    blink_count = int(count) if count is not None and count > 0 else 0

    heart_rate = None
    emotions = None
    if with_extras:
        if isinstance(raw.get("heartRate"), dict):
            heart_rate = sanitize_heart_rate(raw["heartRate"])
        if isinstance(raw.get("emotions"), dict):
            emotions = sanitize_emotions(raw["emotions"])

    return BiometricFrame(
        blink_rate=_num(raw, "blinkRate", 0.0, 0.0),
        blink_count=blink_count,
        is_blinking=_flag(raw, "isBlinking"),
        blink_just_detected=_flag(raw, "blinkJustDetected"),
        eye_aspect_ratio=_num(raw, "eyeAspectRatio", 0.3, 0.0),
        saccade_velocity=_num(raw, "saccadeVelocity", 0.0, 0.0),
        gaze_duration=_num(raw, "gazeDuration", 0.0, 0.0),
        gaze_direction=GazeDirection(
            x=_num(gaze, "x", 0.0, -1.0, 1.0),
            y=_num(gaze, "y", 0.0, -1.0, 1.0),
        ),
        pupil_diameter=_num(raw, "pupilDiameter", 4.0, 0.0),
        pupil_dilation_percent=_num(raw, "pupilDilationPercent", 50.0, 0.0, 100.0),
        head_direction=HeadDirection(
            pitch=_num(head_dir, "pitch", 0.0),
            yaw=_num(head_dir, "yaw", 0.0),
            roll=_num(head_dir, "roll", 0.0),
        ),
        head_position=HeadPosition(
            x=_num(head_pos, "x", 0.0),
            y=_num(head_pos, "y", 0.0),
            z=_num(head_pos, "z", 0.0),
        ),
        face_detected=_flag(raw, "faceDetected", True),
        heart_rate=heart_rate,
        emotions=emotions,
        timestamp=_timestamp(raw),
    )


def sanitize_combined(data: Any) -> BiometricFrame:
    return sanitize_tracking(data, with_extras=True)
