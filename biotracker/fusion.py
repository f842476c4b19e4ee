"""
BioTracker — Combined metrics fusion.

Derives display scores from the latest eye and heart-rate data:

    stress    = 0.7 · heart-rate factor + 0.3 · blink factor
    attention = 0.6 · fixation factor   + 0.4 · (1 − saccade factor)
    fatigue   = 0.6 · blink factor      + 0.4 · (1 − fixation factor)

Each factor is clamped to [0, 1] and each score is an integer in [0, 100].
A score is ``None`` when its inputs have not arrived yet; nothing is
fabricated from defaults.

The display side keeps a ``MetricsHistory`` of what the relay forwarded and
can export it as a pandas DataFrame with the scores aligned on the eye
timeline (heart rate joined as-of each eye sample).

Public API:
    stress_score(bpm, blink_rate) -> int | None
    attention_score(gaze_duration, saccade_velocity) -> int | None
    fatigue_index(blink_rate, gaze_duration) -> int | None
    score_band(score) -> "low" | "moderate" | "high" | None
    MetricsHistory
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Optional

import pandas as pd

from biotracker.config import (
    EMOTION_HISTORY_SIZE,
    EYE_HISTORY_SIZE,
    FEEDBACK_HISTORY_SIZE,
    HR_DISPLAY_HISTORY_SIZE,
    SCORE_BAND_HIGH,
    SCORE_BAND_LOW,
)
from biotracker.geometry import clamp01, mean, stddev
from biotracker.models import MessageType

logger = logging.getLogger(__name__)

# ── Factor normalisers ───────────────────────────────────────────────────────
RESTING_BPM = 60.0
BPM_SPAN = 40.0              # 60 → 100 BPM maps onto 0 → 1
BLINK_RATE_SPAN = 20.0       # blinks / min
GAZE_DURATION_SPAN = 5.0     # seconds of fixation
SACCADE_SPAN = 100.0         # px / s

SCORE_COLS = ["stress", "attention", "fatigue"]


# ─────────────────────────────────────────────────────────────────────────────
# Scores
# ─────────────────────────────────────────────────────────────────────────────

def stress_score(bpm: Optional[float], blink_rate: Optional[float]) -> Optional[int]:
    if bpm is None or blink_rate is None:
        return None
    hr_factor = clamp01((bpm - RESTING_BPM) / BPM_SPAN)
    blink_factor = clamp01(blink_rate / BLINK_RATE_SPAN)
    return round(100 * (0.7 * hr_factor + 0.3 * blink_factor))


def attention_score(gaze_duration: Optional[float], saccade_velocity: Optional[float]) -> Optional[int]:
    if gaze_duration is None or saccade_velocity is None:
        return None
    fixation = clamp01(gaze_duration / GAZE_DURATION_SPAN)
    steadiness = clamp01(1 - saccade_velocity / SACCADE_SPAN)
    return round(100 * (0.6 * fixation + 0.4 * steadiness))


def fatigue_index(blink_rate: Optional[float], gaze_duration: Optional[float]) -> Optional[int]:
    if blink_rate is None or gaze_duration is None:
        return None
    blink_factor = clamp01(blink_rate / BLINK_RATE_SPAN)
    gaze_factor = clamp01(1 - gaze_duration / GAZE_DURATION_SPAN)
    return round(100 * (0.6 * blink_factor + 0.4 * gaze_factor))


def score_band(score: Optional[int]) -> Optional[str]:
    if score is None:
        return None
    if score < SCORE_BAND_LOW:
        return "low"
    if score < SCORE_BAND_HIGH:
        return "moderate"
    return "high"


@dataclass(frozen=True)
class CombinedScores:
    stress: Optional[int] = None
    attention: Optional[int] = None
    fatigue: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stress": self.stress,
            "attention": self.attention,
            "fatigue": self.fatigue,
            "stressBand": score_band(self.stress),
            "attentionBand": score_band(self.attention),
            "fatigueBand": score_band(self.fatigue),
        }


def combine(eye: Optional[Dict[str, Any]], bpm: Optional[float]) -> CombinedScores:
    """Scores from the latest eye record (wire dict) and the latest BPM."""
    if eye is None:
        return CombinedScores()
    blink_rate = eye.get("blinkRate", 0.0)
    gaze = eye.get("gazeDuration", 0.0)
    saccade = eye.get("saccadeVelocity", 0.0)
    return CombinedScores(
        stress=stress_score(bpm, blink_rate),
        attention=attention_score(gaze, saccade),
        fatigue=fatigue_index(blink_rate, gaze),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Display-side history
# ─────────────────────────────────────────────────────────────────────────────

class MetricsHistory:
    """Bounded in-memory history of updates received from a paired mobile."""

    def __init__(
        self,
        eye_size: int = EYE_HISTORY_SIZE,
        hr_size: int = HR_DISPLAY_HISTORY_SIZE,
        emotion_size: int = EMOTION_HISTORY_SIZE,
        feedback_size: int = FEEDBACK_HISTORY_SIZE,
    ):
        self.eye: Deque[Dict[str, Any]] = deque(maxlen=eye_size)
        self.heart_rate: Deque[Dict[str, Any]] = deque(maxlen=hr_size)
        self.emotions: Deque[Dict[str, Any]] = deque(maxlen=emotion_size)
        self.feedback: Deque[Dict[str, Any]] = deque(maxlen=feedback_size)
        self.total_blinks = 0
        self._last_blink_count: Optional[int] = None

    # ── Ingest ──────────────────────────────────────────

    def add_eye(self, data: Dict[str, Any]) -> None:
        count = int(data.get("blinkCount", 0))
        last = self._last_blink_count or 0
        if count > last:
            self.total_blinks += count - last
        # a lower count means the mobile restarted its session
        self._last_blink_count = count
        self.eye.append(dict(data))

    def add_heart_rate(self, data: Dict[str, Any]) -> None:
        if data.get("bpm", 0) <= 0:
            return
        self.heart_rate.append(dict(data))

    def add_emotions(self, data: Dict[str, Any]) -> None:
        self.emotions.append(dict(data))

    def add_feedback(self, data: Dict[str, Any]) -> None:
        self.feedback.append(dict(data))

    def apply(self, message: Dict[str, Any]) -> bool:
        """Route one relay update message into the history. False if ignored."""
        kind = message.get("type")
        if kind == MessageType.EYE_TRACKING_UPDATE.value:
            self.add_eye(message.get("data") or {})
        elif kind == MessageType.HEART_RATE_UPDATE.value:
            self.add_heart_rate(message.get("data") or {})
        elif kind == MessageType.EMOTION_UPDATE.value:
            self.add_emotions(message.get("data") or {})
        elif kind == MessageType.COMBINED_BIOMETRIC_UPDATE.value:
            data = message.get("data") or {}
            self.add_eye(data)
            if data.get("heartRate"):
                self.add_heart_rate(data["heartRate"])
            if data.get("emotions"):
                self.add_emotions(data["emotions"])
        elif kind == MessageType.BIOFEEDBACK_UPDATE.value:
            self.add_feedback(message.get("feedback") or {})
        else:
            logger.debug(f"[fusion] Ignoring message type {kind!r}")
            return False
        return True

    def reset(self) -> None:
        self.eye.clear()
        self.heart_rate.clear()
        self.emotions.clear()
        self.feedback.clear()
        self.total_blinks = 0
        self._last_blink_count = None

    # ── Views ───────────────────────────────────────────

    def heart_rate_stats(self) -> Dict[str, Optional[float]]:
        """Current, average and variability (population stddev, needs ≥ 2)."""
        bpms = [r["bpm"] for r in self.heart_rate]
        if not bpms:
            return {"current": None, "average": None, "variability": None}
        return {
            "current": bpms[-1],
            "average": mean(bpms),
            "variability": stddev(bpms) if len(bpms) >= 2 else None,
        }

    def current_scores(self) -> CombinedScores:
        eye = self.eye[-1] if self.eye else None
        bpm = self.heart_rate[-1]["bpm"] if self.heart_rate else None
        return combine(eye, bpm)

    def to_frame(self) -> pd.DataFrame:
        """Eye timeline with heart rate joined as-of each sample and scores."""
        cols = ["timestamp", "blinkRate", "gazeDuration", "saccadeVelocity", "bpm"] + SCORE_COLS
        if not self.eye:
            return pd.DataFrame(columns=cols)

        eye_df = pd.DataFrame(
            [
                {
                    "timestamp": float(e.get("timestamp", 0.0)),
                    "blinkRate": float(e.get("blinkRate", 0.0)),
                    "gazeDuration": float(e.get("gazeDuration", 0.0)),
                    "saccadeVelocity": float(e.get("saccadeVelocity", 0.0)),
                }
                for e in self.eye
            ]
        ).sort_values("timestamp")

        if self.heart_rate:
            hr_df = pd.DataFrame(
                [
                    {"timestamp": float(r.get("timestamp") or 0.0), "bpm": float(r["bpm"])}
                    for r in self.heart_rate
                ]
            ).sort_values("timestamp")
            df = pd.merge_asof(eye_df, hr_df, on="timestamp", direction="backward")
        else:
            df = eye_df.assign(bpm=float("nan"))

        df["stress"] = [
            stress_score(None if pd.isna(bpm) else bpm, br)
            for bpm, br in zip(df["bpm"], df["blinkRate"])
        ]
        df["attention"] = [
            attention_score(g, s) for g, s in zip(df["gazeDuration"], df["saccadeVelocity"])
        ]
        df["fatigue"] = [
            fatigue_index(br, g) for br, g in zip(df["blinkRate"], df["gazeDuration"])
        ]
        return df[cols].reset_index(drop=True)

    def summary(self) -> Dict[str, Any]:
        return {
            "totalBlinks": self.total_blinks,
            "heartRate": self.heart_rate_stats(),
            "scores": self.current_scores().to_dict(),
            "dominantEmotion": self.emotions[-1].get("dominant") if self.emotions else None,
            "samples": {
                "eye": len(self.eye),
                "heartRate": len(self.heart_rate),
                "emotions": len(self.emotions),
                "feedback": len(self.feedback),
            },
        }
