"""
Remote photoplethysmography (rPPG) heart-rate extraction.

Skin colour under the face box shifts slightly with every pulse. Each frame
contributes one weighted mean RGB sample from four facial regions; every
``process_interval_ms`` the rolling window is analysed:

  1. per channel (green first, then red, then blue): detrend and smooth with
     a small Gaussian kernel
  2. find pulse peaks with ``scipy.signal.find_peaks`` (adaptive height from
     the quartiles, minimum spacing from a 180 BPM ceiling)
  3. average the inter-peak intervals after IQR outlier fencing
  4. accept 40–200 BPM, keep the last few accepted values and report their
     linearly weighted average

Confidence falls with the coefficient of variation of the accepted history.

Public API (used by tracking_session.py):
    HeartRateExtractor.sample_frame(frame_bgr, box, t_ms) -> bool
    HeartRateExtractor.add_sample(r, g, b, t_ms)
    HeartRateExtractor.process(now_ms) -> HeartRateReading | None
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional, Sequence, Tuple

import cv2
import numpy as np
from scipy.signal import find_peaks

from biotracker.config import (
    HR_HISTORY_SIZE,
    HR_MAX_BPM,
    HR_MIN_BPM,
    HR_MIN_BRIGHTNESS,
    HR_MIN_SAMPLES,
    HR_PEAK_MAX_BPM,
    HR_PROCESS_INTERVAL_MS,
    HR_STALE_CONFIDENCE_FACTOR,
    HR_WINDOW_SEC,
)
from biotracker.geometry import clamp01, quartiles
from biotracker.landmarks import FaceBox
from biotracker.models import HeartRateReading

logger = logging.getLogger(__name__)

# (x, y, w, h) as fractions of the face box, with blend weight
FACE_ROIS: List[Tuple[str, Tuple[float, float, float, float], float]] = [
    ("forehead",    (0.20, 0.10, 0.60, 0.15), 0.4),
    ("left_cheek",  (0.15, 0.50, 0.20, 0.15), 0.2),
    ("right_cheek", (0.65, 0.50, 0.20, 0.15), 0.2),
    ("center",      (0.40, 0.40, 0.20, 0.20), 0.2),
]

SMOOTH_SIGMA = 1.0
SMOOTH_RADIUS = 3
IQR_FENCE = 1.5
FLAT_EPSILON = 1e-6

CHANNELS = ("g", "r", "b")


# ─── Frame sampling ───────────────────────────────────────────────────────────

def frame_brightness(frame_bgr: np.ndarray) -> float:
    b, g, r, _ = cv2.mean(frame_bgr)
    return (r + g + b) / 3.0


def roi_color_sample(frame_bgr: np.ndarray, box: FaceBox) -> Optional[Tuple[float, float, float]]:
    """Weighted mean (r, g, b) over the facial ROIs, or None if nothing usable.

    ROIs are clipped to the frame; empty ones drop out and the remaining
    weights are renormalised.
    """
    fh, fw = frame_bgr.shape[:2]
    acc = np.zeros(3, dtype=np.float64)
    total_w = 0.0
    for _name, (fx, fy, fwr, fhr), weight in FACE_ROIS:
        x0 = max(0, int(math.floor(box.x + box.width * fx)))
        y0 = max(0, int(math.floor(box.y + box.height * fy)))
        x1 = min(fw, int(math.floor(box.x + box.width * (fx + fwr))))
        y1 = min(fh, int(math.floor(box.y + box.height * (fy + fhr))))
        if x1 <= x0 or y1 <= y0:
            continue
        b, g, r, _ = cv2.mean(frame_bgr[y0:y1, x0:x1])
        acc += weight * np.array([r, g, b])
        total_w += weight
    if total_w == 0:
        return None
    r, g, b = acc / total_w
    return float(r), float(g), float(b)


# ─── Signal analysis ──────────────────────────────────────────────────────────

def gaussian_smooth(values: Sequence[float], sigma: float = SMOOTH_SIGMA, radius: int = SMOOTH_RADIUS) -> np.ndarray:
    """Gaussian-weighted moving average; weights renormalised at the edges."""
    x = np.asarray(values, dtype=np.float64)
    n = x.size
    if n == 0:
        return x
    offsets = np.arange(-radius, radius + 1)
    kernel = np.exp(-(offsets ** 2) / (2.0 * sigma ** 2))
    cols = np.arange(n)[:, None] + offsets[None, :]
    valid = (cols >= 0) & (cols < n)
    w = np.where(valid, kernel[None, :], 0.0)
    vals = x[np.clip(cols, 0, n - 1)]
    return (w * vals).sum(axis=1) / w.sum(axis=1)


def _fence(intervals: np.ndarray) -> np.ndarray:
    if intervals.size < 4:
        return intervals
    q1, _, q3 = quartiles(intervals)
    iqr = q3 - q1
    lo, hi = q1 - IQR_FENCE * iqr, q3 + IQR_FENCE * iqr
    return intervals[(intervals >= lo) & (intervals <= hi)]


def estimate_bpm(values: Sequence[float], times_ms: Sequence[float]) -> Optional[float]:
    """BPM from one colour channel, or None if no plausible pulse is found."""
    x = np.asarray(values, dtype=np.float64)
    t = np.asarray(times_ms, dtype=np.float64)
    if x.size < HR_MIN_SAMPLES or x.std() < FLAT_EPSILON:
        return None

    smooth = gaussian_smooth(x - x.mean())

    median_dt = float(np.median(np.diff(t)))
    if median_dt <= 0:
        return None
    fs = 1000.0 / median_dt
    min_distance = max(1, int(math.ceil(fs * 60.0 / HR_PEAK_MAX_BPM)))

    q1, _, q3 = quartiles(smooth)
    peaks, _ = find_peaks(smooth, height=q1 + 0.5 * (q3 - q1), distance=min_distance)
    if peaks.size < 2:
        return None

    intervals = _fence(np.diff(t[peaks]))
    if intervals.size == 0 or intervals.mean() <= 0:
        return None

    bpm = 60.0 / (intervals.mean() / 1000.0)
    if bpm < HR_MIN_BPM or bpm > HR_MAX_BPM:
        return None
    return bpm


def weighted_average(values: Sequence[float]) -> float:
    """Linear weights 1..n, newest heaviest."""
    if not values:
        return 0.0
    weights = np.arange(1, len(values) + 1, dtype=np.float64)
    return float(np.dot(weights, np.asarray(values, dtype=np.float64)) / weights.sum())


def history_confidence(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.5
    arr = np.asarray(values, dtype=np.float64)
    m = arr.mean()
    if m == 0:
        return 0.0
    return clamp01(1.0 - 4.0 * float(arr.std() / m))


# ─── Extractor ────────────────────────────────────────────────────────────────

@dataclass
class HeartRateSignalBuffer:
    samples: Deque[Tuple[float, float, float, float]] = field(default_factory=deque)  # r, g, b, t
    bpm_history: Deque[float] = field(default_factory=lambda: deque(maxlen=HR_HISTORY_SIZE))
    last_processed_ms: Optional[float] = None
    last_reading: Optional[HeartRateReading] = None


class HeartRateExtractor:
    """Per-session rPPG state and analysis."""

    def __init__(
        self,
        process_interval_ms: float = HR_PROCESS_INTERVAL_MS,
        window_sec: float = HR_WINDOW_SEC,
        min_brightness: float = HR_MIN_BRIGHTNESS,
    ):
        self.process_interval_ms = process_interval_ms
        self.window_ms = window_sec * 1000.0
        self.min_brightness = min_brightness
        self.buffer = HeartRateSignalBuffer()

    # ── Sampling ────────────────────────────────────────

    def add_sample(self, r: float, g: float, b: float, t_ms: float) -> None:
        if not all(math.isfinite(v) for v in (r, g, b, t_ms)):
            return
        samples = self.buffer.samples
        samples.append((r, g, b, t_ms))
        while samples and t_ms - samples[0][3] > self.window_ms:
            samples.popleft()

    def sample_frame(self, frame_bgr: np.ndarray, box: FaceBox, t_ms: float) -> bool:
        """Sample the face ROIs of one frame. False if too dark or no ROI."""
        if frame_brightness(frame_bgr) < self.min_brightness:
            logger.debug("[heart_rate] Frame too dark, sample skipped")
            return False
        rgb = roi_color_sample(frame_bgr, box)
        if rgb is None:
            return False
        self.add_sample(rgb[0], rgb[1], rgb[2], t_ms)
        return True

    # ── Analysis ────────────────────────────────────────

    def due(self, now_ms: float) -> bool:
        last = self.buffer.last_processed_ms
        return last is None or now_ms - last >= self.process_interval_ms

    def process(self, now_ms: float) -> Optional[HeartRateReading]:
        """Analyse the window if the interval has elapsed.

        Returns None when rate-limited, when there are too few samples, or
        when no channel yields a plausible pulse.
        """
        if not self.due(now_ms):
            return None
        self.buffer.last_processed_ms = now_ms

        samples = list(self.buffer.samples)
        if len(samples) < HR_MIN_SAMPLES:
            return None

        arr = np.asarray(samples, dtype=np.float64)
        times = arr[:, 3]
        columns = {"r": arr[:, 0], "g": arr[:, 1], "b": arr[:, 2]}

        bpm = None
        for ch in CHANNELS:
            bpm = estimate_bpm(columns[ch], times)
            if bpm is not None:
                break
        if bpm is None:
            return None

        history = self.buffer.bpm_history
        history.append(bpm)
        reading = HeartRateReading(
            bpm=round(weighted_average(history)),
            confidence=history_confidence(history),
            timestamp=now_ms,
        )
        self.buffer.last_reading = reading
        logger.debug(f"[heart_rate] {reading.bpm} BPM (conf {reading.confidence:.2f}, {len(samples)} samples)")
        return reading

    def last_known(self) -> Optional[HeartRateReading]:
        return self.buffer.last_reading

    def stale_reading(self, now_ms: float) -> Optional[HeartRateReading]:
        """Last reading re-reported at reduced confidence, or None."""
        last = self.buffer.last_reading
        if last is None:
            return None
        return HeartRateReading(
            bpm=last.bpm,
            confidence=max(0.0, last.confidence * HR_STALE_CONFIDENCE_FACTOR),
            timestamp=now_ms,
        )

    def reset(self) -> None:
        self.buffer = HeartRateSignalBuffer()
