"""
Eye & blink feature extraction.

Per frame, from the two six-point eye landmark sets:

  • eye aspect ratio (EAR) and edge-triggered blink detection
  • blink rate over a rolling one-minute history
  • saccade velocity and fixation (gaze) duration from eye-position history
  • a pupil-size proxy from lid opening
  • a coarse gaze direction, compensated for head yaw/pitch

Gaze convention: image coordinates, subject-mirrored. Negative x means the
subject looks to their left, positive x to their right; negative y is up,
positive y is down. Both axes are clamped to [-1, 1].

State lives in an ``EyeTrackingState`` owned by one tracking session.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Optional, Tuple

from biotracker.config import (
    BLINK_EAR_THRESHOLD,
    BLINK_HISTORY_SIZE,
    BLINK_RATE_MIN_SPAN_MS,
    BLINK_WINDOW_MS,
    EYE_POSITION_HISTORY,
    FIXATION_THRESHOLD_PX,
    GAZE_HEAD_SCALE_DEG,
    PUPIL_DIAMETER_RATIO,
    PUPIL_MAX_OPENING_RATIO,
)
from biotracker.geometry import Point, clamp, distance, midpoint
from biotracker.landmarks import FaceBox, LandmarkSet

IRIS_LID_BIAS = 0.05  # iris estimate leans this far toward the upper lid


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# State & output records
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
@dataclass
class EyeTrackingState:
    """Mutable per-session eye state."""

    blink_count: int = 0
    last_blink_ms: float = 0.0
    eye_closed: bool = False
    blink_history: Deque[float] = field(default_factory=lambda: deque(maxlen=BLINK_HISTORY_SIZE))
    positions: Deque[Tuple[float, float, float]] = field(
        default_factory=lambda: deque(maxlen=EYE_POSITION_HISTORY)
    )
    prev_box: Optional[FaceBox] = None

    def reset(self) -> None:
        self.blink_count = 0
        self.last_blink_ms = 0.0
        self.eye_closed = False
        self.blink_history.clear()
        self.positions.clear()
        self.prev_box = None


@dataclass(frozen=True)
class EyeMetrics:
    blink_rate: float = 0.0
    blink_count: int = 0
    is_blinking: bool = False
    blink_just_detected: bool = False
    saccade_velocity: float = 0.0
    gaze_duration: float = 0.0
    gaze_x: float = 0.0
    gaze_y: float = 0.0
    pupil_diameter: float = 0.0
    pupil_dilation_percent: float = 0.0
    pupil_size: float = 0.0
    eye_aspect_ratio: float = 0.0
    face_detected: bool = True
    timestamp: float = 0.0


def no_face_metrics(state: EyeTrackingState, now_ms: float) -> EyeMetrics:
    """Zeroed record for frames without a face. Keeps the running blink count."""
    return EyeMetrics(blink_count=state.blink_count, face_detected=False, timestamp=now_ms)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Blink
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def eye_aspect_ratio(eye: LandmarkSet) -> float:
    """(|p1-p5| + |p2-p4|) / (2·|p0-p3|); 0 for a zero-width eye."""
    width = eye.width
    if width == 0:
        return 0.0
    p = eye.points
    return (distance(p[1], p[5]) + distance(p[2], p[4])) / (2.0 * width)


def average_ear(left: LandmarkSet, right: LandmarkSet) -> float:
    return (eye_aspect_ratio(left) + eye_aspect_ratio(right)) / 2.0


def update_blink(
    state: EyeTrackingState,
    ear: float,
    now_ms: float,
    threshold: float = BLINK_EAR_THRESHOLD,
) -> bool:
    """Advance the open/closed state. Returns True only on the closing edge."""
    if ear < threshold:
        if state.eye_closed:
            return False
        state.eye_closed = True
        state.blink_count += 1
        state.last_blink_ms = now_ms
        state.blink_history.append(now_ms)
        return True
    state.eye_closed = False
    return False


def blink_rate(state: EyeTrackingState, now_ms: float) -> float:
    """Blinks per minute over the retained history (evicts stale entries first)."""
    history = state.blink_history
    while history and now_ms - history[0] > BLINK_WINDOW_MS:
        history.popleft()
    if len(history) <= 1:
        return 0.0
    span_ms = now_ms - history[0]
    if span_ms <= BLINK_RATE_MIN_SPAN_MS:
        return 0.0
    return len(history) / span_ms * 60_000.0


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Movement
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def saccade_velocity(positions) -> float:
    """Mean px/s over consecutive samples; pairs with Δt ≤ 0 are skipped."""
    pts = list(positions)
    speeds = []
    for (x0, y0, t0), (x1, y1, t1) in zip(pts, pts[1:]):
        dt = t1 - t0
        if dt <= 0:
            continue
        speeds.append(distance((x0, y0), (x1, y1)) / dt * 1000.0)
    if not speeds:
        return 0.0
    return sum(speeds) / len(speeds)


def gaze_duration(positions, threshold_px: float = FIXATION_THRESHOLD_PX) -> float:
    """Seconds the eyes have stayed within ``threshold_px`` of the newest position."""
    pts = list(positions)
    if len(pts) < 2:
        return 0.0
    nx, ny, nt = pts[-1]
    start = nt
    for x, y, t in reversed(pts[:-1]):
        if distance((x, y), (nx, ny)) > threshold_px:
            break
        start = t
    return (nt - start) / 1000.0


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Pupil & gaze
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def pupil_metrics(left: LandmarkSet, right: LandmarkSet) -> Tuple[float, float, float]:
    """Return (size, diameter, dilation %) from lid opening.

    There is no iris segmentation here; the opening height is the only proxy.
    """
    width = (left.width + right.width) / 2.0
    opening = (left.opening + right.opening) / 2.0
    size = width * opening
    diameter = PUPIL_DIAMETER_RATIO * opening
    max_opening = PUPIL_MAX_OPENING_RATIO * width
    dilation = 0.0 if max_opening == 0 else clamp(opening / max_opening * 100.0, 0.0, 100.0)
    return size, diameter, dilation


def _eye_offset(eye: LandmarkSet) -> Point:
    cx, cy = eye.center
    ux, uy = eye.upper_lid
    iris = (cx + (ux - cx) * IRIS_LID_BIAS, cy + (uy - cy) * IRIS_LID_BIAS)
    half_w = eye.width / 2.0
    if half_w == 0:
        return (0.0, 0.0)
    half_h = eye.opening / 2.0 or half_w
    # image x grows toward the subject's left on a front camera
    return (-(iris[0] - cx) / half_w, (iris[1] - cy) / half_h)


def gaze_direction(
    left: LandmarkSet,
    right: LandmarkSet,
    head_yaw: float = 0.0,
    head_pitch: float = 0.0,
) -> Point:
    lx, ly = _eye_offset(left)
    rx, ry = _eye_offset(right)
    x = (lx + rx) / 2.0 - head_yaw / GAZE_HEAD_SCALE_DEG
    y = (ly + ry) / 2.0 - head_pitch / GAZE_HEAD_SCALE_DEG
    return clamp(x, -1.0, 1.0), clamp(y, -1.0, 1.0)


def describe_gaze(x: float, y: float) -> str:
    if abs(x) < 0.2 and abs(y) < 0.2:
        return "center"
    vertical = "up" if y < -0.3 else "down" if y > 0.3 else ""
    horizontal = "left" if x < -0.3 else "right" if x > 0.3 else ""
    if vertical and horizontal:
        return f"{vertical} and {horizontal}"
    return vertical or horizontal or "slightly off-center"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Per-frame entry point
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def extract_eye_metrics(
    left: LandmarkSet,
    right: LandmarkSet,
    state: EyeTrackingState,
    now_ms: float,
    head_yaw: float = 0.0,
    head_pitch: float = 0.0,
    threshold: float = BLINK_EAR_THRESHOLD,
) -> EyeMetrics:
    ear = average_ear(left, right)
    just_blinked = update_blink(state, ear, now_ms, threshold)
    rate = blink_rate(state, now_ms)

    px, py = midpoint(left.center, right.center)
    state.positions.append((px, py, now_ms))

    size, diameter, dilation = pupil_metrics(left, right)
    gx, gy = gaze_direction(left, right, head_yaw, head_pitch)

    return EyeMetrics(
        blink_rate=rate,
        blink_count=state.blink_count,
        is_blinking=state.eye_closed,
        blink_just_detected=just_blinked,
        saccade_velocity=saccade_velocity(state.positions),
        gaze_duration=gaze_duration(state.positions),
        gaze_x=gx,
        gaze_y=gy,
        pupil_diameter=diameter,
        pupil_dilation_percent=dilation,
        pupil_size=size,
        eye_aspect_ratio=ear,
        face_detected=True,
        timestamp=now_ms,
    )
