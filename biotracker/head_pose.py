"""
Coarse 2D head-pose estimate from face box and landmark ratios.

No 3D model fit: pitch comes from the brow-to-bridge vs. nose-length ratio,
yaw from the jaw asymmetry around the box center, roll from the line
between the eyes. Translation is the box displacement since the previous
frame of the same session.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Optional

from biotracker.config import (
    HEAD_ANGLE_LIMIT,
    HEAD_DEPTH_SCALE,
    HEAD_PITCH_BASELINE,
    HEAD_POSITION_SCALE,
)
from biotracker.geometry import clamp, distance, midpoint
from biotracker.landmarks import FaceBox, FaceObservation


@dataclass(frozen=True)
class HeadPose:
    pitch: float = 0.0
    yaw: float = 0.0
    roll: float = 0.0
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def direction(self) -> Dict[str, float]:
        return {"pitch": self.pitch, "yaw": self.yaw, "roll": self.roll}

    def position(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "z": self.z}


def head_displacement(box: FaceBox, prev: Optional[FaceBox]):
    """(x, y, z) movement since ``prev``; zeros on the first frame."""
    if prev is None or prev.area == 0:
        return 0.0, 0.0, 0.0
    x = (box.x - prev.x) / HEAD_POSITION_SCALE
    y = (box.y - prev.y) / HEAD_POSITION_SCALE
    z = (box.area / prev.area - 1.0) * HEAD_DEPTH_SCALE
    return x, y, z


def head_pitch(face: FaceObservation) -> float:
    brow_mid = midpoint(
        face.brow_left[len(face.brow_left) // 2],
        face.brow_right[len(face.brow_right) // 2],
    )
    bridge = face.nose[1]
    nose_length = distance(face.nose[0], face.nose[-1])
    if nose_length == 0:
        return 0.0
    ratio = distance(brow_mid, bridge) / nose_length
    return clamp((ratio - HEAD_PITCH_BASELINE) * 90.0, -HEAD_ANGLE_LIMIT, HEAD_ANGLE_LIMIT)


def head_yaw(face: FaceObservation) -> float:
    center = face.box.center
    left = distance(face.jawline[0], center)
    right = distance(face.jawline[-1], center)
    if right == 0:
        return 0.0
    return clamp((left / right - 1.0) * 45.0, -HEAD_ANGLE_LIMIT, HEAD_ANGLE_LIMIT)


def head_roll(face: FaceObservation) -> float:
    lx, ly = face.left_eye.center
    rx, ry = face.right_eye.center
    return math.degrees(math.atan2(ry - ly, rx - lx))


def estimate_head_pose(face: FaceObservation, state) -> HeadPose:
    """Estimate pose and store the current box on ``state.prev_box``."""
    x, y, z = head_displacement(face.box, state.prev_box)
    state.prev_box = face.box
    return HeadPose(
        pitch=head_pitch(face),
        yaw=head_yaw(face),
        roll=head_roll(face),
        x=x,
        y=y,
        z=z,
    )
