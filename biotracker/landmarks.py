"""
Structural landmark records produced by a face detector.

Detectors are black boxes; whatever they output is validated here once, at
the adapter boundary, so the extractors can index points without checking.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Sequence, Tuple

from biotracker.geometry import Point, centroid, distance, midpoint


EYE_POINTS = 6


class LandmarkError(ValueError):
    """A landmark sequence has the wrong shape."""


def _as_points(points: Sequence[Any], name: str, minimum: int) -> Tuple[Point, ...]:
    try:
        out = tuple((float(p[0]), float(p[1])) for p in points)
    except (TypeError, ValueError, IndexError) as exc:
        raise LandmarkError(f"{name}: points must be (x, y) pairs") from exc
    if len(out) < minimum:
        raise LandmarkError(f"{name}: expected at least {minimum} points, got {len(out)}")
    return out


@dataclass(frozen=True)
class LandmarkSet:
    """Six eye landmarks.

    Index roles: 0 and 3 are the horizontal corners, 1 and 2 lie on the upper
    lid, 4 and 5 on the lower lid. Vertical pairs are (1, 5) and (2, 4).
    """

    points: Tuple[Point, ...]

    def __init__(self, points: Sequence[Any]):
        pts = _as_points(points, "eye", EYE_POINTS)
        if len(pts) != EYE_POINTS:
            raise LandmarkError(f"eye: expected exactly {EYE_POINTS} points, got {len(pts)}")
        object.__setattr__(self, "points", pts)

    def __getitem__(self, i: int) -> Point:
        return self.points[i]

    def __len__(self) -> int:
        return EYE_POINTS

    @property
    def center(self) -> Point:
        return centroid(self.points)

    @property
    def width(self) -> float:
        return distance(self.points[0], self.points[3])

    @property
    def opening(self) -> float:
        """Mean vertical lid distance."""
        p = self.points
        return (distance(p[1], p[5]) + distance(p[2], p[4])) / 2.0

    @property
    def upper_lid(self) -> Point:
        return midpoint(self.points[1], self.points[2])


@dataclass(frozen=True)
class FaceBox:
    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center(self) -> Point:
        return (self.x + self.width / 2.0, self.y + self.height / 2.0)


@dataclass(frozen=True)
class FaceObservation:
    """One detected face. Points are image pixels."""

    box: FaceBox
    left_eye: LandmarkSet
    right_eye: LandmarkSet
    jawline: Tuple[Point, ...]
    nose: Tuple[Point, ...]
    brow_left: Tuple[Point, ...]
    brow_right: Tuple[Point, ...]
    confidence: float = 1.0
    capture_time_ms: float = 0.0
    blendshapes: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        box: Any,
        left_eye: Sequence[Any],
        right_eye: Sequence[Any],
        jawline: Sequence[Any],
        nose: Sequence[Any],
        brow_left: Sequence[Any],
        brow_right: Sequence[Any],
        confidence: float = 1.0,
        capture_time_ms: float = 0.0,
        blendshapes: Optional[Dict[str, float]] = None,
    ) -> "FaceObservation":
        """Validate raw detector output. Raises LandmarkError on bad shapes."""
        if isinstance(box, FaceBox):
            face_box = box
        elif isinstance(box, dict):
            face_box = FaceBox(
                float(box["x"]), float(box["y"]), float(box["width"]), float(box["height"])
            )
        else:
            face_box = FaceBox(*(float(v) for v in box))
        return cls(
            box=face_box,
            left_eye=left_eye if isinstance(left_eye, LandmarkSet) else LandmarkSet(left_eye),
            right_eye=right_eye if isinstance(right_eye, LandmarkSet) else LandmarkSet(right_eye),
            jawline=_as_points(jawline, "jawline", 2),
            nose=_as_points(nose, "nose", 2),
            brow_left=_as_points(brow_left, "brow_left", 3),
            brow_right=_as_points(brow_right, "brow_right", 3),
            confidence=float(confidence),
            capture_time_ms=float(capture_time_ms),
            blendshapes=dict(blendshapes or {}),
        )


class FaceDetector(Protocol):
    """Anything that turns a frame into zero or one face."""

    def detect(self, frame: Any) -> Optional[FaceObservation]:
        ...
