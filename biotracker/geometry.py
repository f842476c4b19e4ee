"""
Geometry & signal primitives shared by the extractors.

Points are ``(x, y)`` tuples in image pixels. Every helper is pure and
returns 0 for empty input rather than raising.
"""

from __future__ import annotations

import math
from typing import Iterable, Sequence, Tuple

import numpy as np

Point = Tuple[float, float]


def distance(p1: Point, p2: Point) -> float:
    return math.hypot(p2[0] - p1[0], p2[1] - p1[1])


def midpoint(p1: Point, p2: Point) -> Point:
    return ((p1[0] + p2[0]) / 2.0, (p1[1] + p2[1]) / 2.0)


def centroid(points: Sequence[Point]) -> Point:
    if not points:
        return (0.0, 0.0)
    n = len(points)
    return (sum(p[0] for p in points) / n, sum(p[1] for p in points) / n)


def mean(values: Iterable[float]) -> float:
    arr = np.asarray(list(values), dtype=np.float64)
    if arr.size == 0:
        return 0.0
    return float(arr.mean())


def variance(values: Iterable[float]) -> float:
    """Population variance."""
    arr = np.asarray(list(values), dtype=np.float64)
    if arr.size == 0:
        return 0.0
    return float(arr.var())


def stddev(values: Iterable[float]) -> float:
    """Population standard deviation."""
    return math.sqrt(variance(values))


def quartiles(values: Iterable[float]) -> Tuple[float, float, float]:
    """(Q1, median, Q3) with linear interpolation; zeros for empty input."""
    arr = np.asarray(list(values), dtype=np.float64)
    if arr.size == 0:
        return (0.0, 0.0, 0.0)
    q1, q2, q3 = np.percentile(arr, [25, 50, 75])
    return (float(q1), float(q2), float(q3))


def map_range(v: float, in_min: float, in_max: float, out_min: float, out_max: float) -> float:
    if in_max == in_min:
        return out_min
    return out_min + (v - in_min) * (out_max - out_min) / (in_max - in_min)


def clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def clamp01(v: float) -> float:
    return clamp(v, 0.0, 1.0)
