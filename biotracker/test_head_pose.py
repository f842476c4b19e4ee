"""Tests for head_pose.py."""

import math

import pytest

from biotracker.eye_tracking import EyeTrackingState
from biotracker.head_pose import estimate_head_pose, head_displacement, head_pitch, head_roll, head_yaw
from biotracker.landmarks import FaceBox, FaceObservation, LandmarkError


def eye_at(cx, cy):
    return [(cx - 15, cy), (cx - 5, cy - 4), (cx + 5, cy - 4), (cx + 15, cy), (cx + 5, cy + 4), (cx - 5, cy + 4)]


def brow(cx, cy):
    return [(cx - 20, cy + 4), (cx - 10, cy), (cx, cy), (cx + 10, cy), (cx + 20, cy + 4)]


def make_face(box=(100, 100, 200, 200), right_eye_y=160, jaw_start=(100, 200)):
    return FaceObservation.build(
        box=box,
        left_eye=eye_at(150, 160),
        right_eye=eye_at(250, right_eye_y),
        jawline=[jaw_start, (200, 300), (300, 200)],
        nose=[(200, 150), (200, 160), (200, 190), (200, 220)],
        brow_left=brow(150, 130),
        brow_right=brow(250, 130),
    )


def test_pitch_from_brow_to_bridge_ratio():
    assert math.isclose(head_pitch(make_face()), (30 / 70 - 0.3) * 90)


def test_yaw_from_jaw_asymmetry():
    assert head_yaw(make_face()) == 0.0
    assert math.isclose(head_yaw(make_face(jaw_start=(120, 200))), -9.0)


def test_yaw_is_clamped():
    assert head_yaw(make_face(jaw_start=(-500, 200))) == 90.0


def test_roll_between_eye_centroids():
    assert head_roll(make_face()) == 0.0
    assert math.isclose(head_roll(make_face(right_eye_y=260)), 45.0)


def test_displacement_zero_on_first_frame():
    assert head_displacement(FaceBox(0, 0, 10, 10), None) == (0.0, 0.0, 0.0)
    assert head_displacement(FaceBox(5, 5, 10, 10), FaceBox(0, 0, 0, 0)) == (0.0, 0.0, 0.0)


def test_estimate_stores_previous_box():
    state = EyeTrackingState()
    first = estimate_head_pose(make_face(), state)
    assert (first.x, first.y, first.z) == (0.0, 0.0, 0.0)
    assert state.prev_box == FaceBox(100, 100, 200, 200)

    second = estimate_head_pose(make_face(box=(110, 100, 200, 220)), state)
    assert math.isclose(second.x, 1.0)
    assert second.y == 0.0
    assert math.isclose(second.z, 0.5)
    assert second.direction()["pitch"] == second.pitch


def test_short_brow_is_rejected():
    with pytest.raises(LandmarkError):
        FaceObservation.build(
            box=(0, 0, 1, 1),
            left_eye=eye_at(0, 0),
            right_eye=eye_at(10, 0),
            jawline=[(0, 0), (1, 1)],
            nose=[(0, 0), (0, 1)],
            brow_left=[(0, 0), (1, 0)],
            brow_right=brow(10, 0),
        )
