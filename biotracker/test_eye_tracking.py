"""Tests for eye_tracking.py: EAR, blink edge-trigger, blink rate, movement, gaze."""

import math

import pytest

from biotracker.eye_tracking import (
    EyeTrackingState,
    average_ear,
    blink_rate,
    describe_gaze,
    extract_eye_metrics,
    eye_aspect_ratio,
    gaze_direction,
    gaze_duration,
    no_face_metrics,
    pupil_metrics,
    saccade_velocity,
    update_blink,
)
from biotracker.landmarks import LandmarkError, LandmarkSet


def make_eye(cx, cy, w, h, scale=1.0):
    """Six-point eye whose EAR is exactly h / w."""
    pts = [
        (cx - w / 2, cy),
        (cx - w / 6, cy - h / 2),
        (cx + w / 6, cy - h / 2),
        (cx + w / 2, cy),
        (cx + w / 6, cy + h / 2),
        (cx - w / 6, cy + h / 2),
    ]
    return LandmarkSet([(x * scale, y * scale) for x, y in pts])


def test_ear_matches_formula():
    assert math.isclose(eye_aspect_ratio(make_eye(50, 50, 30, 9)), 0.3)


@pytest.mark.parametrize("k", [0.5, 2.0, 7.3])
def test_ear_is_scale_invariant(k):
    base = make_eye(40, 60, 30, 9)
    scaled = make_eye(40, 60, 30, 9, scale=k)
    assert math.isclose(eye_aspect_ratio(base), eye_aspect_ratio(scaled))


def test_zero_width_eye_has_zero_ear():
    assert eye_aspect_ratio(LandmarkSet([(1, 1)] * 6)) == 0.0


def test_wrong_point_count_is_rejected():
    with pytest.raises(LandmarkError):
        LandmarkSet([(0, 0)] * 5)


def test_blink_is_edge_triggered():
    state = EyeTrackingState()
    assert update_blink(state, 0.1, 0) is True
    assert update_blink(state, 0.1, 33) is False   # still closed
    assert update_blink(state, 0.1, 66) is False
    assert state.blink_count == 1
    assert update_blink(state, 0.3, 100) is False  # reopened
    assert update_blink(state, 0.2, 133) is True
    assert state.blink_count == 2
    assert list(state.blink_history) == [0, 133]


def test_blink_history_is_bounded():
    state = EyeTrackingState()
    for i in range(30):
        update_blink(state, 0.1, i * 100)
        update_blink(state, 0.4, i * 100 + 50)
    assert state.blink_count == 30
    assert len(state.blink_history) == 20


def test_blink_rate_zero_within_first_second():
    state = EyeTrackingState()
    update_blink(state, 0.1, 0)
    update_blink(state, 0.4, 100)
    update_blink(state, 0.1, 500)
    assert blink_rate(state, 1000) == 0.0


def test_blink_rate_per_minute():
    state = EyeTrackingState()
    for t in (0, 2000, 4000):
        update_blink(state, 0.1, t)
        update_blink(state, 0.4, t + 100)
    # 3 blinks over 6 s → 30 per minute
    assert math.isclose(blink_rate(state, 6000), 30.0)


def test_blink_rate_evicts_entries_older_than_a_minute():
    state = EyeTrackingState()
    for t in (0, 1000, 70_000):
        update_blink(state, 0.1, t)
        update_blink(state, 0.4, t + 100)
    assert blink_rate(state, 71_000) == 0.0
    assert list(state.blink_history) == [70_000]


def test_saccade_velocity_skips_non_increasing_time():
    positions = [(0, 0, 0), (3, 4, 100), (3, 4, 100), (6, 8, 200)]
    assert math.isclose(saccade_velocity(positions), 50.0)
    assert saccade_velocity([(0, 0, 0)]) == 0.0


def test_gaze_duration_breaks_on_first_jump():
    positions = [(0, 0, 0), (100, 100, 100), (101, 100, 200), (102, 101, 300), (100, 100, 400)]
    assert math.isclose(gaze_duration(positions), 0.3)
    assert gaze_duration(positions[:1]) == 0.0


def test_pupil_metrics_from_opening():
    eye = make_eye(0, 0, 20, 6)
    size, diameter, dilation = pupil_metrics(eye, eye)
    assert math.isclose(size, 120)
    assert math.isclose(diameter, 2.4)
    assert math.isclose(dilation, 60)


def test_pupil_dilation_is_clamped():
    eye = make_eye(0, 0, 10, 20)
    assert pupil_metrics(eye, eye)[2] == 100


def test_gaze_is_clamped_and_head_compensated():
    eye = make_eye(0, 0, 30, 9)
    x0, y0 = gaze_direction(eye, eye)
    x1, y1 = gaze_direction(eye, eye, head_yaw=22.5, head_pitch=-45)
    assert math.isclose(x1, x0 - 0.5)
    assert math.isclose(y1, min(1.0, y0 + 1.0))
    x2, _ = gaze_direction(eye, eye, head_yaw=-180)
    assert x2 == 1.0


def test_open_eye_gaze_leans_up():
    x, y = gaze_direction(make_eye(0, 0, 30, 9), make_eye(60, 0, 30, 9))
    assert x == 0.0
    assert y < 0


def test_describe_gaze_bands():
    assert describe_gaze(0.1, -0.1) == "center"
    assert describe_gaze(-0.5, -0.5) == "up and left"
    assert describe_gaze(0.5, 0.0) == "right"
    assert describe_gaze(0.25, 0.0) == "slightly off-center"


def test_extract_tracks_positions_and_blinks():
    state = EyeTrackingState()
    left, right = make_eye(40, 50, 30, 9), make_eye(100, 50, 30, 9)
    closed_l, closed_r = make_eye(40, 50, 30, 1), make_eye(100, 50, 30, 1)

    m0 = extract_eye_metrics(left, right, state, 0)
    m1 = extract_eye_metrics(closed_l, closed_r, state, 33)
    m2 = extract_eye_metrics(closed_l, closed_r, state, 66)

    assert m0.face_detected and not m0.is_blinking
    assert math.isclose(m0.eye_aspect_ratio, average_ear(left, right))
    assert m1.blink_just_detected and m1.is_blinking and m1.blink_count == 1
    assert not m2.blink_just_detected and m2.blink_count == 1
    assert m2.saccade_velocity == 0.0
    assert math.isclose(m2.gaze_duration, 0.066)


def test_no_face_record_is_flagged_not_none():
    state = EyeTrackingState(blink_count=4)
    m = no_face_metrics(state, 1234)
    assert m.face_detected is False
    assert m.blink_count == 4
    assert m.saccade_velocity == 0.0 and m.eye_aspect_ratio == 0.0
