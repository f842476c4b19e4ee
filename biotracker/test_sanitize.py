"""Tests for sanitize.py: every payload comes out complete and in range."""

import pytest

from biotracker.sanitize import (
    sanitize_combined,
    sanitize_emotions,
    sanitize_feedback,
    sanitize_heart_rate,
    sanitize_tracking,
)


@pytest.mark.parametrize("payload", [{}, None, "garbage", 42, []])
def test_tracking_defaults(payload):
    frame = sanitize_tracking(payload)
    assert frame.eye_aspect_ratio == 0.3
    assert frame.pupil_diameter == 4.0
    assert frame.pupil_dilation_percent == 50.0
    assert frame.blink_count == 0
    assert frame.face_detected is True
    assert frame.timestamp > 0


def test_tracking_rejects_bad_values_field_by_field():
    frame = sanitize_tracking({
        "blinkRate": float("nan"),
        "blinkCount": "3",
        "isBlinking": "yes",
        "saccadeVelocity": -5,
        "gazeDirection": {"x": 5, "y": float("-inf")},
        "pupilDilationPercent": 180,
        "headDirection": {"yaw": 12.5},
        "faceDetected": False,
        "timestamp": 1234,
    })
    assert frame.blink_rate == 0.0
    assert frame.blink_count == 0
    assert frame.is_blinking is False
    assert frame.saccade_velocity == 0.0
    assert (frame.gaze_direction.x, frame.gaze_direction.y) == (1.0, 0.0)
    assert frame.pupil_dilation_percent == 100.0
    assert frame.head_direction.yaw == 12.5
    assert frame.face_detected is False
    assert frame.timestamp == 1234


def test_tracking_drops_extras_unless_combined():
    payload = {"heartRate": {"bpm": 72, "confidence": 0.9}, "emotions": {"dominant": "happy"}}
    assert "heartRate" not in sanitize_tracking(payload).to_wire()

    wire = sanitize_combined(payload).to_wire()
    assert wire["heartRate"]["bpm"] == 72
    assert wire["emotions"]["dominant"] == "happy"


def test_combined_without_extras_omits_them():
    wire = sanitize_combined({"blinkCount": 2}).to_wire()
    assert wire["blinkCount"] == 2
    assert "heartRate" not in wire and "emotions" not in wire


@pytest.mark.parametrize("bpm", [39.9, 200.1, float("nan"), "72", None])
def test_implausible_heart_rate_is_zeroed(bpm):
    r = sanitize_heart_rate({"bpm": bpm, "confidence": 0.9})
    assert r.bpm == 0.0
    assert r.confidence == 0.0


def test_heart_rate_confidence_is_clamped():
    r = sanitize_heart_rate({"bpm": 72, "confidence": 2, "timestamp": 10})
    assert (r.bpm, r.confidence, r.timestamp) == (72, 1.0, 10)


def test_emotions_fall_back_to_neutral():
    e = sanitize_emotions({"dominant": "bored", "happy": 3, "sad": -1, "dominantScore": 7})
    assert e.dominant == "neutral"
    assert e.happy == 1.0 and e.sad == 0.0
    assert e.dominant_score == 1.0


def test_feedback_type_and_length():
    f = sanitize_feedback({"type": "shout", "message": "x" * 600})
    assert f.type == "info"
    assert len(f.message) == 500

    f = sanitize_feedback({"type": "alert", "message": 123})
    assert (f.type, f.message) == ("alert", "123")
    assert sanitize_feedback(None).message == ""


def test_feedback_keeps_an_iso_timestamp():
    f = sanitize_feedback({"type": "info", "message": "hi", "timestamp": "2024-01-01T00:00:01.500Z"})
    assert f.timestamp == 1704067201500.0

    naive = sanitize_feedback({"timestamp": "2024-01-01T00:00:00"})
    assert naive.timestamp == 1704067200000.0

    garbled = sanitize_feedback({"timestamp": "yesterday"})
    assert garbled.timestamp > 1704067200000.0
