"""Tests for face_analyzer.py that do not need the MediaPipe model."""

import math
from types import SimpleNamespace

import pytest

from biotracker.emotion import classify_emotions
from biotracker.face_analyzer import (
    LEFT_EYE_IDS,
    NOSE_IDS,
    BlendshapeEmotionClassifier,
    blendshapes_to_emotions,
    observation_from_landmarks,
)
from biotracker.landmarks import LandmarkError


def mesh(n=478):
    return [SimpleNamespace(x=(i % 20) / 20.0, y=(i // 20) / 24.0) for i in range(n)]


def test_observation_from_mesh():
    landmarks = mesh()
    face = observation_from_landmarks(landmarks, 640, 480, capture_time_ms=12.0, blendshapes={"jawOpen": 0.3})

    assert face.box.x == 0.0 and face.box.y == 0.0
    assert math.isclose(face.box.width, 19 / 20 * 640)
    assert math.isclose(face.box.height, 23 / 24 * 480)

    lx, ly = face.left_eye[0]
    assert math.isclose(lx, landmarks[LEFT_EYE_IDS[0]].x * 640)
    assert math.isclose(ly, landmarks[LEFT_EYE_IDS[0]].y * 480)
    assert len(face.nose) == len(NOSE_IDS)
    assert face.capture_time_ms == 12.0
    assert face.blendshapes == {"jawOpen": 0.3}


def test_short_mesh_is_rejected():
    with pytest.raises(LandmarkError):
        observation_from_landmarks(mesh(100), 640, 480)


def test_resting_face_is_neutral():
    scores = blendshapes_to_emotions({})
    assert scores["neutral"] == 1.0
    assert all(scores[c] == 0.0 for c in scores if c != "neutral")


def test_smile_reads_as_happy():
    scores = blendshapes_to_emotions({
        "mouthSmileLeft": 1.0, "mouthSmileRight": 1.0,
        "cheekSquintLeft": 1.0, "cheekSquintRight": 1.0,
    })
    assert scores["happy"] == 1.0
    assert scores["neutral"] == 0.0
    assert classify_emotions(scores).dominant == "happy"


def test_classifier_needs_blendshapes():
    classifier = BlendshapeEmotionClassifier()
    bare = observation_from_landmarks(mesh(), 100, 100)
    assert classifier.classify(None, bare) is None

    rich = observation_from_landmarks(mesh(), 100, 100, blendshapes={"jawOpen": 1.0, "eyeWideLeft": 1.0, "eyeWideRight": 1.0})
    scores = classifier.classify(None, rich)
    assert classify_emotions(scores).dominant == "surprised"
