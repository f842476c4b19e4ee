"""
Face Analysis Module — MediaPipe FaceLandmarker (Tasks API) adapter.

Turns one BGR frame into zero or one ``FaceObservation``: the six-point eye
sets, jaw outline, nose line and brows the extractors need, picked out of
the 478-point mesh, plus the 52 ARKit-standard blendshapes. A blendshape
mapping provides the seven-category emotion scores.

Requirements:
  pip install mediapipe opencv-python numpy
  Model file: face_landmarker.task (FACE_MODEL_PATH, default beside this file)
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Mapping, Optional, Sequence

import cv2
import numpy as np

from biotracker.config import FACE_MODEL_PATH
from biotracker.geometry import clamp01
from biotracker.landmarks import FaceBox, FaceObservation, LandmarkError

logger = logging.getLogger(__name__)

try:
    import mediapipe as mp
    from mediapipe.tasks.python import BaseOptions, vision

    HAS_MEDIAPIPE = True
except ImportError:
    HAS_MEDIAPIPE = False
    logger.warning("[face_analyzer] mediapipe not installed, face detection disabled")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Landmark Indices (478-point mesh)
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Eyes: corner, upper, upper, corner, lower, lower (1↔5 and 2↔4 vertical).
# "Left" is the eye on the image's left.
LEFT_EYE_IDS = [33, 160, 158, 133, 153, 144]
RIGHT_EYE_IDS = [362, 385, 387, 263, 373, 380]
JAW_IDS = [
    234, 93, 132, 58, 172, 136, 150, 149, 176, 148, 152,
    377, 400, 378, 379, 365, 397, 288, 361, 323, 454,
]
NOSE_IDS = [168, 6, 197, 195, 5, 4, 1]     # top of bridge → tip
BROW_LEFT_IDS = [70, 63, 105, 66, 107]
BROW_RIGHT_IDS = [336, 296, 334, 293, 300]


def observation_from_landmarks(
    landmarks: Sequence[Any],
    width: int,
    height: int,
    capture_time_ms: float = 0.0,
    blendshapes: Optional[Mapping[str, float]] = None,
    confidence: float = 1.0,
) -> FaceObservation:
    """Build a FaceObservation from normalised mesh landmarks (``.x``/``.y`` in 0..1)."""
    if len(landmarks) < 468:
        raise LandmarkError(f"mesh: expected at least 468 landmarks, got {len(landmarks)}")

    def px(ids):
        return [(landmarks[i].x * width, landmarks[i].y * height) for i in ids]

    xs = np.array([p.x for p in landmarks], dtype=np.float64) * width
    ys = np.array([p.y for p in landmarks], dtype=np.float64) * height
    box = FaceBox(
        float(xs.min()),
        float(ys.min()),
        float(xs.max() - xs.min()),
        float(ys.max() - ys.min()),
    )
    return FaceObservation.build(
        box=box,
        left_eye=px(LEFT_EYE_IDS),
        right_eye=px(RIGHT_EYE_IDS),
        jawline=px(JAW_IDS),
        nose=px(NOSE_IDS),
        brow_left=px(BROW_LEFT_IDS),
        brow_right=px(BROW_RIGHT_IDS),
        confidence=confidence,
        capture_time_ms=capture_time_ms,
        blendshapes=dict(blendshapes or {}),
    )


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Blendshape → Emotion Mapping
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def _pair(bs: Mapping[str, float], stem: str) -> float:
    return (bs.get(f"{stem}Left", 0.0) + bs.get(f"{stem}Right", 0.0)) / 2


def blendshapes_to_emotions(bs: Mapping[str, float]) -> Dict[str, float]:
    """Map ARKit blendshapes onto happy/sad/angry/fearful/disgusted/surprised/neutral."""
    smile = _pair(bs, "mouthSmile")
    cheek = _pair(bs, "cheekSquint")
    brow_down = _pair(bs, "browDown")
    brow_up = bs.get("browInnerUp", 0.0)
    eye_wide = _pair(bs, "eyeWide")
    jaw_open = bs.get("jawOpen", 0.0)
    sneer = _pair(bs, "noseSneer")
    frown = _pair(bs, "mouthFrown")

    # Brows up + eyes wide + jaw open
    surprised = clamp01((brow_up * 0.25 + eye_wide * 0.35 + jaw_open * 0.40) * 1.4)
    happy = clamp01((smile * 0.65 + cheek * 0.35) * 1.4)
    angry = clamp01(
        (brow_down * 0.50 + _pair(bs, "mouthPress") * 0.25 + sneer * 0.25) * 1.5
    )
    disgusted = clamp01((sneer * 0.60 + _pair(bs, "mouthUpperUp") * 0.40) * 1.5)
    sad = clamp01((frown * 0.60 + brow_up * 0.40) * 1.3)
    # Wide eyes + raised inner brows + stretched mouth, without the open jaw
    fearful = clamp01(
        (eye_wide * 0.50 + brow_up * 0.30 + _pair(bs, "mouthStretch") * 0.20) * 1.3
    )
    expressive = max(happy, sad, angry, fearful, disgusted, surprised)
    return {
        "happy": happy,
        "sad": sad,
        "angry": angry,
        "fearful": fearful,
        "disgusted": disgusted,
        "surprised": surprised,
        "neutral": clamp01(1.0 - expressive),
    }


class BlendshapeEmotionClassifier:
    """Emotion classifier backed by the detector's blendshapes."""

    def classify(self, frame: Any, face: FaceObservation) -> Optional[Dict[str, float]]:
        if not face.blendshapes:
            return None
        return blendshapes_to_emotions(face.blendshapes)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Face Detector
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
class MediaPipeFaceDetector:
    """FaceLandmarker-based detector: 478 landmarks + 52 blendshapes."""

    def __init__(self, model_path: Optional[str] = None):
        model_path = model_path or FACE_MODEL_PATH
        self._landmarker = None
        if HAS_MEDIAPIPE and os.path.exists(model_path):
            try:
                opts = vision.FaceLandmarkerOptions(
                    base_options=BaseOptions(model_asset_path=model_path),
                    running_mode=vision.RunningMode.IMAGE,
                    num_faces=1,
                    output_face_blendshapes=True,
                    min_face_detection_confidence=0.5,
                    min_tracking_confidence=0.5,
                )
                self._landmarker = vision.FaceLandmarker.create_from_options(opts)
                logger.info("[face_analyzer] FaceLandmarker ready (478 lm + 52 blendshapes)")
            except Exception as e:
                logger.error(f"[face_analyzer] Init error: {e}")
        elif not os.path.exists(model_path):
            logger.warning(f"[face_analyzer] Model not found: {model_path}")

    @property
    def available(self) -> bool:
        return self._landmarker is not None

    def detect(self, frame_bgr: np.ndarray, capture_time_ms: float = 0.0) -> Optional[FaceObservation]:
        if self._landmarker is None or frame_bgr is None:
            return None

        rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
        mp_img = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)
        try:
            detection = self._landmarker.detect(mp_img)
        except Exception as e:
            logger.debug(f"[face_analyzer] Detection failed: {e}")
            return None
        if not detection.face_landmarks:
            return None

        bs: Dict[str, float] = {}
        if detection.face_blendshapes:
            for b in detection.face_blendshapes[0]:
                bs[b.category_name] = round(b.score, 4)

        h, w = frame_bgr.shape[:2]
        try:
            return observation_from_landmarks(
                detection.face_landmarks[0], w, h, capture_time_ms=capture_time_ms, blendshapes=bs
            )
        except LandmarkError as e:
            logger.warning(f"[face_analyzer] Discarding malformed detection: {e}")
            return None

    def close(self) -> None:
        if self._landmarker:
            self._landmarker.close()
            self._landmarker = None
