"""
Pydantic data models for BioTracker.

Wire names are camelCase (aliases); Python attributes are snake_case.
All records that cross the relay are frozen once built.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

EMOTION_CATEGORIES: List[str] = [
    "happy", "sad", "angry", "fearful", "disgusted", "surprised", "neutral",
]
FEEDBACK_TYPES: List[str] = ["info", "alert", "instruction"]


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ─── Enums ────────────────────────────────────────────────────────────────────

class DeviceRole(str, Enum):
    MOBILE = "mobile"    # camera, data source
    LAPTOP = "laptop"    # display, data sink

    @property
    def opposite(self) -> "DeviceRole":
        return DeviceRole.LAPTOP if self is DeviceRole.MOBILE else DeviceRole.MOBILE


class MessageType(str, Enum):
    # inbound
    REGISTER = "register"
    PAIR_REQUEST = "pair_request"
    PAIR_ACCEPT = "pair_accept"
    EYE_TRACKING_DATA = "eye_tracking_data"
    HEART_RATE_DATA = "heart_rate_data"
    EMOTION_DATA = "emotion_data"
    COMBINED_BIOMETRIC_DATA = "combined_biometric_data"
    BIOFEEDBACK = "biofeedback"
    # outbound
    AVAILABLE_LAPTOPS = "available_laptops"
    AVAILABLE_MOBILES = "available_mobiles"
    MOBILE_CONNECTED = "mobile_connected"
    LAPTOP_CONNECTED = "laptop_connected"
    MOBILE_DISCONNECTED = "mobile_disconnected"
    LAPTOP_DISCONNECTED = "laptop_disconnected"
    PAIR_CONFIRMED = "pair_confirmed"
    PAIR_REVOKED = "pair_revoked"
    EYE_TRACKING_UPDATE = "eye_tracking_update"
    HEART_RATE_UPDATE = "heart_rate_update"
    EMOTION_UPDATE = "emotion_update"
    COMBINED_BIOMETRIC_UPDATE = "combined_biometric_update"
    BIOFEEDBACK_UPDATE = "biofeedback_update"
    ERROR = "error"


# ─── Biometric payloads ───────────────────────────────────────────────────────

class GazeDirection(_Wire):
    x: float = 0.0
    y: float = 0.0


class HeadDirection(_Wire):
    pitch: float = 0.0
    yaw: float = 0.0
    roll: float = 0.0


class HeadPosition(_Wire):
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0


class HeartRateReading(_Wire):
    bpm: float
    confidence: float
    timestamp: Optional[float] = None


class EmotionScores(_Wire):
    happy: float = 0.0
    sad: float = 0.0
    angry: float = 0.0
    fearful: float = 0.0
    disgusted: float = 0.0
    surprised: float = 0.0
    neutral: float = 0.0
    dominant: str = "neutral"
    dominant_score: float = Field(0.0, alias="dominantScore")
    timestamp: Optional[float] = None

    def scores(self) -> Dict[str, float]:
        return {c: getattr(self, c) for c in EMOTION_CATEGORIES}


class BiometricFrame(_Wire):
    """Everything the mobile side knows at one instant."""

    blink_rate: float = Field(0.0, alias="blinkRate")
    blink_count: int = Field(0, alias="blinkCount")
    is_blinking: bool = Field(False, alias="isBlinking")
    blink_just_detected: bool = Field(False, alias="blinkJustDetected")
    eye_aspect_ratio: float = Field(0.3, alias="eyeAspectRatio")
    saccade_velocity: float = Field(0.0, alias="saccadeVelocity")
    gaze_duration: float = Field(0.0, alias="gazeDuration")
    gaze_direction: GazeDirection = Field(default_factory=GazeDirection, alias="gazeDirection")
    pupil_diameter: float = Field(4.0, alias="pupilDiameter")
    pupil_dilation_percent: float = Field(50.0, alias="pupilDilationPercent")
    head_direction: HeadDirection = Field(default_factory=HeadDirection, alias="headDirection")
    head_position: HeadPosition = Field(default_factory=HeadPosition, alias="headPosition")
    face_detected: bool = Field(True, alias="faceDetected")
    heart_rate: Optional[HeartRateReading] = Field(None, alias="heartRate")
    emotions: Optional[EmotionScores] = None
    timestamp: float = 0.0


class Feedback(_Wire):
    type: str = "info"
    message: str = ""
    timestamp: Optional[float] = None


# ─── Inbound envelopes ────────────────────────────────────────────────────────
# Payloads stay as raw dicts here; sanitize.py turns them into frames without
# ever rejecting them.

class RegisterMsg(_Wire):
    type: Literal["register"]
    device_type: DeviceRole = Field(alias="deviceType")


class PairRequestMsg(_Wire):
    type: Literal["pair_request"]
    target_id: str = Field(alias="targetId")


class PairAcceptMsg(_Wire):
    type: Literal["pair_accept"]
    target_id: str = Field(alias="targetId")


class EyeTrackingDataMsg(_Wire):
    type: Literal["eye_tracking_data"]
    target_id: str = Field(alias="targetId")
    tracking_data: Any = Field(None, alias="trackingData")


class HeartRateDataMsg(_Wire):
    type: Literal["heart_rate_data"]
    target_id: str = Field(alias="targetId")
    heart_rate_data: Any = Field(None, alias="heartRateData")


class EmotionDataMsg(_Wire):
    type: Literal["emotion_data"]
    target_id: str = Field(alias="targetId")
    emotion_data: Any = Field(None, alias="emotionData")


class CombinedBiometricDataMsg(_Wire):
    type: Literal["combined_biometric_data"]
    target_id: str = Field(alias="targetId")
    data: Any = None


class BiofeedbackMsg(_Wire):
    type: Literal["biofeedback"]
    target_id: str = Field(alias="targetId")
    feedback: Any = None


InboundMessage = Annotated[
    Union[
        RegisterMsg,
        PairRequestMsg,
        PairAcceptMsg,
        EyeTrackingDataMsg,
        HeartRateDataMsg,
        EmotionDataMsg,
        CombinedBiometricDataMsg,
        BiofeedbackMsg,
    ],
    Field(discriminator="type"),
]

inbound_adapter: TypeAdapter = TypeAdapter(InboundMessage)


def parse_inbound(raw: Any) -> Any:
    """Validate one inbound envelope. Raises pydantic.ValidationError."""
    return inbound_adapter.validate_python(raw)
