"""
Tracking session — the mobile-side scheduler.

One ``TrackingSession`` owns all per-device extraction state and runs three
periodic asyncio tasks:

  • eye/head  (~33 ms)  detect the face, update blink/gaze/pose, classify emotion
  • heart rate (sample every frame, analyse every HR_PROCESS_INTERVAL_MS)
  • emit      (200 ms)  publish the latest outputs as relay envelopes

The tasks never share mutable state. The eye task publishes an immutable
``EyeSnapshot``; the heart-rate task only reads it. If a tick is still
running when the next one is due, the missed ticks are dropped rather than
queued. ``stop()`` cancels all three tasks and discards every buffer; a
stopped session cannot be restarted.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from biotracker.config import (
    EMIT_INTERVAL_MS,
    EYE_INTERVAL_MS,
    HR_PROCESS_INTERVAL_MS,
    HR_SAMPLE_INTERVAL_MS,
)
from biotracker.emotion import classify_emotions
from biotracker.eye_tracking import (
    EyeMetrics,
    EyeTrackingState,
    extract_eye_metrics,
    no_face_metrics,
)
from biotracker.head_pose import HeadPose, estimate_head_pose
from biotracker.heart_rate import HeartRateExtractor
from biotracker.landmarks import FaceDetector, FaceObservation
from biotracker.models import (
    BiometricFrame,
    EmotionScores,
    GazeDirection,
    HeadDirection,
    HeadPosition,
    HeartRateReading,
    MessageType,
)

logger = logging.getLogger(__name__)

Publish = Callable[[MessageType, Dict[str, Any]], Awaitable[Any]]


class FrameSource(Protocol):
    def get_timed_frame(self) -> Tuple[Optional[Any], float]:
        ...


class EmotionClassifier(Protocol):
    def classify(self, frame: Any, face: FaceObservation) -> Optional[Mapping[str, float]]:
        ...


@dataclass(frozen=True)
class EyeSnapshot:
    metrics: EyeMetrics
    pose: HeadPose
    face: Optional[FaceObservation]
    frame: Any
    frame_time_ms: float


def build_frame(
    snap: EyeSnapshot,
    heart_rate: Optional[HeartRateReading] = None,
    emotions: Optional[EmotionScores] = None,
) -> BiometricFrame:
    m, pose = snap.metrics, snap.pose
    return BiometricFrame(
        blink_rate=m.blink_rate,
        blink_count=m.blink_count,
        is_blinking=m.is_blinking,
        blink_just_detected=m.blink_just_detected,
        eye_aspect_ratio=m.eye_aspect_ratio,
        saccade_velocity=m.saccade_velocity,
        gaze_duration=m.gaze_duration,
        gaze_direction=GazeDirection(x=m.gaze_x, y=m.gaze_y),
        pupil_diameter=m.pupil_diameter,
        pupil_dilation_percent=m.pupil_dilation_percent,
        head_direction=HeadDirection(**pose.direction()),
        head_position=HeadPosition(**pose.position()),
        face_detected=m.face_detected,
        heart_rate=heart_rate,
        emotions=emotions,
        timestamp=snap.frame_time_ms,
    )


class TrackingSession:
    """Per-device extraction pipeline driven by three asyncio tasks."""

    def __init__(
        self,
        source: FrameSource,
        detector: FaceDetector,
        publish: Publish,
        classifier: Optional[EmotionClassifier] = None,
        eye_interval_ms: float = EYE_INTERVAL_MS,
        hr_sample_interval_ms: float = HR_SAMPLE_INTERVAL_MS,
        hr_process_interval_ms: float = HR_PROCESS_INTERVAL_MS,
        emit_interval_ms: float = EMIT_INTERVAL_MS,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self._source = source
        self._detector = detector
        self._publish = publish
        self._classifier = classifier
        self._intervals = {
            "eye": eye_interval_ms,
            "heart_rate": hr_sample_interval_ms,
            "emit": emit_interval_ms,
        }

        # eye task state
        self.eye_state = EyeTrackingState()
        self._eye: Optional[EyeSnapshot] = None
        self._emotions: Optional[EmotionScores] = None

        # heart-rate task state
        self.heart = HeartRateExtractor(process_interval_ms=hr_process_interval_ms)
        self._heart_rate: Optional[HeartRateReading] = None
        self._last_sampled_ms: float = -1.0

        # emit task state
        self._last_emitted_emotion_ts: Optional[float] = None

        self._tasks: List[asyncio.Task] = []
        self._stopped = False
        self.ticks: Dict[str, int] = {name: 0 for name in self._intervals}
        self.dropped: Dict[str, int] = {name: 0 for name in self._intervals}

    # ── Public API ──────────────────────────────────────

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopped

    @property
    def latest_eye(self) -> Optional[EyeSnapshot]:
        return self._eye

    @property
    def latest_heart_rate(self) -> Optional[HeartRateReading]:
        return self._heart_rate

    @property
    def latest_emotions(self) -> Optional[EmotionScores]:
        return self._emotions

    def latest_frame(self) -> Optional[BiometricFrame]:
        if self._eye is None:
            return None
        return build_frame(self._eye, self._heart_rate, self._emotions)

    async def start(self) -> None:
        if self._stopped:
            raise RuntimeError("tracking session was stopped; start a new session")
        if self._tasks:
            return
        steps = {"eye": self._eye_step, "heart_rate": self._heart_step, "emit": self._emit_step}
        self._tasks = [
            asyncio.create_task(self._run_every(name, steps[name]), name=f"{self.session_id}:{name}")
            for name in steps
        ]
        logger.info(f"[session] {self.session_id} started")

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.eye_state.reset()
        self.heart.reset()
        self._eye = None
        self._emotions = None
        self._heart_rate = None
        logger.info(f"[session] {self.session_id} stopped")

    # ── Scheduling ──────────────────────────────────────

    async def _run_every(self, name: str, step: Callable[[], Awaitable[None]]) -> None:
        interval = self._intervals[name] / 1000.0
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while True:
            try:
                await step()
            except Exception as exc:
                logger.warning(f"[session] {name} tick failed: {exc}")
            self.ticks[name] += 1
            next_tick += interval
            now = loop.time()
            if now > next_tick:
                # the step overran; skip the ticks it covered
                missed = int((now - next_tick) // interval) + 1
                self.dropped[name] += missed
                next_tick += missed * interval
            await asyncio.sleep(max(0.0, next_tick - now))

    # ── Eye / head ──────────────────────────────────────

    async def _eye_step(self) -> None:
        frame, t_ms = self._source.get_timed_frame()
        if frame is None:
            return
        face = await asyncio.to_thread(self._detector.detect, frame)

        if face is None:
            metrics = no_face_metrics(self.eye_state, t_ms)
            pose = HeadPose()
        else:
            pose = estimate_head_pose(face, self.eye_state)
            metrics = extract_eye_metrics(
                face.left_eye,
                face.right_eye,
                self.eye_state,
                t_ms,
                head_yaw=pose.yaw,
                head_pitch=pose.pitch,
            )
            if self._classifier is not None:
                raw = self._classifier.classify(frame, face)
                if raw:
                    self._emotions = classify_emotions(raw, timestamp=t_ms)

        self._eye = EyeSnapshot(metrics=metrics, pose=pose, face=face, frame=frame, frame_time_ms=t_ms)

    # ── Heart rate ──────────────────────────────────────

    async def _heart_step(self) -> None:
        snap = self._eye
        if snap is None:
            return
        now_ms = snap.frame_time_ms
        if snap.face is not None and now_ms > self._last_sampled_ms:
            self._last_sampled_ms = now_ms
            self.heart.sample_frame(snap.frame, snap.face.box, now_ms)

        if not self.heart.due(now_ms):
            return
        reading = self.heart.process(now_ms)
        if reading is None:
            reading = self.heart.stale_reading(now_ms)
        if reading is None:
            return
        self._heart_rate = reading
        await self._publish(MessageType.HEART_RATE_DATA, {"heartRateData": reading.to_wire()})

    # ── Emit ────────────────────────────────────────────

    async def _emit_step(self) -> None:
        snap = self._eye
        if snap is None:
            return
        eye_only = build_frame(snap)
        await self._publish(MessageType.EYE_TRACKING_DATA, {"trackingData": eye_only.to_wire()})

        emotions = self._emotions
        if emotions is not None and emotions.timestamp != self._last_emitted_emotion_ts:
            self._last_emitted_emotion_ts = emotions.timestamp
            await self._publish(MessageType.EMOTION_DATA, {"emotionData": emotions.to_wire()})

        combined = build_frame(snap, self._heart_rate, emotions)
        await self._publish(MessageType.COMBINED_BIOMETRIC_DATA, {"data": combined.to_wire()})
