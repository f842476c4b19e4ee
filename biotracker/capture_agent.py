#!/usr/bin/env python3
"""
BioTracker Capture Agent
========================
Runs one device against the relay.

  • camera mode (default): opens the webcam, extracts eye / head / heart-rate /
    emotion signals and streams them to the paired display
  • display mode (--display): registers as a laptop, accepts pairing and logs
    stress / attention / fatigue as updates arrive

Usage
-----
  # Camera, pair with the first display on the relay:
  python -m biotracker.capture_agent

  # Camera, pair with a known display:
  python -m biotracker.capture_agent --pair LAPTOP_ID

  # Display, accept the first mobile that asks:
  python -m biotracker.capture_agent --display

  # Full options:
  python -m biotracker.capture_agent --relay http://localhost:3000 --camera 0 \
      --model face_landmarker.task --log-level DEBUG

Press Ctrl+C to stop.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any, Dict, Optional, Set

from biotracker.config import FACE_MODEL_PATH, LOG_LEVEL, RELAY_URL
from biotracker.eye_tracking import describe_gaze
from biotracker.fusion import MetricsHistory
from biotracker.models import DeviceRole, MessageType
from biotracker.relay_client import RelayClient, RetryPolicy

logger = logging.getLogger("biotracker.capture_agent")

SUMMARY_INTERVAL_SEC = 5.0
STRESS_ALERT = "Stress is high. Slow your breathing for a minute."

DISPLAY_ROSTER_UPDATES = (
    MessageType.AVAILABLE_LAPTOPS.value,
    MessageType.LAPTOP_CONNECTED.value,
    MessageType.PAIR_REVOKED.value,
    MessageType.LAPTOP_DISCONNECTED.value,
)


# ── Camera (mobile) ──────────────────────────────────────────────────────────

async def request_first_display(client: RelayClient, asked: Set[str]) -> Optional[str]:
    """Ask the first listed display not asked before. None when paired or nothing to ask."""
    if client.paired_with is not None:
        return None
    for display_id in client.peers:
        if display_id not in asked:
            asked.add(display_id)
            await client.request_pairing(display_id)
            logger.info(f"[agent] Pair request sent to {display_id}")
            return display_id
    return None


async def run_camera(args: argparse.Namespace) -> int:
    from biotracker.face_analyzer import BlendshapeEmotionClassifier, MediaPipeFaceDetector
    from biotracker.tracking_session import TrackingSession
    from biotracker.webcam_capture import WebcamCapture

    detector = MediaPipeFaceDetector(args.model)
    if not detector.available:
        logger.error("[agent] Face detector unavailable (mediapipe or model missing)")
        return 1

    camera = WebcamCapture(args.camera)
    if not camera.start():
        return 1

    asked: Set[str] = set()

    async def on_message(message: Dict[str, Any]) -> None:
        kind = message.get("type")
        if kind == MessageType.BIOFEEDBACK_UPDATE.value:
            feedback = message.get("feedback") or {}
            logger.info(f"[agent] Feedback ({feedback.get('type')}): {feedback.get('message')}")
        elif kind in DISPLAY_ROSTER_UPDATES and not args.pair:
            await request_first_display(client, asked)

    client = RelayClient(
        args.relay,
        DeviceRole.MOBILE,
        on_message=on_message,
        policy=RetryPolicy(max_attempts=args.retries),
    )
    result = await client.connect()
    if not result.ok:
        logger.error(f"[agent] Could not reach relay at {args.relay}: {result.error}")
        camera.stop()
        return 1
    logger.info(f"[agent] Connected via {result.transport} after {result.attempts} attempt(s)")

    if args.pair:
        await client.request_pairing(args.pair)
        logger.info(f"[agent] Pair request sent to {args.pair}")
    elif await request_first_display(client, asked) is None and client.paired_with is None:
        logger.info("[agent] No display listed yet; will pair with the first one that connects")

    session = TrackingSession(camera, detector, client.publish, classifier=BlendshapeEmotionClassifier())
    await session.start()
    try:
        while True:
            await asyncio.sleep(SUMMARY_INTERVAL_SEC)
            frame = session.latest_frame()
            if frame is None:
                logger.info("[agent] Waiting for frames...")
                continue
            hr = frame.heart_rate
            logger.info(
                f"[agent] paired={client.paired_with or '-'} displays={','.join(client.peers) or '-'} "
                f"face={frame.face_detected} "
                f"gaze={describe_gaze(frame.gaze_direction.x, frame.gaze_direction.y)} "
                f"blinks={frame.blink_count} rate={frame.blink_rate:.1f}/min "
                f"bpm={hr.bpm if hr else '-'} frames={camera.frames_read} dropped={session.dropped}"
            )
    finally:
        await session.stop()
        await client.close()
        camera.stop()
        detector.close()


# ── Display (laptop) ─────────────────────────────────────────────────────────

async def run_display(args: argparse.Namespace) -> int:
    history = MetricsHistory()

    def on_message(message: Dict[str, Any]) -> None:
        history.apply(message)

    client = RelayClient(
        args.relay,
        DeviceRole.LAPTOP,
        on_message=on_message,
        policy=RetryPolicy(max_attempts=args.retries),
        auto_accept=True,
    )
    result = await client.connect()
    if not result.ok:
        logger.error(f"[agent] Could not reach relay at {args.relay}: {result.error}")
        return 1
    logger.info(f"[agent] Display connected via {result.transport}; waiting for a mobile to pair")

    last_band = None
    try:
        while True:
            await asyncio.sleep(SUMMARY_INTERVAL_SEC)
            summary = history.summary()
            scores = summary["scores"]
            band = scores["stressBand"]
            if band == "high" and last_band != "high":
                await client.send_feedback("alert", STRESS_ALERT)
            last_band = band
            logger.info(
                f"[agent] paired={client.paired_with or '-'} "
                f"stress={scores['stress']} ({scores['stressBand']}) "
                f"attention={scores['attention']} ({scores['attentionBand']}) "
                f"fatigue={scores['fatigue']} ({scores['fatigueBand']}) "
                f"hr={summary['heartRate']['current']} blinks={summary['totalBlinks']} "
                f"emotion={summary['dominantEmotion']}"
            )
    finally:
        await client.close()
        if args.export:
            history.to_frame().to_csv(args.export, index=False)
            logger.info(f"[agent] History written to {args.export}")


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="BioTracker capture agent: streams biometrics through the relay",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--relay", default=RELAY_URL, help="Relay base URL")
    parser.add_argument("--display", action="store_true",
                        help="Run as the display (laptop) side instead of the camera")
    parser.add_argument("--pair", default="", help="Display ID to request pairing with (default: first listed)")
    parser.add_argument("--camera", type=int, default=0, help="Camera index")
    parser.add_argument("--model", default=FACE_MODEL_PATH, help="Path to face_landmarker.task")
    parser.add_argument("--retries", type=int, default=3, help="WebSocket connect attempts")
    parser.add_argument("--export", default="",
                        help="Display mode: write the metrics history to this CSV on exit")
    parser.add_argument("--log-level", default=LOG_LEVEL, help="Logging level")
    return parser


def main() -> None:
    args = build_parser().parse_args()
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    runner = run_display if args.display else run_camera
    try:
        code = asyncio.run(runner(args))
    except KeyboardInterrupt:
        logger.info("[agent] Stopped")
        code = 0
    raise SystemExit(code)


if __name__ == "__main__":
    main()
