"""
Webcam Capture Module — grabs frames from a local camera with OpenCV on a
background thread and exposes the newest one to the tracking session.

The session never blocks on the camera: ``get_timed_frame`` returns a copy of
whatever frame arrived last, together with its capture time.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class WebcamCapture:
    """Threaded OpenCV frame source."""

    def __init__(self, camera_index: int = 0, width: int = 0, height: int = 0):
        self.camera_index = camera_index
        self.width = width
        self.height = height

        self._running = False
        self._capture_thread: Optional[threading.Thread] = None
        self._cap: Optional[cv2.VideoCapture] = None
        self._current_frame: Optional[np.ndarray] = None
        self._frame_time_ms: float = 0.0
        self._frame_lock = threading.Lock()
        self.frames_read = 0

    def start(self) -> bool:
        """Open the camera and start the capture thread. False if it cannot open."""
        if self._running:
            return True

        self._cap = cv2.VideoCapture(self.camera_index)
        if not self._cap.isOpened():
            logger.error(f"[webcam] Failed to open camera {self.camera_index}")
            self._cap = None
            return False
        if self.width and self.height:
            self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
            self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)

        w = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        h = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        logger.info(f"[webcam] Camera {self.camera_index} open at {w}x{h}")

        self._running = True
        self._capture_thread = threading.Thread(target=self._capture_loop, daemon=True)
        self._capture_thread.start()
        return True

    def stop(self) -> None:
        self._running = False
        if self._capture_thread and self._capture_thread.is_alive():
            self._capture_thread.join(timeout=5.0)
        self._capture_thread = None
        if self._cap:
            self._cap.release()
            self._cap = None
        with self._frame_lock:
            self._current_frame = None

    def get_timed_frame(self) -> Tuple[Optional[np.ndarray], float]:
        """(latest frame copy, capture time in epoch ms)."""
        with self._frame_lock:
            if self._current_frame is None:
                return None, 0.0
            return self._current_frame.copy(), self._frame_time_ms

    # ── Internal ────────────────────────────────────────────

    def _capture_loop(self) -> None:
        while self._running and self._cap and self._cap.isOpened():
            ret, frame = self._cap.read()
            if not ret:
                time.sleep(0.01)
                continue

            with self._frame_lock:
                self._current_frame = frame
                self._frame_time_ms = time.time() * 1000.0
            self.frames_read += 1

            time.sleep(0.001)  # yield to other threads
