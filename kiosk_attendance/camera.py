from __future__ import annotations

import base64
import threading
import time
from typing import Optional

import cv2
import numpy as np

from .exceptions import CameraError
from .logger import setup_logger


def frame_to_data_url(frame: Optional[np.ndarray], quality: int = 80) -> Optional[str]:
    """JPEG screenshot of a frame, as stored on attendance and unknown-face rows."""
    if frame is None or frame.size == 0:
        return None
    ok, encoded = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(np.clip(quality, 30, 95))])
    if not ok:
        return None
    return "data:image/jpeg;base64," + base64.b64encode(encoded.tobytes()).decode("ascii")


def decode_image(payload: bytes) -> np.ndarray:
    buffer = np.frombuffer(payload, dtype=np.uint8)
    frame = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if frame is None:
        raise CameraError("Uploaded image could not be decoded.")
    return frame


class CameraStream:
    """
    Background reader that always holds the most recent webcam frame.

    latest() returns None until the first frame has been read, which the
    recognition loop treats as "camera not ready".
    """

    def __init__(self, camera_index: int = 0, width: int = 720, height: int = 1280):
        self.camera_index = camera_index
        self.width = width
        self.height = height
        self.logger = setup_logger(self.__class__.__name__)
        self.cap: Optional[cv2.VideoCapture] = None
        self._frame: Optional[np.ndarray] = None
        self._frame_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self) -> "CameraStream":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        cap = cv2.VideoCapture(self.camera_index)
        if not cap.isOpened():
            cap.release()
            raise CameraError(f"Unable to open webcam index {self.camera_index}.")
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self.cap = cap

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="camera-reader", daemon=True)
        self._thread.start()
        self.logger.info("Camera %s opened", self.camera_index)

    def _run(self) -> None:
        fail_streak = 0
        while not self._stop_event.is_set():
            cap = self.cap
            if cap is None:
                break
            ok, frame = cap.read()
            if not ok or frame is None:
                fail_streak += 1
                if fail_streak == 10:
                    self.logger.warning("Camera %s stopped delivering frames", self.camera_index)
                time.sleep(0.05)
                continue
            fail_streak = 0
            with self._frame_lock:
                self._frame = frame

    def latest(self) -> Optional[np.ndarray]:
        with self._frame_lock:
            return None if self._frame is None else self._frame.copy()

    def close(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        self._thread = None
        if self.cap is not None:
            self.cap.release()
            self.cap = None
        with self._frame_lock:
            self._frame = None
