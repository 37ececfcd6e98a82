from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import numpy as np

from .camera import frame_to_data_url
from .config import KioskSettings
from .database import KioskDatabase
from .logger import setup_logger
from .matcher import RecognitionEngine, confidence_from_distance
from .models import UnknownFaceRecord, UserRecord


class PipelineState(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    MATCHED = "matched"
    UNKNOWN_PENDING = "unknown-pending"
    NO_FACE = "no-face"


class VerdictKind(str, Enum):
    MATCH = "match"
    UNKNOWN = "unknown"
    NO_FACE = "no-face"
    AMBIGUOUS = "ambiguous"
    COOLDOWN = "cooldown"
    SKIPPED = "skipped"


@dataclass
class Verdict:
    kind: VerdictKind
    user: Optional[UserRecord] = None
    distance: Optional[float] = None
    confidence: Optional[int] = None
    photo: Optional[str] = None
    unknown_face: Optional[UnknownFaceRecord] = None


class LoggingAudioCue:
    """Audio feedback sink; the kiosk front end plays the actual sounds."""

    def __init__(self) -> None:
        self.logger = setup_logger(self.__class__.__name__)

    def play(self, cue: str) -> None:
        self.logger.debug("Audio cue: %s", cue)


MatchCallback = Callable[[UserRecord, Optional[str]], None]
UnknownCallback = Callable[[UnknownFaceRecord], None]


class DecisionPipeline:
    """
    Turns frames into match / unknown / no-face verdicts.

    A confident match fires once per identity per cool-down window. Unknown
    alerts need a streak of ambiguous cycles and are rate limited, so a single
    noisy frame never raises an alert.
    """

    def __init__(
        self,
        db: KioskDatabase,
        engine: RecognitionEngine,
        settings: KioskSettings,
        kiosk_id: str,
        on_match: Optional[MatchCallback] = None,
        on_unknown: Optional[UnknownCallback] = None,
        audio=None,
        photo_encoder: Optional[Callable[[np.ndarray], Optional[str]]] = None,
    ):
        self.db = db
        self.engine = engine
        self.kiosk_id = kiosk_id
        self.match_threshold = settings.match_distance_threshold
        self.match_cooldown = settings.match_cooldown_seconds
        self.unknown_streak_required = max(1, settings.unknown_streak_required)
        self.unknown_alert_cooldown = settings.unknown_alert_cooldown_seconds
        self.on_match = on_match
        self.on_unknown = on_unknown
        self.audio = audio or LoggingAudioCue()
        jpeg_quality = settings.jpeg_quality
        self.photo_encoder = photo_encoder or (lambda frame: frame_to_data_url(frame, jpeg_quality))
        self.logger = setup_logger(self.__class__.__name__)

        self.state = PipelineState.IDLE
        self.last_state = PipelineState.IDLE
        self.last_confidence: Optional[int] = None
        self.unknown_streak = 0
        self._last_match_id: Optional[int] = None
        self._last_match_at = 0.0
        self._last_unknown_at: Optional[float] = None
        self._cycle_lock = threading.Lock()

    def process_cycle(self, frame: Optional[np.ndarray], now: Optional[float] = None) -> Verdict:
        if not self._cycle_lock.acquire(blocking=False):
            return Verdict(VerdictKind.SKIPPED)
        try:
            if frame is None or getattr(frame, "size", 0) == 0 or not self.engine.ready:
                return Verdict(VerdictKind.SKIPPED)

            self.state = PipelineState.ANALYZING
            try:
                return self._analyze(frame, time.time() if now is None else now)
            except Exception:
                self.logger.exception("Recognition cycle failed")
                return Verdict(VerdictKind.SKIPPED)
        finally:
            self.state = PipelineState.IDLE
            self._cycle_lock.release()

    def reset(self) -> None:
        self.unknown_streak = 0
        self.last_confidence = None
        self._last_match_id = None
        self._last_match_at = 0.0

    def _analyze(self, frame: np.ndarray, now: float) -> Verdict:
        detection = self.engine.detect_face(frame)
        if detection is None:
            self.last_confidence = None
            self.last_state = PipelineState.NO_FACE
            return Verdict(VerdictKind.NO_FACE)

        result = self.engine.match(detection.descriptor)
        if result is None:
            return self._ambiguous(frame, now, distance=None)

        confidence = confidence_from_distance(result.distance)
        self.last_confidence = confidence

        if not result.is_unknown and result.distance < self.match_threshold:
            user = self.db.get_user(int(result.label))
            if user is not None:
                return self._confident(frame, now, user, result.distance, confidence)
            self.logger.warning("Matcher returned user %s that is no longer enrolled", result.label)

        return self._ambiguous(frame, now, distance=result.distance, confidence=confidence)

    def _confident(self, frame: np.ndarray, now: float, user: UserRecord, distance: float, confidence: int) -> Verdict:
        self.unknown_streak = 0
        self.last_state = PipelineState.MATCHED

        if self._last_match_id == user.id and (now - self._last_match_at) < self.match_cooldown:
            return Verdict(VerdictKind.COOLDOWN, user=user, distance=distance, confidence=confidence)

        photo = self.photo_encoder(frame)
        self._last_match_id = user.id
        self._last_match_at = now
        self.audio.play("success")
        self.logger.info("Match: %s (%s) distance=%.3f", user.name, user.dni, distance)
        if self.on_match is not None:
            self.on_match(user, photo)
        return Verdict(VerdictKind.MATCH, user=user, distance=distance, confidence=confidence, photo=photo)

    def _ambiguous(
        self,
        frame: np.ndarray,
        now: float,
        distance: Optional[float],
        confidence: Optional[int] = None,
    ) -> Verdict:
        self.unknown_streak += 1
        self.last_state = PipelineState.UNKNOWN_PENDING

        if self.unknown_streak < self.unknown_streak_required:
            return Verdict(VerdictKind.AMBIGUOUS, distance=distance, confidence=confidence)
        if self._last_unknown_at is not None and (now - self._last_unknown_at) < self.unknown_alert_cooldown:
            return Verdict(VerdictKind.AMBIGUOUS, distance=distance, confidence=confidence)

        photo = self.photo_encoder(frame)
        record = self.db.add_unknown_face(
            UnknownFaceRecord(timestamp=int(now * 1000), photo=photo, kiosk_id=self.kiosk_id)
        )
        self._last_unknown_at = now
        self.unknown_streak = 0
        self.audio.play("error")
        self.logger.info("Unknown face captured (id=%s)", record.id)
        if self.on_unknown is not None:
            self.on_unknown(record)
        return Verdict(
            VerdictKind.UNKNOWN,
            distance=distance,
            confidence=confidence,
            photo=photo,
            unknown_face=record,
        )


class RecognitionLoop:
    """Runs the decision pipeline at a fixed cadence on the latest camera frame."""

    def __init__(
        self,
        pipeline: DecisionPipeline,
        frame_source: Callable[[], Optional[np.ndarray]],
        interval_seconds: float = 0.25,
    ):
        self.pipeline = pipeline
        self.frame_source = frame_source
        self.interval_seconds = max(0.05, float(interval_seconds))
        self.logger = setup_logger(self.__class__.__name__)
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="recognition-loop", daemon=True)
        self._thread.start()
        self.logger.info("Recognition loop started (every %.2fs)", self.interval_seconds)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        self._thread = None

    def _run(self) -> None:
        while not self._stop_event.is_set():
            started = time.perf_counter()
            try:
                self.pipeline.process_cycle(self.frame_source())
            except Exception:
                self.logger.exception("Frame acquisition failed")
            elapsed = time.perf_counter() - started
            self._stop_event.wait(max(0.0, self.interval_seconds - elapsed))
