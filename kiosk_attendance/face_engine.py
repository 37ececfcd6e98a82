from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .exceptions import FaceEngineError
from .logger import setup_logger

try:
    from insightface.app import FaceAnalysis
except Exception:  # pragma: no cover - runtime dependency guard
    FaceAnalysis = None


@dataclass
class FaceDetection:
    descriptor: np.ndarray
    quality_score: float
    box: Optional[np.ndarray] = None


# ArcFace embeddings are compared on the unit sphere, where one person's
# samples sit up to ~1.1 apart (cosine similarity ~0.4). The match thresholds
# (0.5 confident, 0.6 possible) are on the 128-d face-api scale, so embeddings
# are shrunk to this radius: unit distance 1.1 lands near 0.6 and 0.91
# (cosine ~0.59) on 0.5.
ARCFACE_DESCRIPTOR_SCALE = 0.55


class FaceEngine:
    """
    Detector + encoder pair backed by InsightFace.

    Descriptors are L2-normalised embeddings scaled by descriptor_scale.

    Detection calls are no-ops until load_models() succeeds. Calls are
    serialised, so one frame source is never analysed twice concurrently.
    """

    def __init__(
        self,
        model_name: str = "buffalo_l",
        detection_size: int = 320,
        score_threshold: float = 0.5,
        descriptor_scale: float = ARCFACE_DESCRIPTOR_SCALE,
    ):
        self.model_name = model_name
        self.detection_size = detection_size
        self.score_threshold = score_threshold
        self.descriptor_scale = descriptor_scale
        self.logger = setup_logger(self.__class__.__name__)
        self._app = None
        self._load_lock = threading.Lock()
        self._detect_lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self._app is not None

    def load_models(self) -> bool:
        with self._load_lock:
            if self._app is not None:
                return True
            if FaceAnalysis is None:
                self.logger.error("insightface is required for face recognition. Install the 'recognition' extra.")
                return False
            try:
                app = FaceAnalysis(name=self.model_name, allowed_modules=["detection", "recognition"])
                # CUDAExecutionProvider will be used if onnxruntime-gpu is installed and GPU is available.
                app.prepare(ctx_id=0, det_size=(self.detection_size, self.detection_size))
            except Exception:
                self.logger.exception("Error loading face models (%s)", self.model_name)
                return False
            self._app = app
            self.logger.info("Face models loaded (%s)", self.model_name)
            return True

    def detect_face(self, frame: np.ndarray) -> Optional[FaceDetection]:
        if self._app is None or frame is None or getattr(frame, "size", 0) == 0:
            return None

        with self._detect_lock:
            try:
                faces = self._app.get(frame)
            except Exception as exc:
                raise FaceEngineError(f"Face extraction failed: {exc}") from exc

        candidates = [face for face in faces if float(face.det_score) >= self.score_threshold]
        if not candidates:
            return None

        # Highest detection score face first.
        face = max(candidates, key=lambda item: float(item.det_score))
        embedding = np.asarray(face.embedding, dtype=np.float32)
        norm = float(np.linalg.norm(embedding))
        if norm <= 1e-9:
            return None
        return FaceDetection(
            descriptor=(embedding * (self.descriptor_scale / norm)).astype(np.float32),
            quality_score=float(np.clip(face.det_score, 0.0, 1.0)),
            box=np.asarray(face.bbox, dtype=np.float32),
        )
