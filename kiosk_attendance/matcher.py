from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from .exceptions import FaceEngineError
from .face_engine import FaceDetection, FaceEngine
from .logger import setup_logger
from .models import UserRecord

UNKNOWN_LABEL = "unknown"


@dataclass(frozen=True)
class MatchResult:
    label: str
    distance: float

    @property
    def is_unknown(self) -> bool:
        return self.label == UNKNOWN_LABEL


def confidence_from_distance(distance: float) -> int:
    return max(0, int(round((1.0 - distance) * 100)))


class FaceMatcher:
    """
    Nearest-neighbour index over every enrolled descriptor.

    Each user contributes all of their samples as separate reference points.
    The index is never patched in place; a new matcher is built instead.
    """

    def __init__(self, labeled: Dict[str, Sequence[np.ndarray]], threshold: float = 0.6):
        self.threshold = threshold
        vectors: List[np.ndarray] = []
        owners: List[str] = []
        for label, descriptors in labeled.items():
            for descriptor in descriptors:
                vectors.append(np.asarray(descriptor, dtype=np.float32))
                owners.append(label)

        if not vectors:
            raise FaceEngineError("A matcher needs at least one reference descriptor.")
        dims = {vector.size for vector in vectors}
        if len(dims) != 1:
            raise FaceEngineError(f"Reference descriptors have mixed lengths: {sorted(dims)}")

        self._matrix = np.vstack(vectors).astype(np.float32)
        self._matrix.setflags(write=False)
        self._owners = tuple(owners)
        self.labels = tuple(labeled.keys())

    @property
    def dimension(self) -> int:
        return int(self._matrix.shape[1])

    def match(self, descriptor: np.ndarray) -> MatchResult:
        query = np.asarray(descriptor, dtype=np.float32).reshape(-1)
        if query.size != self.dimension:
            raise FaceEngineError(
                f"Descriptor length {query.size} does not match enrolled length {self.dimension}."
            )

        distances = np.linalg.norm(self._matrix - query, axis=1)
        idx = int(np.argmin(distances))
        best = float(distances[idx])
        if best >= self.threshold:
            return MatchResult(UNKNOWN_LABEL, best)
        return MatchResult(self._owners[idx], best)


def build_matcher(users: Sequence[UserRecord], threshold: float = 0.6) -> Optional[FaceMatcher]:
    labeled = {str(user.id): user.face_descriptors for user in users if user.face_descriptors}
    if not labeled:
        return None
    return FaceMatcher(labeled, threshold=threshold)


class RecognitionEngine:
    """Face engine plus the matcher currently in service."""

    def __init__(self, face_engine: FaceEngine, matcher_threshold: float = 0.6):
        self.face_engine = face_engine
        self.matcher_threshold = matcher_threshold
        self.logger = setup_logger(self.__class__.__name__)
        self._matcher: Optional[FaceMatcher] = None
        self._swap_lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self.face_engine.ready

    @property
    def matcher(self) -> Optional[FaceMatcher]:
        return self._matcher

    def load_models(self) -> bool:
        return self.face_engine.load_models()

    def detect_face(self, frame: np.ndarray) -> Optional[FaceDetection]:
        return self.face_engine.detect_face(frame)

    def rebuild_matcher(self, users: Sequence[UserRecord]) -> Optional[FaceMatcher]:
        users = [user for user in users if user.face_descriptors]
        lengths = Counter(user.face_descriptors[0].size for user in users)
        if len(lengths) > 1:
            # Keep the majority length; ties go to the earliest enrolled.
            dimension = lengths.most_common(1)[0][0]
            left_out = [user.dni for user in users if user.face_descriptors[0].size != dimension]
            self.logger.warning(
                "Leaving %d identities out of the matcher, their descriptors are not %d long: %s",
                len(left_out),
                dimension,
                left_out,
            )
            users = [user for user in users if user.face_descriptors[0].size == dimension]

        matcher = build_matcher(users, threshold=self.matcher_threshold)
        with self._swap_lock:
            self._matcher = matcher
        self.logger.info(
            "Matcher rebuilt with %d identities",
            len(matcher.labels) if matcher is not None else 0,
        )
        return matcher

    def match(self, descriptor: np.ndarray) -> Optional[MatchResult]:
        matcher = self._matcher
        if matcher is None:
            return None
        return matcher.match(descriptor)
