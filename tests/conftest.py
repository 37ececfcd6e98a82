import os
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="kiosk-attendance-tests-")
os.environ["KIOSK_LOG_TO_FILE"] = "0"
os.environ["KIOSK_DATA_DIR"] = _TMP_DIR
os.environ["CENTRAL_DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/central.db"
os.environ["CENTRAL_API_KEY"] = "test-key"
os.environ["CENTRAL_PUBLIC_KEY"] = "test-public-key"

from typing import List, Optional

import numpy as np
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from kiosk_attendance.config import KioskSettings
from kiosk_attendance.database import KioskDatabase, now_ms
from kiosk_attendance.face_engine import FaceDetection
from kiosk_attendance.matcher import RecognitionEngine
from kiosk_attendance.models import UserRecord

API_KEY = "test-key"
SERVER_URL = "http://testserver"
FRAME = np.full((16, 16, 3), 127, dtype=np.uint8)


def unit_vector(index: int, dim: int = 8) -> np.ndarray:
    vector = np.zeros(dim, dtype=np.float32)
    vector[index % dim] = 1.0
    return vector


def nudged(vector: np.ndarray, distance: float) -> np.ndarray:
    """A copy of ``vector`` moved ``distance`` away along an orthogonal axis."""
    offset = np.zeros_like(vector)
    axis = (int(np.argmax(np.abs(vector))) + 1) % vector.size
    offset[axis] = distance
    return (vector + offset).astype(np.float32)


class FakeFaceEngine:
    """Stands in for the InsightFace models: returns whatever descriptor the test sets."""

    def __init__(self, ready: bool = True):
        self._ready = ready
        self.descriptor: Optional[np.ndarray] = None
        self.error: Optional[Exception] = None
        self.calls = 0

    @property
    def ready(self) -> bool:
        return self._ready

    def load_models(self) -> bool:
        self._ready = True
        return True

    def detect_face(self, frame) -> Optional[FaceDetection]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.descriptor is None:
            return None
        return FaceDetection(descriptor=np.asarray(self.descriptor, dtype=np.float32), quality_score=0.99)


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}

    def json(self):
        return self._payload


class ScriptedSession:
    """requests-style session whose answers come from a handler function."""

    def __init__(self, handler):
        self.handler = handler
        self.calls: List[dict] = []

    def request(self, method, url, headers=None, timeout=None, json=None, **kwargs):
        call = {"method": method, "url": url, "headers": headers or {}, "timeout": timeout, "json": json}
        self.calls.append(call)
        return self.handler(method, url, json)

    def close(self):
        pass


@pytest.fixture
def settings(tmp_path):
    return KioskSettings(
        data_dir=tmp_path,
        log_to_file=False,
        default_server_url=SERVER_URL,
        proactive_sync_on_enroll=False,
    )


@pytest.fixture
def db(tmp_path):
    return KioskDatabase(tmp_path / "kiosk.db")


@pytest.fixture
def fake_engine():
    return FakeFaceEngine()


@pytest.fixture
def engine(fake_engine):
    return RecognitionEngine(fake_engine, matcher_threshold=0.6)


@pytest.fixture
def make_user(db):
    def _make(dni: str = "30111222", name: str = "Ana Gomez", descriptors=None, **fields) -> UserRecord:
        return db.add_user(
            UserRecord(
                id=None,
                dni=dni,
                name=name,
                face_descriptors=list(descriptors) if descriptors is not None else [unit_vector(0)],
                created_at=now_ms(),
                **fields,
            )
        )

    return _make


@pytest.fixture
def central_app():
    from central_server.db.base import Base
    from central_server.db.session import get_db
    from central_server.main import app

    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    TestingSession = sessionmaker(bind=test_engine, autocommit=False, autoflush=False)

    def _get_db():
        session = TestingSession()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    yield app
    app.dependency_overrides.clear()
    test_engine.dispose()


@pytest.fixture
def server_client(central_app):
    return TestClient(central_app)


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {API_KEY}"}
