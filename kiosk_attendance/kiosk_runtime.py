from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, List, Optional

import numpy as np

from .attendance_service import AttendanceService
from .camera import CameraStream
from .config import KioskSettings
from .database import KioskDatabase, now_ms
from .device_identity import device_display_name, get_kiosk_id
from .enrollment_service import EnrollmentService
from .exceptions import AttendanceError, CameraError, DeviceNotApprovedError
from .face_engine import FaceEngine
from .logger import setup_logger
from .matcher import RecognitionEngine
from .models import AttendanceRecord, AttendanceType, DeviceStatus, UnknownFaceRecord, UserRecord
from .recognition_service import DecisionPipeline, RecognitionLoop, Verdict, VerdictKind
from .sync_service import SyncService


class KioskView(str, Enum):
    LANDING = "landing"
    SCANNER = "scanner"
    CONFIRM = "confirm"
    SELECTION = "selection"


@dataclass
class PendingMatch:
    user: UserRecord
    photo: Optional[str]
    matched_at: int


class KioskRuntime:
    """
    Ties the kiosk together: store, recognition, sync and the screen flow.

    The scanner only runs while the view is ``scanner`` and the device
    registry has approved this kiosk. A match moves the flow to ``confirm``,
    then ``selection``, and writing the mark returns to ``scanner``.
    """

    def __init__(
        self,
        settings: KioskSettings,
        db: Optional[KioskDatabase] = None,
        engine: Optional[RecognitionEngine] = None,
        sync_service: Optional[SyncService] = None,
        frame_source: Optional[Callable[[], Optional[np.ndarray]]] = None,
    ):
        self.settings = settings
        self.logger = setup_logger(self.__class__.__name__)
        self.db = db or KioskDatabase(settings.db_path)
        self.kiosk_id = get_kiosk_id(self.db)
        self.engine = engine or RecognitionEngine(
            FaceEngine(
                model_name=settings.model_name,
                detection_size=settings.detection_size,
                score_threshold=settings.detection_score_threshold,
                descriptor_scale=settings.descriptor_scale,
            ),
            matcher_threshold=settings.matcher_threshold,
        )

        if sync_service is None:
            sync_service = SyncService(self.db, settings, self.kiosk_id)
        if sync_service.on_users_changed is None:
            sync_service.on_users_changed = self.refresh_matcher
        self.sync_service = sync_service
        self.syncing = False
        self.sync_service.subscribe(self._on_sync_state)

        self.attendance = AttendanceService(self.db, settings, self.kiosk_id)
        self.enrollment = EnrollmentService(self.db, self.engine, settings, sync_service=self.sync_service)
        self.pipeline = DecisionPipeline(
            self.db,
            self.engine,
            settings,
            self.kiosk_id,
            on_match=self._on_match,
            on_unknown=self._on_unknown,
        )

        self.camera: Optional[CameraStream] = None
        self._frame_source = frame_source
        self.loop: Optional[RecognitionLoop] = None

        self.view = KioskView.LANDING
        self.device_status: Optional[DeviceStatus] = None
        self.pending_match: Optional[PendingMatch] = None
        self.last_unknown: Optional[UnknownFaceRecord] = None
        self.last_error: Optional[str] = None
        self._lock = threading.RLock()

    # Lifecycle

    def start(self) -> None:
        if not self.engine.load_models():
            self.last_error = "Face models could not be loaded."
            self.logger.error("Face models unavailable; scanner will stay idle")
        self.refresh_matcher()
        self.sync_service.init()

        if self._frame_source is None:
            camera = CameraStream(
                camera_index=self.settings.camera_index,
                width=self.settings.frame_width,
                height=self.settings.frame_height,
            )
            try:
                camera.open()
                self.camera = camera
            except CameraError as exc:
                self.last_error = str(exc)
                self.logger.error("Camera unavailable: %s", exc)

        self.loop = RecognitionLoop(self.pipeline, self._scanner_frame, self.settings.poll_interval_seconds)
        self.loop.start()
        self.logger.info("Kiosk %s started", self.kiosk_id)

    def stop(self) -> None:
        if self.loop is not None:
            self.loop.stop()
            self.loop = None
        self.sync_service.close()
        if self.camera is not None:
            self.camera.close()
            self.camera = None
        self.logger.info("Kiosk %s stopped", self.kiosk_id)

    def refresh_matcher(self) -> None:
        self.engine.rebuild_matcher(self.db.list_users())

    def _raw_frame(self) -> Optional[np.ndarray]:
        if self._frame_source is not None:
            return self._frame_source()
        if self.camera is not None:
            return self.camera.latest()
        return None

    def _scanner_frame(self) -> Optional[np.ndarray]:
        if self.view is not KioskView.SCANNER:
            return None
        return self._raw_frame()

    def scan_once(self, frame: Optional[np.ndarray] = None) -> Verdict:
        """Run one decision cycle outside the polling loop."""
        if self.view is not KioskView.SCANNER:
            return Verdict(VerdictKind.SKIPPED)
        return self.pipeline.process_cycle(self._raw_frame() if frame is None else frame)

    # Screen flow

    def enter_scanner(self) -> DeviceStatus:
        status = self.sync_service.check_device_status()
        with self._lock:
            self.device_status = status
            if status is not DeviceStatus.APPROVED:
                self.view = KioskView.LANDING
                self.logger.warning("Scanner blocked, device status is %s", status.value)
                raise DeviceNotApprovedError(status.value)
            self.pending_match = None
            self.pipeline.reset()
            self.view = KioskView.SCANNER
        return status

    def leave_scanner(self) -> None:
        with self._lock:
            self.pending_match = None
            self.view = KioskView.LANDING

    def _on_match(self, user: UserRecord, photo: Optional[str]) -> None:
        with self._lock:
            if self.view is not KioskView.SCANNER:
                return
            if not user.allowed_on(self.kiosk_id):
                self.last_error = f"{user.name} is not assigned to this kiosk."
                self.logger.warning("User %s matched on unassigned kiosk %s", user.dni, self.kiosk_id)
                return
            self.pending_match = PendingMatch(user=user, photo=photo, matched_at=now_ms())
            self.view = KioskView.CONFIRM

    def _on_unknown(self, record: UnknownFaceRecord) -> None:
        self.last_unknown = record

    def _on_sync_state(self, syncing: bool) -> None:
        self.syncing = syncing

    def _require_pending(self, view: KioskView) -> PendingMatch:
        if self.view is not view or self.pending_match is None:
            raise AttendanceError(f"No identity is waiting for {view.value}.")
        return self.pending_match

    def confirm_identity(self) -> UserRecord:
        with self._lock:
            pending = self._require_pending(KioskView.CONFIRM)
            self.view = KioskView.SELECTION
            return pending.user

    def reject_identity(self, report: bool = False) -> None:
        with self._lock:
            if self.view not in (KioskView.CONFIRM, KioskView.SELECTION) or self.pending_match is None:
                raise AttendanceError("No identity is waiting for confirmation.")
            user = self.pending_match.user
            self.pending_match = None
            self.view = KioskView.SCANNER
        if report:
            self.attendance.report_false_positive(user.id)

    def select_type(self, attendance_type: AttendanceType) -> List[AttendanceRecord]:
        with self._lock:
            pending = self._require_pending(KioskView.SELECTION)
            try:
                return self.attendance.register_mark(pending.user, attendance_type, photo=pending.photo)
            finally:
                self.pending_match = None
                self.view = KioskView.SCANNER

    # Snapshot

    def status(self) -> dict:
        config = self.sync_service.config
        pending = None
        if self.pending_match is not None:
            user = self.pending_match.user
            pending = {
                "user_id": user.id,
                "name": user.name,
                "dni": user.dni,
                "photo": self.pending_match.photo,
                "matched_at": self.pending_match.matched_at,
            }
        last_result = self.sync_service.last_result
        return {
            "view": self.view.value,
            "kiosk_id": self.kiosk_id,
            "device_name": device_display_name(self.kiosk_id),
            "device_status": self.device_status.value if self.device_status else None,
            "models_ready": self.engine.ready,
            "pipeline_state": self.pipeline.last_state.value,
            "last_confidence": self.pipeline.last_confidence,
            "pending_match": pending,
            "last_unknown_at": self.last_unknown.timestamp if self.last_unknown else None,
            "sync": {
                "server_url": config.server_url,
                "enabled": config.enabled,
                "has_api_key": bool(config.api_key),
                "syncing": self.syncing,
                "last_sync_at": self.sync_service.last_sync_at,
                "last_result": asdict(last_result) if last_result else None,
            },
            "error": self.last_error,
        }
