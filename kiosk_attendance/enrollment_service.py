from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import numpy as np

from .camera import frame_to_data_url
from .config import KioskSettings
from .database import KioskDatabase, now_ms
from .descriptors import as_descriptor
from .exceptions import AttendanceError, EnrollmentError
from .logger import setup_logger
from .matcher import RecognitionEngine
from .models import UserRecord

EDITABLE_FIELDS = {
    "name",
    "dni",
    "email",
    "phone",
    "whatsapp",
    "pin",
    "sector",
    "role",
    "tenant_id",
    "assigned_kiosks",
    "shift_id",
}


class EnrollmentService:
    """Enrolled-identity mutations; every change swaps in a freshly built matcher."""

    def __init__(
        self,
        db: KioskDatabase,
        engine: RecognitionEngine,
        settings: KioskSettings,
        sync_service=None,
    ):
        self.db = db
        self.engine = engine
        self.settings = settings
        self.sync_service = sync_service
        self.logger = setup_logger(self.__class__.__name__)

    def refresh_matcher(self) -> None:
        self.engine.rebuild_matcher(self.db.list_users())

    def capture_sample(self, frame: np.ndarray) -> Tuple[np.ndarray, Optional[str]]:
        if not self.engine.ready:
            raise EnrollmentError("Face models are still loading.")
        detection = self.engine.detect_face(frame)
        if detection is None:
            raise EnrollmentError("No face detected. Face the camera in a well lit place.")
        return detection.descriptor, frame_to_data_url(frame, self.settings.jpeg_quality)

    def _clean_descriptors(self, descriptors: Sequence, user_id: Optional[int] = None) -> List[np.ndarray]:
        try:
            cleaned = [as_descriptor(descriptor) for descriptor in descriptors]
        except ValueError as exc:
            raise EnrollmentError(f"Invalid face sample: {exc}") from exc

        lengths = {descriptor.size for descriptor in cleaned}
        if len(lengths) != 1:
            raise EnrollmentError(f"Face samples have mixed lengths: {sorted(lengths)}")
        expected = self.db.descriptor_dimension(exclude_user_id=user_id)
        if expected is not None and cleaned[0].size != expected:
            raise EnrollmentError(
                f"Face samples are {cleaned[0].size} long but enrolled people use {expected}. "
                "Was the recognition model changed?"
            )
        return cleaned

    def enroll(
        self,
        name: str,
        dni: str,
        descriptors: Sequence,
        photos: Optional[Sequence[str]] = None,
        **fields,
    ) -> UserRecord:
        name = (name or "").strip()
        dni = (dni or "").strip()
        if not name or not dni:
            raise EnrollmentError("Name and DNI are required.")
        if not descriptors:
            raise EnrollmentError("At least one face sample is required.")
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise EnrollmentError(f"Unknown user fields: {sorted(unknown)}")

        user = self.db.add_user(
            UserRecord(
                id=None,
                dni=dni,
                name=name,
                face_descriptors=self._clean_descriptors(descriptors),
                photos=list(photos or []),
                created_at=now_ms(),
                **fields,
            )
        )
        self.refresh_matcher()
        self.logger.info("Enrolled %s (%s) with %d samples", user.name, user.dni, len(user.face_descriptors))
        self._proactive_sync()
        return user

    def update_user(
        self,
        user_id: int,
        descriptors: Optional[Sequence] = None,
        photos: Optional[Sequence[str]] = None,
        **changes,
    ) -> UserRecord:
        user = self.db.get_user(user_id)
        if user is None:
            raise AttendanceError(f"User {user_id} not found.")
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise EnrollmentError(f"Unknown user fields: {sorted(unknown)}")

        for key, value in changes.items():
            setattr(user, key, value)
        if descriptors is not None:
            if not descriptors:
                raise EnrollmentError("At least one face sample is required.")
            user.face_descriptors = self._clean_descriptors(descriptors, user_id=user.id)
            user.photos = list(photos or [])
        elif photos is not None:
            user.photos = list(photos)

        updated = self.db.update_user(user)
        self.refresh_matcher()
        self._proactive_sync()
        return updated

    def delete_user(self, user_id: int) -> bool:
        removed = self.db.delete_user(user_id)
        if removed:
            self.refresh_matcher()
            self.logger.info("User %s deleted with their attendance history", user_id)
        return removed

    def _proactive_sync(self) -> None:
        if self.sync_service is None or not self.settings.proactive_sync_on_enroll:
            return
        if not self.sync_service.config.is_active:
            return
        try:
            self.sync_service.full_sync()
        except Exception:
            self.logger.exception("Proactive sync after enrollment failed")
