from typing import List, Optional

from .config import KioskSettings
from .database import KioskDatabase, now_ms
from .exceptions import AttendanceError
from .logger import setup_logger
from .models import AttendanceRecord, AttendanceType, UserRecord

AUTO_CLOSE_BREAK_NOTE = "AUTOCERRADO POR SALIDA DEFINITIVA"
AUTO_CLOSE_WARNING_NOTE = "AVISO: EL USUARIO NO MARCÓ SALIDA DESCANSO. CIERRE AUTOMÁTICO."
ADMIN_CONSOLE_KIOSK = "ADMIN-CONSOLE"


class AttendanceService:
    def __init__(self, db: KioskDatabase, settings: KioskSettings, kiosk_id: str):
        self.db = db
        self.kiosk_id = kiosk_id
        self.recent_guard_ms = int(settings.recent_mark_guard_seconds * 1000)
        self.live_window_ms = int(settings.live_window_seconds * 1000)
        self.logger = setup_logger(self.__class__.__name__)

    def _snapshot(self, user: UserRecord, attendance_type: AttendanceType, timestamp: int, **extra) -> AttendanceRecord:
        # Name and DNI are copied at write time and stay put if the user changes later.
        return AttendanceRecord(
            user_id=user.id,
            user_name=user.name,
            user_dni=user.dni,
            user_phone=user.phone,
            type=attendance_type,
            timestamp=timestamp,
            synced=False,
            **extra,
        )

    def register_mark(
        self,
        user: UserRecord,
        attendance_type: AttendanceType,
        photo: Optional[str] = None,
        timestamp: Optional[int] = None,
        auto_close_break: bool = True,
    ) -> List[AttendanceRecord]:
        """
        Record a kiosk mark for a confirmed identity.

        Returns the written rows; leaving without closing an open break first
        writes the missing break-end row.
        """
        if user.id is None:
            raise AttendanceError("Cannot register attendance for an unsaved user.")
        now = now_ms() if timestamp is None else int(timestamp)

        last = self.db.last_attendance_for_user(user.id)
        if last is not None and now - last.timestamp < self.recent_guard_ms:
            raise AttendanceError("A mark was registered moments ago. Please wait a few seconds.")

        written: List[AttendanceRecord] = []
        notes = ""
        if (
            attendance_type is AttendanceType.SALIDA
            and last is not None
            and last.type is AttendanceType.ENTRADA_DESCANSO
        ):
            if not auto_close_break:
                raise AttendanceError("The break is still open. Close it before leaving.")
            written.append(
                self.db.add_attendance(
                    self._snapshot(
                        user,
                        AttendanceType.SALIDA_DESCANSO,
                        now,
                        photo=photo,
                        notes=AUTO_CLOSE_BREAK_NOTE,
                        kiosk_id=self.kiosk_id,
                    )
                )
            )
            notes = AUTO_CLOSE_WARNING_NOTE

        written.append(
            self.db.add_attendance(
                self._snapshot(user, attendance_type, now, photo=photo, notes=notes, kiosk_id=self.kiosk_id)
            )
        )
        self.logger.info("Attendance %s registered for %s (%s)", attendance_type.value, user.name, user.dni)
        return written

    def manual_entry(
        self,
        user_id: int,
        attendance_type: AttendanceType,
        timestamp: int,
        notes: str = "",
    ) -> AttendanceRecord:
        user = self.db.get_user(user_id)
        if user is None:
            raise AttendanceError(f"User {user_id} not found.")
        record = self._snapshot(
            user,
            attendance_type,
            int(timestamp),
            notes=notes,
            modified_at=now_ms(),
            modified_by="Admin (Manual)",
            kiosk_id=ADMIN_CONSOLE_KIOSK,
        )
        return self.db.add_attendance(record)

    def edit_mark(
        self,
        record_id: int,
        attendance_type: AttendanceType,
        timestamp: int,
        observation: Optional[str] = None,
        modified_by: str = "Admin",
    ) -> AttendanceRecord:
        record = self.db.update_attendance(record_id, attendance_type, timestamp, observation, modified_by)
        self.logger.info("Attendance %s edited by %s", record_id, modified_by)
        return record

    def report_false_positive(self, user_id: int) -> int:
        count = self.db.increment_false_positives(user_id)
        self.logger.warning("False positive reported for user %s (total %d)", user_id, count)
        return count

    def live_activity(self, now: Optional[int] = None) -> List[AttendanceRecord]:
        current = now_ms() if now is None else int(now)
        return self.db.attendance_since(current - self.live_window_ms)
