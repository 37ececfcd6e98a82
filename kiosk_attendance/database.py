import json
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any, List, Optional

from .descriptors import pack_matrix, unpack_matrix
from .exceptions import DatabaseError, DuplicateIdentityError
from .models import AttendanceRecord, AttendanceType, ShiftRecord, UnknownFaceRecord, UserRecord


def now_ms() -> int:
    return int(time.time() * 1000)


def _json_list(raw: Optional[str]) -> list:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return value if isinstance(value, list) else []


class KioskDatabase:
    """Embedded store owned by the kiosk process."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def _initialize(self) -> None:
        try:
            with self._connect() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS shifts (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        start_time TEXT NOT NULL,
                        end_time TEXT NOT NULL,
                        days TEXT NOT NULL DEFAULT '[]',
                        sector TEXT,
                        active INTEGER NOT NULL DEFAULT 1
                    );

                    CREATE TABLE IF NOT EXISTS users (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        dni TEXT NOT NULL UNIQUE,
                        name TEXT NOT NULL,
                        email TEXT,
                        phone TEXT,
                        whatsapp TEXT,
                        pin TEXT,
                        face_descriptors BLOB NOT NULL,
                        descriptor_count INTEGER NOT NULL,
                        descriptor_dim INTEGER NOT NULL,
                        photos TEXT NOT NULL DEFAULT '[]',
                        false_positives INTEGER NOT NULL DEFAULT 0,
                        sector TEXT,
                        role TEXT,
                        tenant_id TEXT,
                        assigned_kiosks TEXT NOT NULL DEFAULT '[]',
                        shift_id INTEGER REFERENCES shifts(id) ON DELETE SET NULL,
                        created_at INTEGER NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS attendance (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                        user_name TEXT NOT NULL,
                        user_dni TEXT,
                        user_phone TEXT,
                        type TEXT NOT NULL,
                        type_id INTEGER NOT NULL,
                        timestamp INTEGER NOT NULL,
                        photo TEXT,
                        synced INTEGER NOT NULL DEFAULT 0,
                        notes TEXT,
                        kiosk_id TEXT,
                        modified_at INTEGER,
                        modified_by TEXT,
                        observation TEXT,
                        client_id TEXT NOT NULL UNIQUE
                    );
                    CREATE INDEX IF NOT EXISTS idx_attendance_synced ON attendance(synced);
                    CREATE INDEX IF NOT EXISTS idx_attendance_timestamp ON attendance(timestamp);
                    CREATE INDEX IF NOT EXISTS idx_attendance_user ON attendance(user_id);

                    CREATE TABLE IF NOT EXISTS unknown_faces (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        timestamp INTEGER NOT NULL,
                        photo TEXT,
                        kiosk_id TEXT,
                        synced INTEGER NOT NULL DEFAULT 0
                    );

                    CREATE TABLE IF NOT EXISTS kv_settings (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    );
                    """
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to initialize database: {exc}") from exc

    # Users

    @staticmethod
    def _user_params(user: UserRecord) -> dict[str, Any]:
        try:
            blob, count, dim = pack_matrix(user.face_descriptors)
        except ValueError as exc:
            raise DatabaseError(f"Invalid face profile for {user.dni}: {exc}") from exc
        return {
            "dni": user.dni,
            "name": user.name,
            "email": user.email,
            "phone": user.phone,
            "whatsapp": user.whatsapp,
            "pin": user.pin,
            "face_descriptors": blob,
            "descriptor_count": count,
            "descriptor_dim": dim,
            "photos": json.dumps(list(user.photos or [])),
            "false_positives": int(user.false_positives or 0),
            "sector": user.sector,
            "role": user.role,
            "tenant_id": user.tenant_id,
            "assigned_kiosks": json.dumps(list(user.assigned_kiosks or [])),
            "shift_id": user.shift_id,
            "created_at": int(user.created_at or now_ms()),
        }

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> UserRecord:
        return UserRecord(
            id=row["id"],
            dni=row["dni"],
            name=row["name"],
            face_descriptors=unpack_matrix(row["face_descriptors"], row["descriptor_count"], row["descriptor_dim"]),
            photos=_json_list(row["photos"]),
            email=row["email"],
            phone=row["phone"],
            whatsapp=row["whatsapp"],
            pin=row["pin"],
            false_positives=int(row["false_positives"]),
            sector=row["sector"],
            role=row["role"],
            tenant_id=row["tenant_id"],
            assigned_kiosks=_json_list(row["assigned_kiosks"]),
            shift_id=row["shift_id"],
            created_at=int(row["created_at"]),
        )

    def add_user(self, user: UserRecord) -> UserRecord:
        params = self._user_params(user)
        columns = ", ".join(params)
        placeholders = ", ".join(f":{name}" for name in params)
        try:
            with self._connect() as conn:
                cursor = conn.execute(f"INSERT INTO users ({columns}) VALUES ({placeholders})", params)
                user_id = int(cursor.lastrowid)
        except sqlite3.IntegrityError as exc:
            if "dni" in str(exc):
                raise DuplicateIdentityError(
                    f"DNI {user.dni} is already enrolled on this device."
                ) from exc
            raise DatabaseError(f"Failed to save user {user.dni}: {exc}") from exc
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save user {user.dni}: {exc}") from exc
        return self.get_user(user_id)

    def update_user(self, user: UserRecord) -> UserRecord:
        if user.id is None:
            raise DatabaseError("Cannot update a user without an id.")
        params = self._user_params(user)
        assignments = ", ".join(f"{name} = :{name}" for name in params)
        params["id"] = user.id
        try:
            with self._connect() as conn:
                cursor = conn.execute(f"UPDATE users SET {assignments} WHERE id = :id", params)
                if cursor.rowcount == 0:
                    raise DatabaseError(f"User {user.id} not found.")
        except sqlite3.IntegrityError as exc:
            if "dni" in str(exc):
                raise DuplicateIdentityError(
                    f"DNI {user.dni} is already enrolled on this device."
                ) from exc
            raise DatabaseError(f"Failed to update user {user.id}: {exc}") from exc
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to update user {user.id}: {exc}") from exc
        return self.get_user(user.id)

    def put_user(self, user: UserRecord) -> UserRecord:
        """Update by local id when present, insert otherwise."""
        if user.id is not None and self.get_user(user.id) is not None:
            return self.update_user(user)
        return self.add_user(user)

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load user {user_id}: {exc}") from exc
        return self._row_to_user(row) if row is not None else None

    def get_user_by_dni(self, dni: str) -> Optional[UserRecord]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM users WHERE dni = ?", (dni,)).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load user {dni}: {exc}") from exc
        return self._row_to_user(row) if row is not None else None

    def list_users(self) -> List[UserRecord]:
        try:
            with self._connect() as conn:
                rows = conn.execute("SELECT * FROM users ORDER BY id ASC").fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load users: {exc}") from exc
        return [self._row_to_user(row) for row in rows]

    def descriptor_dimension(self, exclude_user_id: Optional[int] = None) -> Optional[int]:
        """Descriptor length used by most enrolled people, or None when nobody else is enrolled."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT descriptor_dim, COUNT(*) AS total
                    FROM users
                    WHERE id IS NOT ?
                    GROUP BY descriptor_dim
                    ORDER BY total DESC, MIN(id) ASC
                    LIMIT 1
                    """,
                    (exclude_user_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to read descriptor length: {exc}") from exc
        return int(row["descriptor_dim"]) if row is not None else None

    def delete_user(self, user_id: int) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM attendance WHERE user_id = ?", (user_id,))
                cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to delete user {user_id}: {exc}") from exc

    def increment_false_positives(self, user_id: int) -> int:
        try:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE users SET false_positives = false_positives + 1 WHERE id = ?",
                    (user_id,),
                )
                row = conn.execute("SELECT false_positives FROM users WHERE id = ?", (user_id,)).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to update false positives for {user_id}: {exc}") from exc
        if row is None:
            raise DatabaseError(f"User {user_id} not found.")
        return int(row["false_positives"])

    # Attendance

    @staticmethod
    def _row_to_attendance(row: sqlite3.Row) -> AttendanceRecord:
        return AttendanceRecord(
            id=row["id"],
            user_id=row["user_id"],
            user_name=row["user_name"],
            user_dni=row["user_dni"],
            user_phone=row["user_phone"],
            type=AttendanceType.from_label(row["type"]),
            timestamp=int(row["timestamp"]),
            photo=row["photo"],
            synced=bool(row["synced"]),
            notes=row["notes"],
            kiosk_id=row["kiosk_id"],
            modified_at=row["modified_at"],
            modified_by=row["modified_by"],
            observation=row["observation"],
            client_id=row["client_id"],
        )

    def add_attendance(self, record: AttendanceRecord) -> AttendanceRecord:
        client_id = record.client_id or str(uuid.uuid4())
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO attendance (
                        user_id, user_name, user_dni, user_phone, type, type_id, timestamp,
                        photo, synced, notes, kiosk_id, modified_at, modified_by, observation, client_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.user_id,
                        record.user_name,
                        record.user_dni,
                        record.user_phone,
                        record.type.value,
                        record.type_id,
                        int(record.timestamp),
                        record.photo,
                        int(record.synced),
                        record.notes,
                        record.kiosk_id,
                        record.modified_at,
                        record.modified_by,
                        record.observation,
                        client_id,
                    ),
                )
                record_id = int(cursor.lastrowid)
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save attendance for user {record.user_id}: {exc}") from exc
        return self.get_attendance(record_id)

    def get_attendance(self, record_id: int) -> Optional[AttendanceRecord]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM attendance WHERE id = ?", (record_id,)).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load attendance {record_id}: {exc}") from exc
        return self._row_to_attendance(row) if row is not None else None

    def _query_attendance(self, sql: str, params: tuple = ()) -> List[AttendanceRecord]:
        try:
            with self._connect() as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to query attendance: {exc}") from exc
        return [self._row_to_attendance(row) for row in rows]

    def pending_attendance(self) -> List[AttendanceRecord]:
        return self._query_attendance("SELECT * FROM attendance WHERE synced = 0 ORDER BY id ASC")

    def mark_attendance_synced(self, record_id: int) -> None:
        try:
            with self._connect() as conn:
                conn.execute("UPDATE attendance SET synced = 1 WHERE id = ?", (record_id,))
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to flag attendance {record_id} as synced: {exc}") from exc

    def last_attendance_for_user(self, user_id: int) -> Optional[AttendanceRecord]:
        rows = self._query_attendance(
            "SELECT * FROM attendance WHERE user_id = ? ORDER BY id DESC LIMIT 1",
            (user_id,),
        )
        return rows[0] if rows else None

    def attendance_since(self, since_ms: int) -> List[AttendanceRecord]:
        return self._query_attendance(
            "SELECT * FROM attendance WHERE timestamp > ? ORDER BY timestamp DESC, id DESC",
            (int(since_ms),),
        )

    def list_attendance(self, limit: int = 500) -> List[AttendanceRecord]:
        safe_limit = max(1, min(10_000, int(limit)))
        return self._query_attendance(
            "SELECT * FROM attendance ORDER BY timestamp DESC, id DESC LIMIT ?",
            (safe_limit,),
        )

    def update_attendance(
        self,
        record_id: int,
        attendance_type: AttendanceType,
        timestamp: int,
        observation: Optional[str],
        modified_by: str,
    ) -> AttendanceRecord:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE attendance SET
                        type = ?, type_id = ?, timestamp = ?, observation = ?,
                        modified_at = ?, modified_by = ?, synced = 0
                    WHERE id = ?
                    """,
                    (
                        attendance_type.value,
                        attendance_type.type_id,
                        int(timestamp),
                        observation,
                        now_ms(),
                        modified_by,
                        record_id,
                    ),
                )
                if cursor.rowcount == 0:
                    raise DatabaseError(f"Attendance record {record_id} not found.")
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to update attendance {record_id}: {exc}") from exc
        return self.get_attendance(record_id)

    # Unknown faces

    def add_unknown_face(self, record: UnknownFaceRecord) -> UnknownFaceRecord:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    "INSERT INTO unknown_faces (timestamp, photo, kiosk_id, synced) VALUES (?, ?, ?, ?)",
                    (int(record.timestamp), record.photo, record.kiosk_id, int(record.synced)),
                )
                record.id = int(cursor.lastrowid)
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save unknown face capture: {exc}") from exc
        return record

    def list_unknown_faces(self, limit: int = 500) -> List[UnknownFaceRecord]:
        safe_limit = max(1, min(10_000, int(limit)))
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM unknown_faces ORDER BY timestamp DESC, id DESC LIMIT ?",
                    (safe_limit,),
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load unknown faces: {exc}") from exc
        return [
            UnknownFaceRecord(
                id=row["id"],
                timestamp=int(row["timestamp"]),
                photo=row["photo"],
                kiosk_id=row["kiosk_id"],
                synced=bool(row["synced"]),
            )
            for row in rows
        ]

    def delete_unknown_face(self, record_id: int) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM unknown_faces WHERE id = ?", (record_id,))
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to delete unknown face {record_id}: {exc}") from exc

    def clear_unknown_faces(self) -> int:
        try:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM unknown_faces")
                return cursor.rowcount
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to clear unknown faces: {exc}") from exc

    # Shifts

    @staticmethod
    def _row_to_shift(row: sqlite3.Row) -> ShiftRecord:
        return ShiftRecord(
            id=row["id"],
            name=row["name"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            days=[int(day) for day in _json_list(row["days"])],
            sector=row["sector"],
            active=bool(row["active"]),
        )

    def add_shift(self, shift: ShiftRecord) -> ShiftRecord:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO shifts (name, start_time, end_time, days, sector, active)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (shift.name, shift.start_time, shift.end_time, json.dumps(shift.days), shift.sector, int(shift.active)),
                )
                shift.id = int(cursor.lastrowid)
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save shift {shift.name}: {exc}") from exc
        return shift

    def update_shift(self, shift: ShiftRecord) -> ShiftRecord:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE shifts SET name = ?, start_time = ?, end_time = ?, days = ?, sector = ?, active = ?
                    WHERE id = ?
                    """,
                    (
                        shift.name,
                        shift.start_time,
                        shift.end_time,
                        json.dumps(shift.days),
                        shift.sector,
                        int(shift.active),
                        shift.id,
                    ),
                )
                if cursor.rowcount == 0:
                    raise DatabaseError(f"Shift {shift.id} not found.")
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to update shift {shift.id}: {exc}") from exc
        return shift

    def delete_shift(self, shift_id: int) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM shifts WHERE id = ?", (shift_id,))
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to delete shift {shift_id}: {exc}") from exc

    def list_shifts(self) -> List[ShiftRecord]:
        try:
            with self._connect() as conn:
                rows = conn.execute("SELECT * FROM shifts ORDER BY id ASC").fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load shifts: {exc}") from exc
        return [self._row_to_shift(row) for row in rows]

    # Key/value settings

    def get_setting(self, key: str, default: Any = None) -> Any:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT value FROM kv_settings WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load setting {key}: {exc}") from exc
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            return default

    def set_setting(self, key: str, value: Any) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO kv_settings (key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value
                    """,
                    (key, json.dumps(value)),
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save setting {key}: {exc}") from exc
