from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .exceptions import AttendanceError, DeviceNotApprovedError, DuplicateIdentityError
from .kiosk_runtime import KioskRuntime
from .models import AttendanceRecord, AttendanceType, ShiftRecord, UnknownFaceRecord, UserRecord

logger = logging.getLogger("kiosk.web_app")


class RejectBody(BaseModel):
    report: bool = False


class MarkBody(BaseModel):
    type: AttendanceType


class ManualEntryBody(BaseModel):
    user_id: int
    type: AttendanceType
    timestamp: int
    notes: str = ""


class EditMarkBody(BaseModel):
    type: AttendanceType
    timestamp: int
    observation: Optional[str] = None
    modified_by: str = "Admin"


class SyncConfigBody(BaseModel):
    server_url: Optional[str] = None
    api_key: Optional[str] = None
    enabled: Optional[bool] = None


class ShiftBody(BaseModel):
    name: str
    start_time: str
    end_time: str
    days: List[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])
    sector: Optional[str] = None
    active: bool = True


def _status_code(exc: AttendanceError) -> int:
    if isinstance(exc, DuplicateIdentityError):
        return 409
    if isinstance(exc, DeviceNotApprovedError):
        return 403
    return 400


def _user_dict(user: UserRecord) -> dict:
    return {
        "id": user.id,
        "dni": user.dni,
        "name": user.name,
        "email": user.email,
        "phone": user.phone,
        "sector": user.sector,
        "role": user.role,
        "shift_id": user.shift_id,
        "assigned_kiosks": user.assigned_kiosks,
        "false_positives": user.false_positives,
        "sample_count": len(user.face_descriptors),
        "created_at": user.created_at,
    }


def _attendance_dict(record: AttendanceRecord) -> dict:
    payload = asdict(record)
    payload["type"] = record.type.value
    payload["type_id"] = record.type_id
    return payload


def _unknown_dict(record: UnknownFaceRecord) -> dict:
    return asdict(record)


def create_kiosk_app(runtime: KioskRuntime, manage_runtime: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if manage_runtime:
            try:
                runtime.start()
            except Exception as exc:
                runtime.last_error = f"Runtime startup failed: {exc}"
                logger.exception("Kiosk runtime startup failed")
        yield
        if manage_runtime:
            runtime.stop()

    app = FastAPI(title=runtime.settings.app_name, version="1.0.0", lifespan=lifespan)

    @app.exception_handler(AttendanceError)
    async def _attendance_error(_: Request, exc: AttendanceError):
        return JSONResponse(status_code=_status_code(exc), content={"detail": str(exc)})

    @app.get("/api/state")
    def state():
        return runtime.status()

    # Scanner flow

    @app.post("/api/scanner/enter")
    def enter_scanner():
        status = runtime.enter_scanner()
        return {"ok": True, "device_status": status.value}

    @app.post("/api/scanner/leave")
    def leave_scanner():
        runtime.leave_scanner()
        return {"ok": True}

    @app.post("/api/identity/confirm")
    def confirm_identity():
        return _user_dict(runtime.confirm_identity())

    @app.post("/api/identity/reject")
    def reject_identity(payload: RejectBody):
        runtime.reject_identity(report=payload.report)
        return {"ok": True}

    @app.post("/api/attendance/mark")
    def mark_attendance(payload: MarkBody):
        records = runtime.select_type(payload.type)
        return {"ok": True, "records": [_attendance_dict(record) for record in records]}

    # Attendance records

    @app.get("/api/attendance/live")
    def live_attendance():
        return [_attendance_dict(record) for record in runtime.attendance.live_activity()]

    @app.get("/api/attendance")
    def list_attendance(limit: int = 500):
        return [_attendance_dict(record) for record in runtime.db.list_attendance(limit=limit)]

    @app.post("/api/attendance/manual")
    def manual_entry(payload: ManualEntryBody):
        record = runtime.attendance.manual_entry(
            payload.user_id,
            payload.type,
            payload.timestamp,
            notes=payload.notes,
        )
        return _attendance_dict(record)

    @app.put("/api/attendance/{record_id}")
    def edit_attendance(record_id: int, payload: EditMarkBody):
        if runtime.db.get_attendance(record_id) is None:
            raise HTTPException(status_code=404, detail=f"Attendance record {record_id} not found.")
        record = runtime.attendance.edit_mark(
            record_id,
            payload.type,
            payload.timestamp,
            observation=payload.observation,
            modified_by=payload.modified_by,
        )
        return _attendance_dict(record)

    # Users and unknown faces

    @app.get("/api/users")
    def list_users():
        return [_user_dict(user) for user in runtime.db.list_users()]

    @app.delete("/api/users/{user_id}")
    def delete_user(user_id: int):
        if not runtime.enrollment.delete_user(user_id):
            raise HTTPException(status_code=404, detail=f"User {user_id} not found.")
        return {"ok": True}

    @app.get("/api/unknown-faces")
    def list_unknown_faces():
        return [_unknown_dict(record) for record in runtime.db.list_unknown_faces()]

    @app.delete("/api/unknown-faces")
    def clear_unknown_faces():
        return {"ok": True, "deleted": runtime.db.clear_unknown_faces()}

    @app.delete("/api/unknown-faces/{record_id}")
    def delete_unknown_face(record_id: int):
        if not runtime.db.delete_unknown_face(record_id):
            raise HTTPException(status_code=404, detail=f"Unknown face {record_id} not found.")
        return {"ok": True}

    # Shifts

    @app.get("/api/shifts")
    def list_shifts():
        return [asdict(shift) for shift in runtime.db.list_shifts()]

    @app.post("/api/shifts")
    def add_shift(payload: ShiftBody):
        return asdict(runtime.db.add_shift(ShiftRecord(**payload.model_dump())))

    @app.delete("/api/shifts/{shift_id}")
    def delete_shift(shift_id: int):
        if not runtime.db.delete_shift(shift_id):
            raise HTTPException(status_code=404, detail=f"Shift {shift_id} not found.")
        return {"ok": True}

    # Sync and device registry

    @app.get("/api/sync/config")
    def get_sync_config():
        config = runtime.sync_service.config
        return {"server_url": config.server_url, "enabled": config.enabled, "has_api_key": bool(config.api_key)}

    @app.put("/api/sync/config")
    def update_sync_config(payload: SyncConfigBody):
        changes = payload.model_dump(exclude_none=True)
        config = runtime.sync_service.update_config(**changes)
        return {"server_url": config.server_url, "enabled": config.enabled, "has_api_key": bool(config.api_key)}

    @app.post("/api/sync/run")
    def run_sync():
        return asdict(runtime.sync_service.full_sync())

    @app.get("/api/sync/test")
    def test_sync_connection():
        return asdict(runtime.sync_service.test_connection())

    @app.get("/api/device/status")
    def device_status():
        status = runtime.sync_service.check_device_status()
        runtime.device_status = status
        return {"kiosk_id": runtime.kiosk_id, "status": status.value}

    return app
