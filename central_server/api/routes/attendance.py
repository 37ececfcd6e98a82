from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from central_server.api.deps import db_session, require_api_key
from central_server.db.models import AttendanceRecord, Employee
from central_server.schemas.attendance import AttendanceAck, AttendanceCreate, AttendanceResponse

router = APIRouter(prefix="/attendance", tags=["attendance"])
logger = logging.getLogger("central.attendance")


@router.get("", response_model=list[AttendanceResponse])
def list_attendance(
    limit: int = Query(default=500, ge=1, le=5000),
    _auth: None = Depends(require_api_key),
    db: Session = db_session(),
):
    stmt = select(AttendanceRecord).order_by(AttendanceRecord.timestamp.desc(), AttendanceRecord.id.desc()).limit(limit)
    return db.scalars(stmt).all()


@router.post("", response_model=AttendanceAck)
def record_attendance(
    payload: AttendanceCreate,
    _auth: None = Depends(require_api_key),
    db: Session = db_session(),
):
    employee_id = None
    if payload.user_dni:
        employee_id = db.scalar(select(Employee.id).where(Employee.dni == payload.user_dni))

    row = None
    if payload.client_id:
        row = db.scalar(select(AttendanceRecord).where(AttendanceRecord.client_id == payload.client_id))

    duplicate = row is not None
    if row is None:
        row = AttendanceRecord(client_id=payload.client_id)
        db.add(row)

    # Re-uploads of a known client_id carry admin edits made on the kiosk.
    row.employee_id = employee_id
    row.user_name = payload.user_name
    row.user_dni = payload.user_dni
    row.type = payload.type
    row.type_id = payload.type_id
    row.timestamp = payload.timestamp
    row.photo = payload.photo
    row.notes = payload.notes
    row.observation = payload.observation
    row.kiosk_id = payload.kiosk_id

    db.commit()
    db.refresh(row)
    if duplicate:
        logger.info("Attendance %s re-uploaded by %s", payload.client_id, payload.kiosk_id)
    return AttendanceAck(success=True, duplicate=duplicate, id=row.id)
