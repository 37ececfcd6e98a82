from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from central_server.api.deps import db_session, require_api_key
from central_server.db.models import Employee
from central_server.schemas.employee import EmployeeResponse, EmployeeUpsert

router = APIRouter(prefix="/employees", tags=["employees"])
logger = logging.getLogger("central.employees")


@router.get("", response_model=list[EmployeeResponse])
def list_employees(
    _auth: None = Depends(require_api_key),
    db: Session = db_session(),
):
    return db.scalars(select(Employee).order_by(Employee.id)).all()


@router.post("", response_model=EmployeeResponse)
def upsert_employee(
    payload: EmployeeUpsert,
    _auth: None = Depends(require_api_key),
    db: Session = db_session(),
):
    row = db.scalar(select(Employee).where(Employee.dni == payload.dni))
    if row is None:
        row = Employee(dni=payload.dni, name=payload.name)
        db.add(row)
        logger.info("Employee %s created", payload.dni)

    row.name = payload.name
    row.email = payload.email
    row.phone = payload.phone
    row.whatsapp = payload.whatsapp
    row.pin = payload.pin
    row.face_descriptors = payload.face_descriptors
    row.descriptor_version = payload.descriptor_version
    row.photos = payload.photos

    db.commit()
    db.refresh(row)
    return row
