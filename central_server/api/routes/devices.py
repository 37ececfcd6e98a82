from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from central_server.api.deps import db_session, require_api_key, verify_api_key_if_present
from central_server.core.config import get_settings
from central_server.db.models import Device
from central_server.schemas.device import DeviceCheck, DeviceRegister, DeviceResponse, DeviceStatusUpdate

router = APIRouter(prefix="/devices", tags=["devices"])
logger = logging.getLogger("central.devices")


def _display_name(kiosk_id: str) -> str:
    return f"Terminal {kiosk_id.split('-')[-1]}"


@router.post("/register", response_model=DeviceResponse)
def register_device(
    payload: DeviceRegister,
    _auth: None = Depends(verify_api_key_if_present),
    db: Session = db_session(),
):
    row = db.scalar(select(Device).where(Device.kiosk_id == payload.kiosk_id))
    if row is None:
        row = Device(
            kiosk_id=payload.kiosk_id,
            name=payload.name or _display_name(payload.kiosk_id),
            status=get_settings().default_device_status,
        )
        db.add(row)
        logger.info("Device %s registered with status %s", payload.kiosk_id, row.status)
    elif payload.name:
        row.name = payload.name
    row.last_seen = datetime.now(timezone.utc)

    db.commit()
    db.refresh(row)
    return row


@router.get("/check/{kiosk_id}", response_model=DeviceCheck)
def check_device(
    kiosk_id: str,
    _auth: None = Depends(verify_api_key_if_present),
    db: Session = db_session(),
):
    row = db.scalar(select(Device).where(Device.kiosk_id == kiosk_id))
    return DeviceCheck(status=row.status if row is not None else "unregistered")


@router.get("", response_model=list[DeviceResponse])
def list_devices(
    _auth: None = Depends(require_api_key),
    db: Session = db_session(),
):
    return db.scalars(select(Device).order_by(Device.last_seen.desc())).all()


@router.put("/{device_id}/status", response_model=DeviceResponse)
def update_device_status(
    device_id: int,
    payload: DeviceStatusUpdate,
    _auth: None = Depends(require_api_key),
    db: Session = db_session(),
):
    row = db.get(Device, device_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Device {device_id} not found.")
    row.status = payload.status
    db.commit()
    db.refresh(row)
    logger.info("Device %s set to %s", row.kiosk_id, row.status)
    return row
