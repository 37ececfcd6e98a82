from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from central_server.api.deps import db_session, verify_api_key_if_present
from central_server.core.config import get_settings

router = APIRouter(tags=["health"])
logger = logging.getLogger("central.health")


@router.get("/health")
def health(
    _auth: None = Depends(verify_api_key_if_present),
    db: Session = db_session(),
) -> dict:
    database = "connected"
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Database health check failed")
        database = "disconnected"
    return {
        "status": "ok",
        "database": database,
        "publicKey": get_settings().public_key,
    }
