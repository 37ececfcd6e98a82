from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class DeviceRegister(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kiosk_id: str = Field(alias="kioskId", min_length=1, max_length=64)
    name: str | None = Field(default=None, max_length=120)


class DeviceStatusUpdate(BaseModel):
    status: Literal["approved", "pending", "blocked"]


class DeviceCheck(BaseModel):
    status: str


class DeviceResponse(BaseModel):
    id: int
    kiosk_id: str
    name: str
    status: str
    last_seen: datetime

    class Config:
        from_attributes = True
