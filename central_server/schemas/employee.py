from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class EmployeeUpsert(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    dni: str = Field(min_length=1, max_length=32)
    email: str | None = None
    phone: str | None = None
    whatsapp: str | None = None
    pin: str | None = None
    face_descriptors: list[list[float]] = []
    descriptor_version: int = Field(default=1, ge=1)
    photos: list[str] = []


class EmployeeResponse(BaseModel):
    id: int
    dni: str
    name: str
    email: str | None = None
    phone: str | None = None
    whatsapp: str | None = None
    pin: str | None = None
    face_descriptors: list[list[float]]
    descriptor_version: int = 1
    photos: list[str]
    false_positives: int
    created_at: datetime

    class Config:
        from_attributes = True
