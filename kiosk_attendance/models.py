from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import numpy as np


class AttendanceType(str, Enum):
    ENTRADA = "Entrada"
    SALIDA = "Salida"
    SALIDA_DESCANSO = "Salida Descanso"
    ENTRADA_DESCANSO = "Entrada Descanso"
    FALTA = "Falta"

    @property
    def type_id(self) -> int:
        return _TYPE_IDS[self]

    @classmethod
    def from_label(cls, label: str) -> "AttendanceType":
        try:
            return cls(label)
        except ValueError as exc:
            raise ValueError(f"Unknown attendance type: {label!r}") from exc

    @classmethod
    def from_type_id(cls, type_id: int) -> "AttendanceType":
        for member, value in _TYPE_IDS.items():
            if value == type_id:
                return member
        raise ValueError(f"Unknown attendance type id: {type_id!r}")


_TYPE_IDS = {
    AttendanceType.ENTRADA: 1,
    AttendanceType.SALIDA: 2,
    AttendanceType.SALIDA_DESCANSO: 3,
    AttendanceType.ENTRADA_DESCANSO: 4,
    AttendanceType.FALTA: 5,
}


class DeviceStatus(str, Enum):
    APPROVED = "approved"
    PENDING = "pending"
    BLOCKED = "blocked"
    UNREGISTERED = "unregistered"

    @classmethod
    def parse(cls, raw: object) -> "DeviceStatus":
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            return cls.UNREGISTERED


@dataclass
class UserRecord:
    id: Optional[int]
    dni: str
    name: str
    face_descriptors: List[np.ndarray]
    photos: List[str] = field(default_factory=list)
    email: Optional[str] = None
    phone: Optional[str] = None
    whatsapp: Optional[str] = None
    pin: Optional[str] = None
    false_positives: int = 0
    sector: Optional[str] = None
    role: Optional[str] = None
    tenant_id: Optional[str] = None
    assigned_kiosks: List[str] = field(default_factory=list)
    shift_id: Optional[int] = None
    created_at: int = 0

    def allowed_on(self, kiosk_id: str) -> bool:
        return not self.assigned_kiosks or kiosk_id in self.assigned_kiosks


@dataclass
class AttendanceRecord:
    user_id: int
    user_name: str
    type: AttendanceType
    timestamp: int
    user_dni: Optional[str] = None
    user_phone: Optional[str] = None
    photo: Optional[str] = None
    synced: bool = False
    notes: Optional[str] = None
    kiosk_id: Optional[str] = None
    modified_at: Optional[int] = None
    modified_by: Optional[str] = None
    observation: Optional[str] = None
    client_id: Optional[str] = None
    id: Optional[int] = None

    @property
    def type_id(self) -> int:
        return self.type.type_id


@dataclass
class UnknownFaceRecord:
    timestamp: int
    photo: Optional[str] = None
    kiosk_id: Optional[str] = None
    synced: bool = False
    id: Optional[int] = None


@dataclass
class ShiftRecord:
    name: str
    start_time: str
    end_time: str
    days: List[int] = field(default_factory=lambda: [1, 2, 3, 4, 5])
    sector: Optional[str] = None
    active: bool = True
    id: Optional[int] = None
