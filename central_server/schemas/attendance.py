from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ATTENDANCE_TYPE_IDS = {
    "Entrada": 1,
    "Salida": 2,
    "Salida Descanso": 3,
    "Entrada Descanso": 4,
    "Falta": 5,
}


class AttendanceCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: int | None = Field(default=None, alias="userId")
    user_name: str = Field(alias="userName", min_length=1)
    user_dni: str | None = Field(default=None, alias="userDni")
    type: str
    type_id: int | None = None
    timestamp: int = Field(ge=0)
    photo: str | None = None
    notes: str | None = None
    observation: str | None = None
    kiosk_id: str | None = Field(default=None, alias="kioskId")
    client_id: str | None = Field(default=None, alias="clientId", max_length=64)

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in ATTENDANCE_TYPE_IDS:
            raise ValueError(f"Unknown attendance type: {value}")
        return value

    @model_validator(mode="after")
    def _fill_type_id(self) -> "AttendanceCreate":
        expected = ATTENDANCE_TYPE_IDS[self.type]
        if self.type_id is None:
            self.type_id = expected
        elif self.type_id != expected:
            raise ValueError(f"type_id {self.type_id} does not match type {self.type}")
        return self


class AttendanceAck(BaseModel):
    success: bool
    duplicate: bool = False
    id: int | None = None


class AttendanceResponse(BaseModel):
    id: int
    employee_id: int | None = None
    user_name: str
    user_dni: str | None = None
    type: str
    type_id: int
    timestamp: int
    notes: str | None = None
    observation: str | None = None
    kiosk_id: str | None = None
    client_id: str | None = None

    class Config:
        from_attributes = True
