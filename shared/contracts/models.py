from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import DoseState, Recurrence
from .times import parse_time_of_day


MAX_NAME_LENGTH = 200
MAX_DOSE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
MAX_NOTES_LENGTH = 500
MAX_TIMES_PER_MEDICATION = 10

COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


class NewMedicationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=MAX_NAME_LENGTH)
    dose: str = Field(default="", max_length=MAX_DOSE_LENGTH)
    description: str | None = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)
    color: str | None = Field(default=None, pattern=COLOR_PATTERN)
    notes: str | None = Field(default=None, max_length=MAX_NOTES_LENGTH)
    times: list[str] = Field(default_factory=list, max_length=MAX_TIMES_PER_MEDICATION)
    with_food: bool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Medication name cannot be empty")
        return v.strip()

    @field_validator("times")
    @classmethod
    def validate_times(cls, v: list[str]) -> list[str]:
        return [parse_time_of_day(t) for t in v]


class MedicationUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=MAX_NAME_LENGTH)
    dose: str | None = Field(default=None, max_length=MAX_DOSE_LENGTH)
    description: str | None = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)
    color: str | None = Field(default=None, pattern=COLOR_PATTERN)
    notes: str | None = Field(default=None, max_length=MAX_NOTES_LENGTH)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        if v is not None:
            if not v.strip():
                raise ValueError("Medication name cannot be empty")
            return v.strip()
        return v


class NewTimeSlotRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    time_of_day: str
    with_food: bool = False

    @field_validator("time_of_day")
    @classmethod
    def validate_time_of_day(cls, v: str) -> str:
        return parse_time_of_day(v)


class TimeSlotUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    time_of_day: str | None = None
    with_food: bool | None = None

    @field_validator("time_of_day")
    @classmethod
    def validate_time_of_day(cls, v: str | None) -> str | None:
        return parse_time_of_day(v) if v is not None else v


class TimeSlotOut(BaseModel):
    id: int
    medication_id: int
    time_of_day: str
    recurrence: Recurrence
    with_food: bool
    active: bool


class MedicationOut(BaseModel):
    id: int
    name: str
    dose: str
    description: str | None = None
    color: str
    notes: str | None = None
    active: bool
    created_at: datetime | None = None
    time_slots: list[TimeSlotOut] = Field(default_factory=list)
    schedule_text: str = ""


class DoseOut(BaseModel):
    id: int
    medication_id: int
    time_slot_id: int
    scheduled_at: datetime
    taken_at: datetime | None = None
    state: DoseState
    notes: str | None = None


class TodayDoseOut(DoseOut):
    medication_name: str
    medication_dose: str
    medication_color: str
    time_of_day: str
    with_food: bool
    overdue: bool = False


class DailyStatsOut(BaseModel):
    total: int = Field(ge=0)
    taken: int = Field(ge=0)
    pending: int = Field(ge=0)
    skipped: int = Field(ge=0)
