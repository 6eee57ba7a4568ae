from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from shared.contracts.enums import DoseState, Recurrence


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    """Declarative base for application models."""


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class MedicationRecord(TimestampMixin, Base):
    __tablename__ = "medications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    dose: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#4CAF50")
    notes: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    time_slots: Mapped[list[TimeSlotRecord]] = relationship(back_populates="medication")
    doses: Mapped[list[DoseRecord]] = relationship(back_populates="medication")


class TimeSlotRecord(Base):
    __tablename__ = "time_slots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    medication_id: Mapped[int] = mapped_column(
        ForeignKey("medications.id", ondelete="CASCADE"), nullable=False, index=True
    )
    time_of_day: Mapped[str] = mapped_column(String(5), nullable=False)
    recurrence: Mapped[Recurrence] = mapped_column(
        Enum(Recurrence, name="recurrence", values_callable=_enum_values),
        nullable=False,
        default=Recurrence.DAILY,
    )
    with_food: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    medication: Mapped[MedicationRecord] = relationship(back_populates="time_slots")


class DoseRecord(Base):
    __tablename__ = "doses"
    __table_args__ = (
        UniqueConstraint("medication_id", "time_slot_id", "scheduled_on", name="uq_doses_medication_slot_day"),
        Index("ix_doses_scheduled_at", "scheduled_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    medication_id: Mapped[int] = mapped_column(
        ForeignKey("medications.id", ondelete="CASCADE"), nullable=False, index=True
    )
    time_slot_id: Mapped[int] = mapped_column(ForeignKey("time_slots.id", ondelete="CASCADE"), nullable=False)
    scheduled_on: Mapped[date] = mapped_column(Date, nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    taken_at: Mapped[datetime | None] = mapped_column(DateTime)
    state: Mapped[DoseState] = mapped_column(
        Enum(DoseState, name="dose_state", values_callable=_enum_values),
        nullable=False,
        default=DoseState.PENDING,
    )
    notes: Mapped[str | None] = mapped_column(Text)

    medication: Mapped[MedicationRecord] = relationship(back_populates="doses")
