from __future__ import annotations

import logging
from datetime import date, datetime
from typing import List, Optional, Tuple

from sqlalchemy import create_engine, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dosetrack import (
    DEFAULT_COLOR,
    EDITABLE_MEDICATION_FIELDS,
    Dose,
    Medication,
    NotFound,
    TimeSlot,
    check_writable_state,
    parse_time_of_day,
)
from shared.contracts.enums import DoseState, Recurrence

from .models import DoseRecord, MedicationRecord, TimeSlotRecord

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}
_DOSE_KEY = ["medication_id", "time_slot_id", "scheduled_on"]


def create_session_factory(database_url: str, echo: bool = False) -> Tuple[Engine, sessionmaker]:
    kwargs: dict = {"echo": echo}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            # One shared connection, otherwise every checkout sees an empty database.
            kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, **kwargs)
    return engine, sessionmaker(bind=engine, expire_on_commit=False)


def _to_medication(row: MedicationRecord) -> Medication:
    return Medication(
        id=row.id,
        name=row.name,
        dose=row.dose,
        description=row.description,
        color=row.color,
        notes=row.notes,
        active=row.active,
        created_at=row.created_at,
    )


def _to_time_slot(row: TimeSlotRecord) -> TimeSlot:
    return TimeSlot(
        id=row.id,
        medication_id=row.medication_id,
        time_of_day=row.time_of_day,
        recurrence=row.recurrence,
        with_food=row.with_food,
        active=row.active,
    )


def _to_dose(row: DoseRecord) -> Dose:
    return Dose(
        id=row.id,
        medication_id=row.medication_id,
        time_slot_id=row.time_slot_id,
        scheduled_at=row.scheduled_at,
        state=row.state,
        taken_at=row.taken_at,
        notes=row.notes,
    )


class SqlScheduleStore:
    """Schedule store backed by SQLAlchemy.

    Each call runs in its own transaction. Dose creation relies on the
    ``uq_doses_medication_slot_day`` constraint with ``ON CONFLICT DO NOTHING``
    so concurrent materializations converge on one row per key.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _upsert_insert(self, session: Session):
        dialect = session.get_bind().dialect.name
        try:
            return _UPSERT_INSERTS[dialect]
        except KeyError:
            raise NotImplementedError(f"dose upsert is not supported on {dialect}") from None

    def list_active_medications(self) -> List[Medication]:
        return self.list_medications(include_inactive=False)

    def list_medications(self, include_inactive: bool = False) -> List[Medication]:
        stmt = select(MedicationRecord).order_by(MedicationRecord.id)
        if not include_inactive:
            stmt = stmt.where(MedicationRecord.active.is_(True))
        with self._session_factory() as session:
            return [_to_medication(row) for row in session.scalars(stmt)]

    def get_medication(self, medication_id: int) -> Optional[Medication]:
        with self._session_factory() as session:
            row = session.get(MedicationRecord, medication_id)
            return _to_medication(row) if row is not None else None

    def create_medication(
        self,
        name: str,
        dose: str = "",
        description: Optional[str] = None,
        color: str = DEFAULT_COLOR,
        notes: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Medication:
        with self._session_factory.begin() as session:
            row = MedicationRecord(
                name=name,
                dose=dose,
                description=description,
                color=color,
                notes=notes,
                active=True,
            )
            if created_at is not None:
                row.created_at = created_at
            session.add(row)
            session.flush()
            session.refresh(row)
            return _to_medication(row)

    def update_medication(self, medication_id: int, **changes: object) -> Medication:
        unknown = set(changes) - EDITABLE_MEDICATION_FIELDS
        if unknown:
            raise ValueError(f"Cannot update medication fields: {sorted(unknown)}")
        with self._session_factory.begin() as session:
            row = session.get(MedicationRecord, medication_id)
            if row is None:
                raise NotFound("medication", medication_id)
            for key, value in changes.items():
                setattr(row, key, value)
            session.flush()
            session.refresh(row)
            return _to_medication(row)

    def deactivate_medication(self, medication_id: int) -> None:
        with self._session_factory.begin() as session:
            row = session.get(MedicationRecord, medication_id)
            if row is None:
                raise NotFound("medication", medication_id)
            row.active = False
            session.execute(
                update(TimeSlotRecord)
                .where(TimeSlotRecord.medication_id == medication_id, TimeSlotRecord.active.is_(True))
                .values(active=False)
                .execution_options(synchronize_session=False)
            )

    def list_active_time_slots(self, medication_id: Optional[int] = None) -> List[TimeSlot]:
        stmt = select(TimeSlotRecord).where(TimeSlotRecord.active.is_(True)).order_by(TimeSlotRecord.id)
        if medication_id is not None:
            stmt = stmt.where(TimeSlotRecord.medication_id == medication_id)
        with self._session_factory() as session:
            return [_to_time_slot(row) for row in session.scalars(stmt)]

    def get_time_slot(self, slot_id: int) -> Optional[TimeSlot]:
        with self._session_factory() as session:
            row = session.get(TimeSlotRecord, slot_id)
            return _to_time_slot(row) if row is not None else None

    def create_time_slot(self, medication_id: int, time_of_day: str, with_food: bool = False) -> TimeSlot:
        with self._session_factory.begin() as session:
            if session.get(MedicationRecord, medication_id) is None:
                raise NotFound("medication", medication_id)
            row = TimeSlotRecord(
                medication_id=medication_id,
                time_of_day=parse_time_of_day(time_of_day),
                with_food=with_food,
                recurrence=Recurrence.DAILY,
                active=True,
            )
            session.add(row)
            session.flush()
            return _to_time_slot(row)

    def update_time_slot(
        self, slot_id: int, time_of_day: Optional[str] = None, with_food: Optional[bool] = None
    ) -> TimeSlot:
        with self._session_factory.begin() as session:
            row = session.get(TimeSlotRecord, slot_id)
            if row is None:
                raise NotFound("time slot", slot_id)
            if time_of_day is not None:
                row.time_of_day = parse_time_of_day(time_of_day)
            if with_food is not None:
                row.with_food = with_food
            session.flush()
            return _to_time_slot(row)

    def deactivate_time_slot(self, slot_id: int) -> None:
        with self._session_factory.begin() as session:
            row = session.get(TimeSlotRecord, slot_id)
            if row is None:
                raise NotFound("time slot", slot_id)
            row.active = False

    def get_dose(self, medication_id: int, time_slot_id: int, day: date) -> Optional[Dose]:
        stmt = select(DoseRecord).where(
            DoseRecord.medication_id == medication_id,
            DoseRecord.time_slot_id == time_slot_id,
            DoseRecord.scheduled_on == day,
        )
        with self._session_factory() as session:
            row = session.scalars(stmt).one_or_none()
            return _to_dose(row) if row is not None else None

    def get_dose_by_id(self, dose_id: int) -> Optional[Dose]:
        with self._session_factory() as session:
            row = session.get(DoseRecord, dose_id)
            return _to_dose(row) if row is not None else None

    def create_dose(self, medication_id: int, time_slot_id: int, scheduled_at: datetime) -> int:
        with self._session_factory.begin() as session:
            row = DoseRecord(
                medication_id=medication_id,
                time_slot_id=time_slot_id,
                scheduled_on=scheduled_at.date(),
                scheduled_at=scheduled_at,
                state=DoseState.PENDING,
            )
            session.add(row)
            session.flush()
            return row.id

    def get_or_create_dose(
        self, medication_id: int, time_slot_id: int, scheduled_at: datetime
    ) -> Tuple[Dose, bool]:
        day = scheduled_at.date()
        with self._session_factory.begin() as session:
            insert = self._upsert_insert(session)
            result = session.execute(
                insert(DoseRecord.__table__)
                .values(
                    medication_id=medication_id,
                    time_slot_id=time_slot_id,
                    scheduled_on=day,
                    scheduled_at=scheduled_at,
                    state=DoseState.PENDING,
                )
                .on_conflict_do_nothing(index_elements=_DOSE_KEY)
            )
            row = session.scalars(
                select(DoseRecord).where(
                    DoseRecord.medication_id == medication_id,
                    DoseRecord.time_slot_id == time_slot_id,
                    DoseRecord.scheduled_on == day,
                )
            ).one()
            return _to_dose(row), result.rowcount == 1

    def update_dose_state(
        self,
        dose_id: int,
        new_state: DoseState,
        taken_at: Optional[datetime] = None,
        expected_state: Optional[DoseState] = None,
    ) -> bool:
        check_writable_state(new_state, taken_at)
        stmt = update(DoseRecord).where(DoseRecord.id == dose_id)
        if expected_state is not None:
            stmt = stmt.where(DoseRecord.state == expected_state)
        stmt = stmt.values(state=new_state, taken_at=taken_at).execution_options(synchronize_session=False)

        with self._session_factory.begin() as session:
            result = session.execute(stmt)
            if result.rowcount:
                return True
            if session.get(DoseRecord, dose_id) is None:
                raise NotFound("dose", dose_id)
            logger.debug(f"Dose {dose_id} not {expected_state.value}; state left unchanged")
            return False
