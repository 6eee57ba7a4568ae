from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, tzinfo
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from shared.contracts.enums import DoseState, Recurrence
from shared.contracts.times import parse_time_of_day


logger = logging.getLogger(__name__)

DEFAULT_COLOR = "#4CAF50"
COLOR_PALETTE = (
    "#FF5722",
    "#2196F3",
    "#4CAF50",
    "#9C27B0",
    "#FF9800",
    "#00BCD4",
    "#E91E63",
    "#795548",
    "#607D8B",
    "#009688",
)
TERMINAL_STATES = frozenset({DoseState.TAKEN, DoseState.SKIPPED})
ALLOWED_TRANSITIONS: Dict[DoseState, frozenset] = {
    DoseState.PENDING: frozenset({DoseState.TAKEN, DoseState.SKIPPED}),
}
EDITABLE_MEDICATION_FIELDS = frozenset({"name", "dose", "description", "color", "notes"})


class NotFound(LookupError):
    """An operation targeted an id the store does not know."""

    def __init__(self, kind: str, ident: object) -> None:
        super().__init__(f"{kind} {ident} not found")
        self.kind = kind
        self.ident = ident


class DataIntegrityFault(Exception):
    """A record references a parent that does not exist."""


def minutes_of_day(time_of_day: str) -> int:
    hours, minutes = time_of_day.split(":")
    return int(hours) * 60 + int(minutes)


def local_wall_clock(instant: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """Return ``instant`` as a naive local datetime.

    Naive values are assumed to already be local. Aware values are converted
    to ``tz``, or to the system timezone when ``tz`` is None.
    """
    if instant.tzinfo is None:
        return instant
    return instant.astimezone(tz).replace(tzinfo=None)


@dataclass(frozen=True)
class Medication:
    id: int
    name: str
    dose: str = ""
    description: Optional[str] = None
    color: str = DEFAULT_COLOR
    notes: Optional[str] = None
    active: bool = True
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class TimeSlot:
    id: int
    medication_id: int
    time_of_day: str
    recurrence: Recurrence = Recurrence.DAILY
    with_food: bool = False
    active: bool = True

    @property
    def minutes_of_day(self) -> int:
        return minutes_of_day(self.time_of_day)

    def clock_time(self) -> time:
        hours, minutes = self.time_of_day.split(":")
        return time(int(hours), int(minutes))


@dataclass(frozen=True)
class Dose:
    id: int
    medication_id: int
    time_slot_id: int
    scheduled_at: datetime
    state: DoseState = DoseState.PENDING
    taken_at: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def day(self) -> date:
        return self.scheduled_at.date()


@dataclass(frozen=True)
class TodayDose:
    dose: Dose
    medication_name: str
    medication_dose: str
    medication_color: str
    time_of_day: str
    with_food: bool

    @property
    def id(self) -> int:
        return self.dose.id

    @property
    def state(self) -> DoseState:
        return self.dose.state

    @property
    def minutes_of_day(self) -> int:
        return minutes_of_day(self.time_of_day)


@dataclass(frozen=True)
class DailyStats:
    total: int
    taken: int
    pending: int
    skipped: int

    def __post_init__(self) -> None:
        if self.total != self.taken + self.pending + self.skipped:
            raise ValueError(
                f"stats do not add up: total={self.total} taken={self.taken} "
                f"pending={self.pending} skipped={self.skipped}"
            )


@dataclass(frozen=True)
class MedicationSummary:
    medication: Medication
    time_slots: Tuple[TimeSlot, ...]
    schedule_text: str


class ScheduleStore(Protocol):
    def list_active_medications(self) -> List[Medication]: ...

    def list_medications(self, include_inactive: bool = False) -> List[Medication]: ...

    def get_medication(self, medication_id: int) -> Optional[Medication]: ...

    def create_medication(
        self,
        name: str,
        dose: str = "",
        description: Optional[str] = None,
        color: str = DEFAULT_COLOR,
        notes: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Medication: ...

    def update_medication(self, medication_id: int, **changes: object) -> Medication: ...

    def deactivate_medication(self, medication_id: int) -> None: ...

    def list_active_time_slots(self, medication_id: Optional[int] = None) -> List[TimeSlot]: ...

    def get_time_slot(self, slot_id: int) -> Optional[TimeSlot]: ...

    def create_time_slot(self, medication_id: int, time_of_day: str, with_food: bool = False) -> TimeSlot: ...

    def update_time_slot(
        self, slot_id: int, time_of_day: Optional[str] = None, with_food: Optional[bool] = None
    ) -> TimeSlot: ...

    def deactivate_time_slot(self, slot_id: int) -> None: ...

    def get_dose(self, medication_id: int, time_slot_id: int, day: date) -> Optional[Dose]: ...

    def get_dose_by_id(self, dose_id: int) -> Optional[Dose]: ...

    def create_dose(self, medication_id: int, time_slot_id: int, scheduled_at: datetime) -> int: ...

    def get_or_create_dose(
        self, medication_id: int, time_slot_id: int, scheduled_at: datetime
    ) -> Tuple[Dose, bool]: ...

    def update_dose_state(
        self,
        dose_id: int,
        new_state: DoseState,
        taken_at: Optional[datetime] = None,
        expected_state: Optional[DoseState] = None,
    ) -> bool: ...


def check_writable_state(new_state: DoseState, taken_at: Optional[datetime]) -> None:
    if new_state == DoseState.POSTPONED:
        raise ValueError("postponed doses are not supported")
    if (new_state == DoseState.TAKEN) != (taken_at is not None):
        raise ValueError("taken_at must be set exactly when the dose is taken")


@dataclass
class InMemoryScheduleStore:
    medications: Dict[int, Medication] = field(default_factory=dict)
    time_slots: Dict[int, TimeSlot] = field(default_factory=dict)
    doses: Dict[int, Dose] = field(default_factory=dict)
    _dose_index: Dict[Tuple[int, int, date], int] = field(default_factory=dict)
    _next_id: Dict[str, int] = field(
        default_factory=lambda: {"medications": 1, "time_slots": 1, "doses": 1}
    )
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def _allocate(self, kind: str) -> int:
        ident = self._next_id[kind]
        self._next_id[kind] = ident + 1
        return ident

    def list_active_medications(self) -> List[Medication]:
        return self.list_medications(include_inactive=False)

    def list_medications(self, include_inactive: bool = False) -> List[Medication]:
        with self._lock:
            return [m for m in self.medications.values() if include_inactive or m.active]

    def get_medication(self, medication_id: int) -> Optional[Medication]:
        with self._lock:
            return self.medications.get(medication_id)

    def create_medication(
        self,
        name: str,
        dose: str = "",
        description: Optional[str] = None,
        color: str = DEFAULT_COLOR,
        notes: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Medication:
        with self._lock:
            medication = Medication(
                id=self._allocate("medications"),
                name=name,
                dose=dose,
                description=description,
                color=color,
                notes=notes,
                created_at=created_at or datetime.now(),
            )
            self.medications[medication.id] = medication
            return medication

    def update_medication(self, medication_id: int, **changes: object) -> Medication:
        unknown = set(changes) - EDITABLE_MEDICATION_FIELDS
        if unknown:
            raise ValueError(f"Cannot update medication fields: {sorted(unknown)}")
        with self._lock:
            current = self.medications.get(medication_id)
            if current is None:
                raise NotFound("medication", medication_id)
            updated = replace(current, **changes)
            self.medications[medication_id] = updated
            return updated

    def deactivate_medication(self, medication_id: int) -> None:
        with self._lock:
            current = self.medications.get(medication_id)
            if current is None:
                raise NotFound("medication", medication_id)
            self.medications[medication_id] = replace(current, active=False)
            for slot_id, slot in self.time_slots.items():
                if slot.medication_id == medication_id and slot.active:
                    self.time_slots[slot_id] = replace(slot, active=False)

    def list_active_time_slots(self, medication_id: Optional[int] = None) -> List[TimeSlot]:
        with self._lock:
            return [
                s
                for s in self.time_slots.values()
                if s.active and (medication_id is None or s.medication_id == medication_id)
            ]

    def get_time_slot(self, slot_id: int) -> Optional[TimeSlot]:
        with self._lock:
            return self.time_slots.get(slot_id)

    def create_time_slot(self, medication_id: int, time_of_day: str, with_food: bool = False) -> TimeSlot:
        with self._lock:
            if medication_id not in self.medications:
                raise NotFound("medication", medication_id)
            slot = TimeSlot(
                id=self._allocate("time_slots"),
                medication_id=medication_id,
                time_of_day=parse_time_of_day(time_of_day),
                with_food=with_food,
            )
            self.time_slots[slot.id] = slot
            return slot

    def update_time_slot(
        self, slot_id: int, time_of_day: Optional[str] = None, with_food: Optional[bool] = None
    ) -> TimeSlot:
        changes: Dict[str, object] = {}
        if time_of_day is not None:
            changes["time_of_day"] = parse_time_of_day(time_of_day)
        if with_food is not None:
            changes["with_food"] = with_food
        with self._lock:
            current = self.time_slots.get(slot_id)
            if current is None:
                raise NotFound("time slot", slot_id)
            updated = replace(current, **changes)
            self.time_slots[slot_id] = updated
            return updated

    def deactivate_time_slot(self, slot_id: int) -> None:
        with self._lock:
            current = self.time_slots.get(slot_id)
            if current is None:
                raise NotFound("time slot", slot_id)
            self.time_slots[slot_id] = replace(current, active=False)

    def get_dose(self, medication_id: int, time_slot_id: int, day: date) -> Optional[Dose]:
        with self._lock:
            dose_id = self._dose_index.get((medication_id, time_slot_id, day))
            return self.doses.get(dose_id) if dose_id is not None else None

    def get_dose_by_id(self, dose_id: int) -> Optional[Dose]:
        with self._lock:
            return self.doses.get(dose_id)

    def create_dose(self, medication_id: int, time_slot_id: int, scheduled_at: datetime) -> int:
        with self._lock:
            key = (medication_id, time_slot_id, scheduled_at.date())
            if key in self._dose_index:
                raise ValueError(f"dose already exists for {key}")
            dose = Dose(
                id=self._allocate("doses"),
                medication_id=medication_id,
                time_slot_id=time_slot_id,
                scheduled_at=scheduled_at,
            )
            self.doses[dose.id] = dose
            self._dose_index[key] = dose.id
            return dose.id

    def get_or_create_dose(
        self, medication_id: int, time_slot_id: int, scheduled_at: datetime
    ) -> Tuple[Dose, bool]:
        with self._lock:
            existing = self.get_dose(medication_id, time_slot_id, scheduled_at.date())
            if existing is not None:
                return existing, False
            return self.doses[self.create_dose(medication_id, time_slot_id, scheduled_at)], True

    def update_dose_state(
        self,
        dose_id: int,
        new_state: DoseState,
        taken_at: Optional[datetime] = None,
        expected_state: Optional[DoseState] = None,
    ) -> bool:
        check_writable_state(new_state, taken_at)
        with self._lock:
            current = self.doses.get(dose_id)
            if current is None:
                raise NotFound("dose", dose_id)
            if expected_state is not None and current.state != expected_state:
                return False
            self.doses[dose_id] = replace(current, state=new_state, taken_at=taken_at)
            return True


class DoseMaterializer:
    """Derive the concrete doses owed on a calendar day from recurring slots."""

    def __init__(self, store: ScheduleStore, tz: Optional[tzinfo] = None) -> None:
        self.store = store
        self.tz = tz

    def materialize(self, reference: datetime) -> List[TodayDose]:
        day = local_wall_clock(reference, self.tz).date()
        medications = {m.id: m for m in self.store.list_active_medications()}

        today: List[TodayDose] = []
        created = 0
        for slot in self.store.list_active_time_slots():
            try:
                medication = self._resolve_medication(slot, medications)
            except DataIntegrityFault as exc:
                logger.warning(f"Skipping time slot during materialization: {exc}")
                continue
            if medication is None:
                continue

            scheduled_at = datetime.combine(day, slot.clock_time())
            dose, was_created = self.store.get_or_create_dose(medication.id, slot.id, scheduled_at)
            created += was_created
            today.append(
                TodayDose(
                    dose=dose,
                    medication_name=medication.name,
                    medication_dose=medication.dose,
                    medication_color=medication.color,
                    # A slot edited after materialization leaves today's dose at its original time.
                    time_of_day=dose.scheduled_at.strftime("%H:%M"),
                    with_food=slot.with_food,
                )
            )

        if created:
            logger.info(f"Materialized {created} new doses for {day.isoformat()}")
        today.sort(key=lambda d: d.time_of_day)
        return today

    def _resolve_medication(self, slot: TimeSlot, active: Dict[int, Medication]) -> Optional[Medication]:
        medication = active.get(slot.medication_id)
        if medication is not None:
            return medication
        if self.store.get_medication(slot.medication_id) is None:
            raise DataIntegrityFault(
                f"time slot {slot.id} references missing medication {slot.medication_id}"
            )
        # Parent is soft-deleted; the slot should have been cascaded.
        return None


class DoseStateMachine:
    """Apply pending -> taken / pending -> skipped transitions.

    Repeat transitions on a terminal dose are no-ops so a double-tapped
    confirm action never overwrites the first outcome.
    """

    def __init__(self, store: ScheduleStore) -> None:
        self.store = store

    def mark_taken(self, dose_id: int, at: datetime) -> Dose:
        return self._transition(dose_id, DoseState.TAKEN, taken_at=at)

    def mark_skipped(self, dose_id: int) -> Dose:
        return self._transition(dose_id, DoseState.SKIPPED)

    def _transition(self, dose_id: int, target: DoseState, taken_at: Optional[datetime] = None) -> Dose:
        current = self.store.get_dose_by_id(dose_id)
        if current is None:
            raise NotFound("dose", dose_id)
        if not can_transition(current.state, target):
            if current.state in TERMINAL_STATES:
                logger.debug(f"Dose {dose_id} already {current.state.value}; ignoring {target.value}")
            else:
                logger.warning(f"Dose {dose_id} is {current.state.value}, which has no transitions")
            return current

        # Conditional on the state just read; a racing confirm turns this into a no-op.
        applied = self.store.update_dose_state(
            dose_id, target, taken_at=taken_at, expected_state=current.state
        )
        dose = self.store.get_dose_by_id(dose_id)
        if applied:
            logger.info(f"Dose {dose_id} marked {target.value}")
        else:
            logger.debug(f"Dose {dose_id} moved to {dose.state.value} concurrently; ignoring {target.value}")
        return dose


def can_transition(current: DoseState, target: DoseState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def select_next_due(doses: Sequence[TodayDose], now_minutes: int) -> Optional[TodayDose]:
    pending = sorted(
        (d for d in doses if d.state == DoseState.PENDING),
        key=lambda d: d.time_of_day,
    )
    if not pending:
        return None
    for dose in pending:
        if dose.minutes_of_day >= now_minutes:
            return dose
    # Every pending slot has passed; highlight the most overdue one.
    return pending[0]


def aggregate_stats(doses: Sequence[TodayDose]) -> DailyStats:
    states = [d.state for d in doses]
    return DailyStats(
        total=len(states),
        taken=states.count(DoseState.TAKEN),
        pending=states.count(DoseState.PENDING),
        skipped=states.count(DoseState.SKIPPED),
    )


def schedule_text(slots: Sequence[TimeSlot]) -> str:
    times = sorted(s.time_of_day for s in slots)
    if not times:
        return "No schedule"
    if len(times) == 1:
        return times[0]
    if len(times) == 2:
        return f"{times[0]} and {times[1]}"
    return f"{len(times)} doses a day"


def pick_color(existing: int) -> str:
    return COLOR_PALETTE[existing % len(COLOR_PALETTE)]


class DoseTracker:
    def __init__(self, store: ScheduleStore, tz: Optional[tzinfo] = None):
        self.store = store
        self.tz = tz
        self.materializer = DoseMaterializer(store=store, tz=tz)
        self.state_machine = DoseStateMachine(store=store)

    def _now_minutes(self, now: datetime) -> int:
        local = local_wall_clock(now, self.tz)
        return local.hour * 60 + local.minute

    def get_today_doses(self, now: datetime) -> List[TodayDose]:
        return self.materializer.materialize(now)

    def get_next_due(self, now: datetime) -> Optional[TodayDose]:
        return select_next_due(self.get_today_doses(now), self._now_minutes(now))

    def get_today_stats(self, now: datetime) -> DailyStats:
        return aggregate_stats(self.get_today_doses(now))

    def is_overdue(self, dose: TodayDose, now: datetime) -> bool:
        return dose.state == DoseState.PENDING and dose.minutes_of_day < self._now_minutes(now)

    def get_dose(self, dose_id: int) -> Dose:
        dose = self.store.get_dose_by_id(dose_id)
        if dose is None:
            raise NotFound("dose", dose_id)
        return dose

    def confirm_taken(self, dose_id: int, now: datetime) -> Dose:
        return self.state_machine.mark_taken(dose_id, at=local_wall_clock(now, self.tz))

    def confirm_skipped(self, dose_id: int) -> Dose:
        return self.state_machine.mark_skipped(dose_id)

    def add_medication(
        self,
        name: str,
        dose: str = "",
        description: Optional[str] = None,
        color: Optional[str] = None,
        notes: Optional[str] = None,
        times: Sequence[str] = (),
        with_food: bool = False,
        now: Optional[datetime] = None,
    ) -> MedicationSummary:
        if not name or not name.strip():
            raise ValueError("Medication name cannot be empty")
        normalized_times = list(dict.fromkeys(parse_time_of_day(t) for t in times))

        if color is None:
            color = pick_color(len(self.store.list_medications(include_inactive=True)))
        medication = self.store.create_medication(
            name=name.strip(),
            dose=dose,
            description=description,
            color=color,
            notes=notes,
            created_at=local_wall_clock(now, self.tz) if now is not None else None,
        )
        for time_of_day in normalized_times:
            self.store.create_time_slot(medication.id, time_of_day, with_food=with_food)
        logger.info(f"Created medication {medication.id} ({medication.name}) with {len(normalized_times)} slots")
        return self._summarize(medication)

    def update_medication(self, medication_id: int, **changes: object) -> MedicationSummary:
        for key in ("dose", "color"):
            if key in changes and changes[key] is None:
                raise ValueError(f"Medication {key} cannot be null")
        if "name" in changes:
            name = changes["name"]
            if not isinstance(name, str) or not name.strip():
                raise ValueError("Medication name cannot be empty")
            changes["name"] = name.strip()
        medication = self.store.update_medication(medication_id, **changes)
        return self._summarize(medication)

    def remove_medication(self, medication_id: int) -> None:
        self.store.deactivate_medication(medication_id)
        logger.info(f"Deactivated medication {medication_id} and its time slots")

    def add_time_slot(self, medication_id: int, time_of_day: str, with_food: bool = False) -> TimeSlot:
        medication = self.store.get_medication(medication_id)
        if medication is None or not medication.active:
            raise NotFound("medication", medication_id)
        return self.store.create_time_slot(medication_id, parse_time_of_day(time_of_day), with_food=with_food)

    def update_time_slot(
        self, slot_id: int, time_of_day: Optional[str] = None, with_food: Optional[bool] = None
    ) -> TimeSlot:
        """Change a slot's time or food flag; doses already materialized keep their time."""
        if time_of_day is not None:
            time_of_day = parse_time_of_day(time_of_day)
        slot = self.store.update_time_slot(slot_id, time_of_day=time_of_day, with_food=with_food)
        logger.info(f"Updated time slot {slot_id} to {slot.time_of_day} (with_food={slot.with_food})")
        return slot

    def remove_time_slot(self, slot_id: int) -> None:
        self.store.deactivate_time_slot(slot_id)

    def list_medications(self, search: Optional[str] = None, include_inactive: bool = False) -> List[MedicationSummary]:
        medications = self.store.list_medications(include_inactive=include_inactive)
        if search:
            needle = search.strip().lower()
            medications = [
                m
                for m in medications
                if needle in m.name.lower() or needle in (m.description or "").lower()
            ]
        return [self._summarize(m) for m in medications]

    def _summarize(self, medication: Medication) -> MedicationSummary:
        slots = sorted(self.store.list_active_time_slots(medication.id), key=lambda s: s.time_of_day)
        return MedicationSummary(
            medication=medication,
            time_slots=tuple(slots),
            schedule_text=schedule_text(slots),
        )


DEMO_MEDICATIONS = (
    {
        "name": "Ibuprofeno",
        "description": "Para el dolor y inflamación",
        "dose": "600mg - 1 comprimido",
        "color": "#FF5722",
        "slots": (("08:00", True), ("14:00", True), ("22:00", False)),
    },
    {
        "name": "Omeprazol",
        "description": "Protector de estómago",
        "dose": "20mg - 1 cápsula",
        "color": "#2196F3",
        "slots": (("08:00", True),),
    },
    {
        "name": "Vitamina D",
        "description": "Suplemento vitamínico",
        "dose": "1000 UI - 1 comprimido",
        "color": "#4CAF50",
        "slots": (("12:00", True),),
    },
)


def seed_demo_data(store: ScheduleStore, now: Optional[datetime] = None) -> int:
    """Insert the demo medication set into an empty store; return how many were added."""
    if store.list_medications(include_inactive=True):
        logger.info("Store already holds medications; skipping demo data")
        return 0
    for entry in DEMO_MEDICATIONS:
        medication = store.create_medication(
            name=entry["name"],
            dose=entry["dose"],
            description=entry["description"],
            color=entry["color"],
            created_at=now,
        )
        for time_of_day, with_food in entry["slots"]:
            store.create_time_slot(medication.id, time_of_day, with_food=with_food)
    logger.info(f"Inserted {len(DEMO_MEDICATIONS)} demo medications")
    return len(DEMO_MEDICATIONS)
