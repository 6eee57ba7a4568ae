import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Request

from app.db import Base, SqlScheduleStore, create_session_factory
from dosetrack import (
    Dose,
    DoseTracker,
    InMemoryScheduleStore,
    MedicationSummary,
    NotFound,
    TimeSlot,
    TodayDose,
    seed_demo_data,
)
from services.tracker.config import Settings
from shared.contracts.models import (
    DailyStatsOut,
    DoseOut,
    MedicationOut,
    MedicationUpdateRequest,
    NewMedicationRequest,
    NewTimeSlotRequest,
    TimeSlotOut,
    TimeSlotUpdateRequest,
    TodayDoseOut,
)

logger = logging.getLogger(__name__)


def _slot_to_dto(slot: TimeSlot) -> TimeSlotOut:
    return TimeSlotOut(
        id=slot.id,
        medication_id=slot.medication_id,
        time_of_day=slot.time_of_day,
        recurrence=slot.recurrence,
        with_food=slot.with_food,
        active=slot.active,
    )


def _medication_to_dto(summary: MedicationSummary) -> MedicationOut:
    med = summary.medication
    return MedicationOut(
        id=med.id,
        name=med.name,
        dose=med.dose,
        description=med.description,
        color=med.color,
        notes=med.notes,
        active=med.active,
        created_at=med.created_at,
        time_slots=[_slot_to_dto(slot) for slot in summary.time_slots],
        schedule_text=summary.schedule_text,
    )


def _dose_to_dto(dose: Dose) -> DoseOut:
    return DoseOut(
        id=dose.id,
        medication_id=dose.medication_id,
        time_slot_id=dose.time_slot_id,
        scheduled_at=dose.scheduled_at,
        taken_at=dose.taken_at,
        state=dose.state,
        notes=dose.notes,
    )


def _today_to_dto(today: TodayDose, overdue: bool) -> TodayDoseOut:
    return TodayDoseOut(
        **_dose_to_dto(today.dose).model_dump(),
        medication_name=today.medication_name,
        medication_dose=today.medication_dose,
        medication_color=today.medication_color,
        time_of_day=today.time_of_day,
        with_food=today.with_food,
        overdue=overdue,
    )


def get_tracker(request: Request) -> DoseTracker:
    return request.app.state.tracker


def get_now() -> datetime:
    return datetime.now(timezone.utc)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
        engine = None
        if settings.database_url:
            engine, session_factory = create_session_factory(settings.database_url)
            Base.metadata.create_all(engine)
            store = SqlScheduleStore(session_factory)
            logger.info("Using SQL schedule store")
        else:
            store = InMemoryScheduleStore()
            logger.info("Using in-memory schedule store")

        if settings.seed_demo:
            seed_demo_data(store)

        app.state.tracker = DoseTracker(store=store, tz=settings.zone())
        try:
            yield
        finally:
            if engine is not None:
                engine.dispose()
                logger.info("Schedule store connection closed")

    app = FastAPI(title="tracker", lifespan=lifespan)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": "tracker"}

    @app.get("/today", response_model=list[TodayDoseOut])
    def today_doses(
        tracker: DoseTracker = Depends(get_tracker),
        now: datetime = Depends(get_now),
    ) -> list[TodayDoseOut]:
        doses = tracker.get_today_doses(now)
        return [_today_to_dto(d, tracker.is_overdue(d, now)) for d in doses]

    @app.get("/today/next", response_model=TodayDoseOut | None)
    def next_due(
        tracker: DoseTracker = Depends(get_tracker),
        now: datetime = Depends(get_now),
    ) -> TodayDoseOut | None:
        dose = tracker.get_next_due(now)
        if dose is None:
            return None
        return _today_to_dto(dose, tracker.is_overdue(dose, now))

    @app.get("/today/stats", response_model=DailyStatsOut)
    def today_stats(
        tracker: DoseTracker = Depends(get_tracker),
        now: datetime = Depends(get_now),
    ) -> DailyStatsOut:
        stats = tracker.get_today_stats(now)
        return DailyStatsOut(total=stats.total, taken=stats.taken, pending=stats.pending, skipped=stats.skipped)

    @app.get("/doses/{dose_id}", response_model=DoseOut)
    def get_dose(dose_id: int, tracker: DoseTracker = Depends(get_tracker)) -> DoseOut:
        try:
            return _dose_to_dto(tracker.get_dose(dose_id))
        except NotFound as exc:
            raise HTTPException(status_code=404, detail="dose not found") from exc

    @app.post("/doses/{dose_id}/taken", response_model=DoseOut)
    def confirm_taken(
        dose_id: int,
        tracker: DoseTracker = Depends(get_tracker),
        now: datetime = Depends(get_now),
    ) -> DoseOut:
        try:
            return _dose_to_dto(tracker.confirm_taken(dose_id, now))
        except NotFound as exc:
            raise HTTPException(status_code=404, detail="dose not found") from exc

    @app.post("/doses/{dose_id}/skipped", response_model=DoseOut)
    def confirm_skipped(dose_id: int, tracker: DoseTracker = Depends(get_tracker)) -> DoseOut:
        try:
            return _dose_to_dto(tracker.confirm_skipped(dose_id))
        except NotFound as exc:
            raise HTTPException(status_code=404, detail="dose not found") from exc

    @app.get("/medications", response_model=list[MedicationOut])
    def list_medications(
        search: str | None = None,
        include_inactive: bool = False,
        tracker: DoseTracker = Depends(get_tracker),
    ) -> list[MedicationOut]:
        summaries = tracker.list_medications(search=search, include_inactive=include_inactive)
        return [_medication_to_dto(s) for s in summaries]

    @app.post("/medications", response_model=MedicationOut, status_code=201)
    def create_medication(
        payload: NewMedicationRequest,
        tracker: DoseTracker = Depends(get_tracker),
        now: datetime = Depends(get_now),
    ) -> MedicationOut:
        try:
            summary = tracker.add_medication(
                name=payload.name,
                dose=payload.dose,
                description=payload.description,
                color=payload.color,
                notes=payload.notes,
                times=payload.times,
                with_food=payload.with_food,
                now=now,
            )
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return _medication_to_dto(summary)

    @app.patch("/medications/{medication_id}", response_model=MedicationOut)
    def update_medication(
        medication_id: int,
        payload: MedicationUpdateRequest,
        tracker: DoseTracker = Depends(get_tracker),
    ) -> MedicationOut:
        changes = payload.model_dump(exclude_unset=True)
        try:
            summary = tracker.update_medication(medication_id, **changes)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail="medication not found") from exc
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return _medication_to_dto(summary)

    @app.delete("/medications/{medication_id}")
    def delete_medication(medication_id: int, tracker: DoseTracker = Depends(get_tracker)) -> dict[str, str]:
        try:
            tracker.remove_medication(medication_id)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail="medication not found") from exc
        return {"status": "ok"}

    @app.post("/medications/{medication_id}/time-slots", response_model=TimeSlotOut, status_code=201)
    def add_time_slot(
        medication_id: int,
        payload: NewTimeSlotRequest,
        tracker: DoseTracker = Depends(get_tracker),
    ) -> TimeSlotOut:
        try:
            slot = tracker.add_time_slot(medication_id, payload.time_of_day, with_food=payload.with_food)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail="medication not found") from exc
        return _slot_to_dto(slot)

    @app.patch("/time-slots/{slot_id}", response_model=TimeSlotOut)
    def update_time_slot(
        slot_id: int,
        payload: TimeSlotUpdateRequest,
        tracker: DoseTracker = Depends(get_tracker),
    ) -> TimeSlotOut:
        try:
            slot = tracker.update_time_slot(slot_id, time_of_day=payload.time_of_day, with_food=payload.with_food)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail="time slot not found") from exc
        return _slot_to_dto(slot)

    @app.delete("/time-slots/{slot_id}")
    def delete_time_slot(slot_id: int, tracker: DoseTracker = Depends(get_tracker)) -> dict[str, str]:
        try:
            tracker.remove_time_slot(slot_id)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail="time slot not found") from exc
        return {"status": "ok"}

    return app


app = create_app()
