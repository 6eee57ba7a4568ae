from .models import (
    Base,
    DoseRecord,
    MedicationRecord,
    TimeSlotRecord,
)
from .store import SqlScheduleStore, create_session_factory

__all__ = [
    "Base",
    "DoseRecord",
    "MedicationRecord",
    "SqlScheduleStore",
    "TimeSlotRecord",
    "create_session_factory",
]
