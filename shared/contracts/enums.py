from enum import Enum


class DoseState(str, Enum):
    PENDING = "pending"
    TAKEN = "taken"
    SKIPPED = "skipped"
    # Reserved; no transition enters or leaves it.
    POSTPONED = "postponed"


class Recurrence(str, Enum):
    DAILY = "daily"
