import os
from dataclasses import dataclass
from datetime import tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    # Empty URL keeps everything in process memory.
    database_url: str = ""
    timezone: str = ""
    seed_demo: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DOSETRACK_DATABASE_URL", ""),
            timezone=os.getenv("DOSETRACK_TIMEZONE", ""),
            seed_demo=os.getenv("DOSETRACK_SEED_DEMO", "").strip().lower() in _TRUTHY,
            log_level=os.getenv("DOSETRACK_LOG_LEVEL", "INFO").upper(),
        )

    def zone(self) -> tzinfo | None:
        if not self.timezone:
            return None
        try:
            return ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Unknown DOSETRACK_TIMEZONE: {self.timezone}") from exc
