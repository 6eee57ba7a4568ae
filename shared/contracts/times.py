import re

TIME_OF_DAY_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")


def parse_time_of_day(value: str) -> str:
    """Normalize a 24h ``H:MM``/``HH:MM`` string to zero-padded ``HH:MM``."""
    match = TIME_OF_DAY_PATTERN.match(value.strip()) if value else None
    if not match:
        raise ValueError(f"Invalid time of day: {value!r}. Use HH:MM format.")
    return f"{int(match.group(1)):02d}:{match.group(2)}"
