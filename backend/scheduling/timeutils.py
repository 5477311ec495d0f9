from __future__ import annotations

from datetime import date, time, timedelta


DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
WEEKDAYS = (1, 2, 3, 4, 5)


def parse_time(value: str | time) -> time:
    """Accept "HH:MM" / "HH:MM:SS" strings or ``datetime.time``."""

    if isinstance(value, time):
        return value.replace(microsecond=0, tzinfo=None)
    raw = str(value).strip()
    parts = raw.split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise ValueError(f"Invalid time {value!r}; expected HH:MM or HH:MM:SS")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    return time(hour, minute, second)


def to_minutes(value: str | time) -> int:
    t = parse_time(value)
    return t.hour * 60 + t.minute


def minutes_to_time(minutes: int) -> time:
    if minutes < 0 or minutes >= 24 * 60:
        raise ValueError(f"minutes out of range: {minutes}")
    return time(minutes // 60, minutes % 60)


def add_minutes(value: str | time, minutes: int) -> time:
    return minutes_to_time(to_minutes(value) + minutes)


def format_time(value: time) -> str:
    return value.strftime("%H:%M")


def overlaps(start_a: int, end_a: int, start_b: int, end_b: int) -> bool:
    # Touching ranges (end == start) do not overlap.
    return start_a < end_b and end_a > start_b


def day_name(day_of_week: int) -> str:
    if 0 <= day_of_week < len(DAY_NAMES):
        return DAY_NAMES[day_of_week]
    return f"day {day_of_week}"


def python_weekday(day_of_week: int) -> int:
    """Map 0=Sunday..6=Saturday onto ``date.weekday()`` (0=Monday)."""

    return (day_of_week - 1) % 7


def date_in_same_week(day: date, day_of_week: int) -> date:
    """Move ``day`` onto ``day_of_week`` within its Sunday-to-Saturday week."""

    current = (day.weekday() + 1) % 7
    return day + timedelta(days=day_of_week - current)
