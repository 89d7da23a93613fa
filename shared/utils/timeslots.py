"""
shared/utils/timeslots.py
"HH:mm" / "YYYY-MM-DD" parsing and slot arithmetic shared by the booking core
and the reminder scheduler.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from shared.errors import ValidationError

TIME_PATTERN = re.compile(r"^([01][0-9]|2[0-3]):[0-5][0-9]$")
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# date.weekday() order
WEEKDAYS = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")


@dataclass(frozen=True, order=True)
class TimeRange:
    """Half-open [start, end) interval in minutes since midnight."""
    start: int
    end: int

    @property
    def start_time(self) -> str:
        return minutes_to_time(self.start)

    @property
    def end_time(self) -> str:
        return minutes_to_time(self.end)

    def overlaps(self, other: "TimeRange") -> bool:
        return self.start < other.end and other.start < self.end

    def label(self) -> str:
        return f"{self.start_time}-{self.end_time}"

    @classmethod
    def from_strings(cls, start_time: str, end_time: str) -> "TimeRange":
        return cls(time_to_minutes(start_time), time_to_minutes(end_time))


def validate_time(value: str, field: str = "time") -> str:
    if not isinstance(value, str) or not TIME_PATTERN.match(value):
        raise ValidationError(f"{field} must be in HH:mm format (e.g., 09:00)")
    return value


def validate_time_range(start_time: str, end_time: str) -> None:
    validate_time(start_time, "start_time")
    validate_time(end_time, "end_time")
    # Zero-padded HH:mm compares correctly as a string
    if start_time >= end_time:
        raise ValidationError("start_time must be before end_time")


def parse_date(value: str) -> date:
    if not isinstance(value, str) or not DATE_PATTERN.match(value):
        raise ValidationError("date must be in YYYY-MM-DD format")
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid calendar date: {value}")


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {name}")


def time_to_minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def minutes_to_time(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def day_of_week(value: date) -> str:
    return WEEKDAYS[value.weekday()]


def local_start_utc(day: str, start_time: str, tz_name: str) -> datetime:
    """UTC instant at which `day start_time` occurs in the given zone."""
    local = datetime.combine(
        parse_date(day),
        time.fromisoformat(validate_time(start_time, "start_time")),
        tzinfo=resolve_timezone(tz_name),
    )
    return local.astimezone(timezone.utc)


def local_today(now: datetime, tz_name: str) -> date:
    return now.astimezone(resolve_timezone(tz_name)).date()
