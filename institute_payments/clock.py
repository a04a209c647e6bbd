"""
Clock Module

Injectable time source. Status derivation and sweeps take "now" from a clock
instead of reading the wall clock directly.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from .errors import ValidationError


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock(ABC):
    """Source of the current time"""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware UTC time"""
        pass


class SystemClock(Clock):
    """Wall-clock time"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Manually controlled clock for tests and replays"""

    def __init__(self, current: Optional[datetime] = None):
        self._current = ensure_utc(current or datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._current

    def set(self, current: datetime) -> None:
        self._current = ensure_utc(current)

    def advance(self, **kwargs) -> datetime:
        """Move the clock forward by a timedelta built from kwargs"""
        self._current = self._current + timedelta(**kwargs)
        return self._current


def parse_datetime(value, field_name: str = "date") -> datetime:
    """
    Coerce a datetime, date or ISO-8601 string to an aware UTC datetime.

    Raises:
        ValidationError: value is missing or not parseable
    """
    if value is None or value == "":
        raise ValidationError(f"{field_name} is required")
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            raise ValidationError(f"{field_name} is not a valid ISO-8601 date: {value!r}")
    raise ValidationError(f"{field_name} must be a date, got {type(value).__name__}")
