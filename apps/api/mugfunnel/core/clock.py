from __future__ import annotations

import math
import threading
from datetime import datetime, timedelta, timezone
from typing import Protocol


def day_key_for(instant: datetime) -> str:
    """UTC calendar date (YYYY-MM-DD) used to partition daily counters."""
    return as_utc(instant).date().isoformat()


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_utc_midnight(instant: datetime) -> datetime:
    current = as_utc(instant)
    return datetime(current.year, current.month, current.day, tzinfo=timezone.utc) + timedelta(days=1)


def hours_until_utc_midnight(instant: datetime) -> int:
    remaining = next_utc_midnight(instant) - as_utc(instant)
    return math.ceil(remaining.total_seconds() / 3600)


class Clock(Protocol):
    def now(self) -> datetime: ...

    def day_key(self) -> str: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def day_key(self) -> str:
        return day_key_for(self.now())


class ManualClock:
    """Clock that only moves when told to. Used by tests and replay tooling."""

    def __init__(self, start: datetime) -> None:
        self._lock = threading.Lock()
        self._now = as_utc(start)

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def day_key(self) -> str:
        return day_key_for(self.now())

    def advance(self, **delta: float) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(**delta)
            return self._now

    def set(self, instant: datetime) -> None:
        with self._lock:
            self._now = as_utc(instant)
