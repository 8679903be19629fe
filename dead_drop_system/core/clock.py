#!/usr/bin/env python3
"""
Clocks for the dead drop engine

Everything time-dependent takes a zero-argument callable returning an
aware UTC datetime. Production passes utc_now, tests pass a ManualClock
and move time forward explicitly instead of sleeping.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string (trailing Z allowed) into an aware UTC datetime"""
    if value is None or value == "":
        return None
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat()


class ManualClock:
    """
    Settable clock for tests.

    Usage:
        clock = ManualClock(datetime(2025, 1, 1, tzinfo=timezone.utc))
        clock.advance(minutes=59)
        scheduler = DeadDropScheduler(..., clock=clock)
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start) if start else utc_now()
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = ensure_utc(value)

    def advance(self, **kwargs) -> datetime:
        """Move forward by timedelta(**kwargs) and return the new time"""
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now
