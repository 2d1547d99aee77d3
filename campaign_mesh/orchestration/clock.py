from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Virtual clock advanced explicitly; used for simulations and deterministic tests."""

    def __init__(self, start: datetime | None = None) -> None:
        current = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        self._current = current

    def now(self) -> datetime:
        return self._current

    def advance(self, *, seconds: float = 0.0, minutes: float = 0.0) -> datetime:
        self._current += timedelta(seconds=seconds, minutes=minutes)
        return self._current

    def set(self, moment: datetime) -> None:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        if moment < self._current:
            raise ValueError("ManualClock cannot move backwards")
        self._current = moment
