"""Deterministic clock used to control store and gate timing in tests."""

from __future__ import annotations

from datetime import datetime, timedelta

APPROVAL_WINDOW_SECONDS = 3600


class Clock:
    def __init__(self, start: datetime) -> None:
        self._current = start

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: float) -> datetime:
        self._current += timedelta(seconds=seconds)
        return self._current
