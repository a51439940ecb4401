from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone


# -----------------------
# Clock primitives
# -----------------------
class Clock:
    def now_utc(self) -> datetime:
        raise NotImplementedError


class RealClock(Clock):
    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock pinned to one instant. ``advance`` moves it forward for simulations."""

    def __init__(self, dt_utc: datetime):
        if dt_utc.tzinfo is None:
            dt_utc = dt_utc.replace(tzinfo=timezone.utc)
        self._dt = dt_utc.astimezone(timezone.utc)

    def now_utc(self) -> datetime:
        return self._dt

    def advance(self, seconds: float) -> datetime:
        self._dt = self._dt + timedelta(seconds=seconds)
        return self._dt


# -----------------------
# Environment helpers
# -----------------------
def getenv_b(name: str, default: bool = False) -> bool:
    return (os.getenv(name, str(int(default))) or "").lower() in ("1", "true", "yes", "y")


def getenv_i(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)) or default)


def getenv_f(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)) or default)


def truncate(s: str, limit: int) -> str:
    s = s or ""
    return s if len(s) <= limit else s[: max(0, limit - 1)] + "…"
