"""Quiet hours lookup consulted by the scheduler.

The scheduler only relies on the :class:`QuietHoursOracle` protocol; the
in-memory :class:`QuietHoursWindows` implementation keeps one window per user
and evaluates it in the user's own timezone.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .logger import get_logger
from .models import JobKind

CRITICAL_KINDS = frozenset({JobKind.VERIFICATION, JobKind.PASSWORD_RESET})
BYPASS_PRIORITY = 80


class QuietHoursOracle(Protocol):
    async def should_defer(self, user_id: Optional[str], kind: JobKind, priority: int) -> bool:
        ...

    async def next_allowed_time(self, user_id: Optional[str], requested_time: int) -> int:
        ...


def bypasses_quiet_hours(kind: JobKind, priority: int) -> bool:
    """High priority and critical notifications are never deferred."""
    return priority >= BYPASS_PRIORITY or kind in CRITICAL_KINDS


def _parse_hhmm(value: str) -> tuple[int, int]:
    hour, minute = (int(part) for part in value.split(":", 1))
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValueError(f"Invalid time of day: {value!r}")
    return hour, minute


@dataclass
class QuietWindow:
    """Daily quiet window such as ``22:00``-``08:00`` in an IANA timezone."""

    start: str = "22:00"
    end: str = "08:00"
    timezone: str = "UTC"
    enabled: bool = True

    def __post_init__(self) -> None:
        _parse_hhmm(self.start)
        _parse_hhmm(self.end)

    def _zone(self):
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            return timezone.utc

    def window_end(self, at_ms: int) -> Optional[int]:
        """Return the end of the quiet window covering ``at_ms`` or ``None``."""
        if not self.enabled:
            return None
        zone = self._zone()
        local = datetime.fromtimestamp(at_ms / 1000, tz=timezone.utc).astimezone(zone)
        start_h, start_m = _parse_hhmm(self.start)
        end_h, end_m = _parse_hhmm(self.end)
        current = local.hour * 60 + local.minute
        start = start_h * 60 + start_m
        end = end_h * 60 + end_m

        if start <= end:
            # same-day window, e.g. 01:00-06:00
            if not (start <= current < end):
                return None
            day = local.date()
        else:
            # overnight window, e.g. 22:00-08:00
            if not (current >= start or current < end):
                return None
            day = local.date() + timedelta(days=1) if current >= start else local.date()

        boundary = datetime(day.year, day.month, day.day, end_h, end_m, tzinfo=zone)
        return int(boundary.timestamp() * 1000)


class QuietHoursWindows:
    """In-memory oracle fed with per-user quiet windows."""

    def __init__(self, windows: Optional[Dict[str, QuietWindow]] = None):
        self.windows: Dict[str, QuietWindow] = dict(windows or {})
        self.logger = get_logger("NotifyQueue.quiet_hours")

    def set_window(self, user_id: str, window: Optional[QuietWindow]) -> None:
        if window is None:
            self.windows.pop(user_id, None)
        else:
            self.windows[user_id] = window

    async def should_defer(self, user_id: Optional[str], kind: JobKind, priority: int) -> bool:
        if bypasses_quiet_hours(kind, priority):
            return False
        window = self.windows.get(user_id) if user_id else None
        return bool(window and window.enabled)

    async def next_allowed_time(self, user_id: Optional[str], requested_time: int) -> int:
        window = self.windows.get(user_id) if user_id else None
        if window is None:
            return requested_time
        end = window.window_end(requested_time)
        if end is None:
            return requested_time
        self.logger.debug("User %s in quiet hours until %s", user_id, end)
        return max(end, requested_time)


class NeverQuiet:
    """Oracle used when no quiet hours are configured."""

    async def should_defer(self, user_id: Optional[str], kind: JobKind, priority: int) -> bool:
        return False

    async def next_allowed_time(self, user_id: Optional[str], requested_time: int) -> int:
        return requested_time
