"""Compute when a job may be dispatched and route it to its queue."""

from __future__ import annotations

import time
from datetime import datetime, time as dt_time, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import StateConflictError
from .logger import get_logger
from .models import JobEnvelope, JobState, queue_for_kind
from .quiet_hours import NeverQuiet, QuietHoursOracle
from .tracker import LifecycleTracker


def _now_ms() -> int:
    return int(time.time() * 1000)


def next_weekly_occurrence(now_ms: int, day: int, time_of_day: str, tz_name: str = "UTC") -> int:
    """Return the next ``day`` (1 = Monday) at ``time_of_day`` (``HH:MM``) in ``tz_name``.

    The result is strictly after ``now_ms``, in epoch milliseconds.
    """
    if not 1 <= int(day) <= 7:
        raise ValueError(f"Invalid weekday: {day!r}")
    hour, minute = (int(part) for part in str(time_of_day).split(":", 1))
    try:
        zone = ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        zone = timezone.utc
    local = datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc).astimezone(zone)
    days_ahead = (int(day) - 1 - local.weekday()) % 7
    target_day = local.date() + timedelta(days=days_ahead)
    candidate = datetime.combine(target_day, dt_time(hour, minute), tzinfo=zone)
    if candidate.timestamp() * 1000 <= now_ms:
        target_day += timedelta(days=7)
        candidate = datetime.combine(target_day, dt_time(hour, minute), tzinfo=zone)
    return int(candidate.timestamp() * 1000)


class Scheduler:
    """Turn an envelope's requested delay into an absolute dispatch time.

    The dispatch time is ``now + max(requested delay, time until the end of
    the recipient's quiet window)``. Quiet hours are only consulted for
    envelopes that respect them and that the oracle agrees to defer.
    """

    def __init__(
        self,
        tracker: LifecycleTracker,
        oracle: Optional[QuietHoursOracle] = None,
        *,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.tracker = tracker
        self.oracle = oracle or NeverQuiet()
        self.clock = clock or _now_ms
        self.logger = get_logger("NotifyQueue.scheduler")

    async def compute_dispatch_at(self, envelope: JobEnvelope, now: Optional[int] = None) -> int:
        now = self.clock() if now is None else now
        delay = max(int(envelope.requested_delay_ms or 0), 0)
        if envelope.respect_quiet_hours:
            try:
                if await self.oracle.should_defer(envelope.user_id, envelope.kind, envelope.priority):
                    allowed = await self.oracle.next_allowed_time(envelope.user_id, now + delay)
                    delay = max(delay, int(allowed) - now)
            except Exception:
                # a broken quiet hours lookup must not block delivery
                self.logger.exception("Quiet hours lookup failed for job %s", envelope.id)
        return now + delay

    async def schedule(
        self,
        envelope: JobEnvelope,
        now: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Move a persisted envelope to ``scheduled`` and return its dispatch time.

        Accepted from ``queued`` (first scheduling) and ``scheduled``
        (recompute). Any other state raises :class:`StateConflictError`.
        """
        if envelope.state not in (JobState.QUEUED, JobState.SCHEDULED):
            raise StateConflictError(envelope.id, envelope.state.value, "schedule")
        dispatch_at = await self.compute_dispatch_at(envelope, now)
        queue = queue_for_kind(envelope.kind)
        changes = {"effective_dispatch_at": dispatch_at, "queue": queue.value}
        info = {"effective_dispatch_at": dispatch_at, "queue": queue.value}
        info.update(metadata or {})
        if not await self.tracker.transition(envelope, JobState.SCHEDULED, changes, info):
            current = await self.tracker.get_job(envelope.id)
            raise StateConflictError(envelope.id, current.state.value, "schedule")
        return dispatch_at
