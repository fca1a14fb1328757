"""Lifecycle tracker: the single writer of job state changes."""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional

from .errors import NotFoundError, StateConflictError
from .logger import get_logger
from .models import ALLOWED_TRANSITIONS, JobEnvelope, JobState, QueueName, queue_for_kind
from .persistence import JobStore

STATS_KEYS = ("waiting", "active", "sent", "failed", "delayed", "cancelled")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _coerce_state(value) -> Optional[JobState]:
    if value is None or isinstance(value, JobState):
        return value
    return JobState(value)


class LifecycleTracker:
    """Validate, persist and log every job state transition."""

    def __init__(
        self,
        store: JobStore,
        *,
        metrics=None,
        clock: Optional[Callable[[], int]] = None,
        log_delivery_activity: bool = False,
    ):
        self.store = store
        self.metrics = metrics
        self.clock = clock or _now_ms
        self.log_delivery_activity = log_delivery_activity
        self.logger = get_logger("NotifyQueue.tracker")

    def _log(self, msg: str, *args: Any) -> None:
        if self.log_delivery_activity:
            self.logger.info(msg, *args)
        else:
            self.logger.debug(msg, *args)

    @staticmethod
    def check_transition(job_id: str, from_state: Optional[JobState], to_state: JobState) -> None:
        """Raise :class:`StateConflictError` for moves outside the state machine."""
        if from_state is None:
            if to_state is not JobState.QUEUED:
                raise StateConflictError(job_id, "new", f"move to {to_state.value}")
            return
        if to_state not in ALLOWED_TRANSITIONS[from_state]:
            raise StateConflictError(job_id, from_state.value, f"move to {to_state.value}")

    async def record_transition(
        self,
        job_id: str,
        from_state,
        to_state,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        queue: Optional[str] = None,
    ) -> None:
        """Append a validated transition to the history of ``job_id``."""
        from_state = _coerce_state(from_state)
        to_state = _coerce_state(to_state)
        self.check_transition(job_id, from_state, to_state)
        await self.store.insert_transition(
            job_id,
            from_state.value if from_state else None,
            to_state.value,
            self.clock(),
            metadata,
        )
        self._log(
            "Job %s: %s -> %s %s",
            job_id,
            from_state.value if from_state else "-",
            to_state.value,
            metadata or "",
        )
        if self.metrics and queue:
            self._update_metrics(queue, to_state, metadata or {})

    def _update_metrics(self, queue: str, to_state: JobState, metadata: Dict[str, Any]) -> None:
        if to_state is JobState.SENT:
            self.metrics.inc_sent(queue)
        elif to_state is JobState.FAILED:
            self.metrics.inc_failed(queue, metadata.get("error_code"))
        elif to_state is JobState.CANCELLED:
            self.metrics.inc_cancelled(queue)
        elif to_state is JobState.SCHEDULED and metadata.get("retry"):
            self.metrics.inc_retried(queue)

    async def transition(
        self,
        job: JobEnvelope,
        to_state: JobState,
        changes: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Compare-and-swap ``job`` from its current state to ``to_state``.

        ``changes`` are extra columns written in the same update. Returns
        ``False`` (and leaves ``job`` untouched) when storage no longer holds
        the job in the state the caller saw.
        """
        from_state = job.state
        self.check_transition(job.id, from_state, to_state)
        updates = dict(changes or {})
        if to_state in (JobState.SENT, JobState.FAILED, JobState.CANCELLED):
            updates.setdefault("terminal_at", self.clock())
        updates["state"] = to_state.value
        updated = await self.store.update_job(job.id, from_state.value, updates)
        if not updated:
            return False
        for key, value in updates.items():
            if key == "state":
                job.state = to_state
            elif key == "queue":
                job.queue = QueueName(value)
            else:
                setattr(job, key, value)
        queue = (job.queue or queue_for_kind(job.kind)).value
        await self.record_transition(job.id, from_state, to_state, metadata, queue=queue)
        return True

    async def get_job(self, job_id: str) -> JobEnvelope:
        row = await self.store.get_job(job_id)
        if row is None:
            raise NotFoundError("Job", job_id)
        return JobEnvelope.from_record(row)

    async def history(self, job_id: str) -> List[Dict[str, Any]]:
        return await self.store.list_transitions(job_id)

    async def get_stats(self, queue) -> Dict[str, int]:
        """Return admin counts for ``queue``; zeroed when storage fails."""
        queue_name = queue.value if isinstance(queue, QueueName) else str(queue)
        try:
            counts = await self.store.queue_stats(queue_name, self.clock())
        except Exception:
            self.logger.exception("Failed to compute stats for queue %s", queue_name)
            return dict.fromkeys(STATS_KEYS, 0)
        return {key: counts.get(key, 0) for key in STATS_KEYS}

    async def apply_retention(self, retention_seconds: int, *, reported_only: bool = False) -> int:
        """Delete terminal jobs older than ``retention_seconds``."""
        if retention_seconds <= 0:
            return 0
        threshold = self.clock() - retention_seconds * 1000
        removed = await self.store.remove_terminal_before(threshold, reported_only=reported_only)
        if removed:
            self.logger.info("Retention removed %d terminal jobs", removed)
        return removed
