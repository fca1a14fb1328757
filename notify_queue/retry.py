"""Decide between rescheduling and permanently failing a delivery attempt."""

from __future__ import annotations

import asyncio
import dataclasses
from dataclasses import dataclass
from typing import Optional, Tuple

from .errors import ExhaustedRetriesError, TransportError
from .logger import get_logger
from .models import JobEnvelope, JobKind, JobState
from .scheduler import Scheduler
from .tracker import LifecycleTracker

DEFAULT_BASE_DELAY_MS = 2000
DEFAULT_BATCH_BASE_DELAY_MS = 10000

RETRY = "retry"
FAIL = "fail"


@dataclass
class RetryDecision:
    action: str
    error: str
    error_code: str
    delay_ms: int = 0
    dispatch_at: Optional[int] = None

    @property
    def will_retry(self) -> bool:
        return self.action == RETRY


def classify_error(exc: BaseException) -> Tuple[bool, str]:
    """Return ``(permanent, error_code)`` for a delivery failure.

    Only transports can declare a failure permanent; timeouts and unexpected
    exceptions are treated as temporary.
    """
    if isinstance(exc, TransportError):
        return exc.permanent, ("permanent_failure" if exc.permanent else exc.code)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return False, "timeout"
    return False, "unexpected_error"


class RetryCoordinator:
    def __init__(
        self,
        tracker: LifecycleTracker,
        scheduler: Scheduler,
        *,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        batch_base_delay_ms: int = DEFAULT_BATCH_BASE_DELAY_MS,
    ):
        self.tracker = tracker
        self.scheduler = scheduler
        self.base_delay_ms = base_delay_ms
        self.batch_base_delay_ms = batch_base_delay_ms
        self.logger = get_logger("NotifyQueue.retry")

    def calculate_backoff(self, attempt: int, kind: Optional[JobKind] = None) -> int:
        """Exponential backoff: ``base * 2 ** (attempt - 1)`` milliseconds."""
        base = self.batch_base_delay_ms if kind is JobKind.BATCH_CHUNK else self.base_delay_ms
        return base * 2 ** (max(int(attempt), 1) - 1)

    async def handle_failure(self, job: JobEnvelope, error: BaseException) -> RetryDecision:
        """Route a failed attempt of a ``dispatching`` job.

        While attempts remain and the error is temporary the job goes back
        to ``scheduled`` after the backoff (quiet hours still apply);
        otherwise it becomes ``failed``.
        """
        permanent, error_code = classify_error(error)
        message = str(error) or error.__class__.__name__

        if not permanent and job.attempt < job.max_attempts:
            backoff = self.calculate_backoff(job.attempt, job.kind)
            delayed = dataclasses.replace(job, requested_delay_ms=backoff)
            dispatch_at = await self.scheduler.compute_dispatch_at(delayed)
            moved = await self.tracker.transition(
                job,
                JobState.SCHEDULED,
                {
                    "requested_delay_ms": backoff,
                    "effective_dispatch_at": dispatch_at,
                    "error": message,
                    "error_code": error_code,
                },
                {"retry": True, "attempt": job.attempt, "backoff_ms": backoff, "error": message},
            )
            if not moved:
                self.logger.warning("Job %s changed state before it could be rescheduled", job.id)
            self.logger.warning(
                "Attempt %d/%d of job %s failed (%s), retrying in %d ms",
                job.attempt,
                job.max_attempts,
                job.id,
                message,
                backoff,
            )
            return RetryDecision(RETRY, message, error_code, backoff, dispatch_at)

        if not permanent:
            exhausted = ExhaustedRetriesError(job.id, job.max_attempts, message)
            message = str(exhausted)
            error_code = exhausted.code
        moved = await self.tracker.transition(
            job,
            JobState.FAILED,
            {"error": message, "error_code": error_code},
            {"attempt": job.attempt, "error": message, "error_code": error_code},
        )
        if not moved:
            self.logger.warning("Job %s changed state before it could be failed", job.id)
        self.logger.error("Job %s failed permanently: %s", job.id, message)
        return RetryDecision(FAIL, message, error_code)
