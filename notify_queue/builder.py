"""Turn raw enqueue requests into validated job envelopes."""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional, Union

from pydantic import ValidationError

from .errors import EnvelopeValidationError
from .logger import get_logger
from .models import (
    DEFAULT_MAX_ATTEMPTS,
    PAYLOAD_MODELS,
    RETRY_MAX_ATTEMPTS,
    SKIPPED,
    JobEnvelope,
    JobKind,
    SkippedType,
    queue_for_kind,
)
from .preferences import AllowAll, PreferenceStore

BASE_PRIORITY: Dict[JobKind, int] = {
    JobKind.VERIFICATION: 90,
    JobKind.PASSWORD_RESET: 90,
    JobKind.WELCOME: 70,
    JobKind.TASK_REMINDER: 50,
    JobKind.FOCUS_ALERT: 40,
    JobKind.ACHIEVEMENT: 30,
    JobKind.WEEKLY_DIGEST: 20,
    JobKind.BATCH_CHUNK: 10,
    JobKind.RETRY: 50,
}

# Kinds that never wait for quiet hours.
NO_QUIET_HOURS = frozenset({JobKind.VERIFICATION, JobKind.PASSWORD_RESET, JobKind.BATCH_CHUNK})


def _now_ms() -> int:
    return int(time.time() * 1000)


def priority_for(kind: JobKind, payload: Dict[str, Any]) -> int:
    """Return the policy priority of a job.

    Task reminders are escalated by urgency: overdue 80, urgent 70, high 60.
    Retries keep the priority of the job they re-deliver.
    """
    if kind is JobKind.TASK_REMINDER:
        if payload.get("reminder_type") == "overdue":
            return 80
        if payload.get("task_priority") == "urgent":
            return 70
        if payload.get("task_priority") == "high":
            return 60
        return 50
    if kind is JobKind.RETRY:
        original = payload.get("original_priority")
        return int(original) if original is not None else BASE_PRIORITY[JobKind.RETRY]
    return BASE_PRIORITY[kind]


def _int_option(options: Dict[str, Any], name: str) -> Optional[int]:
    value = options.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise EnvelopeValidationError(f"Option '{name}' must be an integer")
    return value


def _bool_option(options: Dict[str, Any], name: str, default: bool) -> bool:
    value = options.get(name)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise EnvelopeValidationError(f"Option '{name}' must be a boolean")
    return value


def _validation_details(exc: ValidationError) -> list:
    return [
        {"loc": ".".join(str(part) for part in err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


class EnvelopeBuilder:
    """Validate payloads, apply the priority policy and consult preferences."""

    def __init__(
        self,
        preferences: Optional[PreferenceStore] = None,
        *,
        clock: Optional[Callable[[], int]] = None,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.preferences = preferences or AllowAll()
        self.clock = clock or _now_ms
        self.default_max_attempts = default_max_attempts
        self.logger = get_logger("NotifyQueue.builder")

    async def build(
        self,
        kind: Union[JobKind, str],
        payload: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None,
    ) -> Union[JobEnvelope, SkippedType]:
        """Build a ``queued`` envelope or return :data:`SKIPPED`.

        Raises :class:`EnvelopeValidationError` for unknown kinds, malformed
        payloads and invalid options. Nothing is persisted here.
        """
        options = dict(options or {})
        try:
            kind = JobKind(kind)
        except ValueError:
            raise EnvelopeValidationError(f"Unknown job kind '{kind}'") from None
        if not isinstance(payload, dict):
            raise EnvelopeValidationError("Payload must be an object")

        try:
            model = PAYLOAD_MODELS[kind].model_validate(payload)
        except ValidationError as exc:
            details = _validation_details(exc)
            summary = "; ".join(f"{d['loc']}: {d['msg']}" for d in details)
            raise EnvelopeValidationError(f"Invalid {kind.value} payload: {summary}", details) from None
        data = model.model_dump(mode="json", exclude_none=True)

        priority = _int_option(options, "priority")
        if priority is None:
            priority = priority_for(kind, data)
        if not 0 <= priority <= 100:
            raise EnvelopeValidationError("Priority must be between 0 and 100")

        delay = _int_option(options, "delay_ms") or 0

        if kind is JobKind.RETRY:
            max_attempts = RETRY_MAX_ATTEMPTS
        else:
            max_attempts = _int_option(options, "max_attempts")
            if max_attempts is None:
                max_attempts = self.default_max_attempts
            if max_attempts < 1:
                raise EnvelopeValidationError("max_attempts must be at least 1")

        respect_quiet_hours = _bool_option(options, "respect_quiet_hours", True)
        if kind in NO_QUIET_HOURS:
            respect_quiet_hours = False

        envelope = JobEnvelope(
            kind=kind,
            payload=data,
            priority=priority,
            created_at=self.clock(),
            respect_quiet_hours=respect_quiet_hours,
            requested_delay_ms=max(delay, 0),
            max_attempts=max_attempts,
            queue=queue_for_kind(kind),
            batch_id=options.get("batch_id") or data.get("batch_id"),
        )

        user_id = envelope.user_id
        if user_id:
            channel = JobKind(data["original_kind"]) if kind is JobKind.RETRY else kind
            if not await self.preferences.is_channel_enabled(user_id, channel):
                self.logger.info("Skipping %s for user %s: channel disabled", kind.value, user_id)
                return SKIPPED
        return envelope

    async def build_retry(self, failed: JobEnvelope) -> Union[JobEnvelope, SkippedType]:
        """Build the retry-kind envelope re-delivering a failed job."""
        if failed.kind is JobKind.RETRY:
            original_kind = failed.payload["original_kind"]
            original_payload = failed.payload["original_payload"]
            attempt_number = int(failed.payload.get("attempt_number", 1)) + 1
        else:
            original_kind = failed.kind.value
            original_payload = failed.payload
            attempt_number = failed.attempt + 1
        payload = {
            "original_job_id": failed.id,
            "original_kind": original_kind,
            "attempt_number": attempt_number,
            "original_payload": original_payload,
            "original_priority": failed.priority,
        }
        return await self.build(
            JobKind.RETRY,
            payload,
            {"respect_quiet_hours": failed.respect_quiet_hours, "batch_id": failed.batch_id},
        )
