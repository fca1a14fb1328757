"""Job envelope model, lifecycle states and per-kind payload schemas.

Models:
    - JobKind / JobState / QueueName: string enums stored verbatim in SQLite
    - ALLOWED_TRANSITIONS: the lifecycle state machine
    - *Payload: pydantic schemas validating the payload of each job kind
    - JobEnvelope: the unit of work moved through the queue
    - BatchJob: parent record of a bulk send split into chunks
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

EMAIL_PATTERN = re.compile(r"^[^@\s,;<>]+@[^@\s,;<>]+\.[^@\s,;<>]+$")


class JobKind(str, Enum):
    """Kinds of notification jobs handled by the engine."""

    WELCOME = "welcome"
    VERIFICATION = "verification"
    PASSWORD_RESET = "password_reset"
    TASK_REMINDER = "task_reminder"
    FOCUS_ALERT = "focus_session_alert"
    ACHIEVEMENT = "achievement"
    WEEKLY_DIGEST = "weekly_digest"
    RETRY = "retry"
    BATCH_CHUNK = "batch_chunk"


class JobState(str, Enum):
    """Lifecycle states of a job.

    Attributes:
        QUEUED: Built but not yet scheduled.
        SCHEDULED: Dispatch time computed, waiting to become eligible.
        DISPATCHING: Claimed by exactly one worker, delivery in flight.
        SENT: Delivered (terminal).
        FAILED: Permanently failed (terminal).
        CANCELLED: Cancelled by a caller (terminal).
    """

    QUEUED = "queued"
    SCHEDULED = "scheduled"
    DISPATCHING = "dispatching"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class QueueName(str, Enum):
    PRIMARY = "primary"
    DIGEST = "digest"
    RETRY = "retry"


TERMINAL_STATES = frozenset({JobState.SENT, JobState.FAILED, JobState.CANCELLED})
CANCELLABLE_STATES = frozenset({JobState.QUEUED, JobState.SCHEDULED})

ALLOWED_TRANSITIONS: Dict[JobState, frozenset] = {
    JobState.QUEUED: frozenset({JobState.SCHEDULED, JobState.CANCELLED}),
    JobState.SCHEDULED: frozenset({JobState.SCHEDULED, JobState.DISPATCHING, JobState.CANCELLED}),
    JobState.DISPATCHING: frozenset({JobState.SENT, JobState.FAILED, JobState.SCHEDULED}),
    JobState.SENT: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.CANCELLED: frozenset(),
}

DEFAULT_MAX_ATTEMPTS = 3
RETRY_MAX_ATTEMPTS = 1


def is_valid_email(value: Any) -> bool:
    return isinstance(value, str) and bool(EMAIL_PATTERN.match(value.strip()))


def new_job_id() -> str:
    return uuid.uuid4().hex


# --------------------------------------------------------------------- payloads
class BasePayload(BaseModel):
    """Fields shared by every user-addressed notification."""

    model_config = ConfigDict(extra="allow")

    user_id: Annotated[str, Field(min_length=1, description="Recipient user identifier")]
    recipient_email: Annotated[str, Field(description="Recipient email address")]
    recipient_name: Annotated[str | None, Field(default=None, max_length=255)]

    @field_validator("recipient_email")
    @classmethod
    def recipient_must_be_address(cls, v: str) -> str:
        if not is_valid_email(v):
            raise ValueError("recipient_email is not a valid email address")
        return v.strip()


class WelcomePayload(BasePayload):
    verification_url: Annotated[str | None, Field(default=None)]


class VerificationPayload(BasePayload):
    verification_token: Annotated[str, Field(min_length=1)]
    verification_url: Annotated[str, Field(min_length=1)]


class PasswordResetPayload(BasePayload):
    reset_token: Annotated[str, Field(min_length=1)]
    reset_url: Annotated[str, Field(min_length=1)]
    requested_at: Annotated[datetime | None, Field(default=None)]


class TaskReminderPayload(BasePayload):
    """Reminder about a task; ``task_priority`` and ``reminder_type`` drive urgency."""

    task_id: Annotated[str, Field(min_length=1)]
    task_title: Annotated[str, Field(min_length=1)]
    task_description: Annotated[str | None, Field(default=None)]
    due_date: Annotated[datetime | date, Field(description="Task due date")]
    task_priority: Annotated[
        Literal["low", "medium", "high", "urgent"],
        Field(default="medium", description="Urgency of the task itself"),
    ]
    reminder_type: Annotated[
        Literal["due_soon", "overdue", "daily_digest"],
        Field(default="due_soon"),
    ]
    subject_name: Annotated[str | None, Field(default=None)]


class FocusAlertPayload(BasePayload):
    session_id: Annotated[str, Field(min_length=1)]
    session_type: Literal["completed", "interrupted", "milestone"]
    duration_minutes: Annotated[int, Field(ge=0)]
    focus_score: Annotated[float | None, Field(default=None, ge=0, le=100)]
    task_title: Annotated[str | None, Field(default=None)]
    subject_name: Annotated[str | None, Field(default=None)]
    pomodoro_count: Annotated[int | None, Field(default=None, ge=0)]


class AchievementPayload(BasePayload):
    achievement_type: Literal[
        "goal_completed", "streak_milestone", "focus_milestone", "task_completion_streak"
    ]
    achievement_title: Annotated[str, Field(min_length=1)]
    achievement_description: Annotated[str, Field(default="")]
    achievement_icon: Annotated[str | None, Field(default=None)]
    related_data: Annotated[Dict[str, Any] | None, Field(default=None)]


class WeeklyDigestPayload(BaseModel):
    """Digest generation request; the recipient is resolved by the generator."""

    model_config = ConfigDict(extra="allow")

    user_id: Annotated[str, Field(min_length=1)]
    week_start: date
    week_end: date
    timezone: Annotated[str, Field(default="UTC")]
    stats: Annotated[Dict[str, Any] | None, Field(default=None)]

    @model_validator(mode="after")
    def week_range_is_ordered(self) -> "WeeklyDigestPayload":
        if self.week_end < self.week_start:
            raise ValueError("week_end must not precede week_start")
        return self


class RetryPayload(BaseModel):
    """Re-delivery of a job that already failed terminally."""

    model_config = ConfigDict(extra="forbid")

    original_job_id: Annotated[str, Field(min_length=1)]
    original_kind: JobKind
    attempt_number: Annotated[int, Field(ge=1)]
    original_payload: Dict[str, Any]
    original_priority: Annotated[int | None, Field(default=None, ge=0, le=100)]

    @property
    def user_id(self) -> Optional[str]:
        return self.original_payload.get("user_id")


class BatchRecipient(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    name: Annotated[str | None, Field(default=None)]
    variables: Annotated[Dict[str, Any] | None, Field(default=None)]

    @field_validator("email")
    @classmethod
    def email_must_be_address(cls, v: str) -> str:
        if not is_valid_email(v):
            raise ValueError("not a valid email address")
        return v.strip()


class BatchChunkPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    batch_id: Annotated[str, Field(min_length=1)]
    chunk_index: Annotated[int, Field(ge=0)]
    total_chunks: Annotated[int, Field(ge=1)]
    recipients: Annotated[List[BatchRecipient], Field(min_length=1)]
    subject: Annotated[str | None, Field(default=None)]
    template: Annotated[str | None, Field(default=None)]


PAYLOAD_MODELS: Dict[JobKind, type[BaseModel]] = {
    JobKind.WELCOME: WelcomePayload,
    JobKind.VERIFICATION: VerificationPayload,
    JobKind.PASSWORD_RESET: PasswordResetPayload,
    JobKind.TASK_REMINDER: TaskReminderPayload,
    JobKind.FOCUS_ALERT: FocusAlertPayload,
    JobKind.ACHIEVEMENT: AchievementPayload,
    JobKind.WEEKLY_DIGEST: WeeklyDigestPayload,
    JobKind.RETRY: RetryPayload,
    JobKind.BATCH_CHUNK: BatchChunkPayload,
}


def queue_for_kind(kind: JobKind) -> QueueName:
    """Return the queue a job of ``kind`` is routed to."""
    if kind is JobKind.WEEKLY_DIGEST:
        return QueueName.DIGEST
    if kind is JobKind.RETRY:
        return QueueName.RETRY
    return QueueName.PRIMARY


# --------------------------------------------------------------------- envelope
@dataclass
class JobEnvelope:
    """Normalised unit of work tracked from creation to a terminal state."""

    kind: JobKind
    payload: Dict[str, Any]
    priority: int
    created_at: int
    id: str = field(default_factory=new_job_id)
    respect_quiet_hours: bool = True
    requested_delay_ms: int = 0
    effective_dispatch_at: Optional[int] = None
    attempt: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    state: JobState = JobState.QUEUED
    queue: Optional[QueueName] = None
    last_attempt_at: Optional[int] = None
    terminal_at: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    batch_id: Optional[str] = None

    @property
    def user_id(self) -> Optional[str]:
        if self.kind is JobKind.RETRY:
            original = self.payload.get("original_payload") or {}
            return original.get("user_id")
        return self.payload.get("user_id")

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_record(self) -> Dict[str, Any]:
        """Flatten the envelope into a storage row."""
        return {
            "id": self.id,
            "queue": (self.queue or queue_for_kind(self.kind)).value,
            "kind": self.kind.value,
            "user_id": self.user_id,
            "payload": json.dumps(self.payload, default=str),
            "priority": int(self.priority),
            "respect_quiet_hours": 1 if self.respect_quiet_hours else 0,
            "requested_delay_ms": int(self.requested_delay_ms),
            "effective_dispatch_at": self.effective_dispatch_at,
            "attempt": int(self.attempt),
            "max_attempts": int(self.max_attempts),
            "state": self.state.value,
            "created_at": self.created_at,
            "last_attempt_at": self.last_attempt_at,
            "terminal_at": self.terminal_at,
            "error": self.error,
            "error_code": self.error_code,
            "batch_id": self.batch_id,
        }

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "JobEnvelope":
        payload = row.get("payload")
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError:
                payload = {"raw_payload": payload}
        return cls(
            id=row["id"],
            kind=JobKind(row["kind"]),
            payload=payload or {},
            priority=int(row["priority"]),
            created_at=int(row["created_at"]),
            respect_quiet_hours=bool(row.get("respect_quiet_hours", 1)),
            requested_delay_ms=int(row.get("requested_delay_ms") or 0),
            effective_dispatch_at=row.get("effective_dispatch_at"),
            attempt=int(row.get("attempt") or 0),
            max_attempts=int(row.get("max_attempts") or DEFAULT_MAX_ATTEMPTS),
            state=JobState(row["state"]),
            queue=QueueName(row["queue"]) if row.get("queue") else None,
            last_attempt_at=row.get("last_attempt_at"),
            terminal_at=row.get("terminal_at"),
            error=row.get("error"),
            error_code=row.get("error_code"),
            batch_id=row.get("batch_id"),
        )

    def view(self) -> Dict[str, Any]:
        """Return the caller facing representation (JobView)."""
        data = self.to_record()
        data["payload"] = self.payload
        data["respect_quiet_hours"] = self.respect_quiet_hours
        return data


@dataclass
class BatchJob:
    """Bulk send split into independently dispatched chunks."""

    id: str
    total_recipients: int
    chunks: List[JobEnvelope] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def queued(self) -> int:
        return sum(len(chunk.payload.get("recipients", [])) for chunk in self.chunks)

    @property
    def failed_to_queue(self) -> int:
        return len(self.failures)

    def summary(self) -> Dict[str, Any]:
        return {
            "batch_id": self.id,
            "job_ids": [chunk.id for chunk in self.chunks],
            "chunks": len(self.chunks),
            "total_recipients": self.total_recipients,
            "queued": self.queued,
            "failed_to_queue": self.failed_to_queue,
            "failures": list(self.failures),
        }


class SkippedType:
    """Sentinel returned when the recipient disabled the notification channel."""

    _instance: Optional["SkippedType"] = None

    def __new__(cls) -> "SkippedType":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "SKIPPED"


SKIPPED = SkippedType()
