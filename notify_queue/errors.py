"""Exceptions raised by the notification queue engine.

Every exception carries a machine readable ``code`` so that the command
router and the HTTP layer can translate failures without string matching.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class NotifyQueueError(RuntimeError):
    """Base class for every error surfaced by the queue engine."""

    code = "notify_queue_error"

    def __init__(self, message: str):
        super().__init__(message)

    def as_dict(self) -> Dict[str, Any]:
        return {"ok": False, "error": str(self), "error_code": self.code}


class EnvelopeValidationError(NotifyQueueError):
    """Raised when a request cannot be turned into a valid job envelope."""

    code = "validation_error"

    def __init__(self, message: str, details: Optional[list] = None):
        super().__init__(message)
        self.details = details or []

    def as_dict(self) -> Dict[str, Any]:
        data = super().as_dict()
        if self.details:
            data["details"] = self.details
        return data


class TransportError(NotifyQueueError):
    """Raised by transports when a delivery attempt did not succeed.

    ``permanent`` marks failures that no amount of retrying can fix
    (for example a 5xx SMTP rejection).
    """

    code = "transport_error"

    def __init__(self, message: str, *, permanent: bool = False, status_code: Optional[int] = None):
        super().__init__(message)
        self.permanent = permanent
        self.status_code = status_code


class ExhaustedRetriesError(NotifyQueueError):
    """Terminal failure after the job used all of its delivery attempts."""

    code = "exhausted_retries"

    def __init__(self, job_id: str, attempts: int, last_error: str):
        super().__init__(f"Max attempts ({attempts}) exceeded for job {job_id}: {last_error}")
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error


class NotFoundError(NotifyQueueError):
    """Raised for operations on an unknown job or batch id."""

    code = "not_found"

    def __init__(self, what: str, identifier: str):
        super().__init__(f"{what} '{identifier}' not found")
        self.identifier = identifier


class StateConflictError(NotifyQueueError):
    """Raised when an operation is not allowed in the job's current state."""

    code = "state_conflict"

    def __init__(self, job_id: str, state: str, action: str):
        super().__init__(f"Cannot {action} job {job_id} in state '{state}'")
        self.job_id = job_id
        self.state = state
        self.action = action
