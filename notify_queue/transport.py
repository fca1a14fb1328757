"""Delivery transports invoked by the dispatcher.

A transport exposes ``async deliver(envelope)`` and raises
:class:`~notify_queue.errors.TransportError` when the attempt fails.
"""

from __future__ import annotations

import asyncio
import time
from email.message import EmailMessage
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

import aiosmtplib

from .errors import TransportError
from .logger import get_logger
from .models import JobEnvelope, JobKind

Renderer = Callable[[JobEnvelope, Dict[str, Any]], Tuple[str, str]]

SUBJECTS = {
    JobKind.WELCOME.value: "Welcome aboard",
    JobKind.VERIFICATION.value: "Verify your email address",
    JobKind.PASSWORD_RESET.value: "Reset your password",
    JobKind.TASK_REMINDER.value: "Task reminder",
    JobKind.FOCUS_ALERT.value: "Focus session update",
    JobKind.ACHIEVEMENT.value: "New achievement unlocked",
    JobKind.WEEKLY_DIGEST.value: "Your weekly digest",
    JobKind.BATCH_CHUNK.value: "Notification",
}

PERMANENT_PATTERNS = (
    "user unknown",
    "no such user",
    "mailbox unavailable",
    "5.1.1",
    "5.7.1",
)


class Transport(Protocol):
    async def deliver(self, envelope: JobEnvelope) -> None:
        ...


def classify_smtp_error(exc: Exception) -> tuple[bool, Optional[int]]:
    """Classify an SMTP error as temporary or permanent.

    Returns ``(is_temporary, smtp_code)``. Network errors and 4xx replies
    are temporary, 5xx replies permanent. Other errors are temporary
    unless their message names a rejected mailbox.
    """
    smtp_code = None
    if isinstance(exc, aiosmtplib.SMTPException):
        smtp_code = getattr(exc, "smtp_code", None) or getattr(exc, "code", None)

    if isinstance(exc, aiosmtplib.SMTPResponseException) and smtp_code:
        if 500 <= smtp_code < 600:
            return False, smtp_code
        return True, smtp_code
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)):
        return True, smtp_code
    if smtp_code:
        if 400 <= smtp_code < 500:
            return True, smtp_code
        if 500 <= smtp_code < 600:
            return False, smtp_code

    error_msg = str(exc).lower()
    if any(pattern in error_msg for pattern in PERMANENT_PATTERNS):
        return False, smtp_code
    return True, smtp_code


def default_render(envelope: JobEnvelope, payload: Dict[str, Any]) -> Tuple[str, str]:
    """Produce a plain-text summary of the notification.

    Real templates are rendered outside the engine; this keeps the bundled
    SMTP transport usable on its own.
    """
    kind = payload.get("_kind", envelope.kind.value)
    subject = payload.get("subject") or SUBJECTS.get(kind, "Notification")
    if kind == JobKind.TASK_REMINDER.value and payload.get("task_title"):
        subject = f"{subject}: {payload['task_title']}"
    if kind == JobKind.ACHIEVEMENT.value and payload.get("achievement_title"):
        subject = f"{subject}: {payload['achievement_title']}"
    lines = [f"Hello {payload.get('recipient_name') or payload.get('name') or ''}".rstrip(), ""]
    for key, value in sorted(payload.items()):
        if key.startswith("_") or key in {"user_id", "recipient_email", "recipient_name", "name", "email"}:
            continue
        if key.endswith("token"):
            continue
        lines.append(f"{key.replace('_', ' ')}: {value}")
    return subject, "\n".join(lines)


def _messages_for(envelope: JobEnvelope) -> List[Tuple[str, Dict[str, Any]]]:
    """Return ``(recipient, payload)`` pairs to send for an envelope."""
    payload = envelope.payload
    kind = envelope.kind.value
    if envelope.kind is JobKind.RETRY:
        kind = payload["original_kind"]
        payload = payload["original_payload"]
    if kind == JobKind.BATCH_CHUNK.value:
        shared = {k: v for k, v in payload.items() if k not in ("recipients", "batch_id", "chunk_index", "total_chunks")}
        result = []
        for recipient in payload.get("recipients", []):
            data = dict(shared)
            data.update(recipient.get("variables") or {})
            data["name"] = recipient.get("name")
            data["_kind"] = kind
            result.append((recipient["email"], data))
        return result
    data = dict(payload)
    data["_kind"] = kind
    return [(payload.get("recipient_email"), data)]


class SMTPPool:
    """Reuse SMTP connections per task to reduce connection overhead."""

    def __init__(self, ttl: int = 300):
        self.ttl = ttl
        self.pool: Dict[int, Tuple[aiosmtplib.SMTP, float]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self, host: str, port: int, user: Optional[str], password: Optional[str], use_tls: bool) -> aiosmtplib.SMTP:
        smtp = aiosmtplib.SMTP(hostname=host, port=port, start_tls=False, use_tls=use_tls, timeout=10.0)

        async def _do_connect():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=15.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Return ``True`` when the connection responds correctly to NOOP."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False

    async def get_connection(self, host: str, port: int, user: Optional[str], password: Optional[str], *, use_tls: bool) -> aiosmtplib.SMTP:
        """Return a pooled connection bound to the calling worker task."""
        task_id = id(asyncio.current_task())
        async with self.lock:
            entry = self.pool.pop(task_id, None)

        if entry:
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[task_id] = (smtp, time.time())
                return smtp
            await self._quit(smtp)

        smtp = await self._connect(host, port, user, password, use_tls)
        async with self.lock:
            self.pool[task_id] = (smtp, time.time())
        return smtp

    async def discard(self) -> None:
        """Drop the connection of the calling task after a failure."""
        async with self.lock:
            entry = self.pool.pop(id(asyncio.current_task()), None)
        if entry:
            await self._quit(entry[0])

    @staticmethod
    async def _quit(smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError):
            pass

    async def close_all(self) -> None:
        async with self.lock:
            items = list(self.pool.values())
            self.pool.clear()
        for smtp, _ in items:
            await self._quit(smtp)


class SMTPTransport:
    """Deliver envelopes as plain-text emails through an SMTP relay."""

    def __init__(
        self,
        *,
        host: str,
        port: int = 25,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        sender: str = "noreply@localhost",
        render: Optional[Renderer] = None,
        recipient_lookup: Optional[Callable[[str], Awaitable[Optional[str]]]] = None,
        pool: Optional[SMTPPool] = None,
        ttl: int = 300,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = (self.port == 465) if use_tls is None else bool(use_tls)
        self.sender = sender
        self.render = render or default_render
        self.recipient_lookup = recipient_lookup
        self.pool = pool or SMTPPool(ttl=ttl)
        self.logger = get_logger("NotifyQueue.smtp")

    async def _resolve(self, envelope: JobEnvelope, recipient: Optional[str]) -> str:
        if recipient:
            return recipient
        if self.recipient_lookup and envelope.user_id:
            found = await self.recipient_lookup(envelope.user_id)
            if found:
                return found
        raise TransportError(f"No recipient address for job {envelope.id}", permanent=True)

    def build_message(self, envelope: JobEnvelope, recipient: str, payload: Dict[str, Any]) -> EmailMessage:
        subject, body = self.render(envelope, payload)
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = recipient
        msg["Subject"] = subject
        msg["X-Notify-Job-ID"] = envelope.id
        msg.set_content(body)
        return msg

    async def deliver(self, envelope: JobEnvelope) -> None:
        for recipient, payload in _messages_for(envelope):
            address = await self._resolve(envelope, recipient)
            msg = self.build_message(envelope, address, payload)
            try:
                smtp = await self.pool.get_connection(
                    self.host, self.port, self.user, self.password, use_tls=self.use_tls
                )
                await smtp.send_message(msg, sender=self.sender)
            except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
                await self.pool.discard()
                is_temporary, smtp_code = classify_smtp_error(exc)
                raise TransportError(str(exc), permanent=not is_temporary, status_code=smtp_code) from exc

    async def close(self) -> None:
        await self.pool.close_all()


class RecordingTransport:
    """In-memory transport that records deliveries.

    ``failures`` is a list of exceptions (or ``None`` for success) consumed
    one per delivery attempt, which makes failure sequences easy to script.
    """

    def __init__(self, failures: Optional[List[Optional[BaseException]]] = None, delay: float = 0.0):
        self.delivered: List[JobEnvelope] = []
        self.attempts: List[str] = []
        self.failures = list(failures or [])
        self.delay = delay

    async def deliver(self, envelope: JobEnvelope) -> None:
        self.attempts.append(envelope.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        self.delivered.append(envelope)
