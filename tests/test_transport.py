from typing import Any, List

import aiosmtplib
import pytest

from notify_queue.errors import TransportError
from notify_queue.models import JobEnvelope, JobKind
from notify_queue.transport import RecordingTransport, SMTPTransport, classify_smtp_error, default_render


class DummySMTP:
    def __init__(self):
        self.sent: List[Any] = []
        self.raise_error: Exception | None = None

    async def send_message(self, message, sender=None, **_kwargs):
        if self.raise_error:
            exc, self.raise_error = self.raise_error, None
            raise exc
        self.sent.append(message)


class DummyPool:
    def __init__(self):
        self.smtp = DummySMTP()
        self.requests: List[Any] = []
        self.discarded = 0
        self.closed = False

    async def get_connection(self, host, port, user, password, *, use_tls):
        self.requests.append((host, port, user, password, use_tls))
        return self.smtp

    async def discard(self):
        self.discarded += 1

    async def close_all(self):
        self.closed = True


def envelope(kind, payload, **kwargs) -> JobEnvelope:
    return JobEnvelope(kind=kind, payload=payload, priority=50, created_at=0, **kwargs)


def make_transport(**kwargs):
    pool = DummyPool()
    transport = SMTPTransport(host="smtp.example.com", port=587, sender="noreply@app.test", pool=pool, **kwargs)
    return transport, pool


@pytest.mark.parametrize(
    "exc, expected",
    [
        (aiosmtplib.SMTPResponseException(550, "mailbox unavailable"), (False, 550)),
        (aiosmtplib.SMTPResponseException(421, "service not available"), (True, 421)),
        (ConnectionRefusedError("refused"), (True, None)),
        (TimeoutError(), (True, None)),
        (RuntimeError("550 5.1.1 user unknown"), (False, None)),
        (RuntimeError("something odd"), (True, None)),
    ],
)
def test_classify_smtp_error(exc, expected):
    assert classify_smtp_error(exc) == expected


@pytest.mark.asyncio
async def test_deliver_single_message():
    transport, pool = make_transport()
    job = envelope(JobKind.TASK_REMINDER, {"user_id": "u1", "recipient_email": "ana@example.com",
                                           "recipient_name": "Ana", "task_title": "Essay"})
    await transport.deliver(job)

    assert len(pool.smtp.sent) == 1
    message = pool.smtp.sent[0]
    assert message["To"] == "ana@example.com"
    assert message["From"] == "noreply@app.test"
    assert message["Subject"] == "Task reminder: Essay"
    assert message["X-Notify-Job-ID"] == job.id
    assert pool.requests == [("smtp.example.com", 587, None, None, False)]


@pytest.mark.asyncio
async def test_batch_chunk_sends_one_message_per_recipient():
    transport, pool = make_transport()
    job = envelope(
        JobKind.BATCH_CHUNK,
        {"batch_id": "b1", "chunk_index": 0, "total_chunks": 1, "subject": "Term starts",
         "recipients": [{"email": "a@example.com", "name": "A"}, {"email": "b@example.com"}]},
    )
    await transport.deliver(job)

    assert [m["To"] for m in pool.smtp.sent] == ["a@example.com", "b@example.com"]
    assert all(m["Subject"] == "Term starts" for m in pool.smtp.sent)


@pytest.mark.asyncio
async def test_retry_job_delivers_original_payload():
    transport, pool = make_transport()
    job = envelope(
        JobKind.RETRY,
        {"original_job_id": "x", "original_kind": "welcome", "attempt_number": 4,
         "original_payload": {"user_id": "u1", "recipient_email": "ana@example.com"}},
    )
    await transport.deliver(job)
    assert pool.smtp.sent[0]["Subject"] == "Welcome aboard"


@pytest.mark.asyncio
async def test_smtp_rejection_is_permanent_transport_error():
    transport, pool = make_transport()
    pool.smtp.raise_error = aiosmtplib.SMTPResponseException(550, "no such user")
    job = envelope(JobKind.WELCOME, {"user_id": "u1", "recipient_email": "ghost@example.com"})

    with pytest.raises(TransportError) as exc_info:
        await transport.deliver(job)
    assert exc_info.value.permanent is True
    assert exc_info.value.status_code == 550
    assert pool.discarded == 1


@pytest.mark.asyncio
async def test_temporary_smtp_error_is_retryable():
    transport, pool = make_transport()
    pool.smtp.raise_error = aiosmtplib.SMTPResponseException(451, "try again later")
    job = envelope(JobKind.WELCOME, {"user_id": "u1", "recipient_email": "ana@example.com"})

    with pytest.raises(TransportError) as exc_info:
        await transport.deliver(job)
    assert exc_info.value.permanent is False


@pytest.mark.asyncio
async def test_digest_without_recipient_uses_lookup():
    async def lookup(user_id):
        return {"u1": "ana@example.com"}.get(user_id)

    transport, pool = make_transport(recipient_lookup=lookup)
    digest = envelope(JobKind.WEEKLY_DIGEST, {"user_id": "u1", "week_start": "2024-01-01", "week_end": "2024-01-07"})
    await transport.deliver(digest)
    assert pool.smtp.sent[0]["To"] == "ana@example.com"

    unknown = envelope(JobKind.WEEKLY_DIGEST, {"user_id": "u2", "week_start": "2024-01-01", "week_end": "2024-01-07"})
    with pytest.raises(TransportError) as exc_info:
        await transport.deliver(unknown)
    assert exc_info.value.permanent is True


@pytest.mark.asyncio
async def test_close_releases_pool():
    transport, pool = make_transport()
    await transport.close()
    assert pool.closed


def test_default_render_hides_tokens():
    job = envelope(JobKind.PASSWORD_RESET, {"user_id": "u1", "recipient_email": "ana@example.com",
                                            "reset_token": "s3cret", "reset_url": "https://app/reset"})
    subject, body = default_render(job, dict(job.payload))
    assert subject == "Reset your password"
    assert "s3cret" not in body
    assert "https://app/reset" in body


@pytest.mark.asyncio
async def test_recording_transport_scripts_failures():
    transport = RecordingTransport(failures=[TransportError("busy"), None])
    job = envelope(JobKind.WELCOME, {"user_id": "u1", "recipient_email": "ana@example.com"})

    with pytest.raises(TransportError):
        await transport.deliver(job)
    await transport.deliver(job)
    assert transport.attempts == [job.id, job.id]
    assert transport.delivered == [job]
