import dataclasses

import pytest
from pydantic import ValidationError

from notify_queue.models import (
    ALLOWED_TRANSITIONS,
    SKIPPED,
    TERMINAL_STATES,
    BatchJob,
    JobEnvelope,
    JobKind,
    JobState,
    QueueName,
    SkippedType,
    TaskReminderPayload,
    WeeklyDigestPayload,
    is_valid_email,
    queue_for_kind,
)


def test_terminal_states_have_no_outgoing_transitions():
    for state in TERMINAL_STATES:
        assert ALLOWED_TRANSITIONS[state] == frozenset()
    assert JobState.DISPATCHING in ALLOWED_TRANSITIONS[JobState.SCHEDULED]
    assert JobState.CANCELLED not in ALLOWED_TRANSITIONS[JobState.DISPATCHING]


def test_queue_routing():
    assert queue_for_kind(JobKind.WEEKLY_DIGEST) is QueueName.DIGEST
    assert queue_for_kind(JobKind.RETRY) is QueueName.RETRY
    assert queue_for_kind(JobKind.PASSWORD_RESET) is QueueName.PRIMARY
    assert queue_for_kind(JobKind.BATCH_CHUNK) is QueueName.PRIMARY


def test_envelope_record_keeps_fields():
    envelope = JobEnvelope(
        kind=JobKind.ACHIEVEMENT,
        payload={"user_id": "u1", "recipient_email": "a@example.com", "achievement_title": "Streak"},
        priority=30,
        created_at=1000,
        requested_delay_ms=500,
        effective_dispatch_at=1500,
        attempt=2,
        state=JobState.SCHEDULED,
        respect_quiet_hours=False,
    )
    record = envelope.to_record()
    assert record["queue"] == "primary"
    assert record["user_id"] == "u1"
    assert record["respect_quiet_hours"] == 0
    assert isinstance(record["payload"], str)

    restored = JobEnvelope.from_record(record)
    assert restored == dataclasses.replace(envelope, queue=QueueName.PRIMARY)


def test_retry_envelope_user_comes_from_original_payload():
    envelope = JobEnvelope(
        kind=JobKind.RETRY,
        payload={"original_job_id": "x", "original_kind": "welcome", "attempt_number": 2,
                 "original_payload": {"user_id": "u9"}},
        priority=70,
        created_at=0,
    )
    assert envelope.user_id == "u9"


def test_skipped_sentinel_is_falsy_singleton():
    assert not SKIPPED
    assert repr(SKIPPED) == "SKIPPED"
    assert SkippedType() is SKIPPED


def test_batch_job_summary_counts_recipients():
    chunk = JobEnvelope(
        kind=JobKind.BATCH_CHUNK,
        payload={"recipients": [{"email": "a@example.com"}, {"email": "b@example.com"}]},
        priority=10,
        created_at=0,
    )
    batch = BatchJob(id="b1", total_recipients=3, chunks=[chunk],
                     failures=[{"recipient": "nope", "reason": "invalid"}])
    summary = batch.summary()
    assert summary["queued"] == 2
    assert summary["failed_to_queue"] == 1
    assert summary["job_ids"] == [chunk.id]


def test_task_reminder_requires_valid_recipient():
    with pytest.raises(ValidationError):
        TaskReminderPayload.model_validate(
            {"user_id": "u1", "recipient_email": "not-an-address", "task_id": "t",
             "task_title": "Essay", "due_date": "2024-01-11"}
        )


def test_weekly_digest_rejects_reversed_window():
    with pytest.raises(ValidationError):
        WeeklyDigestPayload.model_validate(
            {"user_id": "u1", "week_start": "2024-01-14", "week_end": "2024-01-08"}
        )


@pytest.mark.parametrize(
    "value, expected",
    [("ana@example.com", True), (" ana@example.com ", True), ("ana@", False), ("a b@example.com", False), (None, False)],
)
def test_is_valid_email(value, expected):
    assert is_valid_email(value) is expected
