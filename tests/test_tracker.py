import pytest

from notify_queue.errors import NotFoundError, StateConflictError
from notify_queue.models import JobEnvelope, JobKind, JobState
from notify_queue.persistence import JobStore
from notify_queue.prometheus import QueueMetrics
from notify_queue.tracker import STATS_KEYS, LifecycleTracker

NOW = 1_704_888_000_000


class FailingStore:
    async def queue_stats(self, queue, now):
        raise RuntimeError("disk I/O error")


async def make_tracker(tmp_path, metrics=None):
    store = JobStore(str(tmp_path / "tracker.db"))
    await store.init_db()
    return LifecycleTracker(store, metrics=metrics, clock=lambda: NOW)


async def new_job(tracker, state=JobState.QUEUED) -> JobEnvelope:
    job = JobEnvelope(
        kind=JobKind.WELCOME,
        payload={"user_id": "u1", "recipient_email": "ana@example.com"},
        priority=70,
        created_at=NOW,
        state=state,
        effective_dispatch_at=NOW,
    )
    await tracker.store.insert_job(job.to_record())
    await tracker.record_transition(job.id, None, JobState.QUEUED)
    return job


@pytest.mark.parametrize(
    "from_state, to_state",
    [
        (JobState.QUEUED, JobState.DISPATCHING),
        (JobState.DISPATCHING, JobState.CANCELLED),
        (JobState.SENT, JobState.SCHEDULED),
        (JobState.FAILED, JobState.QUEUED),
        (None, JobState.SCHEDULED),
    ],
)
def test_invalid_transitions_raise(from_state, to_state):
    with pytest.raises(StateConflictError):
        LifecycleTracker.check_transition("j1", from_state, to_state)


@pytest.mark.asyncio
async def test_transition_updates_storage_and_history(tmp_path):
    tracker = await make_tracker(tmp_path)
    job = await new_job(tracker)

    assert await tracker.transition(job, JobState.CANCELLED, metadata={"reason": "user request"})
    assert job.state is JobState.CANCELLED
    assert job.terminal_at == NOW

    stored = await tracker.get_job(job.id)
    assert stored.state is JobState.CANCELLED
    history = await tracker.history(job.id)
    assert [(h["from_state"], h["to_state"]) for h in history] == [(None, "queued"), ("queued", "cancelled")]
    assert history[-1]["at"] == NOW
    assert history[-1]["metadata"] == {"reason": "user request"}


@pytest.mark.asyncio
async def test_stale_transition_returns_false(tmp_path):
    tracker = await make_tracker(tmp_path)
    job = await new_job(tracker)
    stale = JobEnvelope.from_record((await tracker.store.get_job(job.id)))

    assert await tracker.transition(job, JobState.SCHEDULED)
    assert await tracker.transition(stale, JobState.CANCELLED) is False
    assert stale.state is JobState.QUEUED
    assert len(await tracker.history(job.id)) == 2


@pytest.mark.asyncio
async def test_terminal_job_cannot_move(tmp_path):
    tracker = await make_tracker(tmp_path)
    job = await new_job(tracker)
    await tracker.transition(job, JobState.CANCELLED)
    with pytest.raises(StateConflictError):
        await tracker.transition(job, JobState.SCHEDULED)


@pytest.mark.asyncio
async def test_unknown_job_raises_not_found(tmp_path):
    tracker = await make_tracker(tmp_path)
    with pytest.raises(NotFoundError):
        await tracker.get_job("missing")


@pytest.mark.asyncio
async def test_transitions_update_metrics(tmp_path):
    metrics = QueueMetrics()
    tracker = await make_tracker(tmp_path, metrics)
    job = await new_job(tracker)
    await tracker.transition(job, JobState.CANCELLED)

    assert metrics.registry.get_sample_value("nq_cancelled_total", {"queue": "primary"}) == 1.0


@pytest.mark.asyncio
async def test_stats_are_zero_when_storage_fails():
    tracker = LifecycleTracker(FailingStore(), clock=lambda: NOW)
    assert await tracker.get_stats("primary") == dict.fromkeys(STATS_KEYS, 0)


@pytest.mark.asyncio
async def test_retention_removes_old_terminal_jobs(tmp_path):
    tracker = await make_tracker(tmp_path)
    job = await new_job(tracker)
    await tracker.store.update_job(job.id, "queued", {"state": "sent", "terminal_at": NOW - 3600_000})

    assert await tracker.apply_retention(0) == 0
    assert await tracker.apply_retention(7200) == 0
    assert await tracker.apply_retention(60) == 1
    assert await tracker.store.get_job(job.id) is None
