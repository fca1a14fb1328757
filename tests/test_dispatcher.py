import asyncio
import time

import pytest

from notify_queue.core import NotificationQueue
from notify_queue.dispatcher import Dispatcher
from notify_queue.errors import TransportError
from notify_queue.models import JobKind, QueueName
from notify_queue.transport import RecordingTransport

NOW = 1_704_888_000_000
BASE = {"user_id": "u1", "recipient_email": "ana@example.com"}
ACHIEVEMENT = {**BASE, "achievement_type": "streak_milestone", "achievement_title": "7 days"}


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


async def make_queue(tmp_path, transport=None, **kwargs):
    clock = kwargs.pop("clock", FakeClock())
    queue = NotificationQueue(
        db_path=str(tmp_path / "queue.db"),
        clock=clock,
        transport=transport or RecordingTransport(),
        test_mode=True,
        **kwargs,
    )
    await queue.init()
    return queue, clock


@pytest.mark.asyncio
async def test_higher_priority_is_dispatched_first(tmp_path):
    queue, _ = await make_queue(tmp_path)
    low = await queue.enqueue(JobKind.ACHIEVEMENT, ACHIEVEMENT, {"priority": 20})
    high = await queue.enqueue(JobKind.ACHIEVEMENT, ACHIEVEMENT, {"priority": 90})

    assert await queue.dispatcher.dispatch_next(QueueName.PRIMARY)
    assert [job.id for job in queue.transport.delivered] == [high]
    assert await queue.dispatcher.dispatch_next(QueueName.PRIMARY)
    assert [job.id for job in queue.transport.delivered] == [high, low]


@pytest.mark.asyncio
async def test_alternating_priorities_drain_high_first_without_starving_low(tmp_path):
    queue, _ = await make_queue(tmp_path)
    priorities = {}
    for index in range(8):
        priority = 90 if index % 2 == 0 else 20
        job_id = await queue.enqueue(JobKind.ACHIEVEMENT, ACHIEVEMENT, {"priority": priority})
        priorities[job_id] = priority

    assert await queue.run_due() == 8
    order = [priorities[job.id] for job in queue.transport.delivered]
    assert order == [90] * 4 + [20] * 4


@pytest.mark.asyncio
async def test_equal_priority_is_fifo(tmp_path):
    queue, _ = await make_queue(tmp_path)
    ids = [await queue.enqueue(JobKind.WELCOME, BASE) for _ in range(3)]
    assert await queue.run_due() == 3
    assert [job.id for job in queue.transport.delivered] == ids


@pytest.mark.asyncio
async def test_job_is_not_claimed_before_dispatch_time(tmp_path):
    queue, clock = await make_queue(tmp_path)
    job_id = await queue.enqueue(JobKind.WELCOME, BASE, {"delay_ms": 5000})

    assert await queue.dispatcher.dispatch_next(QueueName.PRIMARY) is False
    clock.advance(4999)
    assert await queue.dispatcher.claim(QueueName.PRIMARY, "w") is None
    clock.advance(1)
    job = await queue.dispatcher.claim(QueueName.PRIMARY, "w")
    assert job.id == job_id
    assert job.attempt == 1


@pytest.mark.asyncio
async def test_successful_delivery_history(tmp_path):
    queue, _ = await make_queue(tmp_path)
    job_id = await queue.enqueue(JobKind.WELCOME, BASE)
    await queue.run_due()

    status = await queue.get_status(job_id)
    assert status["state"] == "sent"
    assert status["attempt"] == 1
    assert status["terminal_at"] == NOW
    assert [h["to_state"] for h in status["history"]] == ["queued", "scheduled", "dispatching", "sent"]
    assert status["history"][2]["metadata"]["worker"] == "inline"


@pytest.mark.asyncio
async def test_failures_back_off_until_attempts_are_exhausted(tmp_path):
    transport = RecordingTransport(failures=[TransportError("421 try later")] * 3)
    queue, clock = await make_queue(tmp_path, transport)
    job_id = await queue.enqueue(JobKind.WELCOME, BASE)

    assert await queue.run_due() == 1
    status = await queue.get_status(job_id)
    assert status["state"] == "scheduled"
    assert status["effective_dispatch_at"] == NOW + 2000

    clock.advance(1999)
    assert await queue.run_due() == 0
    clock.advance(1)
    assert await queue.run_due() == 1
    status = await queue.get_status(job_id)
    assert status["attempt"] == 2
    assert status["effective_dispatch_at"] == clock.now + 4000

    clock.advance(4000)
    assert await queue.run_due() == 1
    status = await queue.get_status(job_id)
    assert status["state"] == "failed"
    assert status["attempt"] == 3
    assert status["error_code"] == "exhausted_retries"

    clock.advance(3_600_000)
    assert await queue.run_due() == 0
    assert len(transport.attempts) == 3
    assert transport.delivered == []


@pytest.mark.asyncio
async def test_permanent_error_fails_immediately(tmp_path):
    transport = RecordingTransport(failures=[TransportError("550 user unknown", permanent=True)])
    queue, _ = await make_queue(tmp_path, transport)
    job_id = await queue.enqueue(JobKind.WELCOME, BASE)

    await queue.run_due()
    status = await queue.get_status(job_id)
    assert status["state"] == "failed"
    assert status["attempt"] == 1
    assert status["error_code"] == "permanent_failure"


@pytest.mark.asyncio
async def test_slow_delivery_times_out_and_is_retried(tmp_path):
    queue, _ = await make_queue(tmp_path, RecordingTransport(delay=1.0), transport_timeout=0.05)
    job_id = await queue.enqueue(JobKind.WELCOME, BASE)

    await queue.run_due()
    status = await queue.get_status(job_id)
    assert status["state"] == "scheduled"
    assert status["error_code"] == "timeout"


@pytest.mark.asyncio
async def test_separate_dispatchers_never_claim_the_same_job(tmp_path):
    queue, clock = await make_queue(tmp_path)
    job_id = await queue.enqueue(JobKind.WELCOME, BASE)
    other_transport = RecordingTransport()
    other = Dispatcher(queue.store, queue.tracker, queue.retry_coordinator, other_transport, clock=clock)

    results = await asyncio.gather(
        queue.dispatcher.dispatch_next(QueueName.PRIMARY, "a"),
        other.dispatch_next(QueueName.PRIMARY, "b"),
    )
    assert sorted(results) == [False, True]
    delivered = queue.transport.delivered + other_transport.delivered
    assert [job.id for job in delivered] == [job_id]


@pytest.mark.asyncio
async def test_concurrent_workers_deliver_each_job_once(tmp_path):
    queue, _ = await make_queue(tmp_path, RecordingTransport(delay=0.01))
    ids = {await queue.enqueue(JobKind.WELCOME, BASE) for _ in range(12)}

    async def drain(name):
        while await queue.dispatcher.dispatch_next(QueueName.PRIMARY, name):
            pass

    await asyncio.gather(*(drain(f"w{i}") for i in range(4)))
    delivered = [job.id for job in queue.transport.delivered]
    assert sorted(delivered) == sorted(ids)
    assert (await queue.get_stats())["primary"]["sent"] == 12


@pytest.mark.asyncio
async def test_delivery_events_are_published(tmp_path):
    transport = RecordingTransport(failures=[TransportError("421 busy"), None])
    queue, clock = await make_queue(tmp_path, transport)
    job_id = await queue.enqueue(JobKind.WELCOME, BASE)
    events = queue.results()

    await queue.run_due()
    deferred = await anext(events)
    assert deferred["id"] == job_id
    assert deferred["status"] == "deferred"
    assert deferred["deferred_until"] == NOW + 2000

    clock.advance(2000)
    await queue.run_due()
    sent = await anext(events)
    assert sent["status"] == "sent"
    assert sent["attempt"] == 2


@pytest.mark.asyncio
async def test_worker_pool_delivers_after_wakeup(tmp_path):
    queue = NotificationQueue(
        db_path=str(tmp_path / "queue.db"),
        transport=RecordingTransport(),
        test_mode=True,
        concurrency={QueueName.PRIMARY: 2, QueueName.DIGEST: 1, QueueName.RETRY: 1},
    )
    await queue.start()
    try:
        job_id = await queue.enqueue(JobKind.WELCOME, BASE)
        for _ in range(100):
            if queue.transport.delivered:
                break
            await asyncio.sleep(0.02)
        assert [job.id for job in queue.transport.delivered] == [job_id]
    finally:
        await queue.stop()
    assert not queue.workers.running


@pytest.mark.asyncio
async def test_paused_pool_claims_nothing(tmp_path):
    queue = NotificationQueue(
        db_path=str(tmp_path / "queue.db"),
        transport=RecordingTransport(),
        test_mode=True,
        start_paused=True,
    )
    await queue.start()
    try:
        job_id = await queue.enqueue(JobKind.WELCOME, BASE)
        await asyncio.sleep(0.1)
        assert queue.transport.attempts == []
        assert (await queue.get_status(job_id))["state"] == "scheduled"

        queue.resume()
        for _ in range(100):
            if queue.transport.delivered:
                break
            await asyncio.sleep(0.02)
        assert (await queue.get_status(job_id))["state"] == "sent"
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_full_event_buffer_never_blocks_delivery(tmp_path):
    queue, _ = await make_queue(tmp_path, result_queue_size=1)
    ids = [await queue.enqueue(JobKind.WELCOME, BASE) for _ in range(4)]

    started = time.monotonic()
    assert await queue.run_due() == 4
    assert time.monotonic() - started < 0.5

    # only the newest event is kept
    event = await anext(queue.results())
    assert event["id"] == ids[-1]
    assert event["status"] == "sent"
