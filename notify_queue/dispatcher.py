"""Claim due jobs and hand them to the transport.

:class:`Dispatcher` performs one claim-deliver-route cycle;
:class:`WorkerPool` runs a fixed number of asyncio workers per queue on top
of it.
"""

from __future__ import annotations

import asyncio
import math
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .logger import get_logger
from .models import JobEnvelope, JobState, QueueName
from .persistence import JobStore
from .retry import RetryCoordinator
from .tracker import LifecycleTracker

DEFAULT_CONCURRENCY: Dict[QueueName, int] = {
    QueueName.PRIMARY: 4,
    QueueName.DIGEST: 1,
    QueueName.RETRY: 1,
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class Dispatcher:
    def __init__(
        self,
        store: JobStore,
        tracker: LifecycleTracker,
        retry: RetryCoordinator,
        transport,
        *,
        clock: Optional[Callable[[], int]] = None,
        transport_timeout: float = 30.0,
        publish: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
    ):
        self.store = store
        self.tracker = tracker
        self.retry = retry
        self.transport = transport
        self.clock = clock or _now_ms
        self.transport_timeout = transport_timeout
        self.publish = publish
        self.logger = get_logger("NotifyQueue.dispatcher")
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, queue: str) -> asyncio.Lock:
        lock = self._locks.get(queue)
        if lock is None:
            lock = self._locks[queue] = asyncio.Lock()
        return lock

    async def _emit(self, event: Dict[str, Any]) -> None:
        if self.publish is not None:
            await self.publish(event)

    async def claim(self, queue, worker_name: str) -> Optional[JobEnvelope]:
        """Claim the best due job of ``queue`` for ``worker_name``."""
        queue_name = queue.value if isinstance(queue, QueueName) else str(queue)
        async with self._lock_for(queue_name):
            row = await self.store.claim_next(queue_name, self.clock())
        if row is None:
            return None
        job = JobEnvelope.from_record(row)
        await self.tracker.record_transition(
            job.id,
            JobState.SCHEDULED,
            JobState.DISPATCHING,
            {"worker": worker_name, "attempt": job.attempt},
            queue=queue_name,
        )
        return job

    async def dispatch_next(self, queue, worker_name: str = "worker") -> bool:
        """Run one dispatch cycle. Returns ``True`` when a job was processed."""
        job = await self.claim(queue, worker_name)
        if job is None:
            return False
        try:
            async with asyncio.timeout(self.transport_timeout):
                await self.transport.deliver(job)
        except Exception as exc:
            decision = await self.retry.handle_failure(job, exc)
            event = {
                "id": job.id,
                "kind": job.kind.value,
                "queue": job.queue.value if job.queue else None,
                "attempt": job.attempt,
                "error": decision.error,
                "error_code": decision.error_code,
            }
            if decision.will_retry:
                event.update(status="deferred", deferred_until=decision.dispatch_at)
            else:
                event.update(status="error", timestamp=job.terminal_at)
            await self._emit(event)
            return True

        if not await self.tracker.transition(job, JobState.SENT, {"error": None, "error_code": None}):
            self.logger.warning("Job %s delivered but no longer dispatching", job.id)
        await self._emit(
            {
                "id": job.id,
                "kind": job.kind.value,
                "queue": job.queue.value if job.queue else None,
                "attempt": job.attempt,
                "status": "sent",
                "timestamp": job.terminal_at,
            }
        )
        return True


class WorkerPool:
    """Fixed set of asyncio workers polling each queue."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        store: JobStore,
        *,
        concurrency: Optional[Dict[QueueName, int]] = None,
        poll_interval: float = 1.0,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.dispatcher = dispatcher
        self.store = store
        self.concurrency = dict(DEFAULT_CONCURRENCY)
        self.concurrency.update(concurrency or {})
        self.poll_interval = poll_interval
        self.clock = clock or _now_ms
        self.logger = get_logger("NotifyQueue.workers")
        self._wake: Dict[QueueName, asyncio.Event] = {q: asyncio.Event() for q in QueueName}
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._paused = False
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        for queue, count in self.concurrency.items():
            for index in range(int(count)):
                name = f"{queue.value}-{index}"
                self._tasks.append(asyncio.create_task(self._worker(queue, name), name=f"worker-{name}"))
        self.logger.info("Started %d workers", len(self._tasks))

    async def stop(self) -> None:
        """Stop polling and wait for in-flight deliveries to finish."""
        self._stop.set()
        self._resumed.set()
        for event in self._wake.values():
            event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self._paused:
            self._resumed.clear()

    def pause(self) -> None:
        self._paused = True
        self._resumed.clear()

    def resume(self) -> None:
        self._paused = False
        self._resumed.set()
        self.wake()

    def wake(self, queue: Optional[QueueName] = None) -> None:
        targets = [queue] if queue is not None else list(self._wake)
        for target in targets:
            self._wake[QueueName(target)].set()

    async def _worker(self, queue: QueueName, name: str) -> None:
        while not self._stop.is_set():
            if self._paused:
                await self._resumed.wait()
                continue
            try:
                processed = await self.dispatcher.dispatch_next(queue, name)
            except Exception as exc:
                self.logger.exception("Unhandled error in worker %s: %s", name, exc)
                processed = False
            if processed:
                await asyncio.sleep(0)
                continue
            await self._wait_for_wakeup(queue, await self._idle_timeout(queue))

    async def _idle_timeout(self, queue: QueueName) -> float:
        """Sleep until the next job is due, bounded by the poll interval."""
        try:
            next_at = await self.store.next_dispatch_at(queue.value)
        except Exception:
            self.logger.exception("Failed to look up next dispatch time for %s", queue.value)
            return self.poll_interval
        if next_at is None:
            return self.poll_interval
        return min(self.poll_interval, max(0.0, (next_at - self.clock()) / 1000))

    async def _wait_for_wakeup(self, queue: QueueName, timeout: float | None) -> None:
        """Pause the worker while allowing wake-ups from enqueue or 'run now'."""
        if self._stop.is_set():
            return
        event = self._wake[queue]
        if timeout is None or math.isinf(timeout):
            await event.wait()
            event.clear()
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await event.wait()
        except asyncio.TimeoutError:
            return
        event.clear()
