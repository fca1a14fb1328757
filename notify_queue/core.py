"""Core orchestration logic for the notification queue engine."""

from __future__ import annotations

import asyncio
import math
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

import aiohttp

from .batch import DEFAULT_CHUNK_SIZE, DEFAULT_INTER_CHUNK_DELAY_MS, BatchSplitter
from .builder import EnvelopeBuilder
from .dispatcher import Dispatcher, WorkerPool
from .errors import EnvelopeValidationError, NotFoundError, NotifyQueueError, StateConflictError, TransportError
from .logger import get_logger
from .models import (
    CANCELLABLE_STATES,
    DEFAULT_MAX_ATTEMPTS,
    SKIPPED,
    JobEnvelope,
    JobKind,
    JobState,
    QueueName,
    SkippedType,
)
from .persistence import JobStore
from .preferences import AllowAll, PreferenceStore
from .prometheus import QueueMetrics
from .quiet_hours import NeverQuiet, QuietHoursOracle
from .reporting import DeliveryReporter, report_payload
from .retry import DEFAULT_BASE_DELAY_MS, DEFAULT_BATCH_BASE_DELAY_MS, RetryCoordinator
from .scheduler import Scheduler, next_weekly_occurrence
from .tracker import LifecycleTracker
from .transport import RecordingTransport

DEFAULT_RETENTION_SECONDS = 7 * 24 * 3600


def _utc_now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def _enabled(prefs: Dict[str, Any], *keys: str) -> bool:
    for key in keys:
        if key in prefs and prefs[key] is not None:
            return bool(prefs[key])
    return True


class NotificationQueue:
    """Coordinate building, scheduling, dispatching and tracking of jobs."""

    def __init__(
        self,
        *,
        db_path: str = "/data/notify_queue.db",
        logger=None,
        metrics: QueueMetrics | None = None,
        transport=None,
        oracle: Optional[QuietHoursOracle] = None,
        preferences: Optional[PreferenceStore] = None,
        clock: Optional[Callable[[], int]] = None,
        concurrency: Optional[Dict[QueueName, int]] = None,
        poll_interval: float = 1.0,
        transport_timeout: float = 30.0,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        batch_base_delay_ms: int = DEFAULT_BATCH_BASE_DELAY_MS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        inter_chunk_delay_ms: int = DEFAULT_INTER_CHUNK_DELAY_MS,
        retention_seconds: int | None = None,
        report_url: str | None = None,
        report_token: str | None = None,
        report_user: str | None = None,
        report_password: str | None = None,
        report_callable: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
        report_interval: float = 30.0,
        report_batch_size: int = 100,
        result_queue_size: int = 1000,
        start_paused: bool = False,
        test_mode: bool = False,
        log_delivery_activity: bool = False,
    ):
        self.logger = logger or get_logger()
        self.clock = clock or _utc_now_ms
        self.metrics = metrics or QueueMetrics()
        self.store = JobStore(db_path)
        self.transport = transport or RecordingTransport()
        self.tracker = LifecycleTracker(
            self.store,
            metrics=self.metrics,
            clock=self.clock,
            log_delivery_activity=log_delivery_activity,
        )
        self.builder = EnvelopeBuilder(
            preferences or AllowAll(),
            clock=self.clock,
            default_max_attempts=max_attempts,
        )
        self.scheduler = Scheduler(self.tracker, oracle or NeverQuiet(), clock=self.clock)
        self.retry_coordinator = RetryCoordinator(
            self.tracker,
            self.scheduler,
            base_delay_ms=base_delay_ms,
            batch_base_delay_ms=batch_base_delay_ms,
        )
        self.splitter = BatchSplitter(
            self.builder,
            chunk_size=chunk_size,
            inter_chunk_delay_ms=inter_chunk_delay_ms,
        )
        self.dispatcher = Dispatcher(
            self.store,
            self.tracker,
            self.retry_coordinator,
            self.transport,
            clock=self.clock,
            transport_timeout=transport_timeout,
            publish=self._publish_result,
        )
        self._test_mode = bool(test_mode)
        self.workers = WorkerPool(
            self.dispatcher,
            self.store,
            concurrency=concurrency,
            poll_interval=math.inf if self._test_mode else max(0.05, float(poll_interval)),
            clock=self.clock,
        )
        if start_paused:
            self.workers.pause()
        self.reporter = DeliveryReporter(
            report_url=report_url,
            token=report_token,
            user=report_user,
            password=report_password,
            callback=report_callable,
            log_delivery_activity=log_delivery_activity,
        )
        self._retention_seconds = (
            retention_seconds if retention_seconds is not None else DEFAULT_RETENTION_SECONDS
        )
        self._report_interval = math.inf if self._test_mode else float(report_interval)
        self._report_batch_size = max(1, int(report_batch_size))
        self._log_delivery_activity = bool(log_delivery_activity)
        self._result_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=result_queue_size)
        self._stop = asyncio.Event()
        self._wake_report_event = asyncio.Event()
        self._task_report: Optional[asyncio.Task] = None
        self._initialised = False

    # --------------------------------------------------------------------- setup
    async def init(self) -> None:
        """Initialise storage. Safe to call more than once."""
        if self._initialised:
            return
        await self.store.init_db()
        self._initialised = True

    async def recover_in_flight(self) -> int:
        """Reschedule jobs left ``dispatching`` by a previous process.

        A job interrupted on its last attempt is failed instead, so ``attempt``
        never goes past ``max_attempts``. Returns the number of jobs handled.
        """
        recovered = 0
        exhausted = 0
        for row in await self.store.list_jobs(state=JobState.DISPATCHING.value):
            job = JobEnvelope.from_record(row)
            if job.attempt >= job.max_attempts:
                await self.retry_coordinator.handle_failure(job, TransportError("Delivery interrupted"))
                exhausted += 1
                continue
            moved = await self.tracker.transition(
                job,
                JobState.SCHEDULED,
                {"effective_dispatch_at": self.clock()},
                {"recovered": True},
            )
            if moved:
                recovered += 1
        if recovered:
            self.logger.warning("Rescheduled %d jobs interrupted during delivery", recovered)
        if exhausted:
            self.logger.warning("Failed %d jobs interrupted on their last attempt", exhausted)
        return recovered + exhausted

    # ------------------------------------------------------------------- enqueue
    async def _persist(self, envelope: JobEnvelope, metadata: Optional[Dict[str, Any]] = None) -> str:
        await self.store.insert_job(envelope.to_record())
        queue = envelope.queue.value
        await self.tracker.record_transition(
            envelope.id, None, JobState.QUEUED, {"kind": envelope.kind.value, **(metadata or {})}, queue=queue
        )
        await self.scheduler.schedule(envelope)
        self.metrics.inc_enqueued(queue, envelope.kind.value)
        self.workers.wake(envelope.queue)
        return envelope.id

    async def enqueue(
        self,
        kind: Union[JobKind, str],
        payload: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None,
    ) -> Union[str, SkippedType]:
        """Validate, persist and schedule one notification.

        Returns the job id, or :data:`SKIPPED` when the recipient disabled
        the channel. Raises :class:`EnvelopeValidationError` on bad input.
        """
        envelope = await self.builder.build(kind, payload, options)
        if envelope is SKIPPED:
            self.metrics.inc_skipped(JobKind(kind).value)
            return SKIPPED
        job_id = await self._persist(envelope)
        await self._refresh_pending_gauge()
        return job_id

    async def enqueue_batch(
        self,
        recipients: Iterable[Any],
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Split a bulk send into staggered chunk jobs (partial success)."""
        options = dict(options or {})
        batch = await self.splitter.split(recipients, options.get("chunk_size"), options)
        await self.store.insert_batch(
            batch.id, batch.total_recipients, len(batch.chunks), batch.failures, self.clock()
        )
        for chunk in batch.chunks:
            await self._persist(chunk, {"batch_id": batch.id})
        await self._refresh_pending_gauge()
        return batch.summary()

    async def schedule_digest(
        self,
        user_id: str,
        window: Dict[str, Any],
        preferences: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """Schedule the weekly digest of ``user_id`` for ``window``.

        Returns ``None`` without touching storage when email or the weekly
        digest is disabled in ``preferences``. With ``digest_day`` (1 =
        Monday) and ``digest_time`` (``HH:MM``) the job is delayed to their
        next occurrence in the window's timezone.
        """
        prefs = preferences or {}
        if not _enabled(prefs, "email_enabled"):
            return None
        if not _enabled(prefs, "weekly_digest_enabled", "email_weekly_digest_enabled"):
            return None
        window = dict(window or {})
        payload = {"user_id": user_id, "timezone": window.pop("timezone", None) or "UTC", **window}
        options = dict(options or {})
        day, at = prefs.get("digest_day"), prefs.get("digest_time")
        if day is not None and at and "delay_ms" not in options:
            now = self.clock()
            try:
                target = next_weekly_occurrence(now, int(day), str(at), payload["timezone"])
            except (TypeError, ValueError) as exc:
                raise EnvelopeValidationError(f"Invalid digest schedule: {exc}") from None
            options["delay_ms"] = target - now
        job_id = await self.enqueue(JobKind.WEEKLY_DIGEST, payload, options)
        return None if job_id is SKIPPED else job_id

    async def retry(self, job_id: str) -> Union[str, SkippedType]:
        """Re-deliver a ``failed`` job through the retry queue."""
        job = await self.tracker.get_job(job_id)
        if job.state is not JobState.FAILED:
            raise StateConflictError(job_id, job.state.value, "retry")
        envelope = await self.builder.build_retry(job)
        if envelope is SKIPPED:
            self.metrics.inc_skipped(JobKind.RETRY.value)
            return SKIPPED
        new_id = await self._persist(envelope, {"original_job_id": job_id})
        await self._refresh_pending_gauge()
        return new_id

    async def cancel(self, job_id: str) -> bool:
        """Cancel a job that has not been claimed by a worker yet."""
        job = await self.tracker.get_job(job_id)
        if job.state not in CANCELLABLE_STATES:
            raise StateConflictError(job_id, job.state.value, "cancel")
        if not await self.tracker.transition(job, JobState.CANCELLED, {}, {"reason": "cancelled"}):
            current = await self.tracker.get_job(job_id)
            raise StateConflictError(job_id, current.state.value, "cancel")
        self._wake_report_event.set()
        await self._refresh_pending_gauge()
        return True

    # --------------------------------------------------------------- inspection
    async def get_status(self, job_id: str) -> Dict[str, Any]:
        job = await self.tracker.get_job(job_id)
        view = job.view()
        view["history"] = await self.tracker.history(job_id)
        return view

    async def get_stats(self) -> Dict[str, Dict[str, int]]:
        """Return per-queue admin counts; never raises."""
        return {queue.value: await self.tracker.get_stats(queue) for queue in QueueName}

    async def get_batch(self, batch_id: str) -> Dict[str, Any]:
        batch = await self.store.get_batch(batch_id)
        if batch is None:
            raise NotFoundError("Batch", batch_id)
        rows = await self.store.list_jobs(batch_id=batch_id)
        batch["job_ids"] = [row["id"] for row in sorted(rows, key=lambda r: r["requested_delay_ms"])]
        batch["states"] = await self.store.count_by_state(batch_id=batch_id)
        batch["failed_to_queue"] = len(batch["failures"])
        return batch

    async def list_jobs(
        self,
        queue: Optional[str] = None,
        state: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        try:
            queue_name = QueueName(queue).value if queue else None
            state_name = JobState(state).value if state else None
        except ValueError as exc:
            raise EnvelopeValidationError(str(exc)) from None
        rows = await self.store.list_jobs(queue=queue_name, state=state_name, limit=limit)
        return [JobEnvelope.from_record(row).view() for row in rows]

    # ------------------------------------------------------------------ control
    def pause(self) -> None:
        self.workers.pause()
        self.logger.info("Dispatch paused")

    def resume(self) -> None:
        self.workers.resume()
        self.logger.info("Dispatch resumed")

    @property
    def is_paused(self) -> bool:
        return self.workers.is_paused

    def wake(self, queue: Optional[Union[QueueName, str]] = None) -> None:
        self.workers.wake(QueueName(queue) if queue else None)

    async def run_due(self, queue: Optional[Union[QueueName, str]] = None) -> int:
        """Dispatch every job already due, in the calling task."""
        queues = [QueueName(queue)] if queue else list(QueueName)
        processed = 0
        for name in queues:
            while await self.dispatcher.dispatch_next(name, "inline"):
                processed += 1
        if processed:
            await self._refresh_pending_gauge()
        return processed

    async def cleanup(self, older_than_seconds: Optional[int] = None) -> int:
        """Delete terminal jobs older than the retention window."""
        seconds = self._retention_seconds if older_than_seconds is None else int(older_than_seconds)
        if seconds < 0:
            raise EnvelopeValidationError("older_than_seconds must not be negative")
        threshold = self.clock() - seconds * 1000
        removed = await self.store.remove_terminal_before(threshold)
        if removed:
            self.logger.info("Cleanup removed %d terminal jobs", removed)
        await self._refresh_pending_gauge()
        return removed

    # ---------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the worker pool and the report loop."""
        await self.init()
        await self.recover_in_flight()
        self._stop.clear()
        self.workers.start()
        self._task_report = asyncio.create_task(self._report_loop(), name="report-loop")

    async def stop(self) -> None:
        """Stop the background tasks gracefully."""
        self._stop.set()
        self._wake_report_event.set()
        await self.workers.stop()
        if self._task_report:
            await asyncio.gather(self._task_report, return_exceptions=True)
            self._task_report = None
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()

    # ---------------------------------------------------------------- reporting
    async def _report_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self._process_report_cycle()
            except Exception as exc:
                self.logger.exception("Unhandled error in report loop: %s", exc)
            await self._wait_for_report_wakeup(self._report_interval)

    async def _process_report_cycle(self) -> None:
        """Report terminal jobs, then apply retention."""
        if self.reporter.configured:
            rows = await self.store.fetch_reports(self._report_batch_size)
            if rows:
                try:
                    await self.reporter.send([report_payload(row) for row in rows])
                except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                    target = self.reporter.report_url or "custom callable"
                    self.logger.warning("Delivery report failed (%s): %s", target, exc)
                    return
                await self.store.mark_reported((row["id"] for row in rows), self.clock())
        removed = await self.tracker.apply_retention(
            self._retention_seconds, reported_only=self.reporter.configured
        )
        if removed:
            await self._refresh_pending_gauge()

    async def _wait_for_report_wakeup(self, timeout: float) -> None:
        if self._stop.is_set():
            return
        if math.isinf(timeout):
            await self._wake_report_event.wait()
            self._wake_report_event.clear()
            return
        try:
            async with asyncio.timeout(max(0.0, timeout)):
                await self._wake_report_event.wait()
        except asyncio.TimeoutError:
            return
        self._wake_report_event.clear()

    async def _refresh_pending_gauge(self) -> None:
        try:
            counts = await self.store.count_pending()
        except Exception:
            self.logger.exception("Failed to refresh pending gauge")
            return
        for queue in QueueName:
            self.metrics.set_pending(queue.value, counts.get(queue.value, 0))

    # ----------------------------------------------------------------- events
    async def results(self):
        """Yield delivery events to API consumers."""
        while True:
            event = await self._result_queue.get()
            yield event

    def _buffer_event(self, item: Dict[str, Any]) -> None:
        # oldest event goes first when nobody is draining results()
        try:
            self._result_queue.put_nowait(item)
        except asyncio.QueueFull:
            dropped = self._result_queue.get_nowait()
            self.logger.warning("Delivery event buffer full; dropping event for job %s", dropped.get("id"))
            self._result_queue.put_nowait(item)

    def _log_delivery_event(self, event: Dict[str, Any]) -> None:
        if not self._log_delivery_activity:
            return
        status = event.get("status")
        if status == "sent":
            self.logger.info("Delivery succeeded for job %s (%s)", event.get("id"), event.get("kind"))
        elif status == "deferred":
            self.logger.info(
                "Delivery of job %s deferred until %s: %s",
                event.get("id"),
                event.get("deferred_until"),
                event.get("error"),
            )
        else:
            self.logger.warning("Delivery failed for job %s: %s", event.get("id"), event.get("error"))

    async def _publish_result(self, event: Dict[str, Any]) -> None:
        self._log_delivery_event(event)
        if event.get("status") in ("sent", "error"):
            self._wake_report_event.set()
        self._buffer_event(event)

    # ----------------------------------------------------------------- commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands."""
        payload = payload or {}
        try:
            return await self._dispatch_command(cmd, payload)
        except NotifyQueueError as exc:
            return exc.as_dict()

    async def _dispatch_command(self, cmd: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if cmd == "enqueue":
            job_id = await self.enqueue(payload.get("kind"), payload.get("payload") or {}, payload.get("options"))
            if job_id is SKIPPED:
                return {"ok": True, "skipped": True, "job_id": None}
            return {"ok": True, "skipped": False, "job_id": job_id}
        if cmd == "enqueueBatch":
            summary = await self.enqueue_batch(payload.get("recipients") or [], payload.get("options"))
            return {"ok": True, **summary}
        if cmd == "scheduleDigest":
            job_id = await self.schedule_digest(
                payload.get("user_id"),
                payload.get("window") or {},
                payload.get("preferences"),
                payload.get("options"),
            )
            return {"ok": True, "scheduled": job_id is not None, "job_id": job_id}
        if cmd == "retry":
            job_id = await self.retry(payload.get("id"))
            if job_id is SKIPPED:
                return {"ok": True, "skipped": True, "job_id": None}
            return {"ok": True, "skipped": False, "job_id": job_id}
        if cmd == "cancel":
            await self.cancel(payload.get("id"))
            return {"ok": True, "id": payload.get("id"), "state": JobState.CANCELLED.value}
        if cmd == "getStatus":
            return {"ok": True, "job": await self.get_status(payload.get("id"))}
        if cmd == "getStats":
            return {"ok": True, "queues": await self.get_stats()}
        if cmd == "getBatch":
            return {"ok": True, "batch": await self.get_batch(payload.get("id"))}
        if cmd == "listJobs":
            jobs = await self.list_jobs(payload.get("queue"), payload.get("state"), payload.get("limit"))
            return {"ok": True, "jobs": jobs}
        if cmd == "pause":
            self.pause()
            return {"ok": True, "paused": True}
        if cmd == "resume":
            self.resume()
            return {"ok": True, "paused": False}
        if cmd == "run now":
            if self.workers.running:
                self.wake(payload.get("queue"))
                return {"ok": True}
            return {"ok": True, "processed": await self.run_due(payload.get("queue"))}
        if cmd == "cleanup":
            removed = await self.cleanup(payload.get("older_than_seconds"))
            return {"ok": True, "removed": removed}
        return {"ok": False, "error": "unknown command"}
