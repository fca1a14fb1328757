"""Prometheus metrics exposed by the notification queue."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest


class QueueMetrics:
    """Wrapper around the Prometheus registry used by the engine."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.enqueued = Counter("nq_enqueued_total", "Jobs accepted", ["queue", "kind"], registry=self.registry)
        self.skipped = Counter("nq_skipped_total", "Jobs skipped by user preferences", ["kind"], registry=self.registry)
        self.sent = Counter("nq_sent_total", "Jobs delivered", ["queue"], registry=self.registry)
        self.failed = Counter("nq_failed_total", "Jobs failed permanently", ["queue", "reason"], registry=self.registry)
        self.retried = Counter("nq_retried_total", "Delivery attempts rescheduled after a failure", ["queue"], registry=self.registry)
        self.cancelled = Counter("nq_cancelled_total", "Jobs cancelled", ["queue"], registry=self.registry)
        self.pending = Gauge("nq_pending_jobs", "Jobs not yet in a terminal state", ["queue"], registry=self.registry)

    def inc_enqueued(self, queue: str, kind: str):
        self.enqueued.labels(queue=queue, kind=kind).inc()

    def inc_skipped(self, kind: str):
        self.skipped.labels(kind=kind).inc()

    def inc_sent(self, queue: str):
        self.sent.labels(queue=queue).inc()

    def inc_failed(self, queue: str, reason: str | None = None):
        """Increase the ``failed`` counter, labelled with the error code."""
        self.failed.labels(queue=queue, reason=reason or "unknown").inc()

    def inc_retried(self, queue: str):
        self.retried.labels(queue=queue).inc()

    def inc_cancelled(self, queue: str):
        self.cancelled.labels(queue=queue).inc()

    def set_pending(self, queue: str, value: int):
        self.pending.labels(queue=queue).set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
