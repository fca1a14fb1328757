"""Split bulk sends into chunk envelopes dispatched at staggered times."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from .builder import EnvelopeBuilder
from .errors import EnvelopeValidationError
from .logger import get_logger
from .models import BatchJob, BatchRecipient, JobKind, new_job_id

DEFAULT_CHUNK_SIZE = 10
DEFAULT_INTER_CHUNK_DELAY_MS = 5000
DEFAULT_BATCH_MAX_ATTEMPTS = 2


def _normalise_recipient(item: Any) -> Dict[str, Any]:
    if isinstance(item, str):
        item = {"email": item}
    if not isinstance(item, dict):
        raise ValueError("recipient must be an address or an object with an 'email' field")
    try:
        return BatchRecipient.model_validate(item).model_dump(exclude_none=True)
    except ValidationError as exc:
        reason = "; ".join(err.get("msg", "invalid") for err in exc.errors())
        raise ValueError(reason) from None


class BatchSplitter:
    def __init__(
        self,
        builder: EnvelopeBuilder,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        inter_chunk_delay_ms: int = DEFAULT_INTER_CHUNK_DELAY_MS,
    ):
        self.builder = builder
        self.chunk_size = chunk_size
        self.inter_chunk_delay_ms = inter_chunk_delay_ms
        self.logger = get_logger("NotifyQueue.batch")

    async def split(
        self,
        recipients: Iterable[Any],
        chunk_size: Optional[int] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> BatchJob:
        """Partition ``recipients`` into chunk envelopes.

        Chunk ``i`` is delayed by ``i * inter_chunk_delay_ms``. Invalid
        recipients are reported in ``failures`` and never abort the batch;
        a chunk left without valid recipients produces no envelope.
        """
        options = dict(options or {})
        size = self.chunk_size if chunk_size is None else chunk_size
        if isinstance(size, bool) or not isinstance(size, int) or size < 1:
            raise EnvelopeValidationError("chunk_size must be a positive integer")
        if recipients is None or isinstance(recipients, (str, dict)):
            raise EnvelopeValidationError("recipients must be a list")
        priority = options.get("priority")
        if priority is not None and (
            isinstance(priority, bool) or not isinstance(priority, int) or not 0 <= priority <= 100
        ):
            raise EnvelopeValidationError("Priority must be an integer between 0 and 100")
        items = list(recipients)
        delay_step = int(options.get("inter_chunk_delay_ms", self.inter_chunk_delay_ms))

        batch = BatchJob(id=options.get("batch_id") or new_job_id(), total_recipients=len(items))
        partitions = [items[i : i + size] for i in range(0, len(items), size)]

        for index, partition in enumerate(partitions):
            valid: List[Dict[str, Any]] = []
            for item in partition:
                try:
                    valid.append(_normalise_recipient(item))
                except ValueError as exc:
                    batch.failures.append({"recipient": item, "reason": str(exc)})
            if not valid:
                continue

            payload = {
                "batch_id": batch.id,
                "chunk_index": index,
                "total_chunks": len(partitions),
                "recipients": valid,
            }
            for key in ("subject", "template"):
                if options.get(key) is not None:
                    payload[key] = options[key]
            chunk_options = {
                "delay_ms": index * delay_step,
                "batch_id": batch.id,
                "max_attempts": options.get("max_attempts", DEFAULT_BATCH_MAX_ATTEMPTS),
            }
            if options.get("priority") is not None:
                chunk_options["priority"] = options["priority"]
            try:
                envelope = await self.builder.build(JobKind.BATCH_CHUNK, payload, chunk_options)
            except EnvelopeValidationError as exc:
                for recipient in valid:
                    batch.failures.append({"recipient": recipient, "reason": str(exc)})
                continue
            batch.chunks.append(envelope)

        self.logger.info(
            "Batch %s: %d recipients in %d chunks, %d rejected",
            batch.id,
            batch.total_recipients,
            len(batch.chunks),
            batch.failed_to_queue,
        )
        return batch
