"""
deferline.orchestration.worker - Queue Consumer
=================================================

The Worker executes deferred jobs. For every delivery it:

    1. Decodes the JobEnvelope        malformed → log, drop (acknowledged)
    2. Runs the Processor
    3. On success                     → write ``completed``      (acknowledged)
    4. On failure, classify:
         retryable                    → re-raise, no write       (redelivered)
         terminal                     → write ``failed``         (acknowledged)

A retryable failure leaves the Request Record in ``processing`` so a later
delivery can still complete it. A terminal failure is written exactly once
and the message is not seen again.

Delivery is at-least-once: the same request-id can be processed twice,
even concurrently. That is safe because the state store keeps the first
terminal write and ignores the rest.

Batches:
    process_batch() handles every delivery independently and reports which
    message ids should be redelivered, so one poisoned message does not
    force the whole batch back onto the queue.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Union

import structlog
from pydantic import BaseModel, Field

from deferline.core.config import WorkerConfig
from deferline.core.enums import WorkerOutcome
from deferline.core.exceptions import MalformedJobError, WorkQueueError
from deferline.core.models import JobEnvelope
from deferline.orchestration.classifier import classify_error, describe_error
from deferline.orchestration.processor import (
    Processor,
    ProcessorContext,
    ProcessorFunc,
    as_processor,
)
from deferline.orchestration.state_store import RequestStore
from deferline.orchestration.work_queue import Delivery, WorkQueue

logger = structlog.get_logger()

# Pause between empty receives when the queue does not long-poll.
_IDLE_SLEEP_SECONDS = 0.05
_RECEIVE_ERROR_BACKOFF_SECONDS = 1.0


class BatchReport(BaseModel):
    """Outcome of one batch.

    Attributes:
        outcomes: message_id → WorkerOutcome for every delivery.
        retry_message_ids: Deliveries that must be redelivered.
    """

    outcomes: dict[str, WorkerOutcome] = Field(default_factory=dict)
    retry_message_ids: list[str] = Field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return not self.retry_message_ids


class Worker:
    """Consumes jobs from a WorkQueue and records their outcomes.

    Example:
        >>> worker = Worker(processor, store, queue, WorkerConfig(concurrency=2))
        >>> await worker.start()
        >>> ...
        >>> await worker.stop()
    """

    def __init__(
        self,
        processor: Union[Processor, ProcessorFunc],
        store: RequestStore,
        queue: Optional[WorkQueue] = None,
        config: Optional[WorkerConfig] = None,
    ) -> None:
        self._processor = as_processor(processor)
        self._store = store
        self._queue = queue
        self._config = config or WorkerConfig()

        self._stop_event = asyncio.Event()
        self._run_task: Optional[asyncio.Task[None]] = None
        self._processed_count: int = 0
        self._logger = logger.bind(component="worker", processor=self._processor.name)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------
    @property
    def is_running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    @property
    def processed_count(self) -> int:
        """Deliveries handled to an outcome (any outcome, including RETRY)."""
        return self._processed_count

    # -------------------------------------------------------------------------
    # Single Message
    # -------------------------------------------------------------------------
    async def handle_message(self, body: str) -> WorkerOutcome:
        """Process one raw queue message body.

        Returns:
            COMPLETED, FAILED or DROPPED.

        Raises:
            Exception: The Processor's own error when it is retryable, or a
                StateStoreError when the outcome could not be persisted.
                Either way the message should be redelivered.
        """
        try:
            envelope = JobEnvelope.from_json(body)
        except MalformedJobError as exc:
            self._logger.error(
                "malformed_job_dropped",
                error=exc.message,
                details=exc.details,
            )
            return WorkerOutcome.DROPPED

        with structlog.contextvars.bound_contextvars(
            request_id=envelope.request_id,
            **envelope.trace_context.log_fields(),
        ):
            return await self._execute(envelope)

    async def handle_delivery(self, delivery: Delivery) -> WorkerOutcome:
        """Process one delivery. Same contract as ``handle_message``."""
        with structlog.contextvars.bound_contextvars(
            message_id=delivery.message_id,
            receive_count=delivery.receive_count,
        ):
            return await self.handle_message(delivery.body)

    async def _execute(self, envelope: JobEnvelope) -> WorkerOutcome:
        context = ProcessorContext(
            owner_id=envelope.owner_id,
            request_id=envelope.request_id,
            trace=envelope.trace_context,
        )
        self._logger.info("job_started")
        try:
            result = await self._processor.run(envelope.payload, context)
        except Exception as exc:
            classification = classify_error(exc)
            if classification.retryable:
                self._logger.warning(
                    "worker_retryable_error",
                    kind=classification.kind.value,
                    error=str(exc),
                )
                raise
            descriptor = describe_error(exc, classification)
            self._logger.warning(
                "worker_terminal_error",
                kind=classification.kind.value,
                error=descriptor.message,
            )
            await self._store.fail(
                envelope.owner_id,
                envelope.request_id,
                descriptor,
                envelope.trace_context,
            )
            return WorkerOutcome.FAILED

        await self._store.complete(
            envelope.owner_id,
            envelope.request_id,
            result,
            envelope.trace_context,
        )
        self._logger.info("job_completed")
        return WorkerOutcome.COMPLETED

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------
    async def process_batch(self, deliveries: list[Delivery]) -> BatchReport:
        """Process deliveries concurrently with isolated failure handling."""
        settled = await asyncio.gather(*(self._settle(d) for d in deliveries))

        report = BatchReport()
        for delivery, outcome in zip(deliveries, settled):
            report.outcomes[delivery.message_id] = outcome
            if outcome is WorkerOutcome.RETRY:
                report.retry_message_ids.append(delivery.message_id)
        self._processed_count += len(deliveries)

        if report.retry_message_ids:
            self._logger.info(
                "batch_partial_failure",
                batch_size=len(deliveries),
                retry_count=len(report.retry_message_ids),
            )
        return report

    async def _settle(self, delivery: Delivery) -> WorkerOutcome:
        try:
            return await self.handle_delivery(delivery)
        except Exception as exc:
            self._logger.warning(
                "delivery_marked_for_retry",
                message_id=delivery.message_id,
                error=str(exc),
            )
            return WorkerOutcome.RETRY

    # -------------------------------------------------------------------------
    # Consume Loop
    # -------------------------------------------------------------------------
    async def start(self) -> None:
        """Start consuming in the background. Idempotent."""
        if self.is_running:
            return
        self._require_queue()
        self._stop_event.clear()
        self._run_task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Signal the consume loops to finish and wait for them."""
        self._stop_event.set()
        if self._run_task is not None:
            await self._run_task
            self._run_task = None

    async def run(self) -> None:
        """Consume until ``stop()`` is called, using ``concurrency`` loops."""
        self._require_queue()
        self._logger.info("worker_started", concurrency=self._config.concurrency)
        await asyncio.gather(
            *(self._consume_loop(slot) for slot in range(self._config.concurrency))
        )
        self._logger.info("worker_stopped", processed=self._processed_count)

    async def _consume_loop(self, slot: int) -> None:
        queue = self._require_queue()
        while not self._stop_event.is_set():
            try:
                await self._consume_once(queue, slot)
            except Exception:
                # Keeps the slot alive; an unacknowledged delivery is
                # redelivered by the queue.
                self._logger.exception("consume_loop_error", slot=slot)
                await self._pause(_RECEIVE_ERROR_BACKOFF_SECONDS)

    async def _consume_once(self, queue: WorkQueue, slot: int) -> None:
        try:
            deliveries = await queue.receive(
                max_messages=self._config.batch_size,
                wait_seconds=self._config.receive_wait_seconds,
            )
        except WorkQueueError as exc:
            self._logger.error("queue_receive_failed", slot=slot, error=exc.message)
            await self._pause(_RECEIVE_ERROR_BACKOFF_SECONDS)
            return

        if not deliveries:
            if self._config.receive_wait_seconds <= 0:
                await self._pause(_IDLE_SLEEP_SECONDS)
            return

        report = await self.process_batch(deliveries)
        for delivery in deliveries:
            try:
                if delivery.message_id in report.retry_message_ids:
                    await queue.release(delivery)
                else:
                    await queue.ack(delivery)
            except WorkQueueError as exc:
                self._logger.error(
                    "delivery_settle_failed",
                    message_id=delivery.message_id,
                    error=exc.message,
                )

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _require_queue(self) -> WorkQueue:
        if self._queue is None:
            raise WorkQueueError(
                message="Worker has no queue to consume from",
                error_code="QUEUE_NOT_CONFIGURED",
                retryable=False,
            )
        return self._queue
