"""
deferline.orchestration.dispatcher - Request Initiation
=========================================================

The Dispatcher is the entry point of the request-handling side. Given a
request-id it decides, once, how the work behind it gets done:

    initiate(processor, owner, request_id, trace, wait_budget_ms, payload, is_initial)
        │
        ├── record exists?
        │     completed → return stored result
        │     failed    → raise RequestFailedError (never re-executes)
        │     processing→ wait / pending
        │
        ├── write "processing" marker (background, advisory)
        │
        ├── wait_budget ≥ max_synchronous_wait_ms  OR  no queue configured
        │     → SYNCHRONOUS: run the Processor inline, write terminal record
        │
        └── otherwise
              → ASYNCHRONOUS: publish JobEnvelope, then Waiter, then pending

Returning None means "pending": the caller should come back later.

The marker write runs as a task owned by a RequestScope. The critical path
never awaits it; the scope drains it for a short while when the request
finishes and cancels it if it is still running after that. Because the
marker is create-if-absent, it can never overwrite a terminal outcome no
matter when it lands.
"""

from __future__ import annotations

import asyncio
from types import TracebackType
from typing import Any, Coroutine, Optional, Union

import structlog

from deferline.core.config import DispatchConfig
from deferline.core.enums import RequestStatus
from deferline.core.exceptions import RequestFailedError, StateStoreError, WorkQueueError
from deferline.core.models import ErrorDescriptor, JobEnvelope, RequestRecord, TraceContext
from deferline.orchestration.classifier import classify_error, describe_error
from deferline.orchestration.processor import (
    Processor,
    ProcessorContext,
    ProcessorFunc,
    as_processor,
)
from deferline.orchestration.state_store import RequestStore
from deferline.orchestration.waiter import Waiter, outcome_of
from deferline.orchestration.work_queue import WorkQueue

logger = structlog.get_logger()


# =============================================================================
# Request Scope
# =============================================================================
# Bounds the lifetime of background work started while handling a request.
# Nothing spawned here outlives the request by more than drain_timeout.
# =============================================================================
class RequestScope:
    """Async context manager owning the background tasks of one request.

    Example:
        >>> async with RequestScope("req-1") as scope:
        ...     scope.spawn(store.mark_processing("user-1", "req-1"))
        ...     result = await processor.run(payload, context)
    """

    def __init__(self, request_id: str, drain_timeout_ms: int = 500) -> None:
        self.request_id = request_id
        self._drain_timeout = drain_timeout_ms / 1000.0
        self._tasks: set[asyncio.Task[Any]] = set()
        self._logger = logger.bind(component="request_scope", request_id=request_id)

    @property
    def pending_tasks(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Start ``coro`` in the background, owned by this scope."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    async def close(self) -> None:
        """Wait up to the drain timeout for background tasks, then cancel the rest."""
        pending = [task for task in self._tasks if not task.done()]
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=self._drain_timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            self._logger.warning("background_tasks_cancelled", count=len(still_running))

    async def __aenter__(self) -> RequestScope:
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.close()

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._logger.error("background_task_failed", error=str(error))


# =============================================================================
# Dispatcher
# =============================================================================
class Dispatcher:
    """Chooses between inline execution and queueing for each request.

    Args:
        store: The Request Record store.
        queue: The work queue. None selects local synchronous mode.
        config: Dispatch settings.
        waiter: Optional Waiter (built from store + config when omitted).
    """

    def __init__(
        self,
        store: RequestStore,
        queue: Optional[WorkQueue] = None,
        config: Optional[DispatchConfig] = None,
        waiter: Optional[Waiter] = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._config = config or DispatchConfig()
        self._waiter = waiter or Waiter(store, self._config)
        self._logger = logger.bind(component="dispatcher")

    @property
    def has_queue(self) -> bool:
        return self._queue is not None

    def uses_synchronous_path(self, wait_budget_ms: int) -> bool:
        """True when a request with this budget will run inline."""
        return self._queue is None or wait_budget_ms >= self._config.max_synchronous_wait_ms

    async def initiate(
        self,
        processor: Union[Processor, ProcessorFunc],
        owner_id: str,
        request_id: str,
        trace: Optional[TraceContext] = None,
        wait_budget_ms: int = 0,
        payload: Optional[dict[str, Any]] = None,
        is_initial: bool = True,
    ) -> Optional[dict[str, Any]]:
        """Start (or look up) the work for a request.

        Returns:
            The result, or None if the request is pending.

        Raises:
            RequestFailedError: If the request is (or just became) failed.
            StateStoreError: If a re-poll cannot read the Request Record.
        """
        processor = as_processor(processor)
        trace = trace or TraceContext()
        payload = payload or {}

        async with RequestScope(request_id, self._config.marker_drain_timeout_ms) as scope:
            existing = await self._read_existing(owner_id, request_id, is_initial)
            if existing is not None:
                if existing.is_terminal:
                    self._logger.info(
                        "request_already_terminal",
                        request_id=request_id,
                        status=existing.status.value,
                    )
                    return outcome_of(existing)
                self._logger.info("request_in_progress", request_id=request_id)
                return await self._await_outcome(owner_id, request_id, wait_budget_ms)

            if not is_initial:
                self._logger.info("repoll_of_unknown_request", request_id=request_id)

            scope.spawn(self._write_marker(owner_id, request_id, trace))

            if self.uses_synchronous_path(wait_budget_ms):
                return await self._run_inline(processor, owner_id, request_id, trace, payload)

            await self._enqueue(owner_id, request_id, trace, payload)
            return await self._await_outcome(owner_id, request_id, wait_budget_ms)

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------
    async def _read_existing(
        self,
        owner_id: str,
        request_id: str,
        is_initial: bool,
    ) -> Optional[RequestRecord]:
        try:
            return await self._store.get(owner_id, request_id)
        except StateStoreError as exc:
            if not is_initial:
                raise
            self._logger.warning(
                "existing_record_read_failed",
                request_id=request_id,
                error=exc.message,
            )
            return None

    async def _write_marker(
        self,
        owner_id: str,
        request_id: str,
        trace: TraceContext,
    ) -> None:
        # Advisory only: a failure here never affects the request.
        try:
            created = await self._store.mark_processing(owner_id, request_id, trace)
        except Exception as exc:
            self._logger.warning(
                "processing_marker_failed",
                request_id=request_id,
                error=str(exc),
            )
            return
        if created:
            self._logger.debug("request_marked_processing", request_id=request_id)

    async def _run_inline(
        self,
        processor: Processor,
        owner_id: str,
        request_id: str,
        trace: TraceContext,
        payload: dict[str, Any],
    ) -> Optional[dict[str, Any]]:
        self._logger.info(
            "inline_execution_started",
            request_id=request_id,
            processor=processor.name,
        )
        context = ProcessorContext(owner_id=owner_id, request_id=request_id, trace=trace)
        try:
            result = await processor.run(payload, context)
        except Exception as exc:
            classification = classify_error(exc)
            descriptor = describe_error(exc, classification)
            self._logger.warning(
                "inline_processor_failed",
                request_id=request_id,
                kind=classification.kind.value,
                retryable=classification.retryable,
                error=descriptor.message,
            )
            stored = await self._record_failure(owner_id, request_id, descriptor, trace)
            if stored is not None and stored.status is RequestStatus.COMPLETED:
                # A concurrent duplicate completed first; its outcome stands.
                return outcome_of(stored)
            raise RequestFailedError(
                stored.error() if stored is not None else descriptor,
                request_id=request_id,
            ) from exc

        try:
            record = await self._store.complete(owner_id, request_id, result, trace)
        except StateStoreError as exc:
            self._logger.error(
                "terminal_write_failed",
                request_id=request_id,
                status="completed",
                error=exc.message,
            )
            return result
        self._logger.info("inline_execution_completed", request_id=request_id)
        return outcome_of(record)

    async def _enqueue(
        self,
        owner_id: str,
        request_id: str,
        trace: TraceContext,
        payload: dict[str, Any],
    ) -> None:
        queue = self._require_queue()
        envelope = JobEnvelope(
            owner_id=owner_id,
            request_id=request_id,
            trace_context=trace,
            payload=payload,
        )
        try:
            message_id = await queue.publish(envelope)
        except Exception as exc:
            descriptor = describe_error(exc)
            self._logger.error(
                "job_publish_failed",
                request_id=request_id,
                error=descriptor.message,
            )
            await self._record_failure(owner_id, request_id, descriptor, trace)
            return
        self._logger.info("job_enqueued", request_id=request_id, message_id=message_id)

    async def _await_outcome(
        self,
        owner_id: str,
        request_id: str,
        wait_budget_ms: int,
    ) -> Optional[dict[str, Any]]:
        if wait_budget_ms > 0:
            result = await self._waiter.wait(owner_id, request_id, wait_budget_ms)
            if result is not None:
                return result
        try:
            return await self._waiter.check(owner_id, request_id)
        except StateStoreError as exc:
            self._logger.warning(
                "final_check_failed",
                request_id=request_id,
                error=exc.message,
            )
            return None

    async def _record_failure(
        self,
        owner_id: str,
        request_id: str,
        descriptor: ErrorDescriptor,
        trace: TraceContext,
    ) -> Optional[RequestRecord]:
        try:
            return await self._store.fail(owner_id, request_id, descriptor, trace)
        except StateStoreError as exc:
            self._logger.error(
                "terminal_write_failed",
                request_id=request_id,
                status="failed",
                error=exc.message,
            )
            return None

    def _require_queue(self) -> WorkQueue:
        if self._queue is None:
            raise WorkQueueError(
                message="Dispatcher has no queue to publish to",
                error_code="QUEUE_NOT_CONFIGURED",
                retryable=False,
            )
        return self._queue
