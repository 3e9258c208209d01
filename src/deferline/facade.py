"""
deferline.facade - Deferline Top-Level Facade
===============================================

This module implements the Deferline facade, the single entry point that
wires a Processor to the orchestration components and manages their
lifecycle.

Architecture Context:

    ┌──────────────────────────────────────────────────┐
    │                 Deferline (Facade)                │
    │                                                   │
    │   handle(inbound) ──→ Dispatcher ──→ Responder    │
    │                          │    ↘                   │
    │                          │     Waiter             │
    │                          ↓                        │
    │                     WorkQueue ──→ Worker          │
    │                          ↘          ↙             │
    │                         RequestStore              │
    └──────────────────────────────────────────────────┘

Inbound Headers:
    x-request-id        Idempotency token (generated when absent)
    x-initial-request   "true" for a fresh submission, absent on re-polls
    x-wait-time-ms      How long the caller is willing to block
    traceparent         W3C trace context, passed through untouched
    x-correlationid     Correlation id (defaults to the request-id)

Usage:
    >>> async with Deferline(build_report) as app:
    ...     response = await app.handle(inbound, owner_id="user-123", payload=body)

    Consumers run in the same process (dev) or in a separate one (prod):
    >>> await app.start_workers()
"""

from __future__ import annotations

import uuid
from typing import Any, Optional, Union

import structlog

from deferline.core.config import DeferlineConfig, configure_logging
from deferline.core.exceptions import ConfigurationError, RequestFailedError
from deferline.core.identity import OwnerHasher
from deferline.core.models import InboundRequest, OutboundResponse, TraceContext
from deferline.orchestration.dispatcher import Dispatcher
from deferline.orchestration.processor import Processor, ProcessorFunc, as_processor
from deferline.orchestration.responder import Responder
from deferline.orchestration.state_store import (
    InMemoryRequestStore,
    RedisRequestStore,
    RequestStore,
)
from deferline.orchestration.waiter import Waiter
from deferline.orchestration.work_queue import (
    InMemoryWorkQueue,
    RedisWorkQueue,
    WorkQueue,
)
from deferline.orchestration.worker import Worker

# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()

REQUEST_ID_HEADER = "x-request-id"
INITIAL_REQUEST_HEADER = "x-initial-request"
WAIT_TIME_HEADER = "x-wait-time-ms"
TRACEPARENT_HEADER = "traceparent"
CORRELATION_ID_HEADER = "x-correlationid"


class Deferline:
    """Top-level facade for asynchronous request orchestration.

    Lifecycle:
        1. ``Deferline(processor, config)``  Instantiate
        2. ``await initialize()``            Configure logging, connect store/queue
        3. ``await handle(inbound, ...)``    Serve requests
        4. ``await start_workers()``         Optionally consume in-process
        5. ``await shutdown()``              Stop workers, disconnect

    Args:
        processor: The work behind every request (a Processor or a function).
        config: Configuration. Defaults to DeferlineConfig() (env vars).
        store: Optional custom Request Record store. Defaults to the Redis
            store when persistence is enabled, otherwise in-memory.
        queue: Optional custom work queue. Same defaults as ``store``.
        use_queue: False runs every request inline (local mode) when no
            queue is passed explicitly.
        data_key: Optional key to wrap success bodies in.
    """

    def __init__(
        self,
        processor: Union[Processor, ProcessorFunc],
        config: Optional[DeferlineConfig] = None,
        *,
        store: Optional[RequestStore] = None,
        queue: Optional[WorkQueue] = None,
        use_queue: bool = True,
        data_key: Optional[str] = None,
    ) -> None:
        # --- Configuration ---
        self._config = config or DeferlineConfig()
        self._processor = as_processor(processor)

        # --- Infrastructure ---
        salt = self._config.owner_hash_salt
        hasher = OwnerHasher(salt.get_secret_value() if salt else None)
        self._store = store or self._default_store(hasher)
        if queue is None and use_queue:
            queue = self._default_queue()
        self._queue = queue

        # --- Orchestration ---
        dispatch = self._config.dispatch
        self._waiter = Waiter(self._store, dispatch)
        self._dispatcher = Dispatcher(self._store, self._queue, dispatch, self._waiter)
        self._responder = Responder(dispatch, data_key=data_key)
        self._worker = Worker(self._processor, self._store, self._queue, self._config.worker)

        # --- Tracking ---
        self._initialized = False
        self._logger = logger.bind(component="deferline")

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> DeferlineConfig:
        return self._config

    @property
    def store(self) -> RequestStore:
        """Access the Request Record store."""
        return self._store

    @property
    def queue(self) -> Optional[WorkQueue]:
        """Access the work queue (None in local synchronous mode)."""
        return self._queue

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def worker(self) -> Worker:
        return self._worker

    @property
    def responder(self) -> Responder:
        return self._responder

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # =========================================================================
    # Lifecycle Management
    # =========================================================================

    async def initialize(self) -> None:
        """Configure logging and connect the store and queue.

        Idempotent: Safe to call multiple times.
        """
        if self._initialized:
            self._logger.debug("deferline_already_initialized")
            return

        configure_logging(self._config.log_level, self._config.log_json)
        self._logger.info(
            "deferline_initializing",
            environment=self._config.environment,
            persistence=self._config.enable_persistence,
            queue=self._queue is not None,
        )

        await self._store.connect()
        if self._queue is not None:
            await self._queue.connect()

        self._initialized = True
        self._logger.info("deferline_initialized")

    async def shutdown(self) -> None:
        """Stop workers, then disconnect queue and store.

        Idempotent: Safe to call multiple times.
        """
        if not self._initialized:
            self._logger.debug("deferline_not_initialized_skipping_shutdown")
            return

        self._logger.info("deferline_shutting_down")
        await self._worker.stop()
        if self._queue is not None:
            await self._queue.disconnect()
        await self._store.disconnect()

        self._initialized = False
        self._logger.info("deferline_shutdown_complete")

    async def __aenter__(self) -> Deferline:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.shutdown()

    # =========================================================================
    # Request Handling
    # =========================================================================

    async def handle(
        self,
        inbound: InboundRequest,
        owner_id: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> OutboundResponse:
        """Handle one inbound call end to end.

        Never raises for request-level problems: a stored failure becomes a
        failure response and any other exception a generic 500.

        Args:
            inbound: The incoming call (URL and headers).
            owner_id: The authenticated caller.
            payload: The request payload handed to the Processor.

        Raises:
            RuntimeError: If Deferline has not been initialized.
        """
        self._ensure_initialized()

        request_id = inbound.header(REQUEST_ID_HEADER) or str(uuid.uuid4())
        trace = TraceContext(
            traceparent=inbound.header(TRACEPARENT_HEADER),
            correlation_id=inbound.header(CORRELATION_ID_HEADER) or request_id,
        )
        is_initial = _parse_flag(inbound.header(INITIAL_REQUEST_HEADER))
        wait_ms = _parse_wait_ms(
            inbound.header(WAIT_TIME_HEADER),
            self._config.dispatch.default_wait_ms,
        )

        with structlog.contextvars.bound_contextvars(
            request_id=request_id,
            **trace.log_fields(),
        ):
            self._logger.info(
                "request_received",
                method=inbound.method,
                is_initial=is_initial,
                wait_ms=wait_ms,
            )
            try:
                result = await self._dispatcher.initiate(
                    self._processor,
                    owner_id,
                    request_id,
                    trace=trace,
                    wait_budget_ms=wait_ms,
                    payload=payload,
                    is_initial=is_initial,
                )
                return self._responder.respond(result, inbound.location, request_id, trace)
            except RequestFailedError as exc:
                return self._responder.failure(exc, request_id, trace)
            except Exception:
                self._logger.exception("request_orchestration_failed")
                return self._responder.internal_error(request_id, trace)

    async def submit(
        self,
        owner_id: str,
        payload: Optional[dict[str, Any]] = None,
        *,
        request_id: Optional[str] = None,
        wait_ms: Optional[int] = None,
        is_initial: bool = True,
        trace: Optional[TraceContext] = None,
    ) -> Optional[dict[str, Any]]:
        """Initiate a request programmatically.

        Returns:
            The result, or None if pending.

        Raises:
            RequestFailedError: If the request failed.
            RuntimeError: If Deferline has not been initialized.
        """
        self._ensure_initialized()
        request_id = request_id or str(uuid.uuid4())
        if wait_ms is None:
            wait_ms = self._config.dispatch.default_wait_ms
        return await self._dispatcher.initiate(
            self._processor,
            owner_id,
            request_id,
            trace=trace or TraceContext(correlation_id=request_id),
            wait_budget_ms=wait_ms,
            payload=payload,
            is_initial=is_initial,
        )

    # =========================================================================
    # Worker Control
    # =========================================================================

    async def start_workers(self) -> None:
        """Start consuming the work queue in this process."""
        self._ensure_initialized()
        if self._queue is None:
            raise ConfigurationError(
                message="Workers need a work queue; Deferline runs in local synchronous mode",
                error_code="NO_WORK_QUEUE",
            )
        await self._worker.start()
        self._logger.info("workers_started", concurrency=self._config.worker.concurrency)

    async def stop_workers(self) -> None:
        await self._worker.stop()
        self._logger.info("workers_stopped")

    # =========================================================================
    # Internal Helpers
    # =========================================================================

    def _default_store(self, hasher: OwnerHasher) -> RequestStore:
        ttl = self._config.dispatch.record_ttl_seconds
        if self._config.enable_persistence:
            return RedisRequestStore(self._config.redis, hasher, ttl)
        return InMemoryRequestStore(hasher, ttl)

    def _default_queue(self) -> WorkQueue:
        worker = self._config.worker
        if self._config.enable_persistence:
            return RedisWorkQueue(self._config.redis, worker.max_receive_count)
        return InMemoryWorkQueue(worker.max_receive_count, worker.visibility_timeout_seconds)

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError(
                "Deferline is not initialized. "
                "Call 'await deferline.initialize()' or use 'async with Deferline(...)'."
            )

    def __repr__(self) -> str:
        return (
            f"Deferline("
            f"processor={self._processor.name!r}, "
            f"queue={type(self._queue).__name__ if self._queue else None}, "
            f"initialized={self._initialized})"
        )


def _parse_flag(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() in ("true", "1", "yes")


def _parse_wait_ms(value: Optional[str], default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        return max(int(float(value)), 0)
    except (ValueError, OverflowError):
        logger.warning("invalid_wait_header_ignored", component="deferline", value=value)
        return default
