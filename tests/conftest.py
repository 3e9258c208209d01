"""
Shared Test Fixtures for deferline
====================================

This module provides reusable pytest fixtures used across the entire
test suite. Fixtures are organized by layer:

    1. Configuration fixtures (fast poll schedule for tests)
    2. Infrastructure fixtures (connected in-memory store and queue)
    3. Processor fixtures (a recording Processor test double)
    4. Orchestration fixtures (Waiter, Dispatcher, Worker, Responder)
    5. Redis fixtures (fakeredis server and client)
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import fakeredis
import pytest

from deferline.core.config import DeferlineConfig, DispatchConfig, WorkerConfig
from deferline.core.identity import OwnerHasher
from deferline.orchestration.dispatcher import Dispatcher
from deferline.orchestration.processor import Processor, ProcessorContext
from deferline.orchestration.responder import Responder
from deferline.orchestration.state_store import InMemoryRequestStore
from deferline.orchestration.waiter import Waiter
from deferline.orchestration.work_queue import InMemoryWorkQueue
from deferline.orchestration.worker import Worker


# =============================================================================
# Test Double: RecordingProcessor
# =============================================================================
# A deterministic Processor that records every invocation. It can be told to
# sleep first (to simulate slow upstreams) or to raise a given exception on
# each of its first N calls (to simulate transient failures).
# =============================================================================
class RecordingProcessor(Processor):
    """Processor test double that records calls."""

    def __init__(
        self,
        result: Any = None,
        delay: float = 0.0,
        error: Optional[BaseException] = None,
        fail_times: Optional[int] = None,
    ) -> None:
        self.result = {"ok": True} if result is None else result
        self.delay = delay
        self.error = error
        self.fail_times = fail_times
        self.calls: list[tuple[dict[str, Any], ProcessorContext]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def execute(self, payload: dict[str, Any], context: ProcessorContext) -> Any:
        self.calls.append((payload, context))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None and (
            self.fail_times is None or self.call_count <= self.fail_times
        ):
            raise self.error
        return self.result


# =============================================================================
# Configuration
# =============================================================================

@pytest.fixture
def dispatch_config() -> DispatchConfig:
    """Dispatch settings with a fast poll schedule (5ms → 20ms)."""
    return DispatchConfig(
        initial_poll_interval_ms=5,
        max_poll_interval_ms=20,
        marker_drain_timeout_ms=200,
    )


@pytest.fixture
def worker_config() -> WorkerConfig:
    """Worker settings that keep consume loops responsive in tests."""
    return WorkerConfig(receive_wait_seconds=0.05, batch_size=5)


@pytest.fixture
def config(dispatch_config, worker_config) -> DeferlineConfig:
    """DeferlineConfig for the dev environment with fast test settings."""
    return DeferlineConfig(
        environment="dev",
        dispatch=dispatch_config,
        worker=worker_config,
    )


# =============================================================================
# Infrastructure
# =============================================================================

@pytest.fixture
def hasher() -> OwnerHasher:
    return OwnerHasher(salt="test-salt")


@pytest.fixture
async def store(hasher):
    """Connected InMemoryRequestStore."""
    request_store = InMemoryRequestStore(hasher=hasher)
    await request_store.connect()
    yield request_store
    await request_store.disconnect()


@pytest.fixture
async def queue(worker_config):
    """Connected InMemoryWorkQueue."""
    work_queue = InMemoryWorkQueue(
        max_receive_count=worker_config.max_receive_count,
        visibility_timeout_seconds=worker_config.visibility_timeout_seconds,
    )
    await work_queue.connect()
    yield work_queue
    await work_queue.disconnect()


# =============================================================================
# Processors
# =============================================================================

@pytest.fixture
def processor() -> RecordingProcessor:
    """RecordingProcessor returning {"ok": True}."""
    return RecordingProcessor()


@pytest.fixture
def make_processor() -> Callable[..., RecordingProcessor]:
    """Factory for RecordingProcessors with custom behaviour."""
    return RecordingProcessor


# =============================================================================
# Orchestration
# =============================================================================

@pytest.fixture
def waiter(store, dispatch_config) -> Waiter:
    return Waiter(store, dispatch_config)


@pytest.fixture
def dispatcher(store, queue, dispatch_config) -> Dispatcher:
    """Dispatcher with a queue configured (asynchronous path available)."""
    return Dispatcher(store, queue, dispatch_config)


@pytest.fixture
def local_dispatcher(store, dispatch_config) -> Dispatcher:
    """Dispatcher without a queue (local synchronous mode)."""
    return Dispatcher(store, None, dispatch_config)


@pytest.fixture
def worker(processor, store, queue, worker_config) -> Worker:
    return Worker(processor, store, queue, worker_config)


@pytest.fixture
def responder(dispatch_config) -> Responder:
    return Responder(dispatch_config)


# =============================================================================
# Redis
# =============================================================================
# The Redis adapters run against fakeredis: real command semantics and real
# Lua scripting (via lupa), all in-process. Taking the server down with
# ``redis_server.connected = False`` makes every command raise
# redis.exceptions.ConnectionError.
# =============================================================================

@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
async def redis_client(redis_server):
    """FakeAsyncRedis client with decoded string responses."""
    client = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()
