"""
Tests for deferline.facade - Deferline Top-Level Facade
=========================================================

These tests verify the Deferline facade, the main entry point that wires a
Processor to the store, queue, Dispatcher, Worker and Responder.

What's Being Tested:
    - Initialization and shutdown lifecycle
    - Async context manager (async with)
    - handle(): header parsing, 200 / 202 / failure / 500 responses
    - submit(): programmatic initiation
    - Local synchronous mode (no queue)
    - Worker control through the facade
    - Error handling (uninitialized access)

All tests use in-memory implementations, no external dependencies.
"""

import asyncio

import pytest

from deferline import Deferline
from deferline.core.config import DeferlineConfig
from deferline.core.exceptions import (
    ConfigurationError,
    RequestFailedError,
    StateStoreError,
    UpstreamRejectedError,
)
from deferline.core.models import InboundRequest
from deferline.orchestration.state_store import InMemoryRequestStore
from deferline.orchestration.work_queue import InMemoryWorkQueue

URL = "https://api.example.com/vat/returns?period=24A1"


# =============================================================================
# Helpers
# =============================================================================
def _inbound(**headers: str) -> InboundRequest:
    return InboundRequest(url=URL, headers=headers)


async def _echo(payload, context):
    return {"owner": context.owner_id, "echo": payload}


# =============================================================================
# Tests: Initialization
# =============================================================================
class TestDeferlineInit:
    """Tests for Deferline construction and lifecycle."""

    def test_creates_with_defaults(self) -> None:
        app = Deferline(_echo)
        assert app.config is not None
        assert app.is_initialized is False
        assert isinstance(app.store, InMemoryRequestStore)
        assert isinstance(app.queue, InMemoryWorkQueue)

    def test_creates_with_custom_config(self, config) -> None:
        app = Deferline(_echo, config)
        assert app.config is config

    def test_local_mode_has_no_queue(self, config) -> None:
        app = Deferline(_echo, config, use_queue=False)
        assert app.queue is None
        assert app.dispatcher.has_queue is False

    async def test_initialize_and_shutdown(self, config) -> None:
        app = Deferline(_echo, config)

        await app.initialize()
        assert app.is_initialized is True
        assert app.store.is_connected

        await app.shutdown()
        assert app.is_initialized is False

    async def test_lifecycle_is_idempotent(self, config) -> None:
        app = Deferline(_echo, config)
        await app.initialize()
        await app.initialize()
        await app.shutdown()
        await app.shutdown()
        assert app.is_initialized is False

    async def test_async_context_manager(self, config) -> None:
        async with Deferline(_echo, config) as app:
            assert app.is_initialized is True
        assert app.is_initialized is False

    async def test_handle_before_initialize_raises(self, config) -> None:
        app = Deferline(_echo, config)
        with pytest.raises(RuntimeError, match="not initialized"):
            await app.handle(_inbound(), owner_id="user-1")

    def test_repr(self, config) -> None:
        assert "_echo" in repr(Deferline(_echo, config))


# =============================================================================
# Tests: handle()
# =============================================================================
class TestDeferlineHandle:

    async def test_sync_budget_returns_200(self, config) -> None:
        async with Deferline(_echo, config) as app:
            response = await app.handle(
                _inbound(**{"x-request-id": "req-1", "x-wait-time-ms": "25000"}),
                owner_id="user-1",
                payload={"n": 1},
            )

        assert response.status_code == 200
        assert response.body == {"owner": "user-1", "echo": {"n": 1}}
        assert response.headers["x-request-id"] == "req-1"
        assert response.headers["x-correlationid"] == "req-1"

    async def test_zero_budget_returns_202(self, config) -> None:
        async with Deferline(_echo, config) as app:
            response = await app.handle(
                _inbound(**{"x-request-id": "req-1", "x-initial-request": "true"}),
                owner_id="user-1",
            )
            assert app.queue.published_count == 1

        assert response.status_code == 202
        assert response.headers["Location"] == "https://api.example.com/vat/returns"
        assert response.headers["Retry-After"] == "5"

    async def test_generates_request_id_when_absent(self, config) -> None:
        async with Deferline(_echo, config, use_queue=False) as app:
            response = await app.handle(_inbound(), owner_id="user-1")

        assert response.status_code == 200
        assert response.headers["x-request-id"]

    async def test_trace_headers_pass_through(self, config) -> None:
        async with Deferline(_echo, config, use_queue=False) as app:
            response = await app.handle(
                _inbound(**{
                    "X-Request-Id": "req-1",
                    "traceparent": "00-abc-def-01",
                    "x-correlationid": "corr-9",
                }),
                owner_id="user-1",
            )

        assert response.headers["traceparent"] == "00-abc-def-01"
        assert response.headers["x-correlationid"] == "corr-9"

    async def test_failure_response_embeds_descriptor(self, config) -> None:
        async def reject(payload):
            raise UpstreamRejectedError("VAT period not found", status_code=404)

        async with Deferline(reject, config, use_queue=False) as app:
            response = await app.handle(_inbound(**{"x-request-id": "req-1"}), owner_id="user-1")

        assert response.status_code == 404
        assert response.body["error"]["message"] == "VAT period not found"

    async def test_unexpected_error_is_generic_500(self, config) -> None:
        async with Deferline(_echo, config) as app:
            async def broken_get(owner_id, request_id):
                raise StateStoreError("store down")

            app.store.get = broken_get
            response = await app.handle(_inbound(**{"x-request-id": "req-1"}), owner_id="user-1")

        assert response.status_code == 500
        assert response.body == {"message": "Internal server error", "requestId": "req-1"}

    async def test_out_of_range_result_status_is_plain_data(self, config) -> None:
        """A stored result with a bogus status_code keeps answering on every poll."""
        async def odd(payload):
            return {"status_code": 700, "x": 1}

        async with Deferline(odd, config, use_queue=False) as app:
            first = await app.handle(_inbound(**{"x-request-id": "req-1"}), owner_id="user-1")
            again = await app.handle(_inbound(**{"x-request-id": "req-1"}), owner_id="user-1")

        assert first.status_code == again.status_code == 200
        assert first.body == again.body == {"status_code": 700, "x": 1}

    async def test_response_building_error_is_generic_500(self, config) -> None:
        async with Deferline(_echo, config, use_queue=False) as app:
            def broken_respond(*args, **kwargs):
                raise ValueError("cannot render")

            app.responder.respond = broken_respond
            response = await app.handle(_inbound(**{"x-request-id": "req-1"}), owner_id="user-1")

        assert response.status_code == 500
        assert response.body == {"message": "Internal server error", "requestId": "req-1"}

    async def test_invalid_wait_header_uses_default(self, config) -> None:
        async with Deferline(_echo, config) as app:
            response = await app.handle(
                _inbound(**{"x-request-id": "req-1", "x-wait-time-ms": "soon"}),
                owner_id="user-1",
            )

        assert response.status_code == 202

    async def test_repoll_returns_stored_result(self, config) -> None:
        async with Deferline(_echo, config) as app:
            await app.store.complete("user-1", "req-1", {"done": True})
            response = await app.handle(_inbound(**{"x-request-id": "req-1"}), owner_id="user-1")

        assert response.status_code == 200
        assert response.body == {"done": True}


# =============================================================================
# Tests: submit() and workers
# =============================================================================
class TestDeferlineSubmitAndWorkers:

    async def test_submit_inline(self, config) -> None:
        async with Deferline(_echo, config, use_queue=False) as app:
            result = await app.submit("user-1", {"n": 2}, request_id="req-1")
        assert result == {"owner": "user-1", "echo": {"n": 2}}

    async def test_submit_failure_raises(self, config) -> None:
        async def reject(payload):
            raise ValueError("bad period")

        async with Deferline(reject, config, use_queue=False) as app:
            with pytest.raises(RequestFailedError):
                await app.submit("user-1", request_id="req-1")

    async def test_in_process_workers_complete_queued_requests(self, config) -> None:
        async with Deferline(_echo, config) as app:
            await app.start_workers()
            assert app.worker.is_running

            result = await app.submit("user-1", {"n": 3}, request_id="req-1", wait_ms=2_000)
            await app.stop_workers()

        assert result == {"owner": "user-1", "echo": {"n": 3}}
        assert not app.worker.is_running

    async def test_start_workers_without_queue_fails(self, config) -> None:
        async with Deferline(_echo, config, use_queue=False) as app:
            with pytest.raises(ConfigurationError) as exc_info:
                await app.start_workers()
        assert exc_info.value.error_code == "NO_WORK_QUEUE"

    async def test_shutdown_stops_running_workers(self, config) -> None:
        app = Deferline(_echo, config)
        await app.initialize()
        await app.start_workers()

        await asyncio.wait_for(app.shutdown(), timeout=2.0)
        assert not app.worker.is_running
