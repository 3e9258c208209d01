"""
Tests for deferline.orchestration.work_queue
==============================================

What's Being Tested:
    - Publish / receive / ack:  the basic at-least-once cycle
    - Release:                  redelivery with an incremented receive count
    - Redrive policy:           dead-lettering after max_receive_count
    - Visibility timeout:       unacknowledged deliveries come back
    - Long polling:             receive() waits for a publish, or times out
    - Redis adapter:            list layout and redelivery (fakeredis)
"""

import asyncio
import json

import pytest

from deferline.core.config import RedisConfig
from deferline.core.exceptions import WorkQueueError
from deferline.core.models import JobEnvelope
from deferline.orchestration.work_queue import (
    InMemoryWorkQueue,
    RedisWorkQueue,
    WorkQueue,
)


def _make_envelope(request_id: str = "req-1") -> JobEnvelope:
    return JobEnvelope(owner_id="user-1", request_id=request_id, payload={"n": 1})


# =============================================================================
# Test Class: InMemoryWorkQueue
# =============================================================================
class TestInMemoryWorkQueue:

    def test_is_work_queue(self) -> None:
        assert isinstance(InMemoryWorkQueue(), WorkQueue)

    async def test_publish_then_receive(self, queue) -> None:
        message_id = await queue.publish(_make_envelope())

        [delivery] = await queue.receive()

        assert delivery.message_id == message_id
        assert delivery.receive_count == 1
        assert JobEnvelope.from_json(delivery.body).request_id == "req-1"
        assert queue.published_count == 1

    async def test_receive_empty_returns_nothing(self, queue) -> None:
        assert await queue.receive(max_messages=5) == []

    async def test_receive_respects_max_messages(self, queue) -> None:
        for i in range(3):
            await queue.publish(_make_envelope(f"req-{i}"))

        deliveries = await queue.receive(max_messages=2)

        assert len(deliveries) == 2
        assert queue.pending_count == 1
        assert queue.in_flight_count == 2

    async def test_fifo_order(self, queue) -> None:
        for i in range(3):
            await queue.publish(_make_envelope(f"req-{i}"))

        deliveries = await queue.receive(max_messages=3)
        ids = [JobEnvelope.from_json(d.body).request_id for d in deliveries]
        assert ids == ["req-0", "req-1", "req-2"]

    async def test_ack_removes_message(self, queue) -> None:
        await queue.publish(_make_envelope())
        [delivery] = await queue.receive()

        await queue.ack(delivery)

        assert queue.in_flight_count == 0
        assert await queue.receive() == []

    async def test_release_redelivers_with_incremented_count(self, queue) -> None:
        await queue.publish(_make_envelope())
        [first] = await queue.receive()

        await queue.release(first)
        [second] = await queue.receive()

        assert second.message_id == first.message_id
        assert second.receive_count == 2

    async def test_redrive_to_dead_letters(self) -> None:
        """A message received more than max_receive_count times is parked."""
        work_queue = InMemoryWorkQueue(max_receive_count=2)
        await work_queue.connect()
        await work_queue.publish(_make_envelope())

        for _ in range(2):
            [delivery] = await work_queue.receive()
            await work_queue.release(delivery)

        assert await work_queue.receive() == []
        assert len(work_queue.dead_letters) == 1
        assert work_queue.dead_letters[0].receive_count == 3

    async def test_visibility_timeout_redelivers(self) -> None:
        """A consumer that never acks (crashed) does not lose the message."""
        work_queue = InMemoryWorkQueue(visibility_timeout_seconds=0.01)
        await work_queue.connect()
        await work_queue.publish(_make_envelope())
        [first] = await work_queue.receive()

        await asyncio.sleep(0.02)
        [second] = await work_queue.receive()

        assert second.message_id == first.message_id
        assert second.receive_count == 2

    async def test_long_poll_wakes_on_publish(self, queue) -> None:
        receiver = asyncio.create_task(queue.receive(wait_seconds=1.0))
        await asyncio.sleep(0.01)
        await queue.publish(_make_envelope())

        deliveries = await asyncio.wait_for(receiver, timeout=1.0)
        assert len(deliveries) == 1

    async def test_long_poll_times_out_empty(self, queue) -> None:
        assert await queue.receive(wait_seconds=0.01) == []

    async def test_publish_raw_accepts_any_body(self, queue) -> None:
        await queue.publish_raw("not an envelope")
        [delivery] = await queue.receive()
        assert delivery.body == "not an envelope"

    async def test_publish_before_connect_fails(self) -> None:
        with pytest.raises(WorkQueueError) as exc_info:
            await InMemoryWorkQueue().publish(_make_envelope())
        assert exc_info.value.error_code == "QUEUE_NOT_CONNECTED"


# =============================================================================
# Test Class: RedisWorkQueue
# =============================================================================
class TestRedisWorkQueue:

    @pytest.fixture
    async def redis_queue(self, redis_client):
        work_queue = RedisWorkQueue(
            RedisConfig(key_prefix="test:", queue_name="jobs"),
            max_receive_count=2,
            client=redis_client,
        )
        await work_queue.connect()
        yield work_queue
        await work_queue.disconnect()

    def test_key_layout(self) -> None:
        work_queue = RedisWorkQueue(RedisConfig(key_prefix="test:", queue_name="jobs"))
        assert work_queue.ready_key == "test:queue:jobs"
        assert work_queue.in_flight_key == "test:queue:jobs:inflight"
        assert work_queue.dead_key == "test:queue:jobs:dead"

    async def test_publish_receive_ack(self, redis_queue, redis_client) -> None:
        message_id = await redis_queue.publish(_make_envelope())

        [delivery] = await redis_queue.receive(wait_seconds=0.1)
        assert delivery.message_id == message_id
        assert delivery.receive_count == 1
        assert await redis_client.lrange(redis_queue.in_flight_key, 0, -1) == [delivery.receipt]

        await redis_queue.ack(delivery)
        assert await redis_client.llen(redis_queue.in_flight_key) == 0

    async def test_fifo_order(self, redis_queue) -> None:
        for i in range(3):
            await redis_queue.publish(_make_envelope(f"req-{i}"))

        deliveries = await redis_queue.receive(max_messages=3)
        ids = [JobEnvelope.from_json(d.body).request_id for d in deliveries]
        assert ids == ["req-0", "req-1", "req-2"]

    async def test_blocking_receive_wakes_on_publish(self, redis_queue) -> None:
        receiver = asyncio.create_task(redis_queue.receive(wait_seconds=1.0))
        await asyncio.sleep(0.01)
        await redis_queue.publish(_make_envelope())

        deliveries = await asyncio.wait_for(receiver, timeout=2.0)
        assert len(deliveries) == 1

    async def test_blocking_receive_times_out_empty(self, redis_queue) -> None:
        assert await redis_queue.receive(wait_seconds=0.1) == []

    async def test_release_then_dead_letter(self, redis_queue, redis_client) -> None:
        await redis_queue.publish(_make_envelope())

        [first] = await redis_queue.receive()
        await redis_queue.release(first)
        assert await redis_client.llen(redis_queue.in_flight_key) == 0
        [second] = await redis_queue.receive()
        assert second.receive_count == 2
        await redis_queue.release(second)

        assert await redis_queue.receive() == []
        [parked] = await redis_client.lrange(redis_queue.dead_key, 0, -1)
        assert json.loads(parked)["id"] == first.message_id
        assert await redis_client.llen(redis_queue.in_flight_key) == 0

    async def test_requeue_in_flight(self, redis_queue) -> None:
        await redis_queue.publish(_make_envelope())
        await redis_queue.receive()

        assert await redis_queue.requeue_in_flight() == 1
        assert len(await redis_queue.receive()) == 1

    async def test_foreign_element_is_delivered_for_dropping(self, redis_queue, redis_client) -> None:
        """Elements not written by publish() still reach the Worker, which drops them."""
        await redis_client.rpush(redis_queue.ready_key, "garbage")

        [delivery] = await redis_queue.receive()
        assert delivery.body == "garbage"

    async def test_redis_errors_are_wrapped(self, redis_queue, redis_server) -> None:
        redis_server.connected = False

        with pytest.raises(WorkQueueError) as exc_info:
            await redis_queue.publish(_make_envelope())
        assert exc_info.value.error_code == "QUEUE_PUBLISH_FAILED"
        assert exc_info.value.retryable is True
