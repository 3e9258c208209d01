"""
deferline.orchestration.work_queue - At-Least-Once Job Queue
==============================================================

The Work Queue carries JobEnvelopes from the Dispatcher to Workers. It gives
the guarantees the protocol relies on and nothing more:

    - at-least-once delivery (a message may be handed out more than once)
    - redelivery of a message that was released or never acknowledged
    - a redrive policy: a message received more than ``max_receive_count``
      times is parked in a dead-letter list instead of looping forever

Message Lifecycle:
    publish() ──→ [ready] ──receive()──→ [in flight] ──ack()──→ gone
                     ↑                        │
                     └──── release() ─────────┘
                     └──── visibility timeout ┘
                                              │ receive_count > max
                                              ↓
                                        [dead letters]

Implementations:
    - WorkQueue (ABC):      Abstract interface
    - InMemoryWorkQueue:    deque + asyncio.Condition, for dev/testing
    - RedisWorkQueue:       Redis lists (ready / in-flight / dead)
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from deferline.core.config import RedisConfig
from deferline.core.exceptions import WorkQueueError
from deferline.core.models import JobEnvelope

logger = structlog.get_logger()


class Delivery(BaseModel):
    """One received copy of a queue message.

    Attributes:
        message_id: Stable id of the message across redeliveries.
        receive_count: How many times the message has been received,
            including this delivery (1 on first delivery).
        body: The raw message body (a JobEnvelope as JSON, normally).
        receipt: Backend handle needed to ack / release this delivery.
    """

    message_id: str
    receive_count: int = Field(default=1, ge=1)
    body: str
    receipt: Optional[str] = Field(default=None, repr=False)


# =============================================================================
# Abstract Base Class: WorkQueue
# =============================================================================
class WorkQueue(ABC):
    """Abstract base class for the job queue."""

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to the queue backend."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Gracefully disconnect from the queue backend."""

    @abstractmethod
    async def publish_raw(self, body: str) -> str:
        """Publish a raw message body.

        Returns:
            The message id.

        Raises:
            WorkQueueError: If the message cannot be published.
        """

    async def publish(self, envelope: JobEnvelope) -> str:
        """Publish a job envelope. Returns the message id."""
        return await self.publish_raw(envelope.to_json())

    @abstractmethod
    async def receive(
        self,
        max_messages: int = 1,
        wait_seconds: float = 0.0,
    ) -> list[Delivery]:
        """Receive up to ``max_messages`` deliveries.

        Waits up to ``wait_seconds`` for the first message; returns an empty
        list when nothing arrived in time.
        """

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        """Acknowledge a delivery: the message will not be delivered again."""

    @abstractmethod
    async def release(self, delivery: Delivery) -> None:
        """Give a delivery back: the message becomes visible for redelivery."""


# =============================================================================
# InMemoryWorkQueue Implementation
# =============================================================================
# Key Data Structures:
#   _ready:       deque of _Message waiting to be received
#   _in_flight:   message_id → (_Message, visibility deadline)
#   _dead:        deliveries parked by the redrive policy
# =============================================================================
class _Message:
    __slots__ = ("message_id", "body", "receive_count")

    def __init__(self, message_id: str, body: str, receive_count: int = 0) -> None:
        self.message_id = message_id
        self.body = body
        self.receive_count = receive_count


class InMemoryWorkQueue(WorkQueue):
    """In-memory work queue for development and testing.

    Example:
        >>> queue = InMemoryWorkQueue()
        >>> await queue.connect()
        >>> message_id = await queue.publish(envelope)
        >>> [delivery] = await queue.receive()
        >>> await queue.ack(delivery)
    """

    def __init__(
        self,
        max_receive_count: int = 5,
        visibility_timeout_seconds: float = 30.0,
    ) -> None:
        self._max_receive_count = max_receive_count
        self._visibility_timeout = visibility_timeout_seconds

        self._ready: deque[_Message] = deque()
        self._in_flight: dict[str, tuple[_Message, float]] = {}
        self._dead: list[Delivery] = []
        self._condition = asyncio.Condition()
        self._connected: bool = False
        self._published_count: int = 0
        self._logger = logger.bind(component="work_queue", impl="in_memory")

    # -------------------------------------------------------------------------
    # Properties (testing support)
    # -------------------------------------------------------------------------
    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def published_count(self) -> int:
        """Total messages published since creation."""
        return self._published_count

    @property
    def pending_count(self) -> int:
        """Messages waiting to be received."""
        return len(self._ready)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def dead_letters(self) -> list[Delivery]:
        """Deliveries parked after exceeding max_receive_count."""
        return list(self._dead)

    # -------------------------------------------------------------------------
    # Connection Lifecycle
    # -------------------------------------------------------------------------
    async def connect(self) -> None:
        self._connected = True
        self._logger.info("work_queue_connected")

    async def disconnect(self) -> None:
        """Drop all messages and wake up any blocked receivers."""
        async with self._condition:
            self._ready.clear()
            self._in_flight.clear()
            self._connected = False
            self._condition.notify_all()
        self._logger.info("work_queue_disconnected")

    # -------------------------------------------------------------------------
    # Queue Operations
    # -------------------------------------------------------------------------
    async def publish_raw(self, body: str) -> str:
        self._ensure_connected()
        message = _Message(message_id=uuid.uuid4().hex, body=body)
        async with self._condition:
            self._ready.append(message)
            self._published_count += 1
            self._condition.notify()
        self._logger.debug("job_enqueued", message_id=message.message_id)
        return message.message_id

    async def receive(
        self,
        max_messages: int = 1,
        wait_seconds: float = 0.0,
    ) -> list[Delivery]:
        self._ensure_connected()
        async with self._condition:
            self._reclaim_expired()
            if not self._ready and wait_seconds > 0:
                try:
                    await asyncio.wait_for(
                        self._condition.wait_for(
                            lambda: bool(self._ready) or not self._connected
                        ),
                        timeout=wait_seconds,
                    )
                except asyncio.TimeoutError:
                    return []
            return self._take(max_messages)

    async def ack(self, delivery: Delivery) -> None:
        async with self._condition:
            entry = self._in_flight.pop(delivery.message_id, None)
        if entry is None:
            # Already reclaimed by the visibility timeout; the redelivery
            # will be acknowledged on its own.
            self._logger.debug("ack_unknown_delivery", message_id=delivery.message_id)
            return
        self._logger.debug("job_acknowledged", message_id=delivery.message_id)

    async def release(self, delivery: Delivery) -> None:
        async with self._condition:
            entry = self._in_flight.pop(delivery.message_id, None)
            if entry is None:
                self._logger.debug(
                    "release_unknown_delivery", message_id=delivery.message_id
                )
                return
            message, _ = entry
            self._ready.append(message)
            self._condition.notify()
        self._logger.debug(
            "job_released",
            message_id=delivery.message_id,
            receive_count=delivery.receive_count,
        )

    # -------------------------------------------------------------------------
    # Internal Helpers (caller holds the condition lock)
    # -------------------------------------------------------------------------
    def _take(self, max_messages: int) -> list[Delivery]:
        deliveries: list[Delivery] = []
        deadline = time.monotonic() + self._visibility_timeout
        while self._ready and len(deliveries) < max_messages:
            message = self._ready.popleft()
            message.receive_count += 1
            delivery = Delivery(
                message_id=message.message_id,
                receive_count=message.receive_count,
                body=message.body,
            )
            if message.receive_count > self._max_receive_count:
                self._dead.append(delivery)
                self._logger.warning(
                    "job_dead_lettered",
                    message_id=message.message_id,
                    receive_count=message.receive_count,
                )
                continue
            self._in_flight[message.message_id] = (message, deadline)
            deliveries.append(delivery)
        return deliveries

    def _reclaim_expired(self) -> None:
        now = time.monotonic()
        expired = [mid for mid, (_, deadline) in self._in_flight.items() if deadline <= now]
        for message_id in expired:
            message, _ = self._in_flight.pop(message_id)
            self._ready.append(message)
            self._logger.info("job_visibility_expired", message_id=message_id)

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise WorkQueueError(
                message="Work queue is not connected. Call connect() first.",
                error_code="QUEUE_NOT_CONNECTED",
                retryable=False,
            )


# =============================================================================
# RedisWorkQueue Implementation
# =============================================================================
# Three lists per queue:
#   {prefix}queue:{name}           ready      (LPUSH in, consumed from the right)
#   {prefix}queue:{name}:inflight  received but not yet acknowledged
#   {prefix}queue:{name}:dead      parked by the redrive policy
#
# Each list element is {"id", "receiveCount", "body"} as JSON, where
# receiveCount counts receives before the element was (re)queued.
# =============================================================================
class RedisWorkQueue(WorkQueue):
    """Redis-list-backed work queue.

    Unacknowledged deliveries of a crashed consumer stay on the in-flight
    list; ``requeue_in_flight()`` moves them back for redelivery.
    """

    def __init__(
        self,
        config: Optional[RedisConfig] = None,
        max_receive_count: int = 5,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self._config = config or RedisConfig()
        self._max_receive_count = max_receive_count
        self._client: Optional[aioredis.Redis] = client
        self._owns_client = client is None

        base = f"{self._config.key_prefix}queue:{self._config.queue_name}"
        self.ready_key = base
        self.in_flight_key = f"{base}:inflight"
        self.dead_key = f"{base}:dead"
        self._logger = logger.bind(component="work_queue", impl="redis")

    # -------------------------------------------------------------------------
    # Connection Lifecycle
    # -------------------------------------------------------------------------
    async def connect(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(
                self._config.url,
                max_connections=self._config.max_connections,
                socket_timeout=self._config.socket_timeout,
                decode_responses=True,
            )
        try:
            await self._client.ping()
        except RedisError as exc:
            raise WorkQueueError(
                message=f"Unable to reach Redis: {exc}",
                error_code="QUEUE_CONNECT_FAILED",
            ) from exc
        self._logger.info("work_queue_connected", queue=self.ready_key)

    async def disconnect(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
        self._logger.info("work_queue_disconnected")

    # -------------------------------------------------------------------------
    # Queue Operations
    # -------------------------------------------------------------------------
    async def publish_raw(self, body: str) -> str:
        client = self._require_client()
        message_id = uuid.uuid4().hex
        try:
            await client.lpush(self.ready_key, _encode(message_id, 0, body))
        except RedisError as exc:
            raise self._wrap(exc, "QUEUE_PUBLISH_FAILED") from exc
        self._logger.debug("job_enqueued", message_id=message_id)
        return message_id

    async def receive(
        self,
        max_messages: int = 1,
        wait_seconds: float = 0.0,
    ) -> list[Delivery]:
        client = self._require_client()
        deliveries: list[Delivery] = []
        try:
            while len(deliveries) < max_messages:
                if not deliveries and wait_seconds > 0:
                    raw = await client.blmove(
                        self.ready_key, self.in_flight_key, wait_seconds, "RIGHT", "LEFT"
                    )
                else:
                    raw = await client.lmove(
                        self.ready_key, self.in_flight_key, "RIGHT", "LEFT"
                    )
                if raw is None:
                    break
                delivery = _decode(raw)
                if delivery.receive_count > self._max_receive_count:
                    await client.lrem(self.in_flight_key, 1, raw)
                    await client.lpush(self.dead_key, raw)
                    self._logger.warning(
                        "job_dead_lettered",
                        message_id=delivery.message_id,
                        receive_count=delivery.receive_count,
                    )
                    continue
                deliveries.append(delivery)
        except RedisError as exc:
            raise self._wrap(exc, "QUEUE_RECEIVE_FAILED") from exc
        return deliveries

    async def ack(self, delivery: Delivery) -> None:
        client = self._require_client()
        try:
            await client.lrem(self.in_flight_key, 1, delivery.receipt)
        except RedisError as exc:
            raise self._wrap(exc, "QUEUE_ACK_FAILED") from exc

    async def release(self, delivery: Delivery) -> None:
        client = self._require_client()
        requeued = _encode(delivery.message_id, delivery.receive_count, delivery.body)
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.lrem(self.in_flight_key, 1, delivery.receipt)
                pipe.lpush(self.ready_key, requeued)
                await pipe.execute()
        except RedisError as exc:
            raise self._wrap(exc, "QUEUE_RELEASE_FAILED") from exc
        self._logger.debug(
            "job_released",
            message_id=delivery.message_id,
            receive_count=delivery.receive_count,
        )

    async def requeue_in_flight(self) -> int:
        """Move every in-flight message back to the ready list.

        Only safe while no consumer is running (e.g. at deployment start).
        """
        client = self._require_client()
        moved = 0
        try:
            while await client.lmove(self.in_flight_key, self.ready_key, "RIGHT", "LEFT"):
                moved += 1
        except RedisError as exc:
            raise self._wrap(exc, "QUEUE_REQUEUE_FAILED") from exc
        if moved:
            self._logger.info("in_flight_requeued", count=moved)
        return moved

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------
    def _require_client(self) -> aioredis.Redis:
        if self._client is None:
            raise WorkQueueError(
                message="Work queue is not connected. Call connect() first.",
                error_code="QUEUE_NOT_CONNECTED",
                retryable=False,
            )
        return self._client

    def _wrap(self, exc: RedisError, error_code: str) -> WorkQueueError:
        self._logger.error("work_queue_operation_failed", error_code=error_code, error=str(exc))
        return WorkQueueError(message=f"Redis operation failed: {exc}", error_code=error_code)


def _encode(message_id: str, receive_count: int, body: str) -> str:
    return json.dumps({"id": message_id, "receiveCount": receive_count, "body": body})


def _decode(raw: str) -> Delivery:
    try:
        element: dict[str, Any] = json.loads(raw)
        return Delivery(
            message_id=element["id"],
            receive_count=int(element.get("receiveCount", 0)) + 1,
            body=element["body"],
            receipt=raw,
        )
    except (ValueError, KeyError, TypeError):
        # Not written by publish_raw(); hand it to the Worker so it is
        # dropped as a malformed job instead of blocking the queue.
        return Delivery(message_id=uuid.uuid4().hex, body=raw, receipt=raw)
