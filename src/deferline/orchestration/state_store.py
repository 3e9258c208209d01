"""
deferline.orchestration.state_store - Request Record Persistence
==================================================================

This module implements the State Store Adapter: durable key-value storage
of Request Records keyed by (owner, request-id).

Architecture:

    ┌──────────────┐  get / mark_processing   ┌──────────────────┐
    │  Dispatcher   │ ─────────────────────→  │                   │
    │  + Waiter     │ ←─────────────────────  │   RequestStore    │
    └──────────────┘      RequestRecord        │                   │
                                               │  (owner_key, id)  │
    ┌──────────────┐  complete / fail          │   → RequestRecord │
    │  Worker       │ ─────────────────────→  │                   │
    └──────────────┘                           └──────────────────┘

Write Semantics (the whole protocol rests on these):
    - mark_processing(): create-if-absent. Advisory only, never overwrites
      anything, callers treat failures as non-fatal.
    - write_terminal(): authoritative. Writes COMPLETED / FAILED unless the
      record is already terminal, in which case the existing record is
      returned untouched. A duplicate delivery writing the same outcome is
      therefore a harmless no-op, and a terminal status never changes.
    - Every write preserves created_at, stamps updated_at and pushes the
      retention deadline record_ttl_seconds ahead.

Key Schema:
    {prefix}request:{owner_key}:{request_id}  → RequestRecord (camelCase JSON)

Implementations:
    - RequestStore (ABC):      Abstract interface
    - InMemoryRequestStore:    Dict-based for dev/testing
    - RedisRequestStore:       redis.asyncio-backed for production
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError

from deferline.core.config import RedisConfig
from deferline.core.enums import RequestStatus
from deferline.core.exceptions import StateStoreError
from deferline.core.identity import OwnerHasher
from deferline.core.models import ErrorDescriptor, RequestRecord, TraceContext

logger = structlog.get_logger()


# =============================================================================
# Abstract Base Class: RequestStore
# =============================================================================
# Adapters implement the four primitive operations; the completion helpers
# (complete / fail) are shared so that every adapter stores results and
# error descriptors in exactly the same shape.
# =============================================================================
class RequestStore(ABC):
    """Abstract base class for Request Record persistence.

    Components should type-hint against this ABC.

    Example:
        >>> async def finish(store: RequestStore) -> None:
        ...     await store.complete("user-1", "req-1", {"ok": True})
        ...     record = await store.get("user-1", "req-1")
    """

    def __init__(
        self,
        hasher: Optional[OwnerHasher] = None,
        ttl_seconds: Optional[int] = 3_600,
    ) -> None:
        self._hasher = hasher or OwnerHasher()
        self._ttl_seconds = ttl_seconds

    # -------------------------------------------------------------------------
    # Connection Lifecycle
    # -------------------------------------------------------------------------
    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to the storage backend.

        Raises:
            StateStoreError: If connection cannot be established.
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Gracefully disconnect from the storage backend."""

    # -------------------------------------------------------------------------
    # Primitive Operations
    # -------------------------------------------------------------------------
    @abstractmethod
    async def get(self, owner_id: str, request_id: str) -> Optional[RequestRecord]:
        """Read the Request Record for (owner, request-id).

        Returns:
            The record, or None if absent or past its retention deadline.

        Raises:
            StateStoreError: If the read fails.
        """

    @abstractmethod
    async def mark_processing(
        self,
        owner_id: str,
        request_id: str,
        trace: Optional[TraceContext] = None,
    ) -> bool:
        """Create a PROCESSING record if no record exists.

        Returns:
            True if the marker was created, False if a record already existed.

        Raises:
            StateStoreError: If the write fails.
        """

    @abstractmethod
    async def write_terminal(
        self,
        owner_id: str,
        request_id: str,
        status: RequestStatus,
        data: Any,
        trace: Optional[TraceContext] = None,
    ) -> RequestRecord:
        """Write a terminal outcome unless one is already stored.

        Returns:
            The record as stored after the call. When the record was already
            terminal this is the existing, unchanged record.

        Raises:
            ValueError: If ``status`` is not terminal.
            StateStoreError: If the write fails.
        """

    # -------------------------------------------------------------------------
    # Shared Helpers
    # -------------------------------------------------------------------------
    def owner_key(self, owner_id: str) -> str:
        """Hash an owner identity into key material."""
        return self._hasher.hash(owner_id)

    async def complete(
        self,
        owner_id: str,
        request_id: str,
        result: Any,
        trace: Optional[TraceContext] = None,
    ) -> RequestRecord:
        """Mark a request as completed with the processor's result."""
        logger.info(
            "request_marking_completed",
            component="state_store",
            request_id=request_id,
        )
        return await self.write_terminal(
            owner_id, request_id, RequestStatus.COMPLETED, result, trace
        )

    async def fail(
        self,
        owner_id: str,
        request_id: str,
        error: ErrorDescriptor,
        trace: Optional[TraceContext] = None,
    ) -> RequestRecord:
        """Mark a request as failed with a structured error descriptor."""
        logger.info(
            "request_marking_failed",
            component="state_store",
            request_id=request_id,
            error=error.message,
        )
        return await self.write_terminal(
            owner_id,
            request_id,
            RequestStatus.FAILED,
            error.model_dump(mode="json", exclude_none=True),
            trace,
        )

    @staticmethod
    def _require_terminal(status: RequestStatus) -> None:
        if not status.is_terminal:
            raise ValueError(f"write_terminal requires a terminal status, got {status.value}")

    @staticmethod
    def _log_ignored_terminal_write(
        existing: RequestRecord,
        status: RequestStatus,
        data: Any,
        log: Any,
    ) -> None:
        # A duplicate delivery computing the same outcome is expected under
        # at-least-once delivery; a different outcome is worth a warning.
        if existing.same_outcome(status, data):
            log.debug(
                "terminal_write_duplicate",
                request_id=existing.request_id,
                status=existing.status.value,
            )
        else:
            log.warning(
                "terminal_write_conflict_ignored",
                request_id=existing.request_id,
                stored_status=existing.status.value,
                proposed_status=status.value,
            )


# =============================================================================
# InMemoryRequestStore Implementation
# =============================================================================
# Development and testing implementation using a Python dict. Provides the
# same semantics as the Redis adapter, including lazy TTL expiry.
#
# Key Data Structures:
#   _records: dict[(owner_key, request_id), RequestRecord]
# =============================================================================
class InMemoryRequestStore(RequestStore):
    """In-memory Request Record store for development and testing.

    Data is lost when the process ends. NOT suitable for production
    (no persistence, single-process only).

    Example:
        >>> store = InMemoryRequestStore()
        >>> await store.connect()
        >>> await store.mark_processing("user-1", "req-1")
        True
        >>> (await store.get("user-1", "req-1")).status
        <RequestStatus.PROCESSING: 'processing'>
    """

    def __init__(
        self,
        hasher: Optional[OwnerHasher] = None,
        ttl_seconds: Optional[int] = 3_600,
    ) -> None:
        super().__init__(hasher=hasher, ttl_seconds=ttl_seconds)

        self._records: dict[tuple[str, str], RequestRecord] = {}
        self._lock = asyncio.Lock()
        self._connected: bool = False
        self._write_count: int = 0
        self._logger = logger.bind(component="state_store", impl="in_memory")

    # -------------------------------------------------------------------------
    # Properties (testing support)
    # -------------------------------------------------------------------------
    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def write_count(self) -> int:
        """Number of writes that actually changed a stored record."""
        return self._write_count

    def list_records(self) -> list[RequestRecord]:
        """Return all stored records. Order is not guaranteed."""
        return list(self._records.values())

    # -------------------------------------------------------------------------
    # Connection Lifecycle
    # -------------------------------------------------------------------------
    async def connect(self) -> None:
        self._connected = True
        self._logger.info("state_store_connected")

    async def disconnect(self) -> None:
        """Clear all stored records and mark as disconnected."""
        async with self._lock:
            self._records.clear()
            self._connected = False
        self._logger.info("state_store_disconnected")

    # -------------------------------------------------------------------------
    # Primitive Operations
    # -------------------------------------------------------------------------
    async def get(self, owner_id: str, request_id: str) -> Optional[RequestRecord]:
        self._ensure_connected()
        key = (self.owner_key(owner_id), request_id)
        async with self._lock:
            return self._live_record(key)

    async def mark_processing(
        self,
        owner_id: str,
        request_id: str,
        trace: Optional[TraceContext] = None,
    ) -> bool:
        self._ensure_connected()
        owner_key = self.owner_key(owner_id)
        key = (owner_key, request_id)
        async with self._lock:
            if self._live_record(key) is not None:
                self._logger.debug("processing_marker_skipped", request_id=request_id)
                return False
            self._records[key] = RequestRecord.build(
                owner_key,
                request_id,
                RequestStatus.PROCESSING,
                trace=trace,
                ttl_seconds=self._ttl_seconds,
            )
            self._write_count += 1
        self._logger.debug("processing_marker_written", request_id=request_id)
        return True

    async def write_terminal(
        self,
        owner_id: str,
        request_id: str,
        status: RequestStatus,
        data: Any,
        trace: Optional[TraceContext] = None,
    ) -> RequestRecord:
        self._require_terminal(status)
        self._ensure_connected()
        owner_key = self.owner_key(owner_id)
        key = (owner_key, request_id)
        async with self._lock:
            existing = self._live_record(key)
            if existing is not None and existing.is_terminal:
                self._log_ignored_terminal_write(existing, status, data, self._logger)
                return existing
            record = RequestRecord.build(
                owner_key,
                request_id,
                status,
                data=data,
                trace=trace,
                ttl_seconds=self._ttl_seconds,
                created_at=existing.created_at if existing else None,
            )
            self._records[key] = record
            self._write_count += 1
        self._logger.debug(
            "terminal_record_written",
            request_id=request_id,
            status=status.value,
        )
        return record

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------
    def _live_record(self, key: tuple[str, str]) -> Optional[RequestRecord]:
        """Return the record for ``key`` unless it has expired (caller holds lock)."""
        record = self._records.get(key)
        if record is not None and record.is_expired():
            del self._records[key]
            self._logger.debug("record_expired", request_id=key[1])
            return None
        return record

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise StateStoreError(
                message="Request store is not connected. Call connect() first.",
                error_code="STORE_NOT_CONNECTED",
                retryable=False,
            )


# =============================================================================
# RedisRequestStore Implementation
# =============================================================================
# Each record is a single JSON string with a native Redis expiry. The marker
# uses SET NX so it can never clobber a record; the terminal write runs as a
# Lua script so the "is it already terminal?" check and the SET are atomic.
# A TTL of 0 (or None) stores the record without an expiry.
# =============================================================================
_TERMINAL_WRITE_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current then
    local ok, existing = pcall(cjson.decode, current)
    if ok and existing['status'] ~= 'processing' then
        return current
    end
end
if ARGV[2] == '0' then
    redis.call('SET', KEYS[1], ARGV[1])
else
    redis.call('SET', KEYS[1], ARGV[1], 'EX', tonumber(ARGV[2]))
end
return ARGV[1]
"""


class RedisRequestStore(RequestStore):
    """Redis-backed Request Record store.

    Args:
        config: Redis connection settings.
        hasher: Owner identity hasher.
        ttl_seconds: Record retention.
        client: Optional pre-built ``redis.asyncio.Redis`` client. When given
            the store does not own it and will not close it.
    """

    def __init__(
        self,
        config: Optional[RedisConfig] = None,
        hasher: Optional[OwnerHasher] = None,
        ttl_seconds: Optional[int] = 3_600,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        super().__init__(hasher=hasher, ttl_seconds=ttl_seconds)
        self._config = config or RedisConfig()
        self._client: Optional[aioredis.Redis] = client
        self._owns_client = client is None
        self._terminal_script: Any = None
        self._logger = logger.bind(component="state_store", impl="redis")

    def key(self, owner_id: str, request_id: str) -> str:
        """Build the Redis key for a record."""
        return f"{self._config.key_prefix}request:{self.owner_key(owner_id)}:{request_id}"

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
            raise StateStoreError(
                message=f"Unable to reach Redis: {exc}",
                error_code="STORE_CONNECT_FAILED",
                details={"url": self._config.url.split("@")[-1]},
            ) from exc
        self._terminal_script = self._client.register_script(_TERMINAL_WRITE_SCRIPT)
        self._logger.info("state_store_connected", url=self._config.url.split("@")[-1])

    async def disconnect(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self._terminal_script = None
        self._logger.info("state_store_disconnected")

    # -------------------------------------------------------------------------
    # Primitive Operations
    # -------------------------------------------------------------------------
    async def get(self, owner_id: str, request_id: str) -> Optional[RequestRecord]:
        client = self._require_client()
        key = self.key(owner_id, request_id)
        try:
            raw = await client.get(key)
        except RedisError as exc:
            raise self._wrap(exc, "STATE_READ_FAILED", request_id) from exc
        if raw is None:
            return None
        return self._decode(raw, request_id)

    async def mark_processing(
        self,
        owner_id: str,
        request_id: str,
        trace: Optional[TraceContext] = None,
    ) -> bool:
        client = self._require_client()
        record = RequestRecord.build(
            self.owner_key(owner_id),
            request_id,
            RequestStatus.PROCESSING,
            trace=trace,
            ttl_seconds=self._ttl_seconds,
        )
        try:
            created = await client.set(
                self.key(owner_id, request_id),
                record.to_json(),
                nx=True,
                ex=self._ttl_seconds or None,
            )
        except RedisError as exc:
            raise self._wrap(exc, "STATE_WRITE_FAILED", request_id) from exc
        return bool(created)

    async def write_terminal(
        self,
        owner_id: str,
        request_id: str,
        status: RequestStatus,
        data: Any,
        trace: Optional[TraceContext] = None,
    ) -> RequestRecord:
        self._require_terminal(status)
        self._require_client()
        existing = await self.get(owner_id, request_id)
        if existing is not None and existing.is_terminal:
            self._log_ignored_terminal_write(existing, status, data, self._logger)
            return existing

        record = RequestRecord.build(
            self.owner_key(owner_id),
            request_id,
            status,
            data=data,
            trace=trace,
            ttl_seconds=self._ttl_seconds,
            created_at=existing.created_at if existing else None,
        )
        try:
            stored = await self._terminal_script(
                keys=[self.key(owner_id, request_id)],
                args=[record.to_json(), self._ttl_seconds or 0],
            )
        except RedisError as exc:
            raise self._wrap(exc, "STATE_WRITE_FAILED", request_id) from exc

        effective = self._decode(stored, request_id)
        if effective.updated_at != record.updated_at:
            # Another writer reached a terminal state between our read and
            # the script; the script kept theirs.
            self._log_ignored_terminal_write(effective, status, data, self._logger)
        return effective

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------
    def _require_client(self) -> aioredis.Redis:
        if self._client is None or self._terminal_script is None:
            raise StateStoreError(
                message="Request store is not connected. Call connect() first.",
                error_code="STORE_NOT_CONNECTED",
                retryable=False,
            )
        return self._client

    def _decode(self, raw: str | bytes, request_id: str) -> RequestRecord:
        try:
            return RequestRecord.model_validate_json(raw)
        except ValidationError as exc:
            raise StateStoreError(
                message="Stored Request Record could not be decoded",
                error_code="STATE_DECODE_FAILED",
                details={"request_id": request_id, "reason": str(exc)},
                retryable=False,
            ) from exc

    def _wrap(self, exc: RedisError, error_code: str, request_id: str) -> StateStoreError:
        self._logger.error(
            "state_store_operation_failed",
            error_code=error_code,
            request_id=request_id,
            error=str(exc),
        )
        return StateStoreError(
            message=f"Redis operation failed: {exc}",
            error_code=error_code,
            details={"request_id": request_id},
        )
