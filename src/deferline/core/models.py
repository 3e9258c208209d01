"""
deferline.core.models - Core Data Models
==========================================

This module defines the Pydantic data models that flow through every layer
of deferline. These models are the "lingua franca": every component speaks
in terms of these types.

Model Hierarchy:
    TraceContext      → Correlation fields carried end to end (opaque)
    ErrorDescriptor   → The stored shape of a failure
    RequestRecord     → The only persistent entity (state store value)
    JobEnvelope       → The queue message body
    InboundRequest    → Transport-neutral view of an incoming call
    OutboundResponse  → Transport-neutral answer (status, headers, body)

Data Flow Through Architecture:
    ┌──────────────┐   InboundRequest   ┌──────────────┐   JobEnvelope   ┌──────────┐
    │   Caller      │ ─────────────────→ │  Dispatcher   │ ──────────────→ │  Queue   │
    │              │ ←───────────────── │  + Waiter     │                 └────┬─────┘
    └──────────────┘  OutboundResponse  └──────┬───────┘                      │
                                               │ RequestRecord                │
                                               ↓                              ↓
                                        ┌──────────────┐  RequestRecord ┌──────────┐
                                        │ State Store  │ ←───────────── │  Worker  │
                                        └──────────────┘                └──────────┘

Wire Format:
    RequestRecord and JobEnvelope serialize with camelCase keys
    (``ownerId``, ``requestId``, ``createdAt`` ...) so the stored and queued
    JSON matches the documented schemas. Python code uses snake_case names;
    both spellings are accepted on input.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from deferline.core.enums import ErrorKind, RequestStatus
from deferline.core.exceptions import MalformedJobError


def _now() -> datetime:
    """Get the current UTC timestamp.

    Every timestamp in deferline is UTC.
    """
    return datetime.now(timezone.utc)


# Shared model configuration for everything that crosses a process boundary.
_WIRE_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
)


# =============================================================================
# Trace Context
# =============================================================================
# Correlation fields carried from the inbound request, through the queue, to
# the Worker and into the Request Record. The orchestrator never interprets
# them; they exist purely so log lines on both sides of the queue can be
# joined up.
# =============================================================================
class TraceContext(BaseModel):
    """Opaque trace-correlation fields.

    Attributes:
        traceparent: W3C ``traceparent`` header value, if the caller sent one.
        correlation_id: Caller-supplied correlation id (defaults to the
            request-id at the edge).
    """

    model_config = _WIRE_CONFIG

    traceparent: Optional[str] = Field(
        default=None,
        description="W3C traceparent header value",
    )
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id joining log lines across components",
    )

    def log_fields(self) -> dict[str, str]:
        """Return the non-empty fields for binding into structlog context."""
        fields: dict[str, str] = {}
        if self.traceparent:
            fields["traceparent"] = self.traceparent
        if self.correlation_id:
            fields["correlation_id"] = self.correlation_id
        return fields


# =============================================================================
# Error Descriptor
# =============================================================================
# The ``data`` of a failed Request Record. It is deliberately small and
# stable: every poll of a failed request returns exactly this structure.
# =============================================================================
class ErrorDescriptor(BaseModel):
    """Structured description of a failed request.

    Attributes:
        message: Human-readable error message.
        code: Optional numeric code (typically the upstream HTTP status).
        detail: Optional nested detail (anything JSON-serialisable).
        retryable: Whether the failure was classified as retryable. Only
            set on failures recorded by the inline path, where no queue
            redelivery can ever complete the request.
        kind: Classification category, for operators.

    Example:
        >>> ErrorDescriptor(message="Upstream 503", code=503)
    """

    model_config = _WIRE_CONFIG

    message: str = Field(description="Human-readable error message")
    code: Optional[int] = Field(
        default=None,
        description="Optional numeric error code (e.g. upstream HTTP status)",
    )
    detail: Optional[Any] = Field(
        default=None,
        description="Optional nested detail",
    )
    retryable: bool = Field(
        default=False,
        description="True when the failure was transient in nature",
    )
    kind: Optional[ErrorKind] = Field(
        default=None,
        description="Outcome classification category",
    )

    @classmethod
    def coerce(cls, data: Any) -> ErrorDescriptor:
        """Build a descriptor from whatever a ``failed`` record holds.

        Records written by older producers may hold a bare string or a
        mapping with an ``error`` key instead of ``message``.
        """
        if isinstance(data, ErrorDescriptor):
            return data
        if isinstance(data, dict):
            if "message" not in data and "error" in data:
                data = {**data, "message": str(data["error"])}
            if "message" in data:
                try:
                    return cls.model_validate(data)
                except ValidationError:
                    pass
            return cls(message=str(data.get("message", "Request processing failed")))
        if data is None:
            return cls(message="Request processing failed")
        return cls(message=str(data))


# =============================================================================
# Request Record
# =============================================================================
# The only persistent entity. Keyed by (owner_key, request_id) where
# owner_key is the hashed owner identity (see core/identity.py).
#
# Invariants (enforced by the state store adapters):
#   1. PROCESSING → COMPLETED | FAILED, never backwards, never sideways.
#   2. The PROCESSING marker is advisory: create-if-absent only.
#   3. Terminal writes on an already-terminal record are no-ops.
# =============================================================================
class RequestRecord(BaseModel):
    """Persistent state of one logical request.

    Attributes:
        owner_key: Hashed owner identity (first half of the key).
        request_id: Idempotency token (second half of the key).
        status: processing, completed or failed.
        data: Processor result when completed, ErrorDescriptor dict when failed.
        created_at: First write time; preserved by every later write.
        updated_at: Time of the latest write.
        expires_at: Retention deadline; the record is treated as absent after it.
        traceparent: Trace correlation, opaque.
        correlation_id: Trace correlation, opaque.
    """

    model_config = _WIRE_CONFIG

    owner_key: str = Field(description="Hashed owner identity")
    request_id: str = Field(description="Idempotency token")
    status: RequestStatus = Field(description="Lifecycle state")
    data: Optional[Any] = Field(
        default=None,
        description="Result (completed) or error descriptor (failed)",
    )
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    expires_at: Optional[datetime] = Field(default=None)
    traceparent: Optional[str] = Field(default=None)
    correlation_id: Optional[str] = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        """True once the record is COMPLETED or FAILED."""
        return self.status.is_terminal

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check whether the retention deadline has passed."""
        if self.expires_at is None:
            return False
        return (now or _now()) >= self.expires_at

    def error(self) -> ErrorDescriptor:
        """Return the stored failure as an ErrorDescriptor."""
        return ErrorDescriptor.coerce(self.data)

    def same_outcome(self, status: RequestStatus, data: Any) -> bool:
        """True if a proposed terminal write would not change anything observable."""
        return self.status == status and self.data == data

    def to_json(self) -> str:
        """Serialize using the documented camelCase schema."""
        return self.model_dump_json(by_alias=True)

    @classmethod
    def build(
        cls,
        owner_key: str,
        request_id: str,
        status: RequestStatus,
        data: Any = None,
        trace: Optional[TraceContext] = None,
        ttl_seconds: Optional[int] = None,
        created_at: Optional[datetime] = None,
    ) -> RequestRecord:
        """Create a record stamped with ``updated_at`` and ``expires_at``.

        ``created_at`` is carried over from an earlier version of the record
        when given (if-not-exists semantics).
        """
        now = _now()
        trace = trace or TraceContext()
        return cls(
            owner_key=owner_key,
            request_id=request_id,
            status=status,
            data=data,
            created_at=created_at or now,
            updated_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds) if ttl_seconds else None,
            traceparent=trace.traceparent,
            correlation_id=trace.correlation_id,
        )


# =============================================================================
# Job Envelope
# =============================================================================
# The queue message body: { ownerId, requestId, traceContext, payload }.
# Opaque beyond these fields. The raw owner id travels in the envelope (the
# queue is a private channel); it is hashed only when it becomes a key.
# =============================================================================
class JobEnvelope(BaseModel):
    """A serialized unit of deferred work.

    Example:
        >>> envelope = JobEnvelope(
        ...     owner_id="user-123",
        ...     request_id="req-456",
        ...     payload={"period": "24A1"},
        ... )
        >>> JobEnvelope.from_json(envelope.to_json()) == envelope
        True
    """

    model_config = _WIRE_CONFIG

    owner_id: str = Field(min_length=1, description="Authenticated caller")
    request_id: str = Field(min_length=1, description="Idempotency token")
    trace_context: TraceContext = Field(default_factory=TraceContext)
    payload: dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        """Serialize for publishing."""
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> JobEnvelope:
        """Parse a queue message body.

        Raises:
            MalformedJobError: If the body is not JSON or lacks the owner or
                request-id fields.
        """
        try:
            decoded = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise MalformedJobError(
                message="Queue message body is not valid JSON",
                details={"reason": str(exc)},
            ) from exc
        if not isinstance(decoded, dict):
            raise MalformedJobError(
                message="Queue message body is not a JSON object",
                details={"body_type": type(decoded).__name__},
            )
        try:
            return cls.model_validate(decoded)
        except ValidationError as exc:
            raise MalformedJobError(
                message="Queue message is missing owner or request-id fields",
                details={"errors": exc.errors(include_url=False, include_input=False)},
            ) from exc


# =============================================================================
# Inbound Request / Outbound Response
# =============================================================================
# Transport-neutral shapes so the orchestrator can be bound to any HTTP
# framework (or a serverless event) by a thin adaptor outside this package.
# =============================================================================
class InboundRequest(BaseModel):
    """What the orchestrator needs to know about an incoming call.

    Attributes:
        method: HTTP method.
        url: Absolute URL of the request (scheme, host, path, query).
        headers: Request headers. Lookup through ``header()`` is
            case-insensitive.
    """

    method: str = Field(default="POST")
    url: str = Field(description="Absolute request URL")
    headers: dict[str, str] = Field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        """Get a header value case-insensitively."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    @property
    def location(self) -> str:
        """Scheme, host and path of the request (no query string).

        This is where a caller re-polls a pending request.
        """
        parts = urlsplit(self.url)
        return f"{parts.scheme}://{parts.netloc}{parts.path}"


class OutboundResponse(BaseModel):
    """The orchestrator's answer, ready to be rendered by a transport."""

    status_code: int = Field(ge=100, le=599)
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[dict[str, Any]] = Field(default=None)

    def json_body(self) -> Optional[str]:
        """Render the body as JSON, or None when there is no body."""
        if self.body is None:
            return None
        return json.dumps(self.body, default=str)
