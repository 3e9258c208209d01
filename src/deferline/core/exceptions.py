"""
deferline.core.exceptions - Custom Exception Hierarchy
========================================================

This module defines a structured exception hierarchy for deferline.
Instead of sniffing exception messages to decide whether something is worth
retrying, every deferline exception carries an explicit ``retryable`` flag
that is fixed where the error is raised.

Exception Hierarchy:
    DeferlineError (base)
        ├── ConfigurationError       - Invalid config, missing required values
        ├── StateStoreError          - Request Record read/write failures
        ├── WorkQueueError           - Publish/receive/ack failures
        ├── MalformedJobError        - Queue envelope missing owner/request-id
        ├── ProcessorError           - Raised by processors to tag outcomes
        │     ├── TransientUpstreamError  - rate limited / unavailable (retry)
        │     ├── UpstreamRejectedError   - explicit 4xx-equivalent (terminal)
        │     └── InvalidPayloadError     - malformed input (terminal)
        └── RequestFailedError       - A stored ``failed`` outcome surfaced to a caller

Error Handling Flow:
    Processor raises
        → classify_error() reads the retryable flag (or infers it for
          network-level builtins)
        → Worker: retryable → re-raise for queue redelivery
                  terminal  → write ``failed`` record, acknowledge
        → Dispatcher / Waiter: stored ``failed`` → RequestFailedError
        → Responder: RequestFailedError → stable failure body

Usage:
    >>> from deferline.core.exceptions import TransientUpstreamError
    >>> raise TransientUpstreamError(
    ...     message="Upstream rate limited the call",
    ...     status_code=429,
    ...     details={"retry_after": 30},
    ... )
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from deferline.core.enums import ErrorKind

if TYPE_CHECKING:
    from deferline.core.models import ErrorDescriptor


# =============================================================================
# Base Exception
# =============================================================================
# All deferline exceptions inherit from this base class. This allows
# catching all framework-specific errors with a single except clause:
#
#   try:
#       await dispatcher.initiate(...)
#   except DeferlineError as e:
#       logger.error(e.message, error_code=e.error_code, details=e.details)
# =============================================================================
class DeferlineError(Exception):
    """Base exception for all deferline errors.

    Attributes:
        message: Human-readable error description.
        error_code: Machine-readable error code for programmatic handling.
            Convention: UPPER_SNAKE_CASE (e.g., "STATE_WRITE_FAILED").
        details: Arbitrary dict with additional debugging context.
        retryable: Whether the failing operation may succeed if the whole
            job is attempted again. Decided once, at the raise site.
        kind: The ErrorKind reported by outcome classification.
    """

    default_retryable: bool = False
    default_kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        error_code: str = "UNKNOWN_ERROR",
        details: Optional[dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        # Call Exception.__init__ with the message so that str(exception) works
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.retryable = self.default_retryable if retryable is None else retryable

    @property
    def kind(self) -> ErrorKind:
        """The classification category for this error."""
        return self.default_kind

    def to_dict(self) -> dict[str, Any]:
        """Serialize this exception to a dictionary.

        Useful for JSON logging (structlog) and API error responses.

        Returns:
            Dictionary with error_type, message, error_code, retryable
            and details.
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __repr__(self) -> str:
        """Detailed string representation for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"retryable={self.retryable!r}, "
            f"details={self.details!r})"
        )


# =============================================================================
# Configuration Error
# =============================================================================
# Raised during startup when configuration is invalid. Fail fast.
# =============================================================================
class ConfigurationError(DeferlineError):
    """Raised when deferline configuration is invalid or missing.

    Example:
        >>> raise ConfigurationError(
        ...     message="deferline.yaml is not a mapping",
        ...     details={"path": "deferline.yaml"},
        ... )
    """

    default_kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        error_code: str = "CONFIG_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, details=details)


# =============================================================================
# State Store Error
# =============================================================================
# Raised by RequestStore adapters when the backend read or write fails.
# Infrastructure failures are retryable by default: a Worker that cannot
# persist a terminal outcome should let the queue redeliver the job.
# =============================================================================
class StateStoreError(DeferlineError):
    """Raised when a Request Record cannot be read or written.

    Common Causes:
        - Redis connection lost or timed out
        - Stored value cannot be decoded (schema drift)
        - Store used before connect()
    """

    default_retryable = True
    default_kind = ErrorKind.INFRASTRUCTURE

    def __init__(
        self,
        message: str,
        error_code: str = "STATE_STORE_ERROR",
        details: Optional[dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            retryable=retryable,
        )


# =============================================================================
# Work Queue Error
# =============================================================================
class WorkQueueError(DeferlineError):
    """Raised when a job cannot be published, received, or acknowledged."""

    default_retryable = True
    default_kind = ErrorKind.INFRASTRUCTURE

    def __init__(
        self,
        message: str,
        error_code: str = "WORK_QUEUE_ERROR",
        details: Optional[dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            retryable=retryable,
        )


# =============================================================================
# Malformed Job Error
# =============================================================================
# A queue message that cannot be turned into a JobEnvelope. Redelivering it
# will never help, so it is terminal and the Worker drops it.
# =============================================================================
class MalformedJobError(DeferlineError):
    """Raised when a queue message body is not a valid job envelope."""

    default_kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        error_code: str = "MALFORMED_JOB",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, details=details)


# =============================================================================
# Processor Errors
# =============================================================================
# Processors raise these to tell the orchestrator exactly what kind of
# failure happened. The optional status_code is carried into the stored
# ErrorDescriptor (as ``code``) and, for terminal failures, becomes the HTTP
# status of the failure response.
# =============================================================================
class ProcessorError(DeferlineError):
    """Base class for outcomes signalled by a processor.

    Attributes:
        status_code: Optional numeric code (usually the upstream HTTP status).
    """

    def __init__(
        self,
        message: str,
        error_code: str = "PROCESSOR_ERROR",
        details: Optional[dict[str, Any]] = None,
        retryable: Optional[bool] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            retryable=retryable,
        )
        self.status_code = status_code


class TransientUpstreamError(ProcessorError):
    """The upstream is rate limiting or temporarily unavailable.

    Always retryable. Typical status codes: 429, 502, 503, 504.

    Example:
        >>> raise TransientUpstreamError("Upstream 503", status_code=503)
    """

    default_retryable = True
    default_kind = ErrorKind.TRANSIENT_UPSTREAM

    def __init__(
        self,
        message: str,
        error_code: str = "UPSTREAM_UNAVAILABLE",
        details: Optional[dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            retryable=True,
            status_code=status_code,
        )


class UpstreamRejectedError(ProcessorError):
    """The upstream answered with a definitive rejection (4xx-equivalent)."""

    default_kind = ErrorKind.REJECTED

    def __init__(
        self,
        message: str,
        error_code: str = "UPSTREAM_REJECTED",
        details: Optional[dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            retryable=False,
            status_code=status_code,
        )


class InvalidPayloadError(ProcessorError):
    """The payload handed to the processor cannot be processed."""

    default_kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        error_code: str = "INVALID_PAYLOAD",
        details: Optional[dict[str, Any]] = None,
        status_code: Optional[int] = 400,
    ) -> None:
        super().__init__(
            message=message,
            error_code=error_code,
            details=details,
            retryable=False,
            status_code=status_code,
        )


# =============================================================================
# Request Failed Error
# =============================================================================
# Surfaced to callers when the Request Record for their request-id is in the
# ``failed`` state. It never re-executes anything: it only carries the stored
# ErrorDescriptor, so every poll of a failed request sees the same body.
# =============================================================================
class RequestFailedError(DeferlineError):
    """A request reached the terminal ``failed`` state.

    Attributes:
        descriptor: The ErrorDescriptor stored on the Request Record.
        request_id: The request-id the failure belongs to.
    """

    def __init__(
        self,
        descriptor: ErrorDescriptor,
        request_id: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {"error": descriptor.model_dump(exclude_none=True)}
        if request_id:
            details["request_id"] = request_id
        super().__init__(
            message=descriptor.message or "Request processing failed",
            error_code="REQUEST_FAILED",
            details=details,
            retryable=descriptor.retryable,
        )
        self.descriptor = descriptor
        self.request_id = request_id
