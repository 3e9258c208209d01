"""
deferline.orchestration.classifier - Outcome Classification
=============================================================

Decides whether a failure is worth another attempt. Used by the Worker
(retryable → let the queue redeliver, terminal → record ``failed``) and by
the Dispatcher's inline path (to record the retryable flag on the stored
descriptor).

Rules, first match wins:

    1. DeferlineError             → its own ``retryable`` flag and kind
    2. Network-level builtins     → retryable (NETWORK)
       TimeoutError, ConnectionError, socket.gaierror, OSError with a
       reset / timeout / refused / unreachable errno, redis connection and
       timeout errors
    3. ``exc.retryable`` truthy   → retryable (CLIENT_FLAGGED)
    4. ValueError / TypeError     → terminal (VALIDATION)
    5. Anything else              → terminal (UNKNOWN)

No message sniffing happens anywhere: an error that should be retried
says so where it is raised.
"""

from __future__ import annotations

import asyncio
import errno
import socket
from typing import Optional

from pydantic import BaseModel
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from deferline.core.enums import ErrorKind
from deferline.core.exceptions import DeferlineError, ProcessorError
from deferline.core.models import ErrorDescriptor

_NETWORK_ERRNOS = frozenset(
    {
        errno.ECONNRESET,
        errno.ETIMEDOUT,
        errno.ECONNREFUSED,
        errno.EHOSTUNREACH,
        errno.ENETUNREACH,
    }
)

_NETWORK_TYPES: tuple[type[BaseException], ...] = (
    TimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
    socket.gaierror,
    RedisConnectionError,
    RedisTimeoutError,
)


class Classification(BaseModel):
    """Result of classifying one exception."""

    kind: ErrorKind
    retryable: bool


def classify_error(exc: BaseException) -> Classification:
    """Classify an exception as retryable or terminal.

    Example:
        >>> classify_error(TimeoutError()).retryable
        True
        >>> classify_error(ValueError("bad period")).kind
        <ErrorKind.VALIDATION: 'validation'>
    """
    if isinstance(exc, DeferlineError):
        return Classification(kind=exc.kind, retryable=exc.retryable)

    if isinstance(exc, _NETWORK_TYPES):
        return Classification(kind=ErrorKind.NETWORK, retryable=True)
    if isinstance(exc, OSError) and exc.errno in _NETWORK_ERRNOS:
        return Classification(kind=ErrorKind.NETWORK, retryable=True)

    if getattr(exc, "retryable", False):
        return Classification(kind=ErrorKind.CLIENT_FLAGGED, retryable=True)

    if isinstance(exc, (ValueError, TypeError)):
        return Classification(kind=ErrorKind.VALIDATION, retryable=False)
    return Classification(kind=ErrorKind.UNKNOWN, retryable=False)


def is_retryable(exc: BaseException) -> bool:
    """Shorthand for ``classify_error(exc).retryable``."""
    return classify_error(exc).retryable


def describe_error(
    exc: BaseException,
    classification: Optional[Classification] = None,
) -> ErrorDescriptor:
    """Build the ErrorDescriptor stored on a ``failed`` Request Record."""
    classification = classification or classify_error(exc)

    code: Optional[int] = getattr(exc, "status_code", None)
    if isinstance(exc, ProcessorError):
        code = exc.status_code
    if not isinstance(code, int) or isinstance(code, bool):
        code = None

    detail = None
    if isinstance(exc, DeferlineError) and exc.details:
        detail = exc.details

    return ErrorDescriptor(
        message=str(exc) or type(exc).__name__,
        code=code,
        detail=detail,
        retryable=classification.retryable,
        kind=classification.kind,
    )
