"""
deferline.core.enums - Type-Safe Enumerations
===============================================

This module defines all enumeration types used throughout deferline.
Enums provide type safety, prevent typos, and make the codebase self-documenting.

All enums inherit from both `str` and `Enum`, which means:
    - They serialize to strings in JSON/YAML (Pydantic-friendly)
    - They can be compared with plain strings: RequestStatus.COMPLETED == "completed"
    - They survive a round trip through the state store unchanged

Architecture Mapping:

    ┌─────────────────────────────────────────────────────────────────┐
    │  REQUEST RECORD                                                 │
    │    RequestStatus: processing → completed | failed               │
    ├─────────────────────────────────────────────────────────────────┤
    │  OUTCOME CLASSIFICATION                                         │
    │    ErrorKind: Why a processor call failed (retryable or not)    │
    ├─────────────────────────────────────────────────────────────────┤
    │  WORKER                                                         │
    │    WorkerOutcome: What happened to one queue delivery           │
    └─────────────────────────────────────────────────────────────────┘
"""

from enum import Enum


# =============================================================================
# Request Status Enumeration
# =============================================================================
# The only state machine persisted by deferline. Transitions are monotonic:
#
#   (absent) → PROCESSING → COMPLETED
#                         → FAILED
#
# A terminal status (COMPLETED / FAILED) is never overwritten. The state
# store adapters enforce this on every terminal write.
# =============================================================================
class RequestStatus(str, Enum):
    """Lifecycle states of a Request Record.

    State Transitions:
        PROCESSING → COMPLETED: The processor returned a result
        PROCESSING → FAILED:    The processor raised a terminal error,
                                or the job could not be enqueued

    Usage:
        >>> record.status == RequestStatus.PROCESSING
        >>> record.status.is_terminal
    """

    PROCESSING = "processing"   # Work accepted, outcome not yet known
    COMPLETED = "completed"     # Terminal: data holds the processor result
    FAILED = "failed"           # Terminal: data holds an ErrorDescriptor

    @property
    def is_terminal(self) -> bool:
        """True for COMPLETED and FAILED."""
        return self is not RequestStatus.PROCESSING


# =============================================================================
# Error Kind Enumeration
# =============================================================================
# Output of the outcome classifier (orchestration/classifier.py). The kind is
# recorded on the ErrorDescriptor and in log lines so operators can tell a
# rate-limited upstream apart from a malformed payload at a glance.
#
#   TRANSIENT_UPSTREAM → retryable (429 / 503 / 504 from the upstream)
#   NETWORK            → retryable (timeout, reset, refused, DNS)
#   CLIENT_FLAGGED     → retryable (store/queue client said "retry me")
#   INFRASTRUCTURE     → retryable (our own store/queue adapters failed)
#   VALIDATION         → terminal  (malformed input, business-rule rejection)
#   REJECTED           → terminal  (explicit 4xx-equivalent from upstream)
#   UNKNOWN            → terminal  (anything we cannot recognise)
# =============================================================================
class ErrorKind(str, Enum):
    """Categories produced by outcome classification."""

    TRANSIENT_UPSTREAM = "transient_upstream"
    NETWORK = "network"
    CLIENT_FLAGGED = "client_flagged"
    INFRASTRUCTURE = "infrastructure"
    VALIDATION = "validation"
    REJECTED = "rejected"
    UNKNOWN = "unknown"


# =============================================================================
# Worker Outcome Enumeration
# =============================================================================
# What the Worker did with a single delivery. The consume loop maps these to
# queue operations:
#
#   COMPLETED → ack      (result persisted)
#   FAILED    → ack      (terminal error persisted, never redelivered)
#   DROPPED   → ack      (malformed envelope, nothing to persist)
#   RETRY     → release  (retryable error, let the queue redeliver)
# =============================================================================
class WorkerOutcome(str, Enum):
    """Result of processing one queue delivery."""

    COMPLETED = "completed"
    FAILED = "failed"
    DROPPED = "dropped"
    RETRY = "retry"
