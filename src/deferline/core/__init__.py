"""
deferline.core - Foundation Layer
=================================

This package contains the foundational building blocks that every other
module in deferline depends on:

    - config:      DeferlineConfig and its nested sections, logging setup
    - enums:       RequestStatus, ErrorKind, WorkerOutcome
    - exceptions:  Exception hierarchy with explicit retryable flags
    - identity:    Owner identity hashing for state-store keys
    - models:      RequestRecord, JobEnvelope, ErrorDescriptor, etc.

Dependency Rule:
    core/ depends on NOTHING else in the deferline package.
"""

from deferline.core.config import (
    DeferlineConfig,
    DispatchConfig,
    RedisConfig,
    WorkerConfig,
    configure_logging,
    load_config,
)
from deferline.core.enums import ErrorKind, RequestStatus, WorkerOutcome
from deferline.core.exceptions import (
    ConfigurationError,
    DeferlineError,
    InvalidPayloadError,
    MalformedJobError,
    ProcessorError,
    RequestFailedError,
    StateStoreError,
    TransientUpstreamError,
    UpstreamRejectedError,
    WorkQueueError,
)
from deferline.core.identity import OwnerHasher
from deferline.core.models import (
    ErrorDescriptor,
    InboundRequest,
    JobEnvelope,
    OutboundResponse,
    RequestRecord,
    TraceContext,
)

__all__ = [
    # Config
    "DeferlineConfig",
    "DispatchConfig",
    "RedisConfig",
    "WorkerConfig",
    "configure_logging",
    "load_config",
    # Enums
    "ErrorKind",
    "RequestStatus",
    "WorkerOutcome",
    # Exceptions
    "DeferlineError",
    "ConfigurationError",
    "StateStoreError",
    "WorkQueueError",
    "MalformedJobError",
    "ProcessorError",
    "TransientUpstreamError",
    "UpstreamRejectedError",
    "InvalidPayloadError",
    "RequestFailedError",
    # Identity
    "OwnerHasher",
    # Models
    "ErrorDescriptor",
    "InboundRequest",
    "JobEnvelope",
    "OutboundResponse",
    "RequestRecord",
    "TraceContext",
]
