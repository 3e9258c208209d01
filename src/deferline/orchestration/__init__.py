"""
deferline.orchestration - Request Orchestration Layer
=======================================================

    - state_store:  Request Record persistence (in-memory, Redis)
    - work_queue:   At-least-once job queue (in-memory, Redis)
    - processor:    The injected unit of work
    - classifier:   Retryable vs terminal outcome classification
    - waiter:       Bounded polling for a terminal outcome
    - dispatcher:   Sync / async path selection per request
    - worker:       Queue consumer
    - responder:    Outcome → OutboundResponse
"""

from deferline.orchestration.classifier import (
    Classification,
    classify_error,
    describe_error,
    is_retryable,
)
from deferline.orchestration.dispatcher import Dispatcher, RequestScope
from deferline.orchestration.processor import (
    CallableProcessor,
    Processor,
    ProcessorContext,
    as_processor,
    normalize_result,
)
from deferline.orchestration.responder import Responder
from deferline.orchestration.state_store import (
    InMemoryRequestStore,
    RedisRequestStore,
    RequestStore,
)
from deferline.orchestration.waiter import Waiter, outcome_of
from deferline.orchestration.work_queue import (
    Delivery,
    InMemoryWorkQueue,
    RedisWorkQueue,
    WorkQueue,
)
from deferline.orchestration.worker import BatchReport, Worker

__all__ = [
    # Classification
    "Classification",
    "classify_error",
    "describe_error",
    "is_retryable",
    # Dispatch
    "Dispatcher",
    "RequestScope",
    "Waiter",
    "outcome_of",
    # Processor
    "Processor",
    "ProcessorContext",
    "CallableProcessor",
    "as_processor",
    "normalize_result",
    # Response
    "Responder",
    # State Store
    "RequestStore",
    "InMemoryRequestStore",
    "RedisRequestStore",
    # Work Queue
    "WorkQueue",
    "Delivery",
    "InMemoryWorkQueue",
    "RedisWorkQueue",
    # Worker
    "Worker",
    "BatchReport",
]
