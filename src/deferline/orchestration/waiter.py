"""
deferline.orchestration.waiter - Bounded Polling for a Terminal Outcome
=========================================================================

The Waiter lets a caller who is willing to block for a while see the result
of an asynchronous job without a second round trip. It polls the Request
Record on a doubling schedule and gives up, without error, when the wait
budget runs out.

    budget = 1000ms, schedule 50 → 100 → 200 → 400 → 400 ...

    t=0    Dispatcher publishes
    t=50   poll: processing
    t=150  poll: processing
    t=350  poll: completed  → return result

The budget is truncated by ``max_synchronous_wait_ms``. Sleeps never
overshoot the remaining budget, so ``wait()`` returns within the budget plus
the cost of one state store read.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import structlog

from deferline.core.config import DispatchConfig
from deferline.core.enums import RequestStatus
from deferline.core.exceptions import RequestFailedError, StateStoreError
from deferline.core.models import RequestRecord
from deferline.orchestration.state_store import RequestStore

logger = structlog.get_logger()


def outcome_of(record: Optional[RequestRecord]) -> Optional[dict[str, Any]]:
    """Translate a Request Record into what a caller should see.

    Returns:
        The stored result when completed, None when absent or processing.

    Raises:
        RequestFailedError: When the record is failed.
    """
    if record is None or record.status is RequestStatus.PROCESSING:
        return None
    if record.status is RequestStatus.FAILED:
        raise RequestFailedError(record.error(), request_id=record.request_id)
    return record.data if record.data is not None else {}


class Waiter:
    """Polls the state store until a request is terminal or time runs out.

    Args:
        store: The Request Record store.
        config: Poll schedule and synchronous ceiling.
        sleep: Awaitable sleep, injectable for tests.
        clock: Monotonic clock in seconds, injectable for tests.
    """

    def __init__(
        self,
        store: RequestStore,
        config: Optional[DispatchConfig] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._config = config or DispatchConfig()
        self._sleep = sleep
        self._clock = clock
        self._logger = logger.bind(component="waiter")

    async def check(self, owner_id: str, request_id: str) -> Optional[dict[str, Any]]:
        """Read the record once.

        Raises:
            RequestFailedError: If the request failed.
            StateStoreError: If the read fails.
        """
        return outcome_of(await self._store.get(owner_id, request_id))

    async def wait(
        self,
        owner_id: str,
        request_id: str,
        wait_budget_ms: int,
    ) -> Optional[dict[str, Any]]:
        """Poll until completed, failed, or the budget is exhausted.

        Returns:
            The result, or None if the request is still processing when the
            budget runs out. That is a normal outcome, not an error.

        Raises:
            RequestFailedError: As soon as a ``failed`` record is observed.
        """
        budget_ms = min(max(wait_budget_ms, 0), self._config.max_synchronous_wait_ms)
        if budget_ms <= 0:
            return None

        deadline = self._clock() + budget_ms / 1000.0
        attempt = 0
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                self._logger.info(
                    "wait_budget_exhausted",
                    request_id=request_id,
                    budget_ms=budget_ms,
                    polls=attempt,
                )
                return None

            interval = self._config.poll_interval_ms(attempt) / 1000.0
            await self._sleep(min(interval, remaining))
            attempt += 1

            try:
                result = await self.check(owner_id, request_id)
            except StateStoreError as exc:
                self._logger.warning(
                    "wait_poll_failed",
                    request_id=request_id,
                    attempt=attempt,
                    error=exc.message,
                )
                continue

            if result is not None:
                self._logger.debug("wait_completed", request_id=request_id, polls=attempt)
                return result
