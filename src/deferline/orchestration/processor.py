"""
deferline.orchestration.processor - The Injected Unit of Work
===============================================================

A Processor performs the actual slow or unreliable work behind a request:
calling an upstream API, running a report, anything. The orchestrator treats
it as opaque. It only needs to be able to call it and to understand how it
failed.

Two ways to provide one:

    class ReportProcessor(Processor):
        async def execute(self, payload, context):
            return await build_report(payload["period"])

    processor = CallableProcessor(build_report_from_payload)

Result Normalisation:
    The orchestrator distinguishes "no result yet" (pending) from a result,
    so a Processor result is always a JSON object:
        None        → {}
        {"a": 1}    → {"a": 1}
        [1, 2]      → {"value": [1, 2]}

    A result may carry ``status_code`` to make the Responder answer with a
    non-default success status (e.g. 201 or 204) without that being treated
    as an orchestration failure.

Failure Signalling:
    Raise TransientUpstreamError for anything that may succeed on a later
    attempt, UpstreamRejectedError / InvalidPayloadError for definitive
    failures. Plain exceptions are classified by
    deferline.orchestration.classifier.
"""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, Field

from deferline.core.models import TraceContext


class ProcessorContext(BaseModel):
    """Identity of the request a Processor is executing for."""

    owner_id: str
    request_id: str
    trace: TraceContext = Field(default_factory=TraceContext)


class Processor(ABC):
    """Strategy interface for the work behind a request.

    Implementations must be safe to run more than once for the same
    request-id (queue delivery is at-least-once) and should be deterministic
    so that duplicate runs store identical results.
    """

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @abstractmethod
    async def execute(
        self,
        payload: dict[str, Any],
        context: ProcessorContext,
    ) -> Any:
        """Run the work for one request.

        Args:
            payload: The opaque request payload.
            context: Owner, request-id and trace context.

        Returns:
            A JSON-serialisable result (see ``normalize_result``).

        Raises:
            ProcessorError: Or any other exception; see the classifier.
        """

    async def run(
        self,
        payload: dict[str, Any],
        context: ProcessorContext,
    ) -> dict[str, Any]:
        """Execute and normalise the result. This is what the orchestrator calls."""
        return normalize_result(await self.execute(payload, context))


ProcessorFunc = Callable[..., Union[Awaitable[Any], Any]]


class CallableProcessor(Processor):
    """Adapts a plain function into a Processor.

    The function may be sync or async, and may accept either ``(payload)``
    or ``(payload, context)``.

    Example:
        >>> async def shout(payload):
        ...     return {"text": payload["text"].upper()}
        >>> processor = CallableProcessor(shout)
    """

    def __init__(self, func: ProcessorFunc, name: Optional[str] = None) -> None:
        self._func = func
        self._name = name or getattr(func, "__name__", type(func).__name__)
        self._wants_context = _accepts_context(func)

    @property
    def name(self) -> str:
        return self._name

    async def execute(
        self,
        payload: dict[str, Any],
        context: ProcessorContext,
    ) -> Any:
        if self._wants_context:
            result = self._func(payload, context)
        else:
            result = self._func(payload)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"CallableProcessor(name={self._name!r})"


def normalize_result(result: Any) -> dict[str, Any]:
    """Turn a Processor return value into a JSON object."""
    if result is None:
        return {}
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    if isinstance(result, Mapping):
        return dict(result)
    return {"value": result}


def as_processor(processor: Union[Processor, ProcessorFunc]) -> Processor:
    """Accept either a Processor or a plain function."""
    if isinstance(processor, Processor):
        return processor
    if callable(processor):
        return CallableProcessor(processor)
    raise TypeError(f"Expected a Processor or a callable, got {type(processor).__name__}")


def _accepts_context(func: ProcessorFunc) -> bool:
    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError):
        return False
    positional = [
        p
        for p in signature.parameters.values()
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
    ]
    has_varargs = any(p.kind == p.VAR_POSITIONAL for p in signature.parameters.values())
    return has_varargs or len(positional) >= 2
