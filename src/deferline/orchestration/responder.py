"""
deferline.orchestration.responder - Caller-Visible Answers
============================================================

Turns the outcome of ``Dispatcher.initiate()`` into an OutboundResponse:

    result present              → 200 (or the result's own ``status_code``, 100-599)
    result absent (pending)     → 202 + Location + Retry-After
    RequestFailedError          → stored descriptor's code, 503 if retryable,
                                  otherwise 500; body embeds the descriptor
    anything else               → generic 500, no descriptor

Every response carries the correlation headers (x-request-id,
x-correlationid, traceparent) and exposes them, plus Location and
Retry-After, to browser callers.
"""

from __future__ import annotations

from typing import Any, Optional

import structlog

from deferline.core.config import DispatchConfig
from deferline.core.exceptions import RequestFailedError
from deferline.core.models import OutboundResponse, TraceContext

logger = structlog.get_logger()

EXPOSED_HEADERS = "x-request-id,x-correlationid,Location,Retry-After"
RESULT_STATUS_KEY = "status_code"


class Responder:
    """Builds OutboundResponses for the four possible outcomes.

    Args:
        config: Supplies the Retry-After hint.
        data_key: When set, success bodies are wrapped as ``{data_key: result}``
            unless the result already has that key.
    """

    def __init__(
        self,
        config: Optional[DispatchConfig] = None,
        data_key: Optional[str] = None,
    ) -> None:
        self._config = config or DispatchConfig()
        self._data_key = data_key
        self._logger = logger.bind(component="responder")

    def respond(
        self,
        result: Optional[dict[str, Any]],
        location: str,
        request_id: str,
        trace: Optional[TraceContext] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> OutboundResponse:
        """Answer with the result, or with "accepted, retry later" when pending."""
        if result is None:
            return self.pending(location, request_id, trace, headers)
        return self.success(result, request_id, trace, headers)

    def success(
        self,
        result: dict[str, Any],
        request_id: str,
        trace: Optional[TraceContext] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> OutboundResponse:
        status_code = result.get(RESULT_STATUS_KEY)
        if _is_embedded_status(status_code) and status_code != 200:
            body = {k: v for k, v in result.items() if k != RESULT_STATUS_KEY}
            self._logger.info(
                "responding_with_result_status",
                request_id=request_id,
                status_code=status_code,
            )
            return OutboundResponse(
                status_code=status_code,
                headers=self._headers(request_id, trace, headers),
                body=None if status_code == 204 else body,
            )

        body = result
        if self._data_key and self._data_key not in result:
            body = {self._data_key: result}
        self._logger.info("responding_with_result", request_id=request_id)
        return OutboundResponse(
            status_code=200,
            headers=self._headers(request_id, trace, headers),
            body=body,
        )

    def pending(
        self,
        location: str,
        request_id: str,
        trace: Optional[TraceContext] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> OutboundResponse:
        response_headers = self._headers(request_id, trace, headers)
        response_headers["Location"] = location
        response_headers["Retry-After"] = str(self._config.retry_after_seconds)
        self._logger.info("responding_accepted", request_id=request_id, location=location)
        return OutboundResponse(
            status_code=202,
            headers=response_headers,
            body={"message": "Request accepted for processing"},
        )

    def failure(
        self,
        error: RequestFailedError,
        request_id: str,
        trace: Optional[TraceContext] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> OutboundResponse:
        descriptor = error.descriptor
        if descriptor.code is not None and 400 <= descriptor.code <= 599:
            status_code = descriptor.code
        elif descriptor.retryable:
            status_code = 503
        else:
            status_code = 500

        response_headers = self._headers(request_id, trace, headers)
        if descriptor.retryable or status_code in (429, 503):
            response_headers["Retry-After"] = str(self._config.retry_after_seconds)

        self._logger.info(
            "responding_with_failure",
            request_id=request_id,
            status_code=status_code,
            retryable=descriptor.retryable,
        )
        return OutboundResponse(
            status_code=status_code,
            headers=response_headers,
            body={
                "message": descriptor.message,
                "error": descriptor.model_dump(mode="json", exclude_none=True),
            },
        )

    def internal_error(
        self,
        request_id: str,
        trace: Optional[TraceContext] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> OutboundResponse:
        return OutboundResponse(
            status_code=500,
            headers=self._headers(request_id, trace, headers),
            body={"message": "Internal server error", "requestId": request_id},
        )

    @staticmethod
    def _headers(
        request_id: str,
        trace: Optional[TraceContext],
        extra: Optional[dict[str, str]],
    ) -> dict[str, str]:
        merged = dict(extra or {})
        merged["x-request-id"] = request_id
        merged["x-correlationid"] = (trace.correlation_id if trace else None) or request_id
        if trace is not None and trace.traceparent:
            merged["traceparent"] = trace.traceparent
        merged["Access-Control-Expose-Headers"] = EXPOSED_HEADERS
        return merged


def _is_embedded_status(value: Any) -> bool:
    # Anything outside the HTTP range is ordinary result data.
    return isinstance(value, int) and not isinstance(value, bool) and 100 <= value <= 599
