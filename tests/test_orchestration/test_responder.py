"""
Tests for deferline.orchestration.responder
"""

import pytest

from deferline.core.config import DispatchConfig
from deferline.core.enums import ErrorKind
from deferline.core.exceptions import RequestFailedError
from deferline.core.models import ErrorDescriptor, TraceContext
from deferline.orchestration.responder import EXPOSED_HEADERS, Responder

LOCATION = "https://api.example.com/vat/returns"


def _failed(**descriptor) -> RequestFailedError:
    return RequestFailedError(ErrorDescriptor(**descriptor), request_id="req-1")


# =============================================================================
# Test: Success and pending
# =============================================================================
class TestRespond:

    def test_result_is_200(self, responder) -> None:
        response = responder.respond({"total": 3}, LOCATION, "req-1")

        assert response.status_code == 200
        assert response.body == {"total": 3}

    def test_empty_result_is_200_not_pending(self, responder) -> None:
        response = responder.respond({}, LOCATION, "req-1")
        assert response.status_code == 200
        assert response.body == {}

    def test_pending_is_202_with_location(self, responder) -> None:
        response = responder.respond(None, LOCATION, "req-1")

        assert response.status_code == 202
        assert response.headers["Location"] == LOCATION
        assert response.headers["Retry-After"] == "5"
        assert response.body == {"message": "Request accepted for processing"}

    def test_retry_after_follows_config(self) -> None:
        responder = Responder(DispatchConfig(retry_after_seconds=2))
        assert responder.pending(LOCATION, "req-1").headers["Retry-After"] == "2"

    def test_embedded_status_code_is_used(self, responder) -> None:
        response = responder.success({"status_code": 201, "id": "abc"}, "req-1")

        assert response.status_code == 201
        assert response.body == {"id": "abc"}

    def test_embedded_204_has_no_body(self, responder) -> None:
        response = responder.success({"status_code": 204}, "req-1")
        assert response.status_code == 204
        assert response.body is None

    @pytest.mark.parametrize("status_code", [0, 99, 600, 700])
    def test_out_of_range_embedded_status_is_plain_data(self, responder, status_code) -> None:
        result = {"status_code": status_code, "x": 1}

        response = responder.success(result, "req-1")

        assert response.status_code == 200
        assert response.body == result

    def test_boolean_status_is_plain_data(self, responder) -> None:
        assert responder.success({"status_code": True}, "req-1").status_code == 200

    def test_data_key_wraps_result(self) -> None:
        responder = Responder(data_key="data")

        assert responder.success({"a": 1}, "req-1").body == {"data": {"a": 1}}
        assert responder.success({"data": [1]}, "req-1").body == {"data": [1]}


# =============================================================================
# Test: Failures
# =============================================================================
class TestFailure:

    def test_descriptor_code_becomes_status(self, responder) -> None:
        response = responder.failure(
            _failed(message="VAT period not found", code=404, kind=ErrorKind.REJECTED),
            "req-1",
        )

        assert response.status_code == 404
        assert response.body["message"] == "VAT period not found"
        assert response.body["error"] == {
            "message": "VAT period not found",
            "code": 404,
            "retryable": False,
            "kind": "rejected",
        }
        assert "Retry-After" not in response.headers

    def test_retryable_without_code_is_503(self, responder) -> None:
        response = responder.failure(_failed(message="queue unavailable", retryable=True), "req-1")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "5"

    def test_terminal_without_code_is_500(self, responder) -> None:
        response = responder.failure(_failed(message="boom"), "req-1")
        assert response.status_code == 500

    def test_out_of_range_code_is_ignored(self, responder) -> None:
        response = responder.failure(_failed(message="odd", code=42), "req-1")
        assert response.status_code == 500

    def test_rate_limited_code_gets_retry_after(self, responder) -> None:
        response = responder.failure(_failed(message="slow down", code=429), "req-1")
        assert response.status_code == 429
        assert "Retry-After" in response.headers

    def test_internal_error_hides_details(self, responder) -> None:
        response = responder.internal_error("req-1")

        assert response.status_code == 500
        assert response.body == {"message": "Internal server error", "requestId": "req-1"}


# =============================================================================
# Test: Correlation headers
# =============================================================================
class TestHeaders:

    def test_correlation_headers_present(self, responder) -> None:
        trace = TraceContext(traceparent="00-abc-def-01", correlation_id="corr-1")

        response = responder.respond({"ok": True}, LOCATION, "req-1", trace)

        assert response.headers["x-request-id"] == "req-1"
        assert response.headers["x-correlationid"] == "corr-1"
        assert response.headers["traceparent"] == "00-abc-def-01"
        assert response.headers["Access-Control-Expose-Headers"] == EXPOSED_HEADERS

    def test_correlation_id_defaults_to_request_id(self, responder) -> None:
        response = responder.respond(None, LOCATION, "req-1")

        assert response.headers["x-correlationid"] == "req-1"
        assert "traceparent" not in response.headers

    def test_extra_headers_are_merged(self, responder) -> None:
        response = responder.respond({}, LOCATION, "req-1", headers={"Cache-Control": "no-store"})
        assert response.headers["Cache-Control"] == "no-store"
