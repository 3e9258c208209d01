"""
Tests for deferline.orchestration.classifier
==============================================

Outcome classification decides between queue redelivery and a terminal
``failed`` record, so each rule is pinned here:

    DeferlineError flag → network builtins → client flag → validation → unknown
"""

import asyncio
import errno
import socket

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from deferline.core.enums import ErrorKind
from deferline.core.exceptions import (
    InvalidPayloadError,
    StateStoreError,
    TransientUpstreamError,
    UpstreamRejectedError,
)
from deferline.orchestration.classifier import classify_error, describe_error, is_retryable


class _FlaggedClientError(Exception):
    """Mimics a client library error that carries its own retryable flag."""

    def __init__(self, message: str, retryable: bool) -> None:
        super().__init__(message)
        self.retryable = retryable


class TestClassifyError:

    # -------------------------------------------------------------------------
    # Retryable
    # -------------------------------------------------------------------------

    def test_transient_upstream_is_retryable(self) -> None:
        result = classify_error(TransientUpstreamError("rate limited", status_code=429))
        assert result.retryable is True
        assert result.kind is ErrorKind.TRANSIENT_UPSTREAM

    @pytest.mark.parametrize(
        "exc",
        [
            TimeoutError("read timed out"),
            asyncio.TimeoutError(),
            ConnectionResetError("reset by peer"),
            ConnectionRefusedError("refused"),
            socket.gaierror("name resolution failed"),
            OSError(errno.EHOSTUNREACH, "no route to host"),
            RedisConnectionError("redis down"),
            RedisTimeoutError("redis slow"),
        ],
    )
    def test_network_errors_are_retryable(self, exc: BaseException) -> None:
        result = classify_error(exc)
        assert result.retryable is True
        assert result.kind is ErrorKind.NETWORK

    def test_infrastructure_error_is_retryable(self) -> None:
        result = classify_error(StateStoreError("write failed"))
        assert result.retryable is True
        assert result.kind is ErrorKind.INFRASTRUCTURE

    def test_client_flagged_error_is_retryable(self) -> None:
        result = classify_error(_FlaggedClientError("throttled", retryable=True))
        assert result.retryable is True
        assert result.kind is ErrorKind.CLIENT_FLAGGED

    # -------------------------------------------------------------------------
    # Terminal
    # -------------------------------------------------------------------------

    def test_rejected_upstream_is_terminal(self) -> None:
        result = classify_error(UpstreamRejectedError("not found", status_code=404))
        assert result.retryable is False
        assert result.kind is ErrorKind.REJECTED

    @pytest.mark.parametrize("exc", [ValueError("bad period"), TypeError("wrong type")])
    def test_validation_builtins_are_terminal(self, exc: BaseException) -> None:
        result = classify_error(exc)
        assert result.retryable is False
        assert result.kind is ErrorKind.VALIDATION

    def test_client_flag_false_is_terminal(self) -> None:
        assert is_retryable(_FlaggedClientError("no", retryable=False)) is False

    def test_other_os_errors_are_terminal(self) -> None:
        assert is_retryable(OSError(errno.ENOENT, "no such file")) is False

    def test_unknown_errors_are_terminal(self) -> None:
        result = classify_error(RuntimeError("unexpected"))
        assert result.retryable is False
        assert result.kind is ErrorKind.UNKNOWN

    def test_message_text_is_never_sniffed(self) -> None:
        """A message mentioning a timeout does not make an error retryable."""
        assert is_retryable(RuntimeError("gateway timeout 504")) is False


class TestDescribeError:

    def test_status_code_becomes_code(self) -> None:
        descriptor = describe_error(UpstreamRejectedError("VAT period not found", status_code=404))
        assert descriptor.message == "VAT period not found"
        assert descriptor.code == 404
        assert descriptor.retryable is False
        assert descriptor.kind is ErrorKind.REJECTED

    def test_details_become_detail(self) -> None:
        descriptor = describe_error(InvalidPayloadError("bad", details={"field": "period"}))
        assert descriptor.detail == {"field": "period"}
        assert descriptor.code == 400

    def test_retryable_flag_recorded(self) -> None:
        assert describe_error(TimeoutError("slow")).retryable is True

    def test_empty_message_falls_back_to_type_name(self) -> None:
        assert describe_error(RuntimeError()).message == "RuntimeError"

    def test_non_integer_status_code_ignored(self) -> None:
        exc = RuntimeError("odd")
        exc.status_code = "teapot"
        assert describe_error(exc).code is None
