"""
Failure classification tests.

Covers:
1. Type-based coercion of raw exceptions
2. HTTP status mapping (transient vs rejected)
3. Retryability of every taxonomy member
4. Sanitized user-facing messages

Run with:
    pytest tests/test_failures.py -v
"""

import asyncio

import httpx
import pytest

from swapflow.services.failures import (
    FailureClass,
    JobCancelled,
    NetworkError,
    OrchestrationError,
    PollTimeout,
    ProviderJobFailed,
    ProviderRejected,
    SafetyBlocked,
    classify,
    coerce_error,
    from_http_status,
    is_retryable,
    sanitize_message,
)


def _status_error(status_code: int, body: str = "nope") -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://queue.fal.run/fal-ai/flux-lora")
    response = httpx.Response(status_code, text=body, request=request)
    return httpx.HTTPStatusError("error", request=request, response=response)


class TestCoerceError:

    def test_typed_error_returned_unchanged(self):
        error = ProviderRejected("bad payload")
        assert coerce_error(error) is error

    def test_provider_attached_when_missing(self):
        error = NetworkError("reset")
        coerce_error(error, provider="kling")
        assert error.provider == "kling"

    @pytest.mark.parametrize("raw", [
        httpx.ConnectError("connection refused"),
        httpx.ReadTimeout("read timed out"),
        asyncio.TimeoutError(),
        ConnectionResetError("reset by peer"),
    ])
    def test_transport_failures_are_network_errors(self, raw):
        error = coerce_error(raw)
        assert isinstance(error, NetworkError)
        assert error.original_error is raw

    def test_unknown_exception_is_provider_job_failed(self):
        error = coerce_error(KeyError("images"))
        assert isinstance(error, ProviderJobFailed)
        assert not isinstance(error, SafetyBlocked)

    def test_message_text_never_decides_class(self):
        # A generic error that merely mentions a network condition
        error = coerce_error(RuntimeError("ECONNREFUSED while parsing"))
        assert error.failure_class == FailureClass.PROVIDER_JOB_FAILED

    def test_cancelled_error_maps_to_job_cancelled(self):
        assert isinstance(coerce_error(asyncio.CancelledError()), JobCancelled)

    def test_http_status_error_uses_status_code(self):
        assert isinstance(coerce_error(_status_error(503)), NetworkError)
        rejected = coerce_error(_status_error(422, "invalid image_url"))
        assert isinstance(rejected, ProviderRejected)
        assert rejected.status_code == 422


class TestHttpStatusMapping:

    @pytest.mark.parametrize("status_code", [408, 429, 500, 502, 503, 504])
    def test_transient_statuses(self, status_code):
        error = from_http_status(status_code, "", "fal")
        assert isinstance(error, NetworkError)
        assert error.retryable

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404, 422])
    def test_rejected_statuses(self, status_code):
        error = from_http_status(status_code, '{"detail": "bad"}', "fal")
        assert isinstance(error, ProviderRejected)
        assert not error.retryable
        assert error.status_code == status_code


class TestRetryability:

    def test_only_network_errors_retry(self):
        assert is_retryable(NetworkError("x"))
        assert not is_retryable(ProviderRejected("x"))
        assert not is_retryable(ProviderJobFailed("x"))
        assert not is_retryable(SafetyBlocked("x"))
        assert not is_retryable(PollTimeout("x"))
        assert not is_retryable(JobCancelled("x"))

    def test_raw_exceptions_are_not_retryable_until_coerced(self):
        assert not is_retryable(ConnectionError("refused"))
        assert classify(ConnectionError("refused")) == FailureClass.NETWORK

    def test_safety_blocked_is_provider_job_failed(self):
        error = SafetyBlocked("blocked", reason="image_safety")
        assert isinstance(error, ProviderJobFailed)
        assert error.failure_class == FailureClass.SAFETY_BLOCKED
        assert error.reason == "image_safety"


class TestMessages:

    def test_annotate_appears_in_str(self):
        error = NetworkError("reset", provider="fal").annotate("fal upscale submission", 3)
        text = str(error)
        assert "operation=fal upscale submission" in text
        assert "attempts=3" in text

    def test_sanitized_message_has_label(self):
        message = sanitize_message(PollTimeout("no terminal status after 60 polls"))
        assert message.startswith("Timed out waiting for provider")

    def test_sanitized_message_is_truncated(self):
        message = sanitize_message(ProviderJobFailed("x" * 1000))
        assert len(message) < 400
        assert message.endswith("...")

    def test_base_error_is_exception(self):
        assert issubclass(OrchestrationError, Exception)
