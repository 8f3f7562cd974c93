"""
Failure taxonomy and classification for orchestrated provider work.

Every error that can cross a provider boundary is turned into one of the
typed variants below at the point where it originates. Downstream code
(retry executor, poll loop, sequencer) decides retry vs. propagate vs.
degrade from the type alone.

Taxonomy:
    NetworkError       - connection refused, timeout, DNS failure (retryable)
    ProviderRejected   - provider's synchronous validation/auth error (4xx)
    ProviderJobFailed  - provider accepted the job but it failed
    SafetyBlocked      - content-safety rejection (ProviderJobFailed subtype)
    PollTimeout        - job never reached a terminal state in the budget
    JobCancelled       - cooperative cancellation observed
"""

import asyncio
import socket
from enum import Enum

import httpx

# HTTP statuses that indicate a transient provider-side condition
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})

MAX_MESSAGE_LENGTH = 300


class FailureClass(str, Enum):
    """Classification of an orchestration failure."""
    NETWORK = "network"
    PROVIDER_REJECTED = "provider_rejected"
    PROVIDER_JOB_FAILED = "provider_job_failed"
    SAFETY_BLOCKED = "safety_blocked"
    POLL_TIMEOUT = "poll_timeout"
    CANCELLED = "cancelled"


class OrchestrationError(Exception):
    """
    Base exception for orchestration failures.

    Attributes:
        message: Error description
        provider: Provider identifier (fal, kling, ...)
        operation: Operation name, set by the retry executor
        attempts: Attempts made before the error propagated
        original_error: Underlying exception if available
    """

    failure_class = FailureClass.PROVIDER_JOB_FAILED
    retryable = False
    label = "Provider job failed"

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        operation: str | None = None,
        attempts: int | None = None,
        original_error: BaseException | None = None,
    ):
        self.message = message
        self.provider = provider
        self.operation = operation
        self.attempts = attempts
        self.original_error = original_error
        super().__init__(message)

    def annotate(self, operation: str, attempts: int) -> "OrchestrationError":
        """Attach operation name and attempt count for diagnostics."""
        self.operation = operation
        self.attempts = attempts
        return self

    def __str__(self) -> str:
        parts = [self.message]
        if self.provider:
            parts.append(f"provider={self.provider}")
        if self.operation:
            parts.append(f"operation={self.operation}")
        if self.attempts is not None:
            parts.append(f"attempts={self.attempts}")
        return " | ".join(parts)


class NetworkError(OrchestrationError):
    """Transient transport failure. Retryable."""

    failure_class = FailureClass.NETWORK
    retryable = True
    label = "Network error"


class ProviderRejected(OrchestrationError):
    """
    Provider refused the request synchronously (validation, auth, payload).

    Attributes:
        status_code: HTTP status code if available
        response_body: Truncated response body if available
    """

    failure_class = FailureClass.PROVIDER_REJECTED
    label = "Provider rejected request"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.response_body = response_body


class ProviderJobFailed(OrchestrationError):
    """Provider accepted the job but reported failure while processing."""


class SafetyBlocked(ProviderJobFailed):
    """
    Provider's content-safety filter rejected the job or its output.

    Attributes:
        reason: Provider-reported block reason (finish reason, error type)
    """

    failure_class = FailureClass.SAFETY_BLOCKED
    label = "Blocked by content safety filter"

    def __init__(self, message: str, reason: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.reason = reason or "safety_filter"


class PollTimeout(OrchestrationError):
    """
    Polling budget exhausted without a terminal provider status.

    Attributes:
        external_job_id: Provider request id that was being polled
        elapsed_seconds: Wall-clock time spent polling
    """

    failure_class = FailureClass.POLL_TIMEOUT
    label = "Timed out waiting for provider"

    def __init__(
        self,
        message: str,
        external_job_id: str | None = None,
        elapsed_seconds: float = 0.0,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.external_job_id = external_job_id
        self.elapsed_seconds = elapsed_seconds


class JobCancelled(OrchestrationError):
    """Raised at a cooperative checkpoint once cancellation was requested."""

    failure_class = FailureClass.CANCELLED
    label = "Cancelled"


def from_http_status(
    status_code: int,
    body: str,
    provider: str,
    original_error: BaseException | None = None,
) -> OrchestrationError:
    """
    Map a non-2xx provider response onto the taxonomy.

    Args:
        status_code: HTTP status code
        body: Response body text
        provider: Provider identifier

    Returns:
        NetworkError for transient statuses, ProviderRejected otherwise
    """
    if status_code in TRANSIENT_STATUS_CODES:
        return NetworkError(
            f"HTTP {status_code} from provider",
            provider=provider,
            original_error=original_error,
        )
    return ProviderRejected(
        f"HTTP {status_code}: {body[:200]}",
        status_code=status_code,
        response_body=body[:500],
        provider=provider,
        original_error=original_error,
    )


def coerce_error(error: BaseException, provider: str | None = None) -> OrchestrationError:
    """
    Convert any exception into a typed orchestration error.

    Classification is by exception type only.

    Args:
        error: Exception raised by an operation
        provider: Provider identifier to attach, if known

    Returns:
        The same error if already typed, otherwise a new typed error
        chained to the original
    """
    if isinstance(error, OrchestrationError):
        if provider and not error.provider:
            error.provider = provider
        return error

    if isinstance(error, asyncio.CancelledError):
        return JobCancelled("Operation cancelled", provider=provider, original_error=error)

    if isinstance(error, httpx.HTTPStatusError):
        return from_http_status(
            error.response.status_code,
            error.response.text,
            provider or "unknown",
            original_error=error,
        )

    if isinstance(
        error,
        (
            httpx.TransportError,
            asyncio.TimeoutError,
            TimeoutError,
            ConnectionError,
            socket.gaierror,
        ),
    ):
        return NetworkError(
            f"{type(error).__name__}: {error}",
            provider=provider,
            original_error=error,
        )

    return ProviderJobFailed(
        f"{type(error).__name__}: {error}",
        provider=provider,
        original_error=error,
    )


def classify(error: BaseException) -> FailureClass:
    """Return the failure class of an exception."""
    return coerce_error(error).failure_class


def is_retryable(error: BaseException) -> bool:
    """True when the retry executor may retry after this error."""
    return isinstance(error, OrchestrationError) and error.retryable


def sanitize_message(error: BaseException) -> str:
    """
    Build the normalized, user-facing message for a failed job.

    The full error detail belongs in the job log; this is the short
    top-level message.

    Args:
        error: Exception that terminated the job

    Returns:
        Human-readable message
    """
    typed = coerce_error(error)
    detail = typed.message.strip()
    if len(detail) > MAX_MESSAGE_LENGTH:
        detail = detail[: MAX_MESSAGE_LENGTH - 3] + "..."
    if not detail or detail == typed.label:
        return typed.label
    return f"{typed.label}: {detail}"
