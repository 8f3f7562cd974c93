"""
Bounded poll loop for external provider jobs.

Repeatedly checks provider status until a terminal state, with a fixed
interval and a maximum number of status checks. Transient network errors
while polling are absorbed (the poll is retried, not the job).
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from swapflow.models.schemas import ExternalStatus, ProviderStatus, StageAttempt
from swapflow.services.failures import (
    JobCancelled,
    NetworkError,
    PollTimeout,
    ProviderJobFailed,
    SafetyBlocked,
    coerce_error,
)

logger = logging.getLogger(__name__)

# "step 500/1000", "Step: 500 / 1000"
STEP_PATTERN = re.compile(r"step\s*:?\s*(\d+)\s*/\s*(\d+)", re.IGNORECASE)

ProgressExtractor = Callable[[ProviderStatus], int | None]
ProgressHandler = Callable[[ProviderStatus, int | None], Awaitable[None]]
SleepFunc = Callable[[float], Awaitable[None]]


def parse_step_progress(text: str | None) -> int | None:
    """
    Parse "step N/M" progress from a provider log line.

    Args:
        text: Free-text log line

    Returns:
        Percent 0-100, or None when absent or malformed
    """
    if not text:
        return None

    match = STEP_PATTERN.search(text)
    if not match:
        return None

    current, total = int(match.group(1)), int(match.group(2))
    if total <= 0:
        return None
    return max(0, min(100, round(current / total * 100)))


def log_step_progress(status: ProviderStatus) -> int | None:
    """Extract progress from the most recent log line that has one."""
    for line in reversed(status.logs):
        progress = parse_step_progress(line)
        if progress is not None:
            return progress
    return status.progress


def reported_progress(status: ProviderStatus) -> int | None:
    """Use the provider's own progress field, if any."""
    return status.progress


@dataclass
class PollingConfig:
    """
    Polling configuration for one stage.

    Attributes:
        interval_seconds: Sleep between status checks
        max_attempts: Maximum number of status checks
        progress_extractor: Maps a status to 0-100 (None = no update)
    """

    interval_seconds: float = 5.0
    max_attempts: int = 120
    progress_extractor: ProgressExtractor | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.interval_seconds < 0:
            raise ValueError(f"interval_seconds must be >= 0, got {self.interval_seconds}")

    @property
    def ceiling_seconds(self) -> float:
        """Upper bound on time spent polling."""
        return self.interval_seconds * self.max_attempts


def _check_cancelled(cancel_event: asyncio.Event | None, external_job_id: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise JobCancelled(f"Stopped waiting on provider job {external_job_id}")


async def poll_until_complete(
    external_job_id: str,
    check_status: Callable[[], Awaitable[ProviderStatus]],
    fetch_result: Callable[[], Awaitable[dict[str, Any]]],
    config: PollingConfig,
    on_progress: ProgressHandler | None = None,
    cancel_event: asyncio.Event | None = None,
    attempt: StageAttempt | None = None,
    sleep: SleepFunc = asyncio.sleep,
    label: str = "provider job",
) -> dict[str, Any]:
    """
    Poll a provider job until it completes.

    Args:
        external_job_id: Provider request id
        check_status: Coroutine factory returning the current status
        fetch_result: Coroutine factory returning the result (called once)
        config: Interval, attempt budget and progress extraction
        on_progress: Called with each non-terminal status
        cancel_event: Set when the owning job was cancelled
        attempt: Stage attempt to record poll count and last status on
        sleep: Awaitable sleep (injectable for tests)
        label: Human-readable name for logs

    Returns:
        Result document from fetch_result

    Raises:
        ProviderJobFailed: Provider reported FAILED
        SafetyBlocked: Provider reported a content-safety rejection
        PollTimeout: max_attempts status checks without a terminal state
        JobCancelled: cancel_event was set between polls
    """
    started = time.monotonic()
    logger.info(
        f"Polling {label} {external_job_id}: "
        f"interval={config.interval_seconds}s, max_attempts={config.max_attempts}"
    )

    for poll in range(1, config.max_attempts + 1):
        _check_cancelled(cancel_event, external_job_id)

        try:
            status = await check_status()
        except Exception as e:
            error = coerce_error(e)
            if not isinstance(error, NetworkError):
                if error is e:
                    raise
                raise error from e
            logger.warning(
                f"[Poll {poll}/{config.max_attempts}] {label} network error: "
                f"{error.message}. Continuing..."
            )
            if attempt is not None:
                attempt.poll_count = poll
            if poll < config.max_attempts:
                await sleep(config.interval_seconds)
            continue

        elapsed = time.monotonic() - started
        if attempt is not None:
            attempt.poll_count = poll
            attempt.last_status = status.status

        logger.debug(
            f"[Poll {poll}/{config.max_attempts}] {label} {external_job_id}: "
            f"{status.status.value}, elapsed {elapsed:.0f}s"
        )
        for line in status.logs[-3:]:
            logger.debug(f"  [{label}] {line}")

        if status.status == ExternalStatus.COMPLETED:
            logger.info(f"{label} {external_job_id} completed after {poll} poll(s), {elapsed:.0f}s")
            return await fetch_result()

        if status.status == ExternalStatus.FAILED:
            if status.safety_blocked:
                raise SafetyBlocked(
                    f"{label} blocked by provider safety filter",
                    reason=status.error,
                )
            raise ProviderJobFailed(
                f"{label} failed on provider" + (f": {status.error}" if status.error else "")
            )

        if on_progress is not None:
            extractor = config.progress_extractor or reported_progress
            await on_progress(status, extractor(status))

        if poll < config.max_attempts:
            await sleep(config.interval_seconds)

    elapsed = time.monotonic() - started
    logger.error(f"{label} {external_job_id} timed out after {config.max_attempts} polls ({elapsed:.0f}s)")
    raise PollTimeout(
        f"{label} did not finish after {config.max_attempts} polls ({elapsed:.0f}s)",
        external_job_id=external_job_id,
        elapsed_seconds=elapsed,
        attempts=config.max_attempts,
    )
