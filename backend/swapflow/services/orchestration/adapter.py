"""
Provider submission adapter.

Drives one provider interaction to completion: submission through the
retry executor (bounded per call by submit_timeout), then the poll loop.
Stages call this instead of talking to providers directly, so the
submit/poll/result flow is written once for every provider.
"""

import asyncio
import logging
from typing import Any

from swapflow.config import Settings
from swapflow.models.schemas import ProviderStatus, StageAttempt, SubmitResponse
from swapflow.services.failures import OrchestrationError, coerce_error
from swapflow.services.orchestration.polling import (
    PollingConfig,
    SleepFunc,
    poll_until_complete,
)
from swapflow.services.orchestration.progress import StageProgress
from swapflow.services.orchestration.retry import RetryExecutor
from swapflow.services.providers.base import GenerationProvider

logger = logging.getLogger(__name__)


class ProviderAdapter:
    """
    Uniform submit-and-wait over any GenerationProvider.

    Example:
        adapter = ProviderAdapter.from_settings(settings)
        attempt = await adapter.run(
            fal, "upscale_clarity", {"image_url": url},
            polling=resolver.polling_for("upscale"),
            progress=stage_progress,
        )
        video_url = attempt.result["video"]["url"]
    """

    def __init__(
        self,
        retry_executor: RetryExecutor | None = None,
        submit_timeout: float = 120.0,
        sleep: SleepFunc = asyncio.sleep,
    ):
        """
        Initialize adapter.

        Args:
            retry_executor: Executor wrapping submissions
            submit_timeout: Timeout in seconds for each submission call
            sleep: Awaitable sleep used between polls (injectable for tests)
        """
        self.retry_executor = retry_executor or RetryExecutor(sleep=sleep)
        self.submit_timeout = submit_timeout
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, sleep: SleepFunc = asyncio.sleep) -> "ProviderAdapter":
        """Create adapter with configured retry and timeout."""
        return cls(
            retry_executor=RetryExecutor.from_settings(settings, sleep=sleep),
            submit_timeout=settings.submit_timeout,
            sleep=sleep,
        )

    async def submit(
        self,
        provider: GenerationProvider,
        kind: str,
        payload: dict[str, Any],
    ) -> SubmitResponse:
        """
        Submit work to a provider.

        NetworkError (including a submission timeout) is retried;
        ProviderRejected surfaces on the first occurrence.

        Args:
            provider: Provider client
            kind: Provider operation kind
            payload: Provider-specific payload

        Returns:
            Envelope with the external job id

        Raises:
            OrchestrationError: Submission failed
        """

        async def operation() -> SubmitResponse:
            return await asyncio.wait_for(
                provider.submit(kind, payload),
                timeout=self.submit_timeout,
            )

        return await self.retry_executor.run(
            operation,
            f"{provider.name} {kind} submission",
            provider=provider.name,
        )

    async def run(
        self,
        provider: GenerationProvider,
        kind: str,
        payload: dict[str, Any],
        polling: PollingConfig,
        progress: StageProgress | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> StageAttempt:
        """
        Submit work and poll it to a terminal state.

        Provider status changes and extracted sub-progress are published
        through the stage progress view.

        Args:
            provider: Provider client
            kind: Provider operation kind
            payload: Provider-specific payload
            polling: Poll interval, attempt budget and progress extraction
            progress: Stage progress sink
            cancel_event: Set when the owning job was cancelled

        Returns:
            Completed stage attempt with its result

        Raises:
            OrchestrationError: Submission, provider job or polling failed
        """
        label = f"{provider.name} {kind}"
        handle = await self.submit(provider, kind, payload)
        attempt = StageAttempt(provider=provider.name, external_job_id=handle.external_job_id)
        logger.info(f"{label} submitted: {handle.external_job_id}")

        if progress is not None:
            await progress.set_external_request_id(handle.external_job_id)
            await progress.log(f"Submitted to {provider.name} ({kind}): {handle.external_job_id}")

        async def check_status() -> ProviderStatus:
            return await provider.status(handle.external_job_id, kind)

        async def fetch_result() -> dict[str, Any]:
            return await provider.result(handle.external_job_id, kind)

        async def on_progress(status: ProviderStatus, percent: int | None) -> None:
            if progress is None:
                return
            await progress.set_external_status(status.status.value)
            if percent is not None:
                await progress.update(percent)

        try:
            attempt.result = await poll_until_complete(
                handle.external_job_id,
                check_status,
                fetch_result,
                polling,
                on_progress=on_progress,
                cancel_event=cancel_event,
                attempt=attempt,
                sleep=self.sleep,
                label=label,
            )
        except OrchestrationError as e:
            attempt.error = e
            if not e.provider:
                e.provider = provider.name
            raise
        except Exception as e:
            error = coerce_error(e, provider.name)
            attempt.error = error
            raise error from e

        if progress is not None:
            await progress.set_external_status(attempt.last_status.value if attempt.last_status else None)
            await progress.log(f"{label} completed after {attempt.poll_count} poll(s)")
        return attempt
