"""
Poll loop tests.

Covers:
1. Exactly N status checks, then PollTimeout with elapsed time
2. COMPLETED -> single result fetch, no further polls
3. FAILED -> ProviderJobFailed / SafetyBlocked
4. Transient network errors while polling are absorbed
5. Cancellation between polls
6. "step N/M" progress extraction

Run with:
    pytest tests/test_polling.py -v
"""

import asyncio

import pytest

from swapflow.models.schemas import ExternalStatus, ProviderStatus, StageAttempt
from swapflow.services.failures import (
    JobCancelled,
    NetworkError,
    PollTimeout,
    ProviderJobFailed,
    ProviderRejected,
    SafetyBlocked,
)
from swapflow.services.orchestration.polling import (
    PollingConfig,
    log_step_progress,
    parse_step_progress,
    poll_until_complete,
)


async def no_sleep(seconds: float) -> None:
    pass


class ScriptedStatus:
    """Status function returning a scripted sequence (last entry repeats)."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = 0

    async def __call__(self) -> ProviderStatus:
        item = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(item, Exception):
            raise item
        return item


class CountingResult:

    def __init__(self, value=None):
        self.value = value or {"video": {"url": "https://cdn.test/out.mp4"}}
        self.calls = 0

    async def __call__(self) -> dict:
        self.calls += 1
        return self.value


IN_QUEUE = ProviderStatus(status=ExternalStatus.IN_QUEUE)
IN_PROGRESS = ProviderStatus(status=ExternalStatus.IN_PROGRESS)
COMPLETED = ProviderStatus(status=ExternalStatus.COMPLETED)


class TestPollUntilComplete:

    def test_exactly_max_attempts_then_timeout(self):
        status = ScriptedStatus(IN_PROGRESS)
        result = CountingResult()
        config = PollingConfig(interval_seconds=0.0, max_attempts=7)

        with pytest.raises(PollTimeout) as exc_info:
            asyncio.run(poll_until_complete("req-1", status, result, config, sleep=no_sleep))

        assert status.calls == 7
        assert result.calls == 0
        assert exc_info.value.attempts == 7
        assert exc_info.value.external_job_id == "req-1"
        assert exc_info.value.elapsed_seconds >= 0

    def test_completed_fetches_result_once(self):
        status = ScriptedStatus(IN_QUEUE, IN_PROGRESS, COMPLETED, IN_PROGRESS)
        result = CountingResult()
        config = PollingConfig(interval_seconds=0.0, max_attempts=10)

        output = asyncio.run(poll_until_complete("req-2", status, result, config, sleep=no_sleep))

        assert output == result.value
        assert status.calls == 3
        assert result.calls == 1

    def test_sleeps_between_polls_only(self):
        delays: list[float] = []

        async def sleep(seconds: float) -> None:
            delays.append(seconds)

        status = ScriptedStatus(IN_PROGRESS)
        with pytest.raises(PollTimeout):
            asyncio.run(poll_until_complete(
                "req-3", status, CountingResult(),
                PollingConfig(interval_seconds=2.5, max_attempts=4),
                sleep=sleep,
            ))

        assert delays == [2.5, 2.5, 2.5]

    def test_failed_raises_provider_job_failed(self):
        status = ScriptedStatus(
            IN_PROGRESS,
            ProviderStatus(status=ExternalStatus.FAILED, error="CUDA out of memory"),
        )

        with pytest.raises(ProviderJobFailed) as exc_info:
            asyncio.run(poll_until_complete(
                "req-4", status, CountingResult(),
                PollingConfig(interval_seconds=0.0, max_attempts=10),
                sleep=no_sleep,
            ))

        assert not isinstance(exc_info.value, SafetyBlocked)
        assert "CUDA out of memory" in exc_info.value.message

    def test_safety_failure_raises_safety_blocked(self):
        status = ScriptedStatus(ProviderStatus(
            status=ExternalStatus.FAILED,
            safety_blocked=True,
            error="content_policy_violation",
        ))

        with pytest.raises(SafetyBlocked) as exc_info:
            asyncio.run(poll_until_complete(
                "req-5", status, CountingResult(),
                PollingConfig(interval_seconds=0.0, max_attempts=10),
                sleep=no_sleep,
            ))

        assert exc_info.value.reason == "content_policy_violation"

    def test_network_error_while_polling_is_absorbed(self):
        status = ScriptedStatus(NetworkError("reset"), NetworkError("reset"), COMPLETED)
        result = CountingResult()

        output = asyncio.run(poll_until_complete(
            "req-6", status, result,
            PollingConfig(interval_seconds=0.0, max_attempts=5),
            sleep=no_sleep,
        ))

        assert output == result.value
        assert status.calls == 3

    def test_network_errors_count_against_budget(self):
        status = ScriptedStatus(NetworkError("reset"))

        with pytest.raises(PollTimeout):
            asyncio.run(poll_until_complete(
                "req-7", status, CountingResult(),
                PollingConfig(interval_seconds=0.0, max_attempts=3),
                sleep=no_sleep,
            ))

        assert status.calls == 3

    def test_terminal_error_from_status_check_propagates(self):
        status = ScriptedStatus(ProviderRejected("unknown request id", status_code=404))

        with pytest.raises(ProviderRejected):
            asyncio.run(poll_until_complete(
                "req-8", status, CountingResult(),
                PollingConfig(interval_seconds=0.0, max_attempts=5),
                sleep=no_sleep,
            ))

        assert status.calls == 1

    def test_progress_callback_receives_extracted_progress(self):
        seen: list[tuple[ExternalStatus, int | None]] = []

        async def on_progress(status: ProviderStatus, percent: int | None) -> None:
            seen.append((status.status, percent))

        status = ScriptedStatus(
            ProviderStatus(status=ExternalStatus.IN_QUEUE),
            ProviderStatus(status=ExternalStatus.IN_PROGRESS, logs=["step 250/1000"]),
            ProviderStatus(status=ExternalStatus.IN_PROGRESS, logs=["loading", "Step: 500 / 1000"]),
            COMPLETED,
        )
        config = PollingConfig(interval_seconds=0.0, max_attempts=10, progress_extractor=log_step_progress)

        asyncio.run(poll_until_complete(
            "req-9", status, CountingResult(), config,
            on_progress=on_progress, sleep=no_sleep,
        ))

        assert seen == [
            (ExternalStatus.IN_QUEUE, None),
            (ExternalStatus.IN_PROGRESS, 25),
            (ExternalStatus.IN_PROGRESS, 50),
        ]

    def test_cancellation_between_polls(self):
        cancel_event = asyncio.Event()
        calls = 0

        async def status() -> ProviderStatus:
            nonlocal calls
            calls += 1
            if calls == 2:
                cancel_event.set()
            return IN_PROGRESS

        with pytest.raises(JobCancelled):
            asyncio.run(poll_until_complete(
                "req-10", status, CountingResult(),
                PollingConfig(interval_seconds=0.0, max_attempts=100),
                cancel_event=cancel_event,
                sleep=no_sleep,
            ))

        assert calls == 2

    def test_attempt_records_poll_count(self):
        attempt = StageAttempt(provider="fal", external_job_id="req-11")
        status = ScriptedStatus(IN_QUEUE, COMPLETED)

        asyncio.run(poll_until_complete(
            "req-11", status, CountingResult(),
            PollingConfig(interval_seconds=0.0, max_attempts=5),
            attempt=attempt,
            sleep=no_sleep,
        ))

        assert attempt.poll_count == 2
        assert attempt.last_status == ExternalStatus.COMPLETED


class TestPollingConfig:

    def test_ceiling(self):
        assert PollingConfig(interval_seconds=10.0, max_attempts=360).ceiling_seconds == 3600

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            PollingConfig(max_attempts=0)


class TestParseStepProgress:

    @pytest.mark.parametrize("text,expected", [
        ("step 500/1000", 50),
        ("Training Step: 3 / 4", 75),
        ("STEP 1000/1000 done", 100),
        ("step 0/10", 0),
    ])
    def test_parses(self, text, expected):
        assert parse_step_progress(text) == expected

    @pytest.mark.parametrize("text", [None, "", "loading model", "step five/ten", "step 5/0"])
    def test_absent_or_malformed(self, text):
        assert parse_step_progress(text) is None

    def test_overflow_is_clamped(self):
        assert parse_step_progress("step 1200/1000") == 100

    def test_latest_log_line_wins(self):
        status = ProviderStatus(
            status=ExternalStatus.IN_PROGRESS,
            logs=["step 100/1000", "step 400/1000", "saving checkpoint"],
        )
        assert log_step_progress(status) == 40
