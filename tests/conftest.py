"""
Shared fixtures for swapflow tests.

FakeProvider is a scripted in-memory GenerationProvider: every operation
kind completes on the first status check unless listed in one of the
failure/hang sets.
"""

import asyncio
from collections import defaultdict
from typing import Any

import pytest

from swapflow.config import Settings
from swapflow.models.schemas import ExternalStatus, ProviderStatus, SubmitResponse
from swapflow.services.job_manager import JobManager
from swapflow.services.job_runner import JobRunner
from swapflow.services.orchestration.config_resolver import ConfigResolver


async def fast_sleep(seconds: float) -> None:
    """Yield to the loop without waiting."""
    await asyncio.sleep(0)


def default_result(kind: str) -> dict[str, Any]:
    """Result document every stage can parse."""
    return {
        "image": {"url": f"https://cdn.test/{kind}.png"},
        "images": [{"url": f"https://cdn.test/{kind}.png"}],
        "video": {"url": f"https://cdn.test/{kind}.mp4"},
        "diffusers_lora_file": {"url": f"https://cdn.test/{kind}.safetensors"},
        "config_file": {"url": f"https://cdn.test/{kind}.json"},
    }


class FakeProvider:
    """Scripted GenerationProvider."""

    def __init__(
        self,
        name: str = "fal",
        results: dict[str, dict] | None = None,
        safety_blocked: set[str] | None = None,
        failing: set[str] | None = None,
        hanging: set[str] | None = None,
        submit_errors: dict[str, list[Exception]] | None = None,
        status_logs: dict[str, list[str]] | None = None,
    ):
        self.name = name
        self.results = results or {}
        self.safety_blocked = safety_blocked or set()
        self.failing = failing or set()
        self.hanging = hanging or set()
        self.submit_errors = {k: list(v) for k, v in (submit_errors or {}).items()}
        self.status_logs = status_logs or {}

        self.submitted: list[tuple[str, dict]] = []
        self.submit_attempts: dict[str, int] = defaultdict(int)
        self.status_calls: dict[str, int] = defaultdict(int)
        self.result_calls: dict[str, int] = defaultdict(int)
        self.polled = asyncio.Event()
        self.closed = False

    def kinds_submitted(self) -> list[str]:
        return [kind for kind, _ in self.submitted]

    async def submit(self, kind: str, payload: dict[str, Any]) -> SubmitResponse:
        self.submit_attempts[kind] += 1
        errors = self.submit_errors.get(kind)
        if errors:
            raise errors.pop(0)
        self.submitted.append((kind, payload))
        return SubmitResponse(
            external_job_id=f"{self.name}-{len(self.submitted)}",
            provider=self.name,
        )

    async def status(self, external_job_id: str, kind: str) -> ProviderStatus:
        self.status_calls[kind] += 1
        self.polled.set()
        logs = self.status_logs.get(kind, [])

        if kind in self.hanging:
            return ProviderStatus(status=ExternalStatus.IN_PROGRESS, logs=logs)
        if kind in self.safety_blocked:
            return ProviderStatus(
                status=ExternalStatus.FAILED,
                safety_blocked=True,
                error="content_policy_violation",
            )
        if kind in self.failing:
            return ProviderStatus(status=ExternalStatus.FAILED, error="GPU worker crashed")
        return ProviderStatus(status=ExternalStatus.COMPLETED, logs=logs)

    async def result(self, external_job_id: str, kind: str) -> dict[str, Any]:
        self.result_calls[kind] += 1
        return self.results.get(kind, default_result(kind))

    async def close(self) -> None:
        self.closed = True


async def wait_for_job(runner: JobRunner, job_id: str, timeout: float = 5.0):
    """Wait for a job's background task and return the final snapshot."""
    task = runner.task_for(job_id)
    if task is not None:
        await asyncio.wait([task], timeout=timeout)
    return await runner.get(job_id)


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment and repo config."""
    return Settings(
        _env_file=None,
        fal_api_key="test-fal-key",
        kling_api_key="test-kling-key",
        retry_base_delay=0.0,
        config_dir=tmp_path,
    )


@pytest.fixture
def make_runner(settings):
    """Factory for runners backed by fake providers and a fresh store."""

    def _make(fal: FakeProvider | None = None, kling: FakeProvider | None = None, **overrides):
        run_settings = settings.model_copy(update=overrides) if overrides else settings
        providers = {
            "fal": fal or FakeProvider("fal"),
            "kling": kling or FakeProvider("kling"),
        }
        return JobRunner(
            JobManager(),
            run_settings,
            providers=providers,
            resolver=ConfigResolver(run_settings, overrides={}),
            sleep=fast_sleep,
        )

    return _make
