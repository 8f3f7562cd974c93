"""
Pipeline sequencer tests.

Covers:
1. Weighted overall progress while a stage runs
2. Skippable stage degraded after a safety rejection
3. Non-skippable failure stops the pipeline
4. Cancellation at stage boundaries
5. Reuse of outputs already in the context

Run with:
    pytest tests/test_sequencer.py -v
"""

import asyncio

import pytest

from swapflow.models.schemas import JobKind, JobStatus
from swapflow.services.failures import JobCancelled, ProviderJobFailed, SafetyBlocked
from swapflow.services.job_manager import JobManager
from swapflow.services.orchestration import (
    PipelineError,
    PipelineSequencer,
    ProgressReporter,
)
from swapflow.services.stages.base import BaseStage, StageContext, StageRegistry


class RecordingStage(BaseStage):
    """Stage that records calls and returns a fixed output."""

    def __init__(
        self,
        name: str,
        weight: float = 1.0,
        output: dict | None = None,
        error: Exception | None = None,
        report: float | None = None,
        skippable: bool = False,
        fallback_output: dict | None = None,
        depends_on: list[str] | None = None,
    ):
        self.name = name
        self.weight = weight
        self.output = output if output is not None else {f"{name}_url": f"https://cdn.test/{name}"}
        self.error = error
        self.report = report
        self.skippable = skippable
        self.fallback_output = fallback_output
        self.depends_on = depends_on or []
        self.calls = 0
        self.fallback_calls = 0
        self.observed_progress: list[int] = []
        self.seen_results: dict = {}

    async def execute(self, context, progress):
        self.calls += 1
        self.seen_results = dict(context.results)
        if self.report is not None:
            await progress.update(self.report)
            self.observed_progress.append(progress.reporter.progress)
        if self.error is not None:
            raise self.error
        return self.output

    async def fallback(self, context, progress, error):
        self.fallback_calls += 1
        return self.fallback_output


async def _reporter():
    store = JobManager()
    job = await store.create(JobKind.FACE_SWAP, {})
    job = await store.update(job.id, status=JobStatus.PROCESSING)
    return store, ProgressReporter.for_job(job, store)


def _run(stages, context=None, cancel_event=None):
    async def scenario():
        store, reporter = await _reporter()
        result = await PipelineSequencer().run(
            stages, context or StageContext(), reporter, cancel_event
        )
        return result, await store.get(reporter.job_id)

    return asyncio.run(scenario())


class TestPipelineSequencer:

    def test_weighted_progress_mid_stage(self):
        first = RecordingStage("extract", weight=0.2)
        second = RecordingStage("synthesize", weight=0.5, report=50)
        third = RecordingStage("upscale", weight=0.3)

        result, job = _run([first, second, third])

        assert second.observed_progress == [45]
        assert job.progress == 100
        assert result.output == third.output
        assert list(result.stage_outputs) == ["extract", "synthesize", "upscale"]

    def test_outputs_flow_to_later_stages(self):
        first = RecordingStage("extract", output={"frames": ["a", "b"]})
        second = RecordingStage("analyze", depends_on=["extract"])

        _run([first, second])

        assert second.seen_results == {"extract": {"frames": ["a", "b"]}}

    def test_weights_are_normalized(self):
        first = RecordingStage("a", weight=1)
        second = RecordingStage("b", weight=3, report=100)

        _run([first, second])

        assert second.observed_progress == [100]

    def test_skippable_safety_block_degrades(self):
        regenerate = RecordingStage(
            "regenerate",
            error=SafetyBlocked("blocked", reason="content_policy_violation"),
            skippable=True,
            fallback_output={"image_url": "https://cdn.test/swap.png", "method": "face_swap"},
        )
        synthesize = RecordingStage("synthesize", output={"video_url": "https://cdn.test/out.mp4"})

        result, job = _run([RecordingStage("extract"), regenerate, synthesize])

        assert regenerate.fallback_calls == 1
        assert synthesize.calls == 1
        assert synthesize.seen_results["regenerate"]["method"] == "face_swap"
        assert result.degraded
        assert result.output["skipped"] is True
        assert result.output["reason"] == "content_policy_violation"
        assert result.output["video_url"] == "https://cdn.test/out.mp4"
        assert result.output["skipped_stages"][0]["stage"] == "regenerate"

    def test_safety_block_on_required_stage_fails(self):
        synthesize = RecordingStage("synthesize", error=SafetyBlocked("blocked"))
        upscale = RecordingStage("upscale")

        with pytest.raises(PipelineError) as exc_info:
            _run([synthesize, upscale])

        assert exc_info.value.stage == "synthesize"
        assert upscale.calls == 0

    def test_failure_stops_pipeline(self):
        extract = RecordingStage("extract")
        regenerate = RecordingStage("regenerate", error=ProviderJobFailed("GPU worker crashed"))
        synthesize = RecordingStage("synthesize")

        with pytest.raises(PipelineError) as exc_info:
            _run([extract, regenerate, synthesize])

        error = exc_info.value
        assert error.stage == "regenerate"
        assert isinstance(error.cause, ProviderJobFailed)
        assert synthesize.calls == 0

    def test_non_safety_failure_of_skippable_stage_fails(self):
        regenerate = RecordingStage(
            "regenerate", error=ProviderJobFailed("boom"), skippable=True, fallback_output={}
        )

        with pytest.raises(PipelineError):
            _run([regenerate])

        assert regenerate.fallback_calls == 0

    def test_cancelled_before_first_stage(self):
        cancel_event = asyncio.Event()
        cancel_event.set()
        stage = RecordingStage("extract")

        with pytest.raises(JobCancelled):
            _run([stage], cancel_event=cancel_event)

        assert stage.calls == 0

    def test_cancelled_between_stages(self):
        cancel_event = asyncio.Event()

        class CancellingStage(RecordingStage):
            async def execute(self, context, progress):
                cancel_event.set()
                return await super().execute(context, progress)

        first = CancellingStage("extract")
        second = RecordingStage("synthesize")

        with pytest.raises(JobCancelled):
            _run([first, second], cancel_event=cancel_event)

        assert first.calls == 1
        assert second.calls == 0

    def test_existing_results_are_reused(self):
        extract = RecordingStage("extract")
        synthesize = RecordingStage("synthesize")
        context = StageContext(results={"extract": {"frames": ["cached"]}})

        result, _ = _run([extract, synthesize], context=context)

        assert extract.calls == 0
        assert synthesize.calls == 1
        assert synthesize.seen_results["extract"] == {"frames": ["cached"]}
        assert result.stage_outputs["extract"] == {"frames": ["cached"]}

    def test_reused_degraded_stage_keeps_marker(self):
        regenerate = RecordingStage("regenerate", skippable=True)
        synthesize = RecordingStage("synthesize", output={"video_url": "https://cdn.test/out.mp4"})
        marker = {"skipped": True, "reason": "nsfw_content_detected", "stage": "regenerate"}
        context = StageContext(
            results={"regenerate": {"image_url": "https://cdn.test/swap.png", "method": "face_swap"}},
            metadata={"skipped_stages": [marker]},
        )

        result, job = _run([regenerate, synthesize], context=context)

        assert regenerate.calls == 0
        assert result.skipped == [marker]
        assert result.output["skipped"] is True
        assert result.output["reason"] == "nsfw_content_detected"
        assert job.skipped_stages == [marker]

    def test_degraded_stage_is_checkpointed_with_marker(self):
        regenerate = RecordingStage(
            "regenerate",
            error=SafetyBlocked("blocked", reason="content_policy_violation"),
            skippable=True,
            fallback_output={"method": "face_swap"},
        )
        synthesize = RecordingStage("synthesize", error=ProviderJobFailed("boom"))

        async def scenario():
            store, reporter = await _reporter()
            with pytest.raises(PipelineError):
                await PipelineSequencer().run([regenerate, synthesize], StageContext(), reporter)
            return await store.get(reporter.job_id)

        job = asyncio.run(scenario())
        assert job.stage_outputs == {"regenerate": {"method": "face_swap"}}
        assert job.skipped_stages == [
            {"skipped": True, "reason": "content_policy_violation", "stage": "regenerate"},
        ]

    def test_completed_stages_are_checkpointed(self):
        extract = RecordingStage("extract", output={"frames": ["a"]})
        regenerate = RecordingStage("regenerate", error=ProviderJobFailed("boom"))

        async def scenario():
            store, reporter = await _reporter()
            with pytest.raises(PipelineError):
                await PipelineSequencer().run([extract, regenerate], StageContext(), reporter)
            return await store.get(reporter.job_id)

        job = asyncio.run(scenario())
        assert job.stage_outputs == {"extract": {"frames": ["a"]}}
        assert any("Completed stage outputs" in line for line in job.logs)

    def test_empty_pipeline_rejected(self):
        with pytest.raises(ValueError):
            _run([])


class TestStageRegistry:

    def test_build_pipeline_keeps_order(self):
        registry = StageRegistry()
        registry.register(RecordingStage("extract"))
        registry.register(RecordingStage("regenerate", depends_on=["extract"]))

        names = [s.name for s in registry.build_pipeline(["extract", "regenerate"])]
        assert names == ["extract", "regenerate"]

    def test_dependency_must_come_first(self):
        registry = StageRegistry()
        registry.register(RecordingStage("extract"))
        registry.register(RecordingStage("regenerate", depends_on=["extract"]))

        with pytest.raises(ValueError):
            registry.build_pipeline(["regenerate", "extract"])

    def test_duplicate_and_unknown(self):
        registry = StageRegistry()
        registry.register(RecordingStage("extract"))

        with pytest.raises(ValueError):
            registry.register(RecordingStage("extract"))
        with pytest.raises(KeyError):
            registry.get("missing")
        assert "extract" in registry
        assert len(registry) == 1
