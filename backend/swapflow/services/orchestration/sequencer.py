"""
Pipeline stage sequencer.

Runs a job's stages strictly in order, feeding each stage the outputs of
the ones before it and mapping stage progress onto the job's 0-100 scale.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from swapflow.services.failures import JobCancelled, SafetyBlocked
from swapflow.services.orchestration.progress import (
    ProgressManager,
    ProgressReporter,
    StageProgress,
)
from swapflow.services.stages.base import BaseStage, StageContext

logger = logging.getLogger(__name__)

MAX_CHECKPOINT_LOG_CHARS = 2000


class PipelineError(Exception):
    """
    Pipeline stage error with context.

    Attributes:
        stage: Name of the stage that failed
        message: Error description
        cause: Original exception (if any)
    """

    def __init__(
        self,
        stage: str,
        message: str,
        cause: Exception | None = None,
    ):
        self.stage = stage
        self.message = message
        self.cause = cause
        super().__init__(f"[{stage}] {message}")


@dataclass
class PipelineResult:
    """
    Outcome of a successful pipeline run.

    Attributes:
        output: Output payload for the job
        stage_outputs: Output of every stage that ran (or was reused)
        skipped: Skip markers of degraded stages
    """

    output: dict[str, Any]
    stage_outputs: dict[str, Any] = field(default_factory=dict)
    skipped: list[dict[str, Any]] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.skipped)


class PipelineSequencer:
    """
    Sequential stage runner with weighted progress.

    Example:
        sequencer = PipelineSequencer()
        result = await sequencer.run(stages, context, reporter, cancel_event)
        # result.output -> final output payload
    """

    def __init__(self, progress_manager: ProgressManager | None = None):
        self.progress_manager = progress_manager or ProgressManager()

    async def run(
        self,
        stages: list[BaseStage],
        context: StageContext,
        reporter: ProgressReporter,
        cancel_event: asyncio.Event | None = None,
    ) -> PipelineResult:
        """
        Run stages in order.

        Stages whose result is already in the context (resumed retry) are
        not run again; their skip markers (metadata "skipped_stages") are
        carried into the result. A skippable stage rejected by a safety filter
        degrades to its fallback; any other stage failure aborts the run.

        Args:
            stages: Ordered stages
            context: Initial context (job metadata, reused results)
            reporter: Job progress sink
            cancel_event: Set when the job was cancelled

        Returns:
            PipelineResult with output payload and skip markers

        Raises:
            PipelineError: A stage failed (stage name and cause attached)
            JobCancelled: Cancellation observed at a stage boundary or poll
        """
        if not stages:
            raise ValueError("Pipeline has no stages")

        weights = self.progress_manager.normalize_weights([s.weight for s in stages])
        if cancel_event is not None and context.cancel_event is None:
            context = StageContext(context.results, context.metadata, cancel_event)

        completed_weight = 0.0
        stage_outputs: dict[str, Any] = {}
        skipped: list[dict[str, Any]] = []
        last_output: dict[str, Any] | None = None
        previous_markers = {
            m["stage"]: m for m in context.get_metadata("skipped_stages") or []
        }

        for index, (stage, weight) in enumerate(zip(stages, weights), start=1):
            self._check_cancelled(cancel_event, stage.name)
            label = f"Stage {index}/{len(stages)} ({stage.name})"

            if context.has_result(stage.name):
                output = context.get_result(stage.name)
                stage_outputs[stage.name] = output
                last_output = output if output is not None else last_output
                completed_weight += weight
                await reporter.append_log(f"{label}: reusing output from previous run")
                if stage.name in previous_markers:
                    marker = dict(previous_markers[stage.name])
                    skipped.append(marker)
                    await reporter.append_log(f"{label}: reused output is degraded ({marker['reason']})")
                await reporter.update_progress(completed_weight * 100)
                continue

            if stage.should_skip(context):
                logger.info(f"{label} skipped: not requested")
                await reporter.append_log(f"{label}: skipped (not requested)")
                completed_weight += weight
                await reporter.update_progress(completed_weight * 100)
                continue

            await reporter.set_stage(stage.name)
            await reporter.append_log(f"{label}: started")
            progress = StageProgress(reporter, stage.name, completed_weight, weight)
            logger.info(f"{label} started (weight {weight:.2f})")

            try:
                output = await stage.execute(context, progress)
            except JobCancelled:
                raise
            except Exception as e:
                if not (stage.skippable and isinstance(e, SafetyBlocked)):
                    await self._record_failure(reporter, stage.name, e, stage_outputs)
                    raise PipelineError(stage.name, str(e), e) from e

                marker = {"skipped": True, "reason": e.reason, "stage": stage.name}
                skipped.append(marker)
                logger.warning(f"{label} blocked by safety filter ({e.reason}), using fallback")
                await reporter.append_log(f"{label}: blocked by safety filter ({e.reason}), degrading")

                try:
                    output = await stage.fallback(context, progress, e)
                except JobCancelled:
                    raise
                except Exception as fallback_error:
                    await self._record_failure(reporter, stage.name, fallback_error, stage_outputs)
                    raise PipelineError(
                        stage.name,
                        f"fallback failed: {fallback_error}",
                        fallback_error,
                    ) from fallback_error

            context = context.with_result(stage.name, output)
            stage_outputs[stage.name] = output
            if output is not None:
                last_output = output

            completed_weight += weight
            await reporter.update_progress(completed_weight * 100)
            await reporter.checkpoint(stage_outputs, skipped)
            await reporter.append_log(f"{label}: completed")
            logger.info(f"{label} completed")

        self._check_cancelled(cancel_event, "completion")

        output = dict(last_output or {})
        if skipped:
            output["skipped"] = True
            output["reason"] = skipped[0]["reason"]
            output["skipped_stages"] = skipped

        return PipelineResult(output=output, stage_outputs=stage_outputs, skipped=skipped)

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None, boundary: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise JobCancelled(f"Cancelled before {boundary}")

    @staticmethod
    async def _record_failure(
        reporter: ProgressReporter,
        stage_name: str,
        error: Exception,
        stage_outputs: dict[str, Any],
    ) -> None:
        """Log the failure and the partial outputs of completed stages."""
        logger.error(f"Stage {stage_name} failed: {error}")
        await reporter.append_log(f"Stage {stage_name} failed: {error}")
        if stage_outputs:
            partial = json.dumps(stage_outputs, default=str)
            if len(partial) > MAX_CHECKPOINT_LOG_CHARS:
                partial = partial[:MAX_CHECKPOINT_LOG_CHARS] + "..."
            await reporter.append_log(f"Completed stage outputs: {partial}")
