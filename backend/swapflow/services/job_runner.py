"""
Job runner: the caller-facing job control surface.

Each job runs as an independent asyncio task that owns the job record
for its processing lifetime. Callers submit, observe, cancel, retry and
delete jobs; they never write job state directly.
"""

import asyncio
import contextlib
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from swapflow.config import Settings, get_settings
from swapflow.logging_config import bind_job
from swapflow.models.schemas import (
    CANCELLABLE_STATUSES,
    Job,
    JobKind,
    JobStatus,
    SwapStrategy,
)
from swapflow.services.failures import JobCancelled, OrchestrationError, sanitize_message
from swapflow.services.job_manager import (
    InvalidTransitionError,
    JobNotFoundError,
    JobStore,
    get_job_manager,
)
from swapflow.services.orchestration import (
    ConfigResolver,
    PipelineError,
    PipelineResult,
    PipelineSequencer,
    ProgressReporter,
    ProviderAdapter,
)
from swapflow.services.orchestration.polling import SleepFunc
from swapflow.services.providers import GenerationProvider, ProviderPool
from swapflow.services.stages import (
    StageContext,
    StageError,
    StageRegistry,
    create_default_stages,
    pipeline_for,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.CANCELLED})
STUCK_CANDIDATE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING})

StageFactory = Callable[[Settings, ProviderAdapter, ProviderPool, ConfigResolver], StageRegistry]


def failure_message(error: Exception) -> str:
    """
    Build the normalized error_message for a failed job.

    Args:
        error: Exception that ended the job

    Returns:
        Short human-readable message
    """
    if isinstance(error, PipelineError):
        cause = error.cause or error
        if isinstance(cause, StageError):
            return f"Stage {error.stage} failed: {cause.message}"
        return f"Stage {error.stage} failed: {sanitize_message(cause)}"
    return sanitize_message(error)


class JobRunner:
    """
    Runs jobs as background tasks against a job store.

    Example:
        runner = JobRunner(get_job_manager(), settings)
        job = await runner.submit(JobKind.UPSCALE, {"image_url": url})

        await runner.cancel(job.id)
        retry = await runner.retry(job.id)
    """

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        providers: dict[str, GenerationProvider] | None = None,
        resolver: ConfigResolver | None = None,
        stage_factory: StageFactory = create_default_stages,
        sleep: SleepFunc = asyncio.sleep,
    ):
        """
        Initialize job runner.

        Args:
            store: Job store
            settings: Application settings
            providers: Pre-built provider clients (default: created per job)
            resolver: Polling configuration (default: settings + YAML)
            stage_factory: Builds the stage registry for a job
            sleep: Awaitable sleep used by retry and polling
        """
        self.store = store
        self.settings = settings
        self.providers = providers
        self.resolver = resolver or ConfigResolver(settings)
        self.stage_factory = stage_factory
        self.sleep = sleep
        self.sequencer = PipelineSequencer()

        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._abort_reasons: dict[str, str] = {}

    # ═══════════════════════════════════════════════════════════════════════
    # Control surface
    # ═══════════════════════════════════════════════════════════════════════

    async def submit(
        self,
        kind: JobKind,
        input_payload: dict[str, Any],
        strategy: SwapStrategy | None = None,
    ) -> Job:
        """
        Create a job and start it in the background.

        Args:
            kind: Job kind
            input_payload: Kind-specific input
            strategy: Strategy for composite face-swap jobs

        Returns:
            Snapshot of the new (pending) job

        Raises:
            ValueError: Strategy given for a non-composite kind
        """
        if strategy is not None and kind != JobKind.FACE_SWAP:
            raise ValueError(f"Strategy only applies to {JobKind.FACE_SWAP.value} jobs")
        if kind == JobKind.FACE_SWAP and strategy is None:
            strategy = SwapStrategy.WAN_REPLACE

        job = await self.store.create(kind, input_payload, strategy)
        self._start(job.id)
        return job

    async def get(self, job_id: str) -> Job:
        """
        Get job snapshot.

        Raises:
            JobNotFoundError: Unknown job
        """
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def cancel(self, job_id: str) -> Job:
        """
        Request cancellation.

        A running job stops at its next poll or stage boundary and then
        becomes cancelled. A job without a running task is cancelled
        immediately.

        Returns:
            Job snapshot after the request

        Raises:
            JobNotFoundError: Unknown job
            InvalidTransitionError: Job already terminal
        """
        job = await self.get(job_id)
        if job.status not in CANCELLABLE_STATUSES:
            raise InvalidTransitionError(job_id, job.status, JobStatus.CANCELLED)

        event = self._cancel_events.get(job_id)
        if event is not None and self.is_running(job_id):
            event.set()
            logger.info(f"Cancellation requested for job {job_id}")
            return await self.get(job_id)

        logger.info(f"Cancelling idle job {job_id}")
        return await self.store.update(
            job_id,
            status=JobStatus.CANCELLED,
            current_stage=None,
            completed_at=datetime.now(),
        )

    async def retry(self, job_id: str, from_failed_stage: bool | None = None) -> Job:
        """
        Re-run a failed or cancelled job as a new, independent job.

        The original input is reused. When resuming from the failed stage,
        the outputs of stages completed before the failure are reused and
        the pipeline restarts at that stage; otherwise it starts over.
        A stuck job is failed first, then retried.

        Args:
            job_id: Job to retry
            from_failed_stage: Resume instead of restart
                (None = settings.retry_from_failed_stage)

        Returns:
            Snapshot of the new job

        Raises:
            JobNotFoundError: Unknown job
            InvalidTransitionError: Job is still active and not stuck
        """
        job = await self.get(job_id)

        if job.status not in RETRYABLE_STATUSES:
            if not self.is_stuck(job):
                raise InvalidTransitionError(job_id, job.status, JobStatus.PENDING)
            job = await self._fail_stuck_job(job, self._stuck_reason())

        resume = self.settings.retry_from_failed_stage if from_failed_stage is None else from_failed_stage
        stage_outputs = dict(job.stage_outputs) if resume and job.failed_stage else {}
        skipped_stages = [m for m in job.skipped_stages if m.get("stage") in stage_outputs]

        new_job = await self.store.create(
            job.kind,
            job.input_payload,
            job.strategy,
            retry_of=job.id,
            stage_outputs=stage_outputs,
            skipped_stages=skipped_stages,
        )
        reporter = self._reporter(new_job)
        if stage_outputs:
            await reporter.append_log(
                f"Retry of {job.id}: resuming at stage {job.failed_stage} "
                f"(reusing {', '.join(stage_outputs)})"
            )
        else:
            await reporter.append_log(f"Retry of {job.id}: starting from the first stage")

        logger.info(f"Retrying job {job.id} as {new_job.id} (resume={bool(stage_outputs)})")
        self._start(new_job.id)
        return await self.get(new_job.id)

    async def delete(self, job_id: str) -> bool:
        """
        Delete a job, stopping it first when it is running.

        Raises:
            JobNotFoundError: Unknown job
        """
        await self.get(job_id)

        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            self._cancel_events[job_id].set()
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        return await self.store.delete(job_id)

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        kind: JobKind | None = None,
        limit: int | None = None,
    ) -> list[Job]:
        """List job snapshots, newest first."""
        return await self.store.list(status=status, kind=kind, limit=limit)

    # ═══════════════════════════════════════════════════════════════════════
    # Stuck jobs
    # ═══════════════════════════════════════════════════════════════════════

    def is_stuck(self, job: Job, threshold_minutes: int | None = None) -> bool:
        """True when an active job started longer ago than the threshold."""
        if job.status not in STUCK_CANDIDATE_STATUSES:
            return False
        threshold = timedelta(minutes=threshold_minutes or self.settings.stuck_threshold_minutes)
        started = job.started_at or job.created_at
        return datetime.now() - started > threshold

    async def find_stuck(self, threshold_minutes: int | None = None) -> list[Job]:
        """
        List queued/processing jobs older than the stuck threshold.

        Args:
            threshold_minutes: Override for settings.stuck_threshold_minutes

        Returns:
            Stuck job snapshots, oldest first
        """
        jobs = await self.store.list()
        stuck = [job for job in jobs if self.is_stuck(job, threshold_minutes)]
        stuck.sort(key=lambda j: j.started_at or j.created_at)
        return stuck

    async def fail_stuck(self, threshold_minutes: int | None = None) -> list[str]:
        """
        Mark stuck jobs as failed.

        Returns:
            IDs of jobs that were failed
        """
        stuck = await self.find_stuck(threshold_minutes)
        reason = self._stuck_reason(threshold_minutes)

        failed = []
        for job in stuck:
            await self._fail_stuck_job(job, reason)
            failed.append(job.id)

        if failed:
            logger.warning(f"Failed {len(failed)} stuck job(s): {failed}")
        return failed

    def _stuck_reason(self, threshold_minutes: int | None = None) -> str:
        minutes = threshold_minutes or self.settings.stuck_threshold_minutes
        return f"Job stuck: no terminal status after {minutes} minutes"

    async def _fail_stuck_job(self, job: Job, reason: str) -> Job:
        task = self._tasks.get(job.id)
        if task is not None and not task.done():
            self._abort_reasons[job.id] = reason
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            return await self.get(job.id)

        await self._reporter(job).append_log(reason)
        return await self.store.update(
            job.id,
            status=JobStatus.FAILED,
            error_message=reason,
            failed_stage=job.current_stage,
            current_stage=None,
            completed_at=datetime.now(),
        )

    # ═══════════════════════════════════════════════════════════════════════
    # Execution
    # ═══════════════════════════════════════════════════════════════════════

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    def task_for(self, job_id: str) -> asyncio.Task | None:
        """Background task of a job (None when never started here)."""
        return self._tasks.get(job_id)

    def _start(self, job_id: str) -> None:
        cancel_event = asyncio.Event()
        task = asyncio.create_task(self._run(job_id, cancel_event), name=f"job-{job_id}")
        self._tasks[job_id] = task
        self._cancel_events[job_id] = cancel_event

        def cleanup(_: asyncio.Task) -> None:
            self._tasks.pop(job_id, None)
            self._cancel_events.pop(job_id, None)
            self._abort_reasons.pop(job_id, None)

        task.add_done_callback(cleanup)

    def _reporter(self, job: Job) -> ProgressReporter:
        return ProgressReporter.for_job(job, self.store, self.settings.max_log_lines)

    async def _run(self, job_id: str, cancel_event: asyncio.Event) -> None:
        """Drive one job to a terminal status."""
        bind_job(job_id)
        job = await self.get(job_id)
        reporter = self._reporter(job)

        try:
            await self.store.update(job_id, status=JobStatus.PROCESSING, started_at=datetime.now())
            async with ProviderPool(self.settings, self.providers) as providers:
                adapter = ProviderAdapter.from_settings(self.settings, sleep=self.sleep)
                registry = self.stage_factory(self.settings, adapter, providers, self.resolver)
                stages = registry.build_pipeline(pipeline_for(job.kind, job.strategy))

                context = StageContext(
                    results=dict(job.stage_outputs),
                    metadata={
                        "job_id": job.id,
                        "kind": job.kind,
                        "strategy": job.strategy,
                        "input": job.input_payload,
                        "polling": job.input_payload.get("polling", {}),
                        "skipped_stages": job.skipped_stages,
                    },
                    cancel_event=cancel_event,
                )
                result = await self.sequencer.run(stages, context, reporter, cancel_event)

            # Cancel may land while providers close
            if cancel_event.is_set():
                raise JobCancelled("Cancelled before completion")

        except JobCancelled as e:
            await self._finish_cancelled(job_id, reporter, e.message)
        except asyncio.CancelledError:
            reason = self._abort_reasons.pop(job_id, None)
            await self._finish_interrupted(job_id, reporter, reason)
            raise
        except Exception as e:
            await self._finish_failed(job_id, reporter, e)
        else:
            await self._finish_completed(job_id, reporter, result)

    async def _finish_completed(
        self,
        job_id: str,
        reporter: ProgressReporter,
        result: PipelineResult,
    ) -> None:
        if result.degraded:
            stages = ", ".join(m["stage"] for m in result.skipped)
            await reporter.append_log(f"Completed with degraded output (skipped: {stages})")
        else:
            await reporter.append_log("Completed")

        await self.store.update(
            job_id,
            status=JobStatus.COMPLETED,
            progress=100,
            output_payload=result.output,
            stage_outputs=result.stage_outputs,
            skipped_stages=result.skipped,
            current_stage=None,
            completed_at=datetime.now(),
        )
        logger.info(f"Job {job_id} completed" + (" (degraded)" if result.degraded else ""))

    async def _finish_cancelled(self, job_id: str, reporter: ProgressReporter, detail: str) -> None:
        await reporter.append_log(f"Cancelled: {detail}")
        await self.store.update(
            job_id,
            status=JobStatus.CANCELLED,
            current_stage=None,
            completed_at=datetime.now(),
        )
        logger.info(f"Job {job_id} cancelled")

    async def _finish_failed(self, job_id: str, reporter: ProgressReporter, error: Exception) -> None:
        if isinstance(error, (PipelineError, OrchestrationError)):
            logger.error(f"Job {job_id} failed: {error}")
        else:
            logger.exception(f"Unexpected error in job {job_id}")

        cause = error.cause if isinstance(error, PipelineError) and error.cause else error
        await reporter.append_log(f"Error detail: {type(cause).__name__}: {cause}")
        await self.store.update(
            job_id,
            status=JobStatus.FAILED,
            error_message=failure_message(error),
            failed_stage=error.stage if isinstance(error, PipelineError) else None,
            current_stage=None,
            completed_at=datetime.now(),
        )

    async def _finish_interrupted(self, job_id: str, reporter: ProgressReporter, reason: str | None) -> None:
        """Record a terminal status after the task itself was cancelled."""
        job = await self.store.get(job_id)
        if job is None or job.is_terminal:
            return

        if reason:
            await reporter.append_log(reason)
            await self.store.update(
                job_id,
                status=JobStatus.FAILED,
                error_message=reason,
                failed_stage=job.current_stage,
                current_stage=None,
                completed_at=datetime.now(),
            )
            logger.warning(f"Job {job_id} failed: {reason}")
        else:
            await self._finish_cancelled(job_id, reporter, "task stopped")

    async def shutdown(self) -> None:
        """Stop all running jobs (they end as cancelled)."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        if not tasks:
            return

        logger.info(f"Stopping {len(tasks)} running job(s)")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


# Global job runner instance
_job_runner: JobRunner | None = None


def get_job_runner() -> JobRunner:
    """Get or create the global job runner."""
    global _job_runner
    if _job_runner is None:
        _job_runner = JobRunner(get_job_manager(), get_settings())
    return _job_runner
