"""
Progress management for orchestrated jobs.

ProgressManager maps stage weights onto the 0-100 job scale.
ProgressReporter is the single progress sink injected once per job; it
clamps, keeps progress monotonic, caps the log and writes through the
job store. StageProgress is the per-stage view handed to a running stage.
"""

import logging
from collections import deque
from datetime import datetime
from typing import Any

from swapflow.models.schemas import Job
from swapflow.services.job_manager import JobStore

logger = logging.getLogger(__name__)


class ProgressManager:
    """
    Calculates overall progress from stage weights.

    Weights are fractions of the whole job; they are normalized when they
    don't sum to 1.

    Example:
        manager = ProgressManager()
        manager.calculate_overall_progress(0.2, 0.5, 50)  # 45.0
    """

    @staticmethod
    def normalize_weights(weights: list[float]) -> list[float]:
        """
        Scale weights so they sum to 1.

        Raises:
            ValueError: If a weight is negative or all are zero
        """
        if any(w < 0 for w in weights):
            raise ValueError(f"Stage weights must be >= 0, got {weights}")
        total = sum(weights)
        if total <= 0:
            raise ValueError("Stage weights sum to zero")
        return [w / total for w in weights]

    @staticmethod
    def calculate_overall_progress(
        completed_weight: float,
        current_weight: float,
        stage_progress: float = 100,
    ) -> float:
        """
        Calculate overall progress percentage.

        Args:
            completed_weight: Sum of weights of finished stages
            current_weight: Weight of the running stage
            stage_progress: Progress within the running stage (0-100)

        Returns:
            Overall progress (0-100)
        """
        stage_progress = max(0.0, min(100.0, stage_progress))
        overall = completed_weight * 100 + current_weight * stage_progress
        return max(0.0, min(overall, 100.0))


class ProgressReporter:
    """
    Progress/status sink for one job.

    Example:
        reporter = ProgressReporter(job.id, store, max_log_lines=200)
        await reporter.append_log("Submitting to fal.ai")
        await reporter.update_progress(15)
        await reporter.set_external_status("IN_QUEUE")
    """

    def __init__(
        self,
        job_id: str,
        store: JobStore,
        max_log_lines: int = 200,
        progress: int = 0,
        logs: list[str] | None = None,
    ):
        """
        Initialize reporter.

        Args:
            job_id: Job this reporter writes to
            store: Job store
            max_log_lines: Log cap (oldest entries dropped)
            progress: Starting progress
            logs: Existing log lines
        """
        self.job_id = job_id
        self.store = store
        self._progress = progress
        self._logs: deque[str] = deque(logs or [], maxlen=max_log_lines)
        self._external_status: str | None = None

    @classmethod
    def for_job(cls, job: Job, store: JobStore, max_log_lines: int = 200) -> "ProgressReporter":
        """Create a reporter seeded from the job's current state."""
        return cls(job.id, store, max_log_lines, progress=job.progress, logs=job.logs)

    @property
    def progress(self) -> int:
        return self._progress

    @property
    def logs(self) -> list[str]:
        return list(self._logs)

    async def update_progress(self, percent: float) -> int:
        """
        Report overall job progress.

        Clamped to [0, 100] and never lower than what was already reported.

        Returns:
            Progress after the update
        """
        clamped = int(max(0, min(100, round(percent))))
        if clamped <= self._progress:
            return self._progress

        self._progress = clamped
        await self.store.update(self.job_id, progress=clamped)
        return clamped

    async def append_log(self, line: str) -> None:
        """Append a timestamped log line (bounded)."""
        entry = f"[{datetime.now().strftime('%H:%M:%S')}] {line}"
        self._logs.append(entry)
        await self.store.update(self.job_id, logs=list(self._logs))

    async def set_external_status(self, label: str | None) -> None:
        """Record the provider-reported sub-state."""
        if label == self._external_status:
            return
        self._external_status = label
        await self.store.update(self.job_id, external_status=label)

    async def set_external_request_id(self, external_job_id: str) -> None:
        """Record the request id of the active provider attempt."""
        await self.store.update(self.job_id, external_request_id=external_job_id)

    async def set_stage(self, stage_name: str | None) -> None:
        """Record the stage currently running."""
        await self.store.update(self.job_id, current_stage=stage_name)

    async def checkpoint(
        self,
        stage_outputs: dict[str, Any],
        skipped: list[dict[str, Any]] | None = None,
    ) -> None:
        """
        Persist outputs of completed stages (reused by resume-retry).

        Skip markers are stored next to the outputs so a resumed run
        still reports the degradation of a reused stage.
        """
        fields: dict[str, Any] = {"stage_outputs": dict(stage_outputs)}
        if skipped is not None:
            fields["skipped_stages"] = [dict(m) for m in skipped]
        await self.store.update(self.job_id, **fields)


class StageProgress:
    """
    Stage-scoped view of the job reporter.

    Stage code reports its own 0-100 progress; this maps it onto the job
    scale using the stage's weight.
    """

    def __init__(
        self,
        reporter: ProgressReporter,
        stage_name: str,
        completed_weight: float,
        weight: float,
    ):
        self.reporter = reporter
        self.stage_name = stage_name
        self.completed_weight = completed_weight
        self.weight = weight
        self.internal_progress = 0.0

    async def update(self, stage_percent: float) -> int:
        """Report progress within this stage (0-100)."""
        self.internal_progress = max(0.0, min(100.0, stage_percent))
        overall = ProgressManager.calculate_overall_progress(
            self.completed_weight, self.weight, self.internal_progress
        )
        return await self.reporter.update_progress(overall)

    async def log(self, line: str) -> None:
        """Append a log line tagged with the stage name."""
        await self.reporter.append_log(f"[{self.stage_name}] {line}")

    async def set_external_status(self, label: str | None) -> None:
        await self.reporter.set_external_status(label)

    async def set_external_request_id(self, external_job_id: str) -> None:
        await self.reporter.set_external_request_id(external_job_id)
