"""
Job store for orchestrated jobs.

Holds job records, enforces the job state machine and broadcasts every
change to subscribed WebSocket clients.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Protocol

from swapflow.models.schemas import (
    STATUS_TRANSITIONS,
    Job,
    JobKind,
    JobStatus,
    SwapStrategy,
)

logger = logging.getLogger(__name__)


class JobNotFoundError(KeyError):
    """Raised when a job id is unknown."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(job_id)

    def __str__(self) -> str:
        return f"Job not found: {self.job_id}"


class InvalidTransitionError(ValueError):
    """Raised when an update would leave a terminal state or skip the state machine."""

    def __init__(self, job_id: str, current: JobStatus, requested: JobStatus | None = None):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        if requested is None:
            message = f"Job {job_id} is {current.value} and can no longer change"
        else:
            message = f"Job {job_id}: transition {current.value} -> {requested.value} not allowed"
        super().__init__(message)


class JobStore(Protocol):
    """Persistence boundary for jobs."""

    async def create(
        self,
        kind: JobKind,
        input_payload: dict[str, Any],
        strategy: SwapStrategy | None = None,
        **fields: Any,
    ) -> Job:
        ...

    async def update(self, job_id: str, **fields: Any) -> Job:
        ...

    async def get(self, job_id: str) -> Job | None:
        ...

    async def list(
        self,
        status: JobStatus | None = None,
        kind: JobKind | None = None,
        limit: int | None = None,
    ) -> list[Job]:
        ...

    async def delete(self, job_id: str) -> bool:
        ...


class JobManager:
    """
    In-memory job store with WebSocket broadcasting.

    Single-writer discipline: only the orchestrating task of a job calls
    update() for it. Readers always receive deep-copied snapshots.

    Example:
        manager = JobManager()
        job = await manager.create(JobKind.UPSCALE, {"image_url": url})

        queue = manager.subscribe(job.id)
        await manager.update(job.id, status=JobStatus.PROCESSING)
    """

    def __init__(self):
        """Initialize job manager with empty stores."""
        self._jobs: dict[str, Job] = {}
        self._subscribers: dict[str, list[asyncio.Queue]] = {}
        self._lock = asyncio.Lock()

    async def create(
        self,
        kind: JobKind,
        input_payload: dict[str, Any],
        strategy: SwapStrategy | None = None,
        **fields: Any,
    ) -> Job:
        """
        Create a new job in pending state.

        Args:
            kind: Job kind
            input_payload: Original input (reused by retries)
            strategy: Composite pipeline strategy
            **fields: Extra initial fields (retry_of, stage_outputs, skipped_stages)

        Returns:
            Snapshot of the created job
        """
        job = Job(
            id=str(uuid.uuid4()),
            kind=kind,
            strategy=strategy,
            input_payload=dict(input_payload),
            **fields,
        )

        async with self._lock:
            self._jobs[job.id] = job
            self._subscribers.setdefault(job.id, [])

        logger.info(f"Created job {job.id} ({kind.value})")
        return job.model_copy(deep=True)

    async def update(self, job_id: str, **fields: Any) -> Job:
        """
        Apply a partial update and broadcast the new state.

        Progress never decreases while processing; terminal jobs are frozen.

        Args:
            job_id: Job identifier
            **fields: Fields to change

        Returns:
            Snapshot after the update

        Raises:
            JobNotFoundError: Unknown job
            InvalidTransitionError: Job is terminal or status change not allowed
        """
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)

            if job.is_terminal:
                raise InvalidTransitionError(job_id, job.status)

            new_status = fields.get("status")
            if new_status is not None:
                new_status = JobStatus(new_status)
                if new_status != job.status and new_status not in STATUS_TRANSITIONS[job.status]:
                    raise InvalidTransitionError(job_id, job.status, new_status)

            if "progress" in fields and job.status == JobStatus.PROCESSING:
                fields["progress"] = max(int(fields["progress"]), job.progress)

            data = job.model_dump()
            data.update(fields)
            updated = Job.model_validate(data)
            self._jobs[job_id] = updated
            snapshot = updated.model_copy(deep=True)

        await self._broadcast(job_id, {
            "job_id": job_id,
            "status": snapshot.status.value,
            "progress": snapshot.progress,
            "stage": snapshot.current_stage,
            "external_status": snapshot.external_status,
            "message": snapshot.logs[-1] if snapshot.logs else "",
            "timestamp": datetime.now().isoformat(),
            "error": snapshot.error_message,
            "output": snapshot.output_payload if snapshot.is_terminal else None,
        })
        return snapshot

    async def get(self, job_id: str) -> Job | None:
        """
        Get job snapshot by ID.

        Returns:
            Job or None if not found
        """
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def list(
        self,
        status: JobStatus | None = None,
        kind: JobKind | None = None,
        limit: int | None = None,
    ) -> list[Job]:
        """
        List job snapshots, newest first.

        Args:
            status: Optional status filter
            kind: Optional kind filter
            limit: Optional maximum number of jobs
        """
        async with self._lock:
            jobs = [
                job.model_copy(deep=True)
                for job in self._jobs.values()
                if (status is None or job.status == status)
                and (kind is None or job.kind == kind)
            ]

        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit] if limit else jobs

    async def delete(self, job_id: str) -> bool:
        """
        Remove a job record.

        Returns:
            True if the job existed
        """
        async with self._lock:
            removed = self._jobs.pop(job_id, None)
            subscribers = self._subscribers.pop(job_id, [])

        for queue in subscribers:
            await queue.put({"job_id": job_id, "status": "deleted"})

        if removed:
            logger.info(f"Deleted job {job_id}")
        return removed is not None

    def subscribe(self, job_id: str) -> asyncio.Queue:
        """
        Subscribe to job progress updates.

        Returns:
            Queue that will receive progress messages
        """
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(job_id, []).append(queue)
        logger.debug(f"Client subscribed to job {job_id}")
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue) -> None:
        """Unsubscribe from job progress updates."""
        subscribers = self._subscribers.get(job_id, [])
        if queue in subscribers:
            subscribers.remove(queue)
            logger.debug(f"Client unsubscribed from job {job_id}")

    async def _broadcast(self, job_id: str, message: dict) -> None:
        """Broadcast message to all subscribers of a job."""
        for queue in list(self._subscribers.get(job_id, [])):
            await queue.put(message)


# Global job manager instance
job_manager = JobManager()


def get_job_manager() -> JobManager:
    """Get global job manager instance."""
    return job_manager
