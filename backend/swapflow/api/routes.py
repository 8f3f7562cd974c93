"""
HTTP API routes for orchestrated jobs.

Provides endpoints for:
- Submitting jobs
- Querying job status, progress and logs
- Cancelling, retrying and deleting jobs
- Detecting and failing stuck jobs
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from swapflow.models.schemas import (
    Job,
    JobCreateRequest,
    JobKind,
    JobProgress,
    JobRetryRequest,
    JobStatus,
)
from swapflow.services.job_manager import InvalidTransitionError, JobNotFoundError
from swapflow.services.job_runner import JobRunner, get_job_runner

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["jobs"])


def get_runner() -> JobRunner:
    """Runner used by the routes (overridable in tests)."""
    return get_job_runner()


def _not_found(job_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Job not found: {job_id}")


def _conflict(error: InvalidTransitionError) -> HTTPException:
    return HTTPException(status_code=409, detail=str(error))


@router.post("/jobs", response_model=Job, status_code=201)
async def create_job(
    request: JobCreateRequest,
    runner: JobRunner = Depends(get_runner),
) -> Job:
    """
    Submit a new job.

    Use WebSocket /ws/{job_id} to receive real-time progress updates.

    Raises:
        422: Strategy given for a non-composite kind
    """
    try:
        job = await runner.submit(request.kind, request.input_payload, request.strategy)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    logger.info(f"Submitted job {job.id} ({job.kind.value})")
    return job


@router.get("/jobs", response_model=list[Job])
async def list_jobs(
    status: JobStatus | None = None,
    kind: JobKind | None = None,
    limit: int | None = Query(default=None, ge=1, le=500),
    runner: JobRunner = Depends(get_runner),
) -> list[Job]:
    """List jobs, newest first."""
    return await runner.list_jobs(status=status, kind=kind, limit=limit)


@router.get("/jobs/stuck", response_model=list[Job])
async def list_stuck_jobs(
    threshold_minutes: int | None = Query(default=None, ge=1),
    runner: JobRunner = Depends(get_runner),
) -> list[Job]:
    """List queued/processing jobs older than the stuck threshold."""
    return await runner.find_stuck(threshold_minutes)


@router.post("/jobs/stuck/fail", response_model=list[str])
async def fail_stuck_jobs(
    threshold_minutes: int | None = Query(default=None, ge=1),
    runner: JobRunner = Depends(get_runner),
) -> list[str]:
    """Mark stuck jobs as failed. Returns their IDs."""
    return await runner.fail_stuck(threshold_minutes)


@router.get("/jobs/{job_id}", response_model=Job)
async def get_job(job_id: str, runner: JobRunner = Depends(get_runner)) -> Job:
    """
    Get job status.

    Raises:
        404: Job not found
    """
    try:
        return await runner.get(job_id)
    except JobNotFoundError:
        raise _not_found(job_id)


@router.get("/jobs/{job_id}/progress", response_model=JobProgress)
async def get_job_progress(job_id: str, runner: JobRunner = Depends(get_runner)) -> JobProgress:
    """
    Get the progress reporting shape of a job.

    Raises:
        404: Job not found
    """
    try:
        job = await runner.get(job_id)
    except JobNotFoundError:
        raise _not_found(job_id)
    return job.to_progress()


@router.post("/jobs/{job_id}/cancel", response_model=Job)
async def cancel_job(job_id: str, runner: JobRunner = Depends(get_runner)) -> Job:
    """
    Request cancellation of a job.

    Raises:
        404: Job not found
        409: Job already finished
    """
    try:
        return await runner.cancel(job_id)
    except JobNotFoundError:
        raise _not_found(job_id)
    except InvalidTransitionError as e:
        raise _conflict(e)


@router.post("/jobs/{job_id}/retry", response_model=Job, status_code=201)
async def retry_job(
    job_id: str,
    request: JobRetryRequest | None = None,
    runner: JobRunner = Depends(get_runner),
) -> Job:
    """
    Retry a failed, cancelled or stuck job as a new job.

    Raises:
        404: Job not found
        409: Job still running
    """
    from_failed_stage = request.from_failed_stage if request else None
    try:
        return await runner.retry(job_id, from_failed_stage=from_failed_stage)
    except JobNotFoundError:
        raise _not_found(job_id)
    except InvalidTransitionError as e:
        raise _conflict(e)


@router.delete("/jobs/{job_id}")
async def delete_job(job_id: str, runner: JobRunner = Depends(get_runner)) -> dict:
    """
    Delete a job (stopping it first when running).

    Raises:
        404: Job not found
    """
    try:
        await runner.delete(job_id)
    except JobNotFoundError:
        raise _not_found(job_id)
    return {"deleted": job_id}
