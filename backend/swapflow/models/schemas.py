"""
Pydantic models for the media-generation job orchestrator.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, computed_field


class JobStatus(str, Enum):
    """Status of an orchestrated job."""
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
CANCELLABLE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.QUEUED, JobStatus.PROCESSING})

# Allowed status transitions (terminal statuses have no outgoing edges)
STATUS_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class JobKind(str, Enum):
    """Kind of work a job orchestrates."""
    LORA_TRAINING = "lora_training"
    IMAGE_GENERATION = "image_generation"
    VIDEO_GENERATION = "video_generation"
    UPSCALE = "upscale"
    FACE_SWAP = "face_swap"  # Composite multi-stage pipeline


class SwapStrategy(str, Enum):
    """Strategy for the composite face-swap pipeline.

    - wan_replace: extract -> analyze -> regenerate -> synthesize (WAN) -> upscale
    - kling_motion: extract -> regenerate -> synthesize (Kling motion) -> upscale
    """
    WAN_REPLACE = "wan_replace"
    KLING_MOTION = "kling_motion"


class ExternalStatus(str, Enum):
    """Normalized provider-side job status."""
    IN_QUEUE = "IN_QUEUE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Job(BaseModel):
    """A unit of orchestrated work tracked to a terminal state."""

    id: str
    kind: JobKind
    status: JobStatus = JobStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    strategy: SwapStrategy | None = None
    current_stage: str | None = None
    external_status: str | None = None
    external_request_id: str | None = None
    error_message: str | None = None
    input_payload: dict[str, Any] = Field(default_factory=dict)
    output_payload: dict[str, Any] | None = None
    logs: list[str] = Field(default_factory=list)
    stage_outputs: dict[str, Any] = Field(default_factory=dict)
    skipped_stages: list[dict[str, Any]] = Field(default_factory=list)
    failed_stage: str | None = None
    retry_of: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @computed_field
    @property
    def is_terminal(self) -> bool:
        """True once the job reached completed, failed or cancelled."""
        return self.status in TERMINAL_STATUSES

    def to_progress(self) -> "JobProgress":
        """Project the job onto the caller-facing progress shape."""
        return JobProgress(
            status=self.status,
            progress=self.progress,
            external_status=self.external_status,
            logs=list(self.logs),
            error_message=self.error_message,
            output_payload=self.output_payload,
        )


class JobProgress(BaseModel):
    """Progress reporting shape exposed to callers."""

    status: JobStatus
    progress: int
    external_status: str | None = None
    logs: list[str] = Field(default_factory=list)
    error_message: str | None = None
    output_payload: dict[str, Any] | None = None


class JobCreateRequest(BaseModel):
    """Request to start a new job."""

    kind: JobKind
    input_payload: dict[str, Any] = Field(default_factory=dict)
    strategy: SwapStrategy | None = None


class JobRetryRequest(BaseModel):
    """Request to retry a failed or cancelled job.

    from_failed_stage=None uses the configured default.
    """

    from_failed_stage: bool | None = None


class ProviderStatus(BaseModel):
    """Status of an external provider job."""

    status: ExternalStatus
    logs: list[str] = Field(default_factory=list)
    queue_position: int | None = None
    progress: int | None = None  # Provider-reported percent, if any
    safety_blocked: bool = False
    error: str | None = None

    @computed_field
    @property
    def is_terminal(self) -> bool:
        """True for COMPLETED and FAILED."""
        return self.status in (ExternalStatus.COMPLETED, ExternalStatus.FAILED)


class SubmitResponse(BaseModel):
    """Envelope returned by every provider submission."""

    external_job_id: str
    provider: str


@dataclass
class StageAttempt:
    """One provider interaction within a job (not persisted)."""

    provider: str
    external_job_id: str
    submitted_at: datetime = field(default_factory=datetime.now)
    poll_count: int = 0
    last_status: ExternalStatus | None = None
    result: dict[str, Any] | None = None
    error: Exception | None = None


@dataclass
class RetryState:
    """Ephemeral state of a single retry executor invocation."""

    operation: str
    max_attempts: int
    attempt: int = 0
    last_error: Exception | None = None
    delay: float = 0.0
