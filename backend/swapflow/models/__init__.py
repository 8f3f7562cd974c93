"""
Pydantic models for the job orchestrator.
"""

from swapflow.models.schemas import (
    CANCELLABLE_STATUSES,
    STATUS_TRANSITIONS,
    TERMINAL_STATUSES,
    ExternalStatus,
    Job,
    JobCreateRequest,
    JobKind,
    JobProgress,
    JobRetryRequest,
    JobStatus,
    ProviderStatus,
    RetryState,
    StageAttempt,
    SubmitResponse,
    SwapStrategy,
)

__all__ = [
    "CANCELLABLE_STATUSES",
    "STATUS_TRANSITIONS",
    "TERMINAL_STATUSES",
    "ExternalStatus",
    "Job",
    "JobCreateRequest",
    "JobKind",
    "JobProgress",
    "JobRetryRequest",
    "JobStatus",
    "ProviderStatus",
    "RetryState",
    "StageAttempt",
    "SubmitResponse",
    "SwapStrategy",
]
