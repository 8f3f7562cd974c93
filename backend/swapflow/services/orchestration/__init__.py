"""
Orchestration engine for provider-backed jobs.

This package contains the components that drive external work to a
terminal state:
- retry: bounded retry of a single operation on transient failure
- polling: bounded poll loop over provider status
- adapter: submit + poll through any GenerationProvider
- config_resolver: per-stage polling configuration
- progress: weighted progress and the per-job progress sink
- sequencer: ordered stage execution with graceful degradation

Example:
    from swapflow.services.orchestration import PipelineSequencer, ProgressReporter

    reporter = ProgressReporter(job.id, store)
    result = await PipelineSequencer().run(stages, context, reporter, cancel_event)
"""

from .retry import RetryExecutor
from .polling import (
    PollingConfig,
    log_step_progress,
    parse_step_progress,
    poll_until_complete,
)
from .progress import ProgressManager, ProgressReporter, StageProgress
from .config_resolver import ConfigResolver
from .adapter import ProviderAdapter
from .sequencer import PipelineError, PipelineResult, PipelineSequencer

__all__ = [
    "RetryExecutor",
    "PollingConfig",
    "log_step_progress",
    "parse_step_progress",
    "poll_until_complete",
    "ProgressManager",
    "ProgressReporter",
    "StageProgress",
    "ConfigResolver",
    "ProviderAdapter",
    "PipelineError",
    "PipelineResult",
    "PipelineSequencer",
]
