"""
Logging configuration for the application.

Supports per-module log levels via environment variables:
- LOG_LEVEL: Global log level (default: INFO)
- LOG_FORMAT: Log format - simple or structured (default: structured)
- LOG_LEVEL_<MODULE>: Per-module override (e.g., LOG_LEVEL_PROVIDERS=DEBUG)

Every record is tagged with the job it was emitted for. The job runner
binds the job id at the start of each job task, so provider, stage and
polling logs of concurrent jobs can be told apart:

    2026-01-05 12:00:01 | INFO     | orchestration.sequencer  | 3f2a9c1e | Stage 4/5 (synthesize) started (weight 0.40)
"""

import contextvars
import logging
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from swapflow.config import Settings


# Module name mapping: settings field suffix -> logger names
MODULE_LOGGERS = {
    "providers": ("swapflow.services.providers",),
    "orchestration": ("swapflow.services.orchestration",),
    "stages": ("swapflow.services.stages",),
    "jobs": ("swapflow.services.job_runner", "swapflow.services.job_manager"),
    "api": ("swapflow.api",),
}

# Logger name prefix -> short form shown in structured output
NAME_PREFIXES = (
    ("swapflow.services.", ""),
    ("swapflow.api.", "api."),
    ("swapflow.", ""),
)

JOB_ID_WIDTH = 8
NO_JOB = "-"

_current_job: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "swapflow_job_id", default=None
)


def bind_job(job_id: str | None) -> contextvars.Token:
    """
    Tag log records of the current task with a job id.

    asyncio tasks run in a copy of the context, so a binding made inside
    a job task stays with that task.

    Returns:
        Token for contextvars reset
    """
    return _current_job.set(job_id)


def current_job_id() -> str | None:
    return _current_job.get()


def short_job_id(job_id: str | None) -> str:
    return job_id[:JOB_ID_WIDTH] if job_id else NO_JOB


class JobContextFilter(logging.Filter):
    """Sets record.job_id from the bound job (or an explicit extra)."""

    def filter(self, record: logging.LogRecord) -> bool:
        job_id = getattr(record, "job_id", None) or _current_job.get()
        record.job_id = short_job_id(job_id)
        return True


class StructuredFormatter(logging.Formatter):
    """
    Structured log formatter for easy parsing.

    Format: timestamp | level | logger | job | message
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record in structured format."""
        # Shorten logger name for readability
        logger_name = record.name
        for prefix, short in NAME_PREFIXES:
            if logger_name.startswith(prefix):
                logger_name = short + logger_name[len(prefix):]
                break

        timestamp = self.formatTime(record, "%Y-%m-%d %H:%M:%S")
        job = getattr(record, "job_id", None) or short_job_id(_current_job.get())

        message = (
            f"{timestamp} | "
            f"{record.levelname:8} | "
            f"{logger_name:24} | "
            f"{job:{JOB_ID_WIDTH}} | "
            f"{record.getMessage()}"
        )

        # Add exception traceback if present
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


def setup_logging(settings: "Settings") -> None:
    """
    Configure logging based on settings.

    Args:
        settings: Application settings with log configuration
    """
    # Parse root log level
    root_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    # Choose formatter
    if settings.log_format == "structured":
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(job_id)s] %(message)s"
        )

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    # Stream handler tags every record with its job
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.setLevel(root_level)
    handler.addFilter(JobContextFilter())
    root_logger.addHandler(handler)

    # Configure per-module loggers
    _configure_module_loggers(settings, root_level)

    # Quiet noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _configure_module_loggers(settings: "Settings", default_level: int) -> None:
    """
    Configure individual module log levels.

    Args:
        settings: Application settings
        default_level: Default log level to use
    """
    for module_key, logger_names in MODULE_LOGGERS.items():
        # Get level from settings (e.g., settings.log_level_providers)
        level_str = getattr(settings, f"log_level_{module_key}", None)
        if not level_str:
            continue

        level = getattr(logging, level_str.upper(), default_level)
        for logger_name in logger_names:
            logging.getLogger(logger_name).setLevel(level)
