"""Metadata job state machine: persisted jobs, user operations and background steps."""

from shelfarr.core.jobs.models import (
    BACKGROUND_STATUSES,
    TERMINAL_STATUSES,
    Job,
    JobLogEntry,
    JobState,
    JobStatus,
)
from shelfarr.core.jobs.processor import JobProcessor, next_step
from shelfarr.core.jobs.service import MetadataJobService
from shelfarr.core.jobs.store import JobStore, JobTransaction

__all__ = [
    "BACKGROUND_STATUSES",
    "TERMINAL_STATUSES",
    "Job",
    "JobLogEntry",
    "JobState",
    "JobStatus",
    "JobProcessor",
    "next_step",
    "MetadataJobService",
    "JobStore",
    "JobTransaction",
]
