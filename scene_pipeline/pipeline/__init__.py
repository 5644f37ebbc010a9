"""
Scene Pipeline Core Module.

- entities: Job, Scene, PhaseCacheEntry, ProgressRecord, ResumeData
- errors: Pipeline exception hierarchy
- phase_cache: Per-job phase result cache with advisory lock
- progress: Progress tracking (client-persisted and server in-memory)
- batch_runner: Phase 2 batch loop with dedup, caching and resume
"""

from .entities import (
    JobStatus,
    JobErrorType,
    Scene,
    JobError,
    JobSummary,
    Job,
    JobInfo,
    PhaseCacheEntry,
    ProgressRecord,
    ResumeData,
    compute_expires_at,
)
from .errors import (
    PipelineError,
    InvalidOperationError,
    JobNotFoundError,
    GenerationError,
)

__all__ = [
    # entities
    "JobStatus",
    "JobErrorType",
    "Scene",
    "JobError",
    "JobSummary",
    "Job",
    "JobInfo",
    "PhaseCacheEntry",
    "ProgressRecord",
    "ResumeData",
    "compute_expires_at",
    # errors
    "PipelineError",
    "InvalidOperationError",
    "JobNotFoundError",
    "GenerationError",
]
