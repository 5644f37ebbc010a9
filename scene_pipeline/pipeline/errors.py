"""
Pipeline-specific exceptions.
"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""
    pass


class InvalidOperationError(PipelineError):
    """
    Raised when an operation violates pipeline invariants.

    Examples:
    - Completing more batches than the job has
    - Resuming a job that is not resumable
    """
    pass


class JobNotFoundError(PipelineError):
    """Raised when a requested job does not exist in any tier."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class GenerationError(PipelineError):
    """
    Raised by the generation collaborator when an AI call fails.

    status_code carries the upstream HTTP status when there is one, so the
    batch loop can tell rate limits and quota exhaustion apart.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
