"""
API request/response schemas.
"""

from .jobs import (
    JobErrorModel,
    JobInfoModel,
    JobListResponse,
    JobDocument,
    JobResponse,
    SuccessResponse,
    FixOrphanedResponse,
)

__all__ = [
    "JobErrorModel",
    "JobInfoModel",
    "JobListResponse",
    "JobDocument",
    "JobResponse",
    "SuccessResponse",
    "FixOrphanedResponse",
]
