"""
Job store router.

- GET    /jobs                - List live jobs
- DELETE /jobs                - Delete every job
- POST   /jobs/fix-orphaned   - Complete in_progress jobs that have scenes
- GET    /jobs/{job_id}       - Full job document
- PUT    /jobs/{job_id}       - Upsert job document
- DELETE /jobs/{job_id}       - Delete one job

Job ids must match ^[A-Za-z0-9_-]{8,64}$ so ids cannot be enumerated with
arbitrary strings.
"""

import logging
import re

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..dependencies.auth import get_job_store
from ..schemas.jobs import (
    FixOrphanedResponse,
    JobDocument,
    JobListResponse,
    JobResponse,
    SuccessResponse,
)
from ..store import JobStore

logger = logging.getLogger(__name__)

router = APIRouter()

JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,64}$")

# 10MB
MAX_REQUEST_SIZE_BYTES = 10 * 1024 * 1024


def validate_job_id(job_id: str) -> str:
    if not JOB_ID_PATTERN.match(job_id):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid job ID format")
    return job_id


@router.get("", response_model=JobListResponse)
async def list_jobs(store: JobStore = Depends(get_job_store)):
    """List all non-expired jobs, newest first."""
    return JobListResponse(jobs=store.list_jobs())


@router.delete("", response_model=SuccessResponse)
async def delete_all_jobs(store: JobStore = Depends(get_job_store)):
    """Delete every job."""
    removed = store.delete_all()
    logger.info(f"[JobStore API] Cleared {removed} jobs")
    return SuccessResponse()


@router.post("/fix-orphaned", response_model=FixOrphanedResponse)
async def fix_orphaned_jobs(store: JobStore = Depends(get_job_store)):
    """Move in_progress jobs that already have scenes to completed."""
    fixed = store.fix_orphaned()
    return FixOrphanedResponse(fixed=len(fixed), job_ids=fixed)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, store: JobStore = Depends(get_job_store)):
    """
    Get a job by ID.

    Raises:
        HTTPException: 400 for a malformed ID, 404 if missing or expired
    """
    validate_job_id(job_id)
    document = store.get_job(job_id)
    if document is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found or expired")
    return JobResponse(job=document)


@router.put("/{job_id}", response_model=SuccessResponse)
async def put_job(job_id: str, request: Request, store: JobStore = Depends(get_job_store)):
    """
    Insert or replace a job.

    Raises:
        HTTPException: 400 for a malformed ID, 413 for bodies over 10MB,
            422 for a body that is not a job
    """
    validate_job_id(job_id)

    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > MAX_REQUEST_SIZE_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Request body too large. Maximum size is {MAX_REQUEST_SIZE_BYTES // 1024 // 1024}MB",
        )

    body = await request.body()
    if len(body) > MAX_REQUEST_SIZE_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Request body too large. Maximum size is {MAX_REQUEST_SIZE_BYTES // 1024 // 1024}MB",
        )

    try:
        document = JobDocument.model_validate_json(body)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    try:
        store.upsert_job(job_id, document.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    logger.debug(f"[JobStore API] Upserted {job_id}")
    return SuccessResponse()


@router.delete("/{job_id}", response_model=SuccessResponse)
async def delete_job(job_id: str, store: JobStore = Depends(get_job_store)):
    """
    Delete a job.

    Raises:
        HTTPException: 400 for a malformed ID, 404 if it did not exist
    """
    validate_job_id(job_id)
    if not store.delete_job(job_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return SuccessResponse()
