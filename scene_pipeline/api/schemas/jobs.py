"""
Job store schemas.

The full job document is accepted as-is (extra fields preserved) so that
clients can round-trip opaque scene payloads; only the fields the store
indexes are declared.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobErrorModel(BaseModel):
    """Failure recorded on a job."""

    message: str
    type: str = "UNKNOWN_ERROR"
    failed_batch: Optional[int] = None
    total_batches: Optional[int] = None
    retryable: bool = False


class JobInfoModel(BaseModel):
    """Listing view of a stored job."""

    job_id: str
    source_id: str = ""
    source_url: str = ""
    scene_count: int = 0
    characters_found: int = 0
    mode: str = "direct"
    voice: str = "no-voice"
    status: str
    has_script: bool = False
    created_at: str = ""
    timestamp: float = Field(..., description="Last write, epoch seconds")
    expires_at: float = Field(..., description="Expiry, epoch seconds")
    error: Optional[JobErrorModel] = None
    storage_source: str = "cloud"


class JobListResponse(BaseModel):
    """Response from GET /jobs."""

    jobs: List[JobInfoModel]


class JobDocument(BaseModel):
    """Full job body accepted by PUT /jobs/{job_id}."""

    model_config = ConfigDict(extra="allow")

    job_id: Optional[str] = None
    source_id: str = ""
    source_url: str = ""
    status: str = "pending"
    scenes: List[Dict[str, Any]] = Field(default_factory=list)
    character_registry: Dict[str, str] = Field(default_factory=dict)
    timestamp: Optional[float] = None
    expires_at: Optional[float] = None


class JobResponse(BaseModel):
    """Response from GET /jobs/{job_id}."""

    job: Dict[str, Any]


class SuccessResponse(BaseModel):
    success: bool = True


class FixOrphanedResponse(BaseModel):
    """Response from POST /jobs/fix-orphaned."""

    success: bool = True
    fixed: int = Field(..., description="Number of jobs moved to completed")
    job_ids: List[str] = Field(default_factory=list)
